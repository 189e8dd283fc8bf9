"""
Batch Aggregator.

A batch is every protocol instance sharing a protocol and a start date. It
has no table of its own: batches are recomputed from the instance rows on
every read so they can never disagree with them.
"""

from dataclasses import dataclass, field
from datetime import date
from typing import Dict, Iterable, List, NamedTuple, Optional

from sqlalchemy.orm import Session

from .schema import Protocol, ProtocolInstance, COMPLETED, CANCELED
from .validators import ValidationError, parse_date

DELETED_PROTOCOL_NAME = '(deleted protocol)'

BATCH_STATES = ('active', 'completed')

KEY_SEPARATOR = '|'


class BatchKey(NamedTuple):
    protocol_id: str
    start_date: date

    def __str__(self):
        return f"{self.protocol_id}{KEY_SEPARATOR}{self.start_date.isoformat()}"

    @classmethod
    def parse(cls, value) -> 'BatchKey':
        """Accept a BatchKey, a (protocol_id, date) pair or 'protocol_id|YYYY-MM-DD'."""
        if isinstance(value, BatchKey):
            return value
        if isinstance(value, tuple) and len(value) == 2:
            return cls(value[0], parse_date(value[1], 'start_date'))
        if isinstance(value, str) and KEY_SEPARATOR in value:
            protocol_id, _, start = value.rpartition(KEY_SEPARATOR)
            if protocol_id:
                return cls(protocol_id, parse_date(start, 'start_date'))
        raise ValidationError('batch_key', value,
                              f"Batch key must look like 'protocol_id{KEY_SEPARATOR}YYYY-MM-DD'")


@dataclass
class ProtocolBatch:
    """Cohort of instances enrolled together (same protocol, same start date)."""

    key: BatchKey
    protocol_name: str
    start_date: date
    manager: str
    instances: List[ProtocolInstance] = field(default_factory=list)

    @property
    def protocol_id(self) -> str:
        return self.key.protocol_id

    @property
    def total_count(self) -> int:
        return len(self.instances)

    @property
    def resolved_count(self) -> int:
        return sum(1 for i in self.instances if i.status in (COMPLETED, CANCELED))

    @property
    def is_active(self) -> bool:
        return self.resolved_count < self.total_count

    @property
    def is_completed(self) -> bool:
        return not self.is_active

    def to_dict(self) -> Dict:
        return {
            'key': str(self.key),
            'protocol_id': self.protocol_id,
            'protocol_name': self.protocol_name,
            'start_date': self.start_date.isoformat(),
            'manager': self.manager,
            'total_count': self.total_count,
            'resolved_count': self.resolved_count,
            'state': 'active' if self.is_active else 'completed',
            'instances': [i.to_dict() for i in self.instances],
        }


def group_batches(instances: Iterable[ProtocolInstance],
                  protocol_names: Dict[str, str]) -> List[ProtocolBatch]:
    """
    Group instances into batches.

    Pure function: batches appear in first-seen order, and each batch's
    manager is taken from its first-seen member. Protocols missing from
    `protocol_names` get a placeholder name.
    """
    batches: Dict[BatchKey, ProtocolBatch] = {}
    for instance in instances:
        key = BatchKey(instance.protocol_id, instance.start_date)
        batch = batches.get(key)
        if batch is None:
            batch = ProtocolBatch(
                key=key,
                protocol_name=protocol_names.get(instance.protocol_id, DELETED_PROTOCOL_NAME),
                start_date=instance.start_date,
                manager=instance.manager,
            )
            batches[key] = batch
        batch.instances.append(instance)
    return list(batches.values())


def _protocol_names(session: Session) -> Dict[str, str]:
    return {row.id: row.name for row in session.query(Protocol.id, Protocol.name).all()}


def _ordered_instances(session: Session):
    return session.query(ProtocolInstance).order_by(
        ProtocolInstance.created_at, ProtocolInstance.animal_id
    )


def list_batches(session: Session, state: Optional[str] = None) -> List[ProtocolBatch]:
    """
    All batches, optionally filtered to 'active' or 'completed'.

    Raises:
        ValidationError: If state is not None, 'active' or 'completed'
    """
    if state is not None and state not in BATCH_STATES:
        raise ValidationError('state', state, f"Batch filter must be one of {BATCH_STATES}")

    batches = group_batches(_ordered_instances(session).all(), _protocol_names(session))
    if state == 'active':
        return [b for b in batches if b.is_active]
    if state == 'completed':
        return [b for b in batches if b.is_completed]
    return batches


def get_batch(session: Session, key) -> Optional[ProtocolBatch]:
    """The batch with this key, or None if no instance carries it."""
    key = BatchKey.parse(key)
    instances = (
        _ordered_instances(session)
        .filter(ProtocolInstance.protocol_id == key.protocol_id,
                ProtocolInstance.start_date == key.start_date)
        .all()
    )
    batches = group_batches(instances, _protocol_names(session))
    return batches[0] if batches else None
