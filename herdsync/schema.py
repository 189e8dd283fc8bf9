"""
SQLAlchemy schema models with validation for HerdSync.

All validation happens at both the Python level (via validators and
@validates hooks) and the database level (via CHECK constraints and a
partial unique index) so a protocol instance can never be committed in a
state that breaks the tracking rules.
"""

import uuid
from datetime import datetime, date
from typing import Optional, List, Tuple, Dict, Any

from sqlalchemy import (
    Column, Integer, String, Float, Date, DateTime, Text, JSON,
    ForeignKey, CheckConstraint, UniqueConstraint, Index, event, text
)
from sqlalchemy.orm import declarative_base, relationship, validates, Session
from sqlalchemy.engine import Engine

from .steps import Step, StepProgress, steps_from_dicts, steps_to_dicts
from .validators import (
    STEP_KINDS, EVENT_TYPES, INSTANCE_STATUSES,
    validate_animal_id, validate_protocol_id, validate_event_type
)

Base = declarative_base()

ACTIVE = 'ACTIVE'
COMPLETED = 'COMPLETED'
CANCELED = 'CANCELED'


def _new_instance_id() -> str:
    return uuid.uuid4().hex


# =============================================================================
# ANIMAL REGISTRY MODELS
# =============================================================================

class Animal(Base):
    """
    A herd animal, keyed by its tag number.

    Owned by the registry/importer; the protocol tracking core only reads
    `animal_id`, `pen` and `repro_status`.
    """
    __tablename__ = 'animals'

    animal_id = Column(String(30), primary_key=True)  # Tag number
    eid = Column(String(50))  # Electronic ID
    name = Column(String(100))
    pen = Column(Integer, default=0)
    breed = Column(String(20))
    repro_status = Column(String(20))  # RPRO: OPEN, BRED, PREG, FRESH, DRY, DNB, ...
    gender = Column(String(1), default='F')

    lactation = Column(Integer, default=1)
    days_in_milk = Column(Integer, default=0)
    birth_date = Column(Date)
    last_calving_date = Column(Date)
    last_heat_date = Column(Date)
    due_date = Column(Date)
    times_bred = Column(Integer, default=0)
    days_open = Column(Integer, default=0)

    sire1 = Column(String(50))  # Current/last service sire
    sire2 = Column(String(50))
    sire3 = Column(String(50))

    avg_milk = Column(Float)

    created_at = Column(DateTime, default=datetime.now)
    updated_at = Column(DateTime, default=datetime.now, onupdate=datetime.now)

    events = relationship("ReproEvent", back_populates="animal",
                          order_by="ReproEvent.event_date")

    @validates('animal_id')
    def validate_animal_id(self, key, value):
        valid, msg = validate_animal_id(value)
        if not valid:
            raise ValueError(msg)
        return str(value).strip()

    @validates('gender')
    def validate_gender(self, key, value):
        if value is None:
            return 'F'
        value = str(value).upper().strip()[:1]
        if value not in ('F', 'M'):
            raise ValueError(f"Gender must be F or M, got: {value}")
        return value

    @validates('repro_status')
    def validate_repro_status(self, key, value):
        if value is None:
            return None
        return str(value).strip().upper() or None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'animal_id': self.animal_id,
            'eid': self.eid,
            'pen': self.pen,
            'breed': self.breed,
            'repro_status': self.repro_status,
            'gender': self.gender,
            'lactation': self.lactation,
            'days_in_milk': self.days_in_milk,
            'times_bred': self.times_bred,
        }


class ReproEvent(Base):
    """A recorded reproductive or health event (breeding, preg check, calving, ...)."""
    __tablename__ = 'repro_events'
    __table_args__ = (
        CheckConstraint(
            "event_type IN (" + ", ".join(f"'{t}'" for t in EVENT_TYPES) + ")",
            name='check_event_type'
        ),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    animal_id = Column(String(30), ForeignKey('animals.animal_id'), nullable=False)
    event_date = Column(Date, nullable=False)
    event_type = Column(String(20), nullable=False)
    details = Column(Text, default='')
    technician = Column(String(50))
    cost = Column(Float)
    created_at = Column(DateTime, default=datetime.now)

    animal = relationship("Animal", back_populates="events")

    @validates('event_type')
    def validate_event_type(self, key, value):
        valid, msg = validate_event_type(value)
        if not valid:
            raise ValueError(msg)
        return value.upper().strip()


# =============================================================================
# PROTOCOL CATALOG MODELS
# =============================================================================

class Protocol(Base):
    """
    Reusable synchronization/treatment protocol definition.

    Steps are ordered by position (`step_order`), not by day offset. Editing a
    protocol replaces its steps in place; running instances keep their own
    snapshot and are never touched by catalog edits.
    """
    __tablename__ = 'protocols'

    id = Column(String(50), primary_key=True)  # Slug, e.g. 'ovsynch'
    name = Column(String(100), nullable=False)
    description = Column(Text)
    last_modified = Column(Date)
    created_at = Column(DateTime, default=datetime.now)

    steps = relationship("ProtocolStep", back_populates="protocol",
                         order_by="ProtocolStep.step_order",
                         cascade="all, delete-orphan")

    @validates('id')
    def validate_id(self, key, value):
        valid, msg = validate_protocol_id(value)
        if not valid:
            raise ValueError(msg)
        return value

    def step_values(self) -> Tuple[Step, ...]:
        """The current step list as immutable values, in position order."""
        return tuple(step.to_value() for step in self.steps)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'name': self.name,
            'description': self.description,
            'last_modified': self.last_modified.isoformat() if self.last_modified else None,
            'steps': steps_to_dicts(self.step_values()),
        }


class ProtocolStep(Base):
    """A single timed step within a protocol definition."""
    __tablename__ = 'protocol_steps'
    __table_args__ = (
        UniqueConstraint('protocol_id', 'step_order', name='unique_step_order_per_protocol'),
        CheckConstraint('day_offset >= 0', name='check_day_offset'),
        CheckConstraint(
            "kind IN (" + ", ".join(f"'{k}'" for k in STEP_KINDS) + ")",
            name='check_step_kind'
        ),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    protocol_id = Column(String(50), ForeignKey('protocols.id', ondelete='CASCADE'),
                         nullable=False)
    step_order = Column(Integer, nullable=False)  # Position within protocol, from 0
    day_offset = Column(Integer, nullable=False)  # Days after start date
    kind = Column(String(20), nullable=False)  # INJECTION, AI, CHECK, MOVE
    description = Column(Text, default='')
    product = Column(String(100))  # e.g. 'Cystorelin', 'Lutalyse'

    protocol = relationship("Protocol", back_populates="steps")

    def to_value(self) -> Step:
        return Step(self.day_offset, self.kind, self.description or '', self.product)


# =============================================================================
# PROTOCOL INSTANCE STORE
# =============================================================================

class ProtocolInstance(Base):
    """
    One animal's run through one protocol.

    `snapshot_steps` is the verbatim step list at enrollment and can never be
    reassigned. `completed_steps` must always be a contiguous prefix of
    snapshot indices. `force_completed` marks an out-of-band completion where
    steps may still be outstanding.

    `animal_id` and `protocol_id` are not foreign keys: an instance outlives
    registry and catalog edits.
    """
    __tablename__ = 'protocol_instances'
    __table_args__ = (
        CheckConstraint(
            "status IN (" + ", ".join(f"'{s}'" for s in INSTANCE_STATUSES) + ")",
            name='check_instance_status'
        ),
        CheckConstraint('force_completed IN (0, 1)', name='check_force_completed'),
        Index('one_active_instance_per_animal', 'animal_id', unique=True,
              sqlite_where=text("status = 'ACTIVE'"),
              postgresql_where=text("status = 'ACTIVE'")),
        Index('ix_instance_batch', 'protocol_id', 'start_date'),
    )

    id = Column(String(32), primary_key=True, default=_new_instance_id)
    animal_id = Column(String(30), nullable=False, index=True)
    protocol_id = Column(String(50), nullable=False)
    start_date = Column(Date, nullable=False)
    manager = Column(String(50), nullable=False)
    inseminator = Column(String(50), nullable=False)

    status = Column(String(20), nullable=False, default=ACTIVE)
    snapshot_steps = Column(JSON, nullable=False)
    completed_steps = Column(JSON, nullable=False, default=list)
    force_completed = Column(Integer, nullable=False, default=0)
    notes = Column(Text, default='')

    created_at = Column(DateTime, default=datetime.now)
    updated_at = Column(DateTime, default=datetime.now, onupdate=datetime.now)
    version = Column(Integer, nullable=False)

    # Every UPDATE is guarded by "WHERE version = <loaded version>"
    __mapper_args__ = {'version_id_col': version}

    @validates('status')
    def validate_status(self, key, value):
        if value not in INSTANCE_STATUSES:
            raise ValueError(f"Status must be one of {INSTANCE_STATUSES}, got: {value}")
        return value

    @validates('snapshot_steps')
    def validate_snapshot_steps(self, key, value):
        normalized = steps_to_dicts(steps_from_dicts(value or []))
        if self.snapshot_steps is not None and normalized != self.snapshot_steps:
            raise ValueError(f"Instance {self.id}: snapshot steps are immutable once created")
        return normalized

    @validates('completed_steps')
    def validate_completed_steps(self, key, value):
        value = list(value or [])
        total = len(self.snapshot_steps) if self.snapshot_steps is not None else len(value)
        return StepProgress(total, frozenset(value)).as_list()

    @validates('start_date', 'manager', 'inseminator')
    def validate_fixed_at_enrollment(self, key, value):
        current = getattr(self, key)
        if current is not None and value != current:
            raise ValueError(f"Instance {self.id}: {key} is immutable")
        return value

    @property
    def steps(self) -> Tuple[Step, ...]:
        return steps_from_dicts(self.snapshot_steps or [])

    @property
    def progress(self) -> StepProgress:
        return StepProgress(len(self.snapshot_steps or []),
                            frozenset(self.completed_steps or []), owner=self.id or '')

    @property
    def is_resolved(self) -> bool:
        return self.status in (COMPLETED, CANCELED)

    @property
    def is_force_completed(self) -> bool:
        """COMPLETED by manual override rather than by finishing the last step."""
        return self.status == COMPLETED and bool(self.force_completed)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'animal_id': self.animal_id,
            'protocol_id': self.protocol_id,
            'start_date': self.start_date.isoformat() if self.start_date else None,
            'manager': self.manager,
            'inseminator': self.inseminator,
            'status': self.status,
            'completed_steps': list(self.completed_steps or []),
            'force_completed': bool(self.force_completed),
            'snapshot_steps': [dict(s) for s in (self.snapshot_steps or [])],
            'notes': self.notes or '',
        }


class AuditLog(Base):
    """Audit trail for all data modifications."""
    __tablename__ = 'audit_log'

    id = Column(Integer, primary_key=True, autoincrement=True)
    timestamp = Column(DateTime, default=datetime.now)
    user = Column(String(50))
    action = Column(String(30))  # ENROLL, TOGGLE_STEP, ANNUL, FORCE_COMPLETE, ...
    table_name = Column(String(50))
    record_id = Column(String(50))
    old_values = Column(Text)  # JSON
    new_values = Column(Text)  # JSON


# =============================================================================
# DATABASE INITIALIZATION
# =============================================================================

@event.listens_for(Engine, "connect")
def set_sqlite_pragma(dbapi_connection, connection_record):
    """Enable foreign keys for SQLite."""
    if type(dbapi_connection).__module__.startswith('sqlite3'):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


DEFAULT_PROTOCOLS = [
    {
        'id': 'ovsynch',
        'name': 'Ovsynch Standard',
        'description': 'GnRH -> 7d -> PGF -> 2d -> GnRH -> 16h -> AI',
        'steps': [
            {'day_offset': 0, 'kind': 'INJECTION', 'description': 'GnRH Injection', 'product': 'Cystorelin'},
            {'day_offset': 7, 'kind': 'INJECTION', 'description': 'PGF Injection', 'product': 'Lutalyse'},
            {'day_offset': 9, 'kind': 'INJECTION', 'description': 'GnRH Injection', 'product': 'Cystorelin'},
            {'day_offset': 10, 'kind': 'AI', 'description': 'Timed AI', 'product': 'Semen'},
        ],
    },
    {
        'id': 'presynch',
        'name': 'Presynch-Ovsynch',
        'description': 'PGF -> 14d -> PGF -> 12d -> Ovsynch',
        'steps': [
            {'day_offset': 0, 'kind': 'INJECTION', 'description': 'PGF 1', 'product': 'Lutalyse'},
            {'day_offset': 14, 'kind': 'INJECTION', 'description': 'PGF 2', 'product': 'Lutalyse'},
            {'day_offset': 26, 'kind': 'INJECTION', 'description': 'GnRH 1 (Start Ovsynch)', 'product': 'Cystorelin'},
            {'day_offset': 33, 'kind': 'INJECTION', 'description': 'PGF 3', 'product': 'Lutalyse'},
            {'day_offset': 35, 'kind': 'INJECTION', 'description': 'GnRH 2', 'product': 'Cystorelin'},
            {'day_offset': 36, 'kind': 'AI', 'description': 'Timed AI', 'product': 'Semen'},
        ],
    },
]


def create_default_protocols(session: Session) -> List[Protocol]:
    """
    Seed the catalog with the standard synchronization protocols.

    Existing protocols with the same ID are left untouched.
    """
    created = []
    for definition in DEFAULT_PROTOCOLS:
        if session.get(Protocol, definition['id']) is not None:
            continue
        protocol = Protocol(
            id=definition['id'],
            name=definition['name'],
            description=definition['description'],
        )
        for order, step in enumerate(steps_from_dicts(definition['steps'])):
            protocol.steps.append(ProtocolStep(
                step_order=order,
                day_offset=step.day_offset,
                kind=step.kind,
                description=step.description,
                product=step.product,
            ))
        session.add(protocol)
        created.append(protocol)
    session.flush()
    return created
