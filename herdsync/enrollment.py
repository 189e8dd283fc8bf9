"""
Enrollment Service.

Starts a protocol run for a set of animals. Eligibility is re-checked
against the committed instance table at the moment of enrollment, so an
animal picked from a stale selection list is skipped rather than enrolled
twice.
"""

import logging
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Any

from sqlalchemy.orm import Session

from .catalog import get_protocol
from .errors import NoEligibleAnimalsError
from .registry import OPEN, get_animal, suggest_inseminator
from .schema import Animal, ProtocolInstance, ACTIVE
from .steps import steps_to_dicts
from .validators import (
    ValidationError, validate_animal_id, validate_staff_id, parse_date, require
)

logger = logging.getLogger(__name__)

# Passing this as the inseminator assigns one per animal from its pen
AUTO_INSEMINATOR = 'auto'


@dataclass
class EnrollmentResult:
    """Outcome of an enrollment: instances created and animals skipped as already active."""

    created: List[ProtocolInstance] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)

    @property
    def created_animal_ids(self) -> List[str]:
        return [instance.animal_id for instance in self.created]


def active_instance_for(session: Session, animal_id: str) -> Optional[ProtocolInstance]:
    """The animal's ACTIVE protocol instance, if any."""
    return (
        session.query(ProtocolInstance)
        .filter(ProtocolInstance.animal_id == animal_id,
                ProtocolInstance.status == ACTIVE)
        .first()
    )


def is_enrollable(session: Session, animal_id: str) -> bool:
    """True when the animal has no ACTIVE protocol instance."""
    return active_instance_for(session, animal_id) is None


def eligible_animals(session: Session, repro_status: str = OPEN) -> List[Animal]:
    """
    Default enrollment pool: animals with the given reproductive status
    (OPEN by default) and no ACTIVE protocol instance.
    """
    active_ids = (
        session.query(ProtocolInstance.animal_id)
        .filter(ProtocolInstance.status == ACTIVE)
    )
    return (
        session.query(Animal)
        .filter(Animal.repro_status == repro_status.upper())
        .filter(Animal.animal_id.notin_(active_ids))
        .order_by(Animal.animal_id)
        .all()
    )


def _normalize_animal_ids(animal_ids: Iterable[str]) -> List[str]:
    if animal_ids is None or isinstance(animal_ids, str):
        raise ValidationError('animal_ids', animal_ids, "Animal IDs must be a collection of IDs")
    normalized = []
    for raw in animal_ids:
        require(validate_animal_id(raw), 'animal_ids', raw)
        animal_id = str(raw).strip()
        if animal_id not in normalized:
            normalized.append(animal_id)
    if not normalized:
        raise ValidationError('animal_ids', animal_ids, "At least one animal is required")
    return sorted(normalized)


def enroll(
    session: Session,
    animal_ids: Iterable[str],
    protocol_id: str,
    start_date: Any,
    manager: str,
    inseminator: str
) -> EnrollmentResult:
    """
    Enroll animals into a protocol starting on a given date.

    Every admitted animal gets its own ProtocolInstance with an independent
    copy of the protocol's current steps. All instances are added in one
    flush; the caller's transaction makes the write all-or-nothing.

    Args:
        session: Database session
        animal_ids: Animals to enroll (duplicates ignored)
        protocol_id: Catalog protocol to run
        start_date: Day 0 of the protocol (date or 'YYYY-MM-DD')
        manager: Responsible manager
        inseminator: Assigned inseminator, or 'auto' to assign by pen

    Returns:
        EnrollmentResult with created instances and skipped animal IDs

    Raises:
        ValidationError: Missing/unknown protocol, protocol without steps,
            missing staff, empty or unknown animal IDs, bad date
        NoEligibleAnimalsError: Every requested animal already has an ACTIVE instance
    """
    ids = _normalize_animal_ids(animal_ids)
    require(validate_staff_id(manager, 'Manager'), 'manager', manager)
    require(validate_staff_id(inseminator, 'Inseminator'), 'inseminator', inseminator)
    start_date = parse_date(start_date, 'start_date')

    if not protocol_id:
        raise ValidationError('protocol_id', protocol_id, "Protocol is required")
    protocol = get_protocol(session, protocol_id)
    if protocol is None:
        raise ValidationError('protocol_id', protocol_id,
                              f"Protocol '{protocol_id}' does not exist")
    steps = protocol.step_values()
    if not steps:
        raise ValidationError('protocol_id', protocol_id,
                              f"Protocol '{protocol_id}' has no steps to schedule")

    animals = {animal_id: get_animal(session, animal_id) for animal_id in ids}
    unknown = [animal_id for animal_id, animal in animals.items() if animal is None]
    if unknown:
        raise ValidationError('animal_ids', unknown,
                              f"Unknown animal(s): {', '.join(unknown)}")

    # Eligibility against committed state, not the caller's selection
    already_active = {
        row.animal_id for row in
        session.query(ProtocolInstance.animal_id)
        .filter(ProtocolInstance.animal_id.in_(ids),
                ProtocolInstance.status == ACTIVE)
        .all()
    }
    skipped = [animal_id for animal_id in ids if animal_id in already_active]
    if len(skipped) == len(ids):
        raise NoEligibleAnimalsError(skipped)
    for animal_id in skipped:
        logger.info("Skipping %s: already has an active protocol", animal_id)

    created = []
    for animal_id in ids:
        if animal_id in already_active:
            continue
        assigned = inseminator.strip()
        if assigned.lower() == AUTO_INSEMINATOR:
            assigned = suggest_inseminator(animals[animal_id])
        created.append(ProtocolInstance(
            animal_id=animal_id,
            protocol_id=protocol.id,
            start_date=start_date,
            manager=manager.strip(),
            inseminator=assigned,
            status=ACTIVE,
            snapshot_steps=steps_to_dicts(steps),
            completed_steps=[],
            force_completed=0,
            notes='',
        ))

    session.add_all(created)
    session.flush()

    logger.info("Enrolled %d animal(s) in %s starting %s (%d skipped)",
                len(created), protocol.id, start_date.isoformat(), len(skipped))
    return EnrollmentResult(created=created, skipped=skipped)
