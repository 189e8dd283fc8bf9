"""
Animal Registry boundary.

The registry owns animal records; the protocol tracking core only looks
animals up and reads their reproductive status. Recording a reproductive
event updates that status through a simple last-write-wins classifier.
"""

import logging
from datetime import date
from typing import Dict, List, Optional, Any, Tuple

from sqlalchemy.orm import Session

from .errors import NotFoundError
from .schema import Animal, ReproEvent
from .validators import validate_animal_id, validate_event_type, parse_date, require

logger = logging.getLogger(__name__)

OPEN = 'OPEN'

# Event type -> status it always sets
EVENT_STATUS = {
    'BREED': 'BRED',
    'CALVING': 'FRESH',
    'DRY_OFF': 'DRY',
}

# Pen threshold for the default inseminator split
INSEMINATOR_A_MAX_PEN = 2


def get_animal(session: Session, animal_id: str) -> Optional[Animal]:
    """Look up an animal by tag, or None if unknown."""
    if animal_id is None:
        return None
    return session.get(Animal, str(animal_id).strip())


def list_animals(session: Session, repro_status: str = None) -> List[Animal]:
    """
    List animals ordered by tag.

    Args:
        session: Database session
        repro_status: Only animals with this status (case-insensitive)
    """
    query = session.query(Animal)
    if repro_status:
        query = query.filter(Animal.repro_status == repro_status.strip().upper())
    return query.order_by(Animal.animal_id).all()


def upsert_animal(session: Session, data: Dict[str, Any]) -> Tuple[Animal, bool]:
    """
    Create or update an animal from a field dict keyed by Animal column names.

    Returns:
        (animal, created)
    """
    animal_id = data.get('animal_id')
    require(validate_animal_id(animal_id), 'animal_id', animal_id)
    animal_id = str(animal_id).strip()

    animal = session.get(Animal, animal_id)
    created = animal is None
    if created:
        animal = Animal(animal_id=animal_id)
        session.add(animal)

    for key, value in data.items():
        if key == 'animal_id' or not hasattr(Animal, key):
            continue
        setattr(animal, key, value)

    session.flush()
    return animal, created


def classify_event(event_type: str, details: str = '', current_status: str = None) -> Optional[str]:
    """
    Map a recorded event to the animal's new reproductive status.

    BREED -> BRED, CALVING -> FRESH, DRY_OFF -> DRY. A PREG_CHECK is classified
    from its free-text details: "pregnant" -> PREG, "open" -> OPEN, checked in
    that order so the later rule wins when both appear. Anything else leaves
    the status unchanged.
    """
    event_type = (event_type or '').upper().strip()
    new_status = current_status

    if event_type in EVENT_STATUS:
        new_status = EVENT_STATUS[event_type]
    if event_type == 'PREG_CHECK':
        text = (details or '').lower()
        if 'pregnant' in text:
            new_status = 'PREG'
        if 'open' in text:
            new_status = OPEN

    return new_status


def record_event(
    session: Session,
    animal_id: str,
    event_type: str,
    event_date: Any = None,
    details: str = '',
    technician: str = None,
    cost: float = None
) -> ReproEvent:
    """
    Record an event for an animal and propagate its reproductive status.

    Raises:
        NotFoundError: If the animal is not in the registry
        ValidationError: If the event type or date is malformed
    """
    require(validate_event_type(event_type), 'event_type', event_type)
    animal = get_animal(session, animal_id)
    if animal is None:
        raise NotFoundError('Animal', animal_id)

    event_date = parse_date(event_date, 'event_date') if event_date else date.today()
    event = ReproEvent(
        animal_id=animal.animal_id,
        event_date=event_date,
        event_type=event_type,
        details=details or '',
        technician=technician,
        cost=cost,
    )
    session.add(event)

    new_status = classify_event(event_type, details, animal.repro_status)
    if new_status != animal.repro_status:
        logger.info("Animal %s status %s -> %s (%s)",
                    animal.animal_id, animal.repro_status, new_status, event.event_type)
        animal.repro_status = new_status

    session.flush()
    return event


def suggest_inseminator(animal: Optional[Animal]) -> str:
    """Default inseminator assignment: pens 1-2 -> Inseminator A, others -> Inseminator B."""
    pen = (animal.pen or 0) if animal is not None else 0
    return 'Inseminator A' if pen <= INSEMINATOR_A_MAX_PEN else 'Inseminator B'
