"""
Protocol Catalog for HerdSync.

This module provides functions for creating, editing and removing protocol
definitions. A protocol is a named, ordered list of timed steps
(injections, timed AI, checks, moves).

Key Functions:
- Protocol CRUD (create_protocol, get_protocol, list_protocols,
  update_protocol, delete_protocol)
- Reference checks (count_instances)

Editing a protocol never touches instances already enrolled: those carry
their own step snapshot. Deleting is refused while any instance refers to
the protocol.
"""

import logging
import re
from datetime import date
from typing import List, Dict, Optional, Any, Iterable

from sqlalchemy.orm import Session, selectinload

from .errors import NotFoundError, ReferencedEntityError
from .schema import Protocol, ProtocolStep, ProtocolInstance
from .steps import Step, steps_from_dicts
from .validators import ValidationError, validate_protocol_name, validate_protocol_id, require

logger = logging.getLogger(__name__)


# =============================================================================
# PROTOCOL QUERIES
# =============================================================================

def list_protocols(session: Session) -> List[Protocol]:
    """
    List all protocols ordered by name, with their steps loaded.

    Args:
        session: Database session

    Returns:
        List of Protocol objects
    """
    return (
        session.query(Protocol)
        .options(selectinload(Protocol.steps))
        .order_by(Protocol.name)
        .all()
    )


def get_protocol(session: Session, protocol_id: str) -> Optional[Protocol]:
    """Get a protocol by ID, or None if it does not exist."""
    return session.get(Protocol, protocol_id)


def require_protocol(session: Session, protocol_id: str) -> Protocol:
    """Get a protocol by ID or raise NotFoundError."""
    protocol = get_protocol(session, protocol_id)
    if protocol is None:
        raise NotFoundError('Protocol', protocol_id)
    return protocol


def count_instances(session: Session, protocol_id: str) -> int:
    """Number of protocol instances (any status) that reference a protocol."""
    return (
        session.query(ProtocolInstance)
        .filter(ProtocolInstance.protocol_id == protocol_id)
        .count()
    )


# =============================================================================
# PROTOCOL MANAGEMENT
# =============================================================================

def slugify(name: str) -> str:
    """'Heifer Sync (7d)' -> 'heifer-sync-7d'"""
    slug = re.sub(r'[^a-z0-9]+', '-', name.lower()).strip('-')
    return slug or 'protocol'


def _unique_protocol_id(session: Session, name: str) -> str:
    base = slugify(name)[:45]
    candidate = base
    suffix = 2
    while session.get(Protocol, candidate) is not None:
        candidate = f"{base}-{suffix}"
        suffix += 1
    return candidate


def _set_steps(protocol: Protocol, steps: Iterable[Step]):
    for order, step in enumerate(steps):
        protocol.steps.append(ProtocolStep(
            step_order=order,
            day_offset=step.day_offset,
            kind=step.kind,
            description=step.description,
            product=step.product,
        ))


def create_protocol(
    session: Session,
    name: str,
    steps: List[Dict[str, Any]],
    description: str = None,
    protocol_id: str = None,
    today: date = None
) -> Protocol:
    """
    Create a new protocol with steps.

    Args:
        session: Database session
        name: Protocol name (e.g., "Ovsynch Standard")
        steps: Ordered list of step dicts (or Step values) with keys:
            - day_offset: int >= 0 (required; 'day' accepted as alias)
            - kind: 'INJECTION', 'AI', 'CHECK' or 'MOVE' (required; 'type' accepted)
            - description: str
            - product: str (optional)
        description: Protocol description
        protocol_id: Explicit slug; derived from the name when omitted
        today: Date recorded as last_modified (defaults to today)

    Returns:
        The created Protocol object with steps

    Raises:
        ValidationError: If the name, ID or any step is malformed, or the ID is taken
    """
    require(validate_protocol_name(name), 'name', name)
    values = steps_from_dicts(steps or [])

    if protocol_id is None:
        protocol_id = _unique_protocol_id(session, name)
    else:
        require(validate_protocol_id(protocol_id), 'protocol_id', protocol_id)
        if session.get(Protocol, protocol_id) is not None:
            raise ValidationError('protocol_id', protocol_id,
                                  f"Protocol ID '{protocol_id}' already exists")

    protocol = Protocol(
        id=protocol_id,
        name=name.strip(),
        description=description,
        last_modified=today or date.today(),
    )
    _set_steps(protocol, values)
    session.add(protocol)
    session.flush()

    logger.info("Created protocol %s (%d steps)", protocol.id, len(values))
    return protocol


def update_protocol(
    session: Session,
    protocol_id: str,
    name: str = None,
    steps: Optional[List[Dict[str, Any]]] = None,
    description: str = None,
    today: date = None
) -> Protocol:
    """
    Edit a protocol in place.

    Only the catalog row changes; instances already enrolled keep their
    snapshot and only future enrollments see the new steps.

    Args:
        session: Database session
        protocol_id: Protocol to edit
        name: New name (unchanged if None)
        steps: Full replacement step list (unchanged if None)
        description: New description (unchanged if None)
        today: Date recorded as last_modified (defaults to today)

    Returns:
        Updated Protocol object

    Raises:
        NotFoundError: If the protocol does not exist
        ValidationError: If the name or any step is malformed
    """
    protocol = require_protocol(session, protocol_id)

    if name is not None:
        require(validate_protocol_name(name), 'name', name)
        protocol.name = name.strip()
    if description is not None:
        protocol.description = description
    if steps is not None:
        values = steps_from_dicts(steps)
        protocol.steps.clear()
        # Delete old rows before re-using their step_order values
        session.flush()
        _set_steps(protocol, values)

    protocol.last_modified = today or date.today()
    session.flush()

    logger.info("Updated protocol %s", protocol.id)
    return protocol


def delete_protocol(session: Session, protocol_id: str) -> None:
    """
    Delete a protocol that no instance references.

    Raises:
        NotFoundError: If the protocol does not exist
        ReferencedEntityError: If any protocol instance references it
    """
    protocol = require_protocol(session, protocol_id)
    in_use = count_instances(session, protocol_id)
    if in_use:
        logger.warning("Refused to delete protocol %s: %d instance(s) reference it",
                       protocol_id, in_use)
        raise ReferencedEntityError(protocol_id, in_use)

    session.delete(protocol)
    session.flush()
    logger.info("Deleted protocol %s", protocol_id)
