"""
Step Transition Engine.

State machine for one protocol instance:

    ACTIVE    -> COMPLETED   last step marked done, or force_complete
    COMPLETED -> ACTIVE      earlier step marked done (forced completion only)
    COMPLETED -> ACTIVE      last step undone
    ACTIVE    -> CANCELED    annul
    COMPLETED -> CANCELED    annul

CANCELED is terminal. Completed steps always form a prefix 0..k: a step can
only be marked done after its predecessor, and only undone before its
successor. Every function computes the new state before touching the row,
so a refused transition leaves the instance exactly as it was.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from .batches import BatchKey, get_batch
from .errors import (
    NotFoundError, InvalidTransitionError, TerminalStateError, HerdSyncError
)
from .schema import ProtocolInstance, ACTIVE, COMPLETED, CANCELED
from .steps import StepProgress

logger = logging.getLogger(__name__)


@dataclass
class BatchCompletionReport:
    """Per-member outcome of force-completing a batch."""

    key: BatchKey
    completed: List[str] = field(default_factory=list)
    skipped: Dict[str, str] = field(default_factory=dict)  # instance id -> status
    failed: Dict[str, str] = field(default_factory=dict)  # instance id -> error

    @property
    def skipped_count(self) -> int:
        return len(self.skipped)

    def to_dict(self) -> Dict:
        return {
            'key': str(self.key),
            'completed': list(self.completed),
            'skipped': dict(self.skipped),
            'failed': dict(self.failed),
        }


def get_instance(session: Session, instance_id: str) -> Optional[ProtocolInstance]:
    return session.get(ProtocolInstance, instance_id)


def require_instance(session: Session, instance_id: str) -> ProtocolInstance:
    instance = get_instance(session, instance_id)
    if instance is None:
        raise NotFoundError('Protocol instance', instance_id)
    return instance


def _derive_status(instance: ProtocolInstance, progress: StepProgress,
                   action: str, step_index: int) -> Tuple[str, int]:
    """(status, force_completed) implied by a new completion state."""
    if action == 'done':
        return (COMPLETED if progress.is_finished else ACTIVE), 0
    if instance.status == COMPLETED and step_index == progress.last_index:
        return ACTIVE, 0
    return instance.status, instance.force_completed


def _check_reactivation(session: Session, instance: ProtocolInstance):
    other = (
        session.query(ProtocolInstance)
        .filter(ProtocolInstance.animal_id == instance.animal_id,
                ProtocolInstance.status == ACTIVE,
                ProtocolInstance.id != instance.id)
        .first()
    )
    if other is not None:
        raise InvalidTransitionError(
            instance.id,
            f"cannot return to ACTIVE: animal {instance.animal_id} already has "
            f"active protocol instance {other.id}"
        )


def toggle_step(session: Session, instance_id: str, step_index: int) -> ProtocolInstance:
    """
    Mark a step done if it is outstanding, or undone if it is done.

    Raises:
        NotFoundError: Unknown instance
        TerminalStateError: Instance is CANCELED
        ValidationError: Step index outside the snapshot
        OutOfOrderError: Marking done before the previous step
        DependentStepError: Undoing while the next step is done
        InvalidTransitionError: Undo would make a second ACTIVE instance for the animal
    """
    instance = require_instance(session, instance_id)
    if instance.status == CANCELED:
        raise TerminalStateError(instance.id, 'toggle steps of')

    progress = instance.progress
    if progress.is_done(step_index):
        new_progress = progress.mark_undone(step_index)
        action = 'undone'
    else:
        new_progress = progress.mark_done(step_index)
        action = 'done'

    new_status, forced = _derive_status(instance, new_progress, action, step_index)
    if new_status == ACTIVE and instance.status != ACTIVE:
        _check_reactivation(session, instance)

    old_status = instance.status
    instance.completed_steps = new_progress.as_list()
    instance.status = new_status
    instance.force_completed = forced
    session.flush()

    logger.info("Instance %s step %d marked %s (%s -> %s)",
                instance.id, step_index, action, old_status, new_status)
    return instance


def annul(session: Session, instance_id: str) -> ProtocolInstance:
    """
    Cancel an instance, freezing its steps and notes as history.

    Canceling an already canceled instance is a no-op.
    """
    instance = require_instance(session, instance_id)
    if instance.status == CANCELED:
        return instance

    old_status = instance.status
    instance.status = CANCELED
    session.flush()

    logger.info("Instance %s annulled (%s -> CANCELED)", instance.id, old_status)
    return instance


def force_complete(session: Session, instance_id: str) -> ProtocolInstance:
    """
    Mark an ACTIVE instance COMPLETED without requiring its steps.

    Outstanding steps stay outstanding; `force_completed` records that the
    completion was an override.

    Raises:
        NotFoundError: Unknown instance
        TerminalStateError: Instance is CANCELED
        InvalidTransitionError: Instance is already COMPLETED
    """
    instance = require_instance(session, instance_id)
    if instance.status == CANCELED:
        raise TerminalStateError(instance.id, 'force-complete')
    if instance.status != ACTIVE:
        raise InvalidTransitionError(instance.id, f"cannot force-complete from {instance.status}")

    instance.status = COMPLETED
    instance.force_completed = 1
    session.flush()

    logger.info("Instance %s force-completed with %d/%d steps done",
                instance.id, len(instance.completed_steps), len(instance.snapshot_steps))
    return instance


def force_complete_batch(session: Session, key) -> BatchCompletionReport:
    """
    Force-complete every ACTIVE member of a batch.

    Best effort per member: each instance is validated and transitioned on
    its own, members that are not ACTIVE are reported as skipped, and a
    failure on one member is reported without undoing the others.

    Raises:
        NotFoundError: No instance carries this batch key
    """
    key = BatchKey.parse(key)
    batch = get_batch(session, key)
    if batch is None:
        raise NotFoundError('Batch', str(key))

    report = BatchCompletionReport(key=key)
    for instance in batch.instances:
        if instance.status != ACTIVE:
            report.skipped[instance.id] = instance.status
            continue
        try:
            force_complete(session, instance.id)
        except HerdSyncError as e:
            report.failed[instance.id] = str(e)
            logger.warning("Batch %s: could not force-complete %s: %s", key, instance.id, e)
        else:
            report.completed.append(instance.id)

    logger.info("Batch %s force-completed: %d completed, %d skipped, %d failed",
                key, len(report.completed), report.skipped_count, len(report.failed))
    return report


def set_note(session: Session, instance_id: str, text: str) -> ProtocolInstance:
    """
    Replace an instance's free-text note.

    Raises:
        NotFoundError: Unknown instance
        TerminalStateError: Instance is CANCELED (notes are frozen)
    """
    instance = require_instance(session, instance_id)
    if instance.status == CANCELED:
        raise TerminalStateError(instance.id, 'edit notes of')
    instance.notes = text or ''
    session.flush()
    return instance
