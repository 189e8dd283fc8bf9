"""
Error taxonomy for the protocol tracking core.

Every error is locally recoverable: it names the entity and the rule that
blocked the operation, and the operation that raised it changed nothing.
"""

from typing import Iterable, Optional


class HerdSyncError(Exception):
    """Base class for all protocol tracking errors."""


class NotFoundError(HerdSyncError):
    """A referenced protocol, instance, animal or batch does not exist."""

    def __init__(self, entity: str, key):
        self.entity = entity
        self.key = key
        super().__init__(f"{entity} '{key}' not found")


class ReferencedEntityError(HerdSyncError):
    """Refused to delete a catalog entry that protocol instances still reference."""

    def __init__(self, protocol_id: str, instance_count: int):
        self.protocol_id = protocol_id
        self.instance_count = instance_count
        super().__init__(
            f"Protocol '{protocol_id}' is referenced by {instance_count} "
            f"protocol instance(s) and cannot be deleted"
        )


class NoEligibleAnimalsError(HerdSyncError):
    """Every requested animal already has an ACTIVE protocol instance."""

    def __init__(self, skipped: Iterable[str]):
        self.skipped = sorted(skipped)
        super().__init__(
            "No eligible animals: all requested animals already have an active "
            f"protocol ({', '.join(self.skipped)})"
        )


class InvalidTransitionError(HerdSyncError):
    """A state machine transition is not allowed from the instance's current state."""

    def __init__(self, instance_id: str, message: str, step_index: Optional[int] = None):
        self.instance_id = instance_id
        self.step_index = step_index
        super().__init__(f"Instance {instance_id}: {message}")


class OutOfOrderError(InvalidTransitionError):
    """Marking a step done before the step preceding it."""

    def __init__(self, instance_id: str, step_index: int):
        super().__init__(
            instance_id,
            f"step {step_index} cannot be marked done before step {step_index - 1}",
            step_index,
        )


class DependentStepError(InvalidTransitionError):
    """Undoing a step while the step after it is still done."""

    def __init__(self, instance_id: str, step_index: int):
        super().__init__(
            instance_id,
            f"step {step_index} cannot be undone while step {step_index + 1} is done",
            step_index,
        )


class TerminalStateError(InvalidTransitionError):
    """Mutating a CANCELED instance."""

    def __init__(self, instance_id: str, action: str = "modify"):
        self.action = action
        super().__init__(instance_id, f"cannot {action} a canceled protocol instance")
