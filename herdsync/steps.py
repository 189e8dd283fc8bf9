"""
Immutable value types for protocol steps and step completion.

A protocol instance never manipulates raw index lists: it snapshots its
steps as a tuple of Step and tracks completion through StepProgress, whose
constructor and mutators enforce the prefix rule (completed steps are always
0..k with no gaps).
"""

from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Tuple

from .errors import DependentStepError, OutOfOrderError
from .validators import (
    STEP_KINDS, ValidationError, validate_day_offset, validate_step_kind
)


@dataclass(frozen=True)
class Step:
    """One timed action in a protocol (e.g., day 7 PGF injection)."""

    day_offset: int
    kind: str
    description: str
    product: Optional[str] = None

    def __post_init__(self):
        valid, msg = validate_day_offset(self.day_offset)
        if not valid:
            raise ValidationError('day_offset', self.day_offset, msg)
        valid, msg = validate_step_kind(self.kind)
        if not valid:
            raise ValidationError('kind', self.kind, msg)
        object.__setattr__(self, 'kind', self.kind.upper().strip())
        object.__setattr__(self, 'description', (self.description or '').strip())
        if self.product is not None:
            object.__setattr__(self, 'product', self.product.strip() or None)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Step':
        """Build a step from a dict; accepts 'day' as an alias of 'day_offset'."""
        if 'day_offset' in data:
            day_offset = data['day_offset']
        else:
            day_offset = data.get('day')
        return cls(
            day_offset=day_offset,
            kind=data.get('kind') or data.get('type'),
            description=data.get('description', ''),
            product=data.get('product'),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'day_offset': self.day_offset,
            'kind': self.kind,
            'description': self.description,
            'product': self.product,
        }


def steps_from_dicts(items: Iterable[Any]) -> Tuple[Step, ...]:
    """Normalize a list of dicts/Steps into a tuple of Step, preserving order."""
    steps = []
    for item in items:
        steps.append(item if isinstance(item, Step) else Step.from_dict(item))
    return tuple(steps)


def steps_to_dicts(steps: Iterable[Step]) -> List[Dict[str, Any]]:
    return [step.to_dict() for step in steps]


@dataclass(frozen=True)
class StepProgress:
    """
    Completion state of a snapshot of `total` steps.

    Invariants (checked on construction):
    - every completed index is in [0, total)
    - completed indices form the prefix {0, ..., k} for some k >= -1

    `owner` is the instance id quoted in error messages; it does not take
    part in equality.
    """

    total: int
    completed: FrozenSet[int] = frozenset()
    owner: str = field(default='', compare=False)

    def __post_init__(self):
        if self.total < 0:
            raise ValueError(f"Step count cannot be negative: {self.total}")
        completed = frozenset(int(i) for i in self.completed)
        out_of_range = sorted(i for i in completed if not 0 <= i < self.total)
        if out_of_range:
            raise ValueError(
                f"Completed step indices {out_of_range} outside 0..{self.total - 1}"
            )
        if completed != frozenset(range(len(completed))):
            raise ValueError(
                f"Completed steps must be a contiguous prefix from 0, got {sorted(completed)}"
            )
        object.__setattr__(self, 'completed', completed)

    @property
    def done_count(self) -> int:
        return len(self.completed)

    @property
    def last_index(self) -> int:
        """Index of the final step (-1 for an empty snapshot)."""
        return self.total - 1

    @property
    def is_finished(self) -> bool:
        """True when the final step is done."""
        return self.total > 0 and self.last_index in self.completed

    @property
    def next_index(self) -> Optional[int]:
        """First outstanding step, or None when all steps are done."""
        if self.done_count >= self.total:
            return None
        return self.done_count

    def is_done(self, index: int) -> bool:
        return index in self.completed

    def _check_index(self, index: int):
        if not 0 <= index < self.total:
            raise ValidationError(
                'step_index', index,
                f"Step index must be between 0 and {self.total - 1}, got: {index}"
            )

    def mark_done(self, index: int) -> 'StepProgress':
        """Return a new progress with `index` done; the previous step must be done."""
        self._check_index(index)
        if index in self.completed:
            return self
        if index > 0 and (index - 1) not in self.completed:
            raise OutOfOrderError(self.owner, index)
        return StepProgress(self.total, self.completed | {index}, self.owner)

    def mark_undone(self, index: int) -> 'StepProgress':
        """Return a new progress with `index` undone; the next step must not be done."""
        self._check_index(index)
        if index not in self.completed:
            return self
        if (index + 1) in self.completed:
            raise DependentStepError(self.owner, index)
        return StepProgress(self.total, self.completed - {index}, self.owner)

    def as_list(self) -> List[int]:
        return sorted(self.completed)
