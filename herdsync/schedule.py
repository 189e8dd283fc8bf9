"""
Schedule generation for protocol instances.

A step is due on start_date + day_offset. The daily task list shows, for
each ACTIVE instance, the next outstanding step and when it falls due.
Because completion is prefix-ordered, only the next step can be worked on.
"""

from dataclasses import dataclass
from datetime import date, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from .schema import ProtocolInstance, ACTIVE
from .steps import Step


@dataclass
class PendingTask:
    """The next outstanding step of an ACTIVE instance."""

    instance_id: str
    animal_id: str
    protocol_id: str
    step_index: int
    step: Step
    due_date: date
    inseminator: str

    def days_overdue(self, on_date: date) -> int:
        return max((on_date - self.due_date).days, 0)

    def to_dict(self, on_date: Optional[date] = None) -> Dict[str, Any]:
        data = {
            'instance_id': self.instance_id,
            'animal_id': self.animal_id,
            'protocol_id': self.protocol_id,
            'step_index': self.step_index,
            'step': self.step.to_dict(),
            'due_date': self.due_date.isoformat(),
            'inseminator': self.inseminator,
        }
        if on_date is not None:
            data['days_overdue'] = self.days_overdue(on_date)
        return data


def step_due_date(start_date: date, step: Step) -> date:
    return start_date + timedelta(days=step.day_offset)


def generate_schedule(instance: ProtocolInstance) -> List[Dict[str, Any]]:
    """
    Full schedule for one instance, from its snapshot.

    Returns:
        One dict per step in snapshot order:
        {'step_index', 'due_date', 'kind', 'description', 'product', 'done'}
    """
    progress = instance.progress
    schedule = []
    for index, step in enumerate(instance.steps):
        schedule.append({
            'step_index': index,
            'due_date': step_due_date(instance.start_date, step),
            'kind': step.kind,
            'description': step.description,
            'product': step.product,
            'done': progress.is_done(index),
        })
    return schedule


def next_task(instance: ProtocolInstance) -> Optional[PendingTask]:
    """The instance's next outstanding step, or None if nothing is left."""
    index = instance.progress.next_index
    if index is None:
        return None
    step = instance.steps[index]
    return PendingTask(
        instance_id=instance.id,
        animal_id=instance.animal_id,
        protocol_id=instance.protocol_id,
        step_index=index,
        step=step,
        due_date=step_due_date(instance.start_date, step),
        inseminator=instance.inseminator,
    )


def pending_tasks(session: Session, on_date: date = None,
                  include_future: bool = False) -> List[PendingTask]:
    """
    Next steps of all ACTIVE instances that are due on or before `on_date`.

    Args:
        session: Database session
        on_date: Reference day (defaults to today)
        include_future: Also list next steps not yet due

    Returns:
        Tasks sorted by due date, then animal ID
    """
    on_date = on_date or date.today()
    tasks = []
    for instance in session.query(ProtocolInstance).filter(ProtocolInstance.status == ACTIVE):
        task = next_task(instance)
        if task is None:
            continue
        if include_future or task.due_date <= on_date:
            tasks.append(task)
    return sorted(tasks, key=lambda t: (t.due_date, t.animal_id))
