"""
ProtocolTracker - the entry point used by the CLI, the web API and scripts.

Each method runs as one transaction: it re-reads the committed state,
validates, applies and writes an audit record, or raises and rolls back so
that a failed call changes nothing.

Usage:
    tracker = ProtocolTracker(init_database())
    result = tracker.enroll(['1021', '1044'], 'ovsynch', '2024-01-10', 'Marie', 'auto')
    tracker.toggle_step(result.created[0].id, 0)
"""

import logging
from datetime import date
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy.orm import selectinload

from . import catalog, enrollment, registry, schedule, transitions
from .batches import ProtocolBatch, get_batch, list_batches
from .database import Database, get_db
from .enrollment import EnrollmentResult
from .schema import Animal, Protocol, ProtocolInstance, ReproEvent
from .transitions import BatchCompletionReport

logger = logging.getLogger(__name__)

INSTANCES = 'protocol_instances'


class ProtocolTracker:
    """Transactional facade over the catalog, enrollment, transitions and batches."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_db()

    # -------------------------------------------------------------------------
    # Protocol catalog
    # -------------------------------------------------------------------------

    def list_protocols(self) -> List[Protocol]:
        with self.db.session() as session:
            return catalog.list_protocols(session)

    def get_protocol(self, protocol_id: str) -> Optional[Protocol]:
        with self.db.session() as session:
            return (
                session.query(Protocol)
                .options(selectinload(Protocol.steps))
                .filter(Protocol.id == protocol_id)
                .first()
            )

    def create_protocol(self, name: str, steps: List[Dict[str, Any]],
                        description: str = None, protocol_id: str = None) -> Protocol:
        with self.db.session() as session:
            protocol = catalog.create_protocol(session, name, steps, description, protocol_id)
            self.db.log_change(session, 'CREATE_PROTOCOL', 'protocols', protocol.id,
                               new_values=protocol.to_dict())
            return protocol

    def update_protocol(self, protocol_id: str, name: str = None,
                        steps: Optional[List[Dict[str, Any]]] = None,
                        description: str = None) -> Protocol:
        with self.db.session() as session:
            old = catalog.require_protocol(session, protocol_id).to_dict()
            protocol = catalog.update_protocol(session, protocol_id, name, steps, description)
            self.db.log_change(session, 'UPDATE_PROTOCOL', 'protocols', protocol_id,
                               old_values=old, new_values=protocol.to_dict())
            return protocol

    def delete_protocol(self, protocol_id: str) -> None:
        with self.db.session() as session:
            old = catalog.require_protocol(session, protocol_id).to_dict()
            catalog.delete_protocol(session, protocol_id)
            self.db.log_change(session, 'DELETE_PROTOCOL', 'protocols', protocol_id,
                               old_values=old)

    # -------------------------------------------------------------------------
    # Animal registry
    # -------------------------------------------------------------------------

    def get_animal(self, animal_id: str) -> Optional[Animal]:
        with self.db.session() as session:
            return registry.get_animal(session, animal_id)

    def is_enrollable(self, animal_id: str) -> bool:
        with self.db.session() as session:
            return enrollment.is_enrollable(session, animal_id)

    def eligible_animals(self, repro_status: str = registry.OPEN) -> List[Animal]:
        with self.db.session() as session:
            return enrollment.eligible_animals(session, repro_status)

    def record_event(self, animal_id: str, event_type: str, event_date: Any = None,
                     details: str = '', technician: str = None,
                     cost: float = None) -> ReproEvent:
        with self.db.session() as session:
            event = registry.record_event(session, animal_id, event_type, event_date,
                                          details, technician, cost)
            self.db.log_change(session, 'RECORD_EVENT', 'repro_events', event.id, new_values={
                'animal_id': event.animal_id,
                'event_type': event.event_type,
                'event_date': event.event_date,
                'details': event.details,
            })
            return event

    # -------------------------------------------------------------------------
    # Enrollment
    # -------------------------------------------------------------------------

    def enroll(self, animal_ids: Iterable[str], protocol_id: str, start_date: Any,
               manager: str, inseminator: str) -> EnrollmentResult:
        with self.db.session() as session:
            result = enrollment.enroll(session, animal_ids, protocol_id, start_date,
                                       manager, inseminator)
            for instance in result.created:
                self.db.log_change(session, 'ENROLL', INSTANCES, instance.id,
                                   new_values=instance.to_dict())
            return result

    # -------------------------------------------------------------------------
    # Step transitions
    # -------------------------------------------------------------------------

    def _transition(self, action: str, func, instance_id: str, *args) -> ProtocolInstance:
        with self.db.session() as session:
            before = transitions.require_instance(session, instance_id).to_dict()
            instance = func(session, instance_id, *args)
            after = instance.to_dict()
            if after != before:
                self.db.log_change(session, action, INSTANCES, instance_id,
                                   old_values=before, new_values=after)
            return instance

    def toggle_step(self, instance_id: str, step_index: int) -> ProtocolInstance:
        return self._transition('TOGGLE_STEP', transitions.toggle_step, instance_id, step_index)

    def annul(self, instance_id: str) -> ProtocolInstance:
        return self._transition('ANNUL', transitions.annul, instance_id)

    def force_complete(self, instance_id: str) -> ProtocolInstance:
        return self._transition('FORCE_COMPLETE', transitions.force_complete, instance_id)

    def set_note(self, instance_id: str, text: str) -> ProtocolInstance:
        return self._transition('SET_NOTE', transitions.set_note, instance_id, text)

    def force_complete_batch(self, key) -> BatchCompletionReport:
        with self.db.session() as session:
            report = transitions.force_complete_batch(session, key)
            for instance_id in report.completed:
                self.db.log_change(session, 'FORCE_COMPLETE', INSTANCES, instance_id,
                                   new_values={'status': 'COMPLETED', 'batch': str(report.key)})
            return report

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get_instance(self, instance_id: str) -> Optional[ProtocolInstance]:
        with self.db.session() as session:
            return transitions.get_instance(session, instance_id)

    def list_instances(self, animal_id: str = None, status: str = None) -> List[ProtocolInstance]:
        with self.db.session() as session:
            query = session.query(ProtocolInstance)
            if animal_id:
                query = query.filter(ProtocolInstance.animal_id == animal_id)
            if status:
                query = query.filter(ProtocolInstance.status == status.upper())
            return query.order_by(ProtocolInstance.created_at, ProtocolInstance.animal_id).all()

    def list_batches(self, state: Optional[str] = None) -> List[ProtocolBatch]:
        with self.db.session() as session:
            return list_batches(session, state)

    def get_batch(self, key) -> Optional[ProtocolBatch]:
        with self.db.session() as session:
            return get_batch(session, key)

    def pending_tasks(self, on_date: date = None,
                      include_future: bool = False) -> List[schedule.PendingTask]:
        with self.db.session() as session:
            return schedule.pending_tasks(session, on_date, include_future)

    def instance_schedule(self, instance_id: str) -> List[Dict[str, Any]]:
        with self.db.session() as session:
            return schedule.generate_schedule(transitions.require_instance(session, instance_id))
