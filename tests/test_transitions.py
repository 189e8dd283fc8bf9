import json
import random
from datetime import date

import pytest
from sqlalchemy.orm.exc import StaleDataError

from herdsync.database import Database
from herdsync.errors import (
    DependentStepError, InvalidTransitionError, NotFoundError, OutOfOrderError,
    TerminalStateError
)
from herdsync.registry import upsert_animal
from herdsync.schema import AuditLog, ProtocolInstance, ACTIVE, CANCELED, COMPLETED
from herdsync.tracker import ProtocolTracker
from herdsync.validators import ValidationError

from .conftest import THREE_STEPS


def _state(instance):
    return (instance.status, list(instance.completed_steps), bool(instance.force_completed))


class TestToggleStep:
    def test_steps_complete_in_order(self, tracker, enrolled):
        instance_id = enrolled['A1'].id
        assert _state(tracker.toggle_step(instance_id, 0)) == (ACTIVE, [0], False)
        assert _state(tracker.toggle_step(instance_id, 1)) == (ACTIVE, [0, 1], False)
        assert _state(tracker.toggle_step(instance_id, 2)) == (COMPLETED, [0, 1, 2], False)

    def test_out_of_order_is_refused(self, tracker, enrolled):
        instance_id = enrolled['A1'].id
        with pytest.raises(OutOfOrderError) as exc:
            tracker.toggle_step(instance_id, 1)
        assert exc.value.instance_id == instance_id
        assert tracker.get_instance(instance_id).completed_steps == []

    def test_undo_with_later_step_done_is_refused(self, tracker, enrolled):
        instance_id = enrolled['A1'].id
        tracker.toggle_step(instance_id, 0)
        tracker.toggle_step(instance_id, 1)
        before = tracker.get_instance(instance_id).to_dict()
        with pytest.raises(DependentStepError):
            tracker.toggle_step(instance_id, 0)
        assert tracker.get_instance(instance_id).to_dict() == before

    def test_do_then_undo_restores_state(self, tracker, enrolled):
        instance_id = enrolled['A1'].id
        tracker.toggle_step(instance_id, 0)
        before = tracker.get_instance(instance_id).to_dict()
        tracker.toggle_step(instance_id, 1)
        tracker.toggle_step(instance_id, 1)
        assert tracker.get_instance(instance_id).to_dict() == before

    def test_undo_last_step_reopens_completed_instance(self, tracker, enrolled):
        instance_id = enrolled['A1'].id
        for index in range(3):
            tracker.toggle_step(instance_id, index)
        assert _state(tracker.toggle_step(instance_id, 2)) == (ACTIVE, [0, 1], False)

    def test_reopen_refused_when_animal_enrolled_elsewhere(self, tracker, enrolled):
        instance_id = enrolled['A1'].id
        for index in range(3):
            tracker.toggle_step(instance_id, index)
        tracker.enroll(['A1'], 'ovsynch', '2024-02-01', 'Marie', 'Tom')
        with pytest.raises(InvalidTransitionError):
            tracker.toggle_step(instance_id, 2)
        assert tracker.get_instance(instance_id).status == COMPLETED

    @pytest.mark.parametrize('index', [-1, 3])
    def test_index_outside_snapshot(self, tracker, enrolled, index):
        with pytest.raises(ValidationError):
            tracker.toggle_step(enrolled['A1'].id, index)

    def test_canceled_instance_is_frozen(self, tracker, enrolled):
        instance_id = enrolled['A1'].id
        tracker.annul(instance_id)
        with pytest.raises(TerminalStateError):
            tracker.toggle_step(instance_id, 0)

    def test_unknown_instance(self, tracker):
        with pytest.raises(NotFoundError):
            tracker.toggle_step('does-not-exist', 0)

    def test_uses_snapshot_not_current_catalog(self, tracker, enrolled):
        tracker.update_protocol('p', steps=[{'day_offset': 0, 'kind': 'AI'}])
        instance = tracker.toggle_step(enrolled['A1'].id, 0)
        assert instance.status == ACTIVE
        tracker.toggle_step(instance.id, 1)
        assert tracker.toggle_step(instance.id, 2).status == COMPLETED


class TestAnnul:
    def test_annul_active(self, tracker, enrolled):
        instance_id = enrolled['A1'].id
        tracker.toggle_step(instance_id, 0)
        tracker.set_note(instance_id, 'Lame, pulled from sync')
        instance = tracker.annul(instance_id)
        assert instance.status == CANCELED
        assert instance.completed_steps == [0]
        assert instance.notes == 'Lame, pulled from sync'

    def test_annul_completed(self, tracker, enrolled):
        instance_id = enrolled['A1'].id
        tracker.force_complete(instance_id)
        assert tracker.annul(instance_id).status == CANCELED

    def test_annul_is_idempotent(self, db, tracker, enrolled):
        instance_id = enrolled['A1'].id
        first = tracker.annul(instance_id).to_dict()
        assert tracker.annul(instance_id).to_dict() == first
        with db.session() as session:
            count = session.query(AuditLog).filter(AuditLog.action == 'ANNUL').count()
        assert count == 1

    def test_annul_unknown(self, tracker):
        with pytest.raises(NotFoundError):
            tracker.annul('nope')


class TestForceComplete:
    def test_force_complete_with_no_steps_done(self, tracker, enrolled):
        instance = tracker.force_complete(enrolled['A1'].id)
        assert _state(instance) == (COMPLETED, [], True)
        assert instance.is_force_completed

    def test_force_complete_partial(self, tracker, enrolled):
        instance_id = enrolled['A1'].id
        tracker.toggle_step(instance_id, 0)
        assert _state(tracker.force_complete(instance_id)) == (COMPLETED, [0], True)

    def test_force_complete_four_of_five(self, tracker, add_animals):
        steps = THREE_STEPS + [{'day_offset': 30, 'kind': 'CHECK'}, {'day_offset': 60, 'kind': 'CHECK'}]
        tracker.create_protocol('Five', steps, protocol_id='five')
        add_animals('B1')
        instance_id = tracker.enroll(['B1'], 'five', '2024-01-01', 'Marie', 'Tom').created[0].id
        for index in range(4):
            tracker.toggle_step(instance_id, index)
        instance = tracker.force_complete(instance_id)
        assert _state(instance) == (COMPLETED, [0, 1, 2, 3], True)

    def test_force_complete_twice_is_refused(self, tracker, enrolled):
        instance_id = enrolled['A1'].id
        tracker.force_complete(instance_id)
        with pytest.raises(InvalidTransitionError):
            tracker.force_complete(instance_id)

    def test_force_complete_canceled_is_refused(self, tracker, enrolled):
        instance_id = enrolled['A1'].id
        tracker.annul(instance_id)
        with pytest.raises(TerminalStateError):
            tracker.force_complete(instance_id)

    def test_marking_step_after_force_reopens(self, tracker, enrolled):
        instance_id = enrolled['A1'].id
        tracker.force_complete(instance_id)
        assert _state(tracker.toggle_step(instance_id, 0)) == (ACTIVE, [0], False)

    def test_undoing_step_after_force_keeps_completed(self, tracker, enrolled):
        instance_id = enrolled['A1'].id
        tracker.toggle_step(instance_id, 0)
        tracker.force_complete(instance_id)
        assert _state(tracker.toggle_step(instance_id, 0)) == (COMPLETED, [], True)

    def test_marking_step_after_force_respects_active_instance(self, tracker, enrolled):
        instance_id = enrolled['A1'].id
        tracker.force_complete(instance_id)
        tracker.enroll(['A1'], 'ovsynch', '2024-02-01', 'Marie', 'Tom')
        with pytest.raises(InvalidTransitionError):
            tracker.toggle_step(instance_id, 0)
        assert _state(tracker.get_instance(instance_id)) == (COMPLETED, [], True)

    def test_finishing_last_step_clears_force_flag(self, tracker, enrolled):
        instance_id = enrolled['A1'].id
        tracker.force_complete(instance_id)
        for index in range(3):
            instance = tracker.toggle_step(instance_id, index)
        assert _state(instance) == (COMPLETED, [0, 1, 2], False)
        assert not instance.is_force_completed


class TestNotes:
    def test_set_note(self, tracker, enrolled):
        instance_id = enrolled['A1'].id
        assert tracker.set_note(instance_id, 'Check left ovary').notes == 'Check left ovary'
        assert tracker.get_instance(instance_id).notes == 'Check left ovary'

    def test_note_frozen_after_cancel(self, tracker, enrolled):
        instance_id = enrolled['A1'].id
        tracker.annul(instance_id)
        with pytest.raises(TerminalStateError):
            tracker.set_note(instance_id, 'late edit')


class TestInstanceRecord:
    def test_snapshot_cannot_be_reassigned(self, db, enrolled):
        with db.session() as session:
            instance = session.get(ProtocolInstance, enrolled['A1'].id)
            with pytest.raises(ValueError):
                instance.snapshot_steps = [{'day_offset': 0, 'kind': 'AI'}]

    def test_start_date_cannot_be_changed(self, db, enrolled):
        with db.session() as session:
            instance = session.get(ProtocolInstance, enrolled['A1'].id)
            with pytest.raises(ValueError):
                instance.start_date = date(2025, 1, 1)

    @pytest.mark.parametrize('field, assigned', [('manager', 'Marie'), ('inseminator', 'Tom')])
    def test_staff_cannot_be_reassigned(self, db, tracker, enrolled, field, assigned):
        instance_id = enrolled['A1'].id
        with db.session() as session:
            instance = session.get(ProtocolInstance, instance_id)
            with pytest.raises(ValueError):
                setattr(instance, field, 'Someone Else')
            setattr(instance, field, assigned)
        assert getattr(tracker.get_instance(instance_id), field) == assigned

    def test_completed_steps_must_be_prefix(self, db, enrolled):
        with db.session() as session:
            instance = session.get(ProtocolInstance, enrolled['A1'].id)
            with pytest.raises(ValueError):
                instance.completed_steps = [1]

    def test_concurrent_update_is_detected(self, tmp_path):
        db = Database(tmp_path / 'herd.db')
        db.init_db()
        tracker = ProtocolTracker(db)
        with db.session() as session:
            upsert_animal(session, {'animal_id': 'A1'})
        instance_id = tracker.enroll(['A1'], 'ovsynch', '2024-01-10', 'Marie', 'Tom').created[0].id

        first, second = db.SessionLocal(), db.SessionLocal()
        try:
            stale = second.get(ProtocolInstance, instance_id)
            fresh = first.get(ProtocolInstance, instance_id)
            fresh.notes = 'first writer'
            first.commit()

            stale.notes = 'second writer'
            with pytest.raises(StaleDataError):
                second.commit()
        finally:
            second.rollback()
            first.close()
            second.close()
        db.engine.dispose()

        assert tracker.get_instance(instance_id).notes == 'first writer'

    def test_transitions_write_change_log_lines(self, tmp_path):
        db = Database(tmp_path / 'herd.db')
        db.init_db()
        db.set_user('marie')
        tracker = ProtocolTracker(db)
        with db.session() as session:
            upsert_animal(session, {'animal_id': 'A1'})
        instance_id = tracker.enroll(['A1'], 'ovsynch', '2024-01-10', 'Marie', 'Tom').created[0].id
        tracker.toggle_step(instance_id, 0)

        lines = []
        for log_file in (tmp_path / 'logs').glob('*_changes.jsonl'):
            lines.extend(json.loads(line) for line in log_file.read_text().splitlines())
        db.engine.dispose()

        assert [entry['action'] for entry in lines] == ['ENROLL', 'TOGGLE_STEP']
        assert lines[1]['old']['completed_steps'] == []
        assert lines[1]['new']['completed_steps'] == [0]
        assert {entry['user'] for entry in lines} == {'marie'}


class TestOperationSequences:
    @pytest.mark.parametrize('seed', range(5))
    def test_random_sequence_keeps_prefix(self, tracker, enrolled, seed):
        rng = random.Random(seed)
        instance_id = enrolled['A1'].id

        for _ in range(40):
            before = _state(tracker.get_instance(instance_id))
            try:
                if rng.random() < 0.2:
                    after = _state(tracker.force_complete(instance_id))
                else:
                    after = _state(tracker.toggle_step(instance_id, rng.randrange(3)))
            except InvalidTransitionError:
                after = _state(tracker.get_instance(instance_id))
                assert after == before

            status, completed, forced = after
            assert completed == list(range(len(completed)))
            if status == COMPLETED and not forced:
                assert completed == [0, 1, 2]
            if forced:
                assert status == COMPLETED
