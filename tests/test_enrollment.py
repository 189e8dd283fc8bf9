from datetime import date

import pytest
from sqlalchemy.exc import IntegrityError

from herdsync.errors import NoEligibleAnimalsError
from herdsync.schema import ProtocolInstance, AuditLog, ACTIVE
from herdsync.validators import ValidationError


def test_enroll_creates_one_instance_per_animal(tracker, enrolled):
    a1 = enrolled['A1']
    assert set(enrolled) == {'A1', 'A2'}
    assert a1.status == ACTIVE
    assert a1.completed_steps == []
    assert a1.start_date == date(2024, 1, 10)
    assert a1.manager == 'Marie'
    assert a1.inseminator == 'Tom'
    assert not a1.force_completed
    assert [s['description'] for s in a1.snapshot_steps] == ['GnRH', 'PGF', 'Timed AI']


def test_snapshots_are_independent_copies(tracker, enrolled):
    a1, a2 = enrolled['A1'], enrolled['A2']
    assert a1.snapshot_steps == a2.snapshot_steps
    assert a1.snapshot_steps is not a2.snapshot_steps
    assert a1.id != a2.id


def test_duplicate_ids_enroll_once(tracker, add_animals, protocol_p):
    add_animals('A1')
    result = tracker.enroll(['A1', ' A1 ', 'A1'], 'p', '2024-01-10', 'Marie', 'Tom')
    assert result.created_animal_ids == ['A1']


def test_already_active_animal_is_skipped(tracker, add_animals, enrolled):
    add_animals('A3')
    result = tracker.enroll(['A1', 'A3'], 'p', '2024-02-01', 'Marie', 'Tom')
    assert result.created_animal_ids == ['A3']
    assert result.skipped == ['A1']
    assert len(tracker.list_instances(animal_id='A1')) == 1


def test_all_animals_active_raises(tracker, enrolled):
    with pytest.raises(NoEligibleAnimalsError) as exc:
        tracker.enroll(['A2', 'A1'], 'p', '2024-02-01', 'Marie', 'Tom')
    assert exc.value.skipped == ['A1', 'A2']
    assert len(tracker.list_instances()) == 2


def test_resolved_animal_can_be_enrolled_again(tracker, enrolled):
    tracker.annul(enrolled['A1'].id)
    result = tracker.enroll(['A1'], 'ovsynch', '2024-03-01', 'Marie', 'Tom')
    assert result.created_animal_ids == ['A1']
    statuses = sorted(i.status for i in tracker.list_instances(animal_id='A1'))
    assert statuses == ['ACTIVE', 'CANCELED']


@pytest.mark.parametrize('kwargs, field', [
    ({'animal_ids': []}, 'animal_ids'),
    ({'animal_ids': 'A1'}, 'animal_ids'),
    ({'protocol_id': ''}, 'protocol_id'),
    ({'protocol_id': 'missing'}, 'protocol_id'),
    ({'manager': ' '}, 'manager'),
    ({'inseminator': ''}, 'inseminator'),
    ({'start_date': '10/01/2024'}, 'start_date'),
])
def test_invalid_requests(tracker, add_animals, protocol_p, kwargs, field):
    add_animals('A1')
    args = {
        'animal_ids': ['A1'],
        'protocol_id': 'p',
        'start_date': '2024-01-10',
        'manager': 'Marie',
        'inseminator': 'Tom',
    }
    args.update(kwargs)
    with pytest.raises(ValidationError) as exc:
        tracker.enroll(**args)
    assert exc.value.field == field
    assert tracker.list_instances() == []


def test_protocol_without_steps_cannot_be_enrolled(tracker, add_animals):
    add_animals('A1')
    tracker.create_protocol('Empty', [], protocol_id='empty')
    with pytest.raises(ValidationError):
        tracker.enroll(['A1'], 'empty', '2024-01-10', 'Marie', 'Tom')


def test_unknown_animal_rejects_whole_request(tracker, add_animals, protocol_p):
    add_animals('A1')
    with pytest.raises(ValidationError) as exc:
        tracker.enroll(['A1', 'GHOST'], 'p', '2024-01-10', 'Marie', 'Tom')
    assert exc.value.value == ['GHOST']
    assert tracker.list_instances() == []


def test_auto_inseminator_follows_pen(tracker, add_animals, protocol_p):
    add_animals('A1', pen=2)
    add_animals('A2', pen=5)
    result = tracker.enroll(['A1', 'A2'], 'p', '2024-01-10', 'Marie', 'auto')
    by_animal = {i.animal_id: i.inseminator for i in result.created}
    assert by_animal == {'A1': 'Inseminator A', 'A2': 'Inseminator B'}


def test_eligible_pool(tracker, add_animals, protocol_p):
    add_animals('A1', 'A2', repro_status='open')
    add_animals('A3', repro_status='PREG')
    assert [a.animal_id for a in tracker.eligible_animals()] == ['A1', 'A2']
    tracker.enroll(['A1'], 'p', '2024-01-10', 'Marie', 'Tom')
    assert [a.animal_id for a in tracker.eligible_animals()] == ['A2']
    assert not tracker.is_enrollable('A1')
    assert tracker.is_enrollable('A3')


def test_enrollment_is_audited(db, tracker, enrolled):
    with db.session() as session:
        rows = session.query(AuditLog).filter(AuditLog.action == 'ENROLL').all()
        record_ids = {row.record_id for row in rows}
    assert record_ids == {enrolled['A1'].id, enrolled['A2'].id}


def test_storage_refuses_second_active_instance(db, enrolled):
    a1 = enrolled['A1']
    with pytest.raises(IntegrityError):
        with db.session() as session:
            session.add(ProtocolInstance(
                animal_id='A1',
                protocol_id='p',
                start_date=date(2024, 5, 1),
                manager='Marie',
                inseminator='Tom',
                status=ACTIVE,
                snapshot_steps=a1.snapshot_steps,
                completed_steps=[],
                force_completed=0,
            ))
