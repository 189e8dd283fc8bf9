from datetime import date

import pytest

from herdsync import catalog
from herdsync.errors import NotFoundError, ReferencedEntityError
from herdsync.schema import AuditLog
from herdsync.validators import ValidationError

from .conftest import THREE_STEPS


def test_default_protocols_are_seeded(tracker):
    ids = {p.id for p in tracker.list_protocols()}
    assert {'ovsynch', 'presynch'} <= ids
    ovsynch = tracker.get_protocol('ovsynch')
    assert [s.day_offset for s in ovsynch.step_values()] == [0, 7, 9, 10]
    assert ovsynch.step_values()[-1].kind == 'AI'


def test_seeding_twice_is_harmless(db, tracker):
    db.init_db()
    assert len([p for p in tracker.list_protocols() if p.id == 'ovsynch']) == 1


def test_create_protocol_derives_slug(tracker):
    protocol = tracker.create_protocol('Heifer Sync (7d)', THREE_STEPS)
    assert protocol.id == 'heifer-sync-7d'
    assert protocol.last_modified == date.today()
    assert len(tracker.get_protocol('heifer-sync-7d').steps) == 3


def test_create_protocol_slug_collision_gets_suffix(tracker):
    tracker.create_protocol('Heifer Sync', THREE_STEPS)
    second = tracker.create_protocol('Heifer Sync', THREE_STEPS)
    assert second.id == 'heifer-sync-2'


def test_create_protocol_explicit_id_taken(tracker):
    with pytest.raises(ValidationError) as exc:
        tracker.create_protocol('Another', THREE_STEPS, protocol_id='ovsynch')
    assert exc.value.field == 'protocol_id'
    assert 'already exists' in exc.value.message
    assert tracker.get_protocol('ovsynch').name != 'Another'


def test_create_protocol_requires_name(tracker):
    with pytest.raises(ValidationError) as exc:
        tracker.create_protocol('  ', THREE_STEPS)
    assert exc.value.field == 'name'


def test_create_protocol_rejects_bad_step(tracker):
    steps = THREE_STEPS + [{'day_offset': -2, 'kind': 'AI'}]
    with pytest.raises(ValidationError):
        tracker.create_protocol('Broken', steps, protocol_id='broken')
    assert tracker.get_protocol('broken') is None


def test_protocol_without_steps_is_allowed(tracker):
    protocol = tracker.create_protocol('Empty', [], protocol_id='empty')
    assert protocol.step_values() == ()


def test_steps_ordered_by_position_not_day(tracker):
    steps = [
        {'day_offset': 5, 'kind': 'CHECK', 'description': 'late first'},
        {'day_offset': 1, 'kind': 'MOVE', 'description': 'early second'},
    ]
    tracker.create_protocol('Odd Order', steps, protocol_id='odd')
    values = tracker.get_protocol('odd').step_values()
    assert [v.description for v in values] == ['late first', 'early second']


def test_update_protocol_replaces_steps(tracker, protocol_p):
    new_steps = [{'day_offset': 0, 'kind': 'MOVE', 'description': 'To sync pen'}]
    updated = tracker.update_protocol('p', name='Protocol P v2', steps=new_steps)
    assert updated.name == 'Protocol P v2'
    reloaded = tracker.get_protocol('p')
    assert [s.kind for s in reloaded.step_values()] == ['MOVE']


def test_update_protocol_keeps_steps_when_omitted(tracker, protocol_p):
    tracker.update_protocol('p', description='Edited')
    reloaded = tracker.get_protocol('p')
    assert reloaded.description == 'Edited'
    assert len(reloaded.steps) == 3


def test_update_unknown_protocol(tracker):
    with pytest.raises(NotFoundError):
        tracker.update_protocol('nope', name='x')


def test_update_does_not_touch_enrolled_snapshots(tracker, enrolled):
    tracker.update_protocol('p', steps=[{'day_offset': 0, 'kind': 'CHECK'}])
    instance = tracker.get_instance(enrolled['A1'].id)
    assert len(instance.snapshot_steps) == 3
    assert instance.steps[2].kind == 'AI'


def test_delete_unused_protocol(tracker, protocol_p):
    tracker.delete_protocol('p')
    assert tracker.get_protocol('p') is None


def test_delete_referenced_protocol_is_refused(tracker, enrolled):
    with pytest.raises(ReferencedEntityError) as exc:
        tracker.delete_protocol('p')
    assert exc.value.instance_count == 2
    assert tracker.get_protocol('p') is not None


def test_delete_refused_even_when_all_instances_resolved(tracker, enrolled):
    for instance in enrolled.values():
        tracker.annul(instance.id)
    with pytest.raises(ReferencedEntityError):
        tracker.delete_protocol('p')


def test_catalog_changes_are_audited(db, tracker, protocol_p):
    tracker.update_protocol('p', name='Renamed')
    with db.session() as session:
        actions = [row.action for row in session.query(AuditLog).order_by(AuditLog.id)]
        users = {row.user for row in session.query(AuditLog)}
    assert actions == ['CREATE_PROTOCOL', 'UPDATE_PROTOCOL']
    assert users == {'tester'}


def test_slugify():
    assert catalog.slugify('Presynch / Ovsynch 14-12') == 'presynch-ovsynch-14-12'
    assert catalog.slugify('!!!') == 'protocol'
