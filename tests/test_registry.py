from datetime import date

import pytest

from herdsync.errors import NotFoundError
from herdsync.registry import classify_event, suggest_inseminator, upsert_animal
from herdsync.schema import Animal, ReproEvent
from herdsync.validators import ValidationError


@pytest.mark.parametrize('event_type, details, current, expected', [
    ('BREED', '', 'OPEN', 'BRED'),
    ('breed', '', None, 'BRED'),
    ('CALVING', 'heifer calf', 'DRY', 'FRESH'),
    ('DRY_OFF', '', 'PREG', 'DRY'),
    ('PREG_CHECK', 'Pregnant 45d', 'BRED', 'PREG'),
    ('PREG_CHECK', 'OPEN, resync', 'BRED', 'OPEN'),
    ('PREG_CHECK', 'was pregnant, now open', 'PREG', 'OPEN'),
    ('PREG_CHECK', 'recheck in 2 weeks', 'BRED', 'BRED'),
    ('HEAT', 'standing heat', 'OPEN', 'OPEN'),
    ('VACCINE', '', 'PREG', 'PREG'),
])
def test_classify_event(event_type, details, current, expected):
    assert classify_event(event_type, details, current) == expected


def test_record_event_updates_status(db, tracker, add_animals):
    add_animals('1021', repro_status='BRED')
    event = tracker.record_event('1021', 'PREG_CHECK', '2024-03-01', 'Pregnant 40d', 'Dr. Vet')
    assert event.event_type == 'PREG_CHECK'
    assert event.event_date == date(2024, 3, 1)
    assert tracker.get_animal('1021').repro_status == 'PREG'
    with db.session() as session:
        assert session.query(ReproEvent).count() == 1


def test_record_event_defaults_to_today(tracker, add_animals):
    add_animals('1021')
    assert tracker.record_event('1021', 'HEAT').event_date == date.today()


def test_record_event_unknown_animal(tracker):
    with pytest.raises(NotFoundError):
        tracker.record_event('9999', 'BREED')


def test_record_event_bad_type(tracker, add_animals):
    add_animals('1021')
    with pytest.raises(ValidationError):
        tracker.record_event('1021', 'SURGERY')


def test_open_result_makes_animal_eligible(tracker, add_animals):
    add_animals('1021', repro_status='BRED')
    assert tracker.eligible_animals() == []
    tracker.record_event('1021', 'PREG_CHECK', details='open')
    assert [a.animal_id for a in tracker.eligible_animals()] == ['1021']


def test_upsert_animal(db):
    with db.session() as session:
        animal, created = upsert_animal(session, {'animal_id': ' 1021 ', 'pen': 3, 'gender': 'male'})
        assert created and animal.animal_id == '1021' and animal.gender == 'M'
        animal, created = upsert_animal(session, {'animal_id': '1021', 'pen': 4, 'unknown': 1})
        assert not created and animal.pen == 4
        assert session.query(Animal).count() == 1


def test_upsert_animal_requires_id(db):
    with pytest.raises(ValidationError):
        with db.session() as session:
            upsert_animal(session, {'pen': 1})


@pytest.mark.parametrize('pen, expected', [
    (None, 'Inseminator A'), (1, 'Inseminator A'), (2, 'Inseminator A'), (3, 'Inseminator B'),
])
def test_suggest_inseminator(pen, expected):
    assert suggest_inseminator(Animal(animal_id='1', pen=pen)) == expected
