"""Shared fixtures: an in-memory database seeded with the default protocols."""

import pytest

from herdsync.database import Database
from herdsync.registry import upsert_animal
from herdsync.tracker import ProtocolTracker

THREE_STEPS = [
    {'day_offset': 0, 'kind': 'INJECTION', 'description': 'GnRH', 'product': 'Cystorelin'},
    {'day_offset': 7, 'kind': 'INJECTION', 'description': 'PGF', 'product': 'Lutalyse'},
    {'day_offset': 10, 'kind': 'AI', 'description': 'Timed AI'},
]


@pytest.fixture
def db():
    database = Database(url='sqlite://')
    database.init_db()
    database.set_user('tester')
    yield database
    database.engine.dispose()


@pytest.fixture
def tracker(db):
    return ProtocolTracker(db)


@pytest.fixture
def add_animals(db):
    """Register animals: add_animals('A1', 'A2', pen=3, repro_status='OPEN')."""
    def _add(*animal_ids, **fields):
        with db.session() as session:
            for animal_id in animal_ids:
                upsert_animal(session, dict(fields, animal_id=animal_id))
        return list(animal_ids)
    return _add


@pytest.fixture
def protocol_p(tracker):
    """A three-step protocol with id 'p'."""
    return tracker.create_protocol('Protocol P', THREE_STEPS, protocol_id='p')


@pytest.fixture
def enrolled(tracker, add_animals, protocol_p):
    """A1 and A2 enrolled into 'p' on 2024-01-10; returns {animal_id: instance}."""
    add_animals('A1', 'A2', pen=1, repro_status='OPEN')
    result = tracker.enroll(['A1', 'A2'], 'p', '2024-01-10', 'Marie', 'Tom')
    return {instance.animal_id: instance for instance in result.created}
