"""FastAPI dependency injection for the database and tracker."""

from ..database import get_db, Database
from ..tracker import ProtocolTracker


def get_database() -> Database:
    """Get the global Database instance."""
    return get_db()


def get_tracker() -> ProtocolTracker:
    """FastAPI dependency: a tracker bound to the global database."""
    return ProtocolTracker(get_db())
