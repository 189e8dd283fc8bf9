"""
Database connection and session management for HerdSync.
"""

import os
import json
import logging
import shutil
from pathlib import Path
from datetime import datetime
from contextlib import contextmanager
from typing import Optional, Generator

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

from . import DEFAULT_DB_PATH
from .schema import (
    Base, AuditLog, Animal, ReproEvent, Protocol, ProtocolInstance,
    ACTIVE, COMPLETED, CANCELED, create_default_protocols
)

logger = logging.getLogger(__name__)


class Database:
    """Database connection manager with audit logging."""

    def __init__(self, db_path: Optional[Path] = None, url: Optional[str] = None,
                 log_path: Optional[Path] = None):
        """
        Initialize database connection.

        Args:
            db_path: Path to SQLite database file. Defaults to $HERDSYNC_ROOT/herdsync.db
            url: Full SQLAlchemy URL; overrides db_path (e.g. 'sqlite://' for in-memory)
            log_path: Directory for daily JSONL change logs. Defaults to a logs/
                directory beside the database file; in-memory databases keep none
        """
        self.db_path = None
        if url is None:
            self.db_path = Path(db_path) if db_path else DEFAULT_DB_PATH
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            url = f"sqlite:///{self.db_path}"
        self.url = url

        if log_path is None and self.db_path is not None:
            log_path = self.db_path.parent / "logs"
        self.log_path = Path(log_path) if log_path else None
        if self.log_path:
            self.log_path.mkdir(parents=True, exist_ok=True)

        engine_kwargs = {'echo': False}
        if url.startswith('sqlite'):
            engine_kwargs['connect_args'] = {"check_same_thread": False}
            if self.db_path is None:
                # In-memory: every session must see the same connection
                engine_kwargs['poolclass'] = StaticPool
        self.engine = create_engine(url, **engine_kwargs)
        self.SessionLocal = sessionmaker(bind=self.engine, expire_on_commit=False)

        # Current user for audit logging
        self._current_user = os.environ.get(
            'HERDSYNC_USER', os.environ.get('USERNAME', os.environ.get('USER', 'unknown'))
        )

    def init_db(self, seed: bool = True):
        """Create all tables and seed the default protocols."""
        Base.metadata.create_all(self.engine)
        if seed:
            with self.session() as session:
                created = create_default_protocols(session)
                for protocol in created:
                    logger.debug("Seeded protocol %s", protocol.id)
        logger.info("Database initialized at: %s", self.db_path or self.url)

    @contextmanager
    def session(self) -> Generator[Session, None, None]:
        """
        Context manager for database sessions with automatic commit/rollback.

        Usage:
            with db.session() as session:
                session.add(...)
        """
        session = self.SessionLocal()
        try:
            yield session
            session.commit()
            committed = session.info.pop('change_log', [])
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()
        self._write_change_log(committed)

    def set_user(self, username: str):
        """Set the current user for audit logging."""
        self._current_user = username

    @property
    def current_user(self) -> str:
        """Get the current user for audit logging."""
        return self._current_user

    def log_change(self, session: Session, action: str, table_name: str,
                   record_id: str, old_values: dict = None, new_values: dict = None):
        """
        Log a data change for audit trail.

        Args:
            session: Active database session
            action: Operation name (ENROLL, TOGGLE_STEP, ANNUL, ...)
            table_name: Name of the affected table
            record_id: Primary key of the affected record
            old_values: Previous values (for updates/deletes)
            new_values: New values (for inserts/updates)
        """
        log_entry = AuditLog(
            user=self.current_user,
            action=action,
            table_name=table_name,
            record_id=str(record_id),
            old_values=json.dumps(old_values, default=str) if old_values else None,
            new_values=json.dumps(new_values, default=str) if new_values else None,
        )
        session.add(log_entry)

        if self.log_path is None:
            return

        # Daily log file lines are written once the session commits
        session.info.setdefault('change_log', []).append({
            'timestamp': datetime.now().isoformat(),
            'user': self.current_user,
            'action': action,
            'table': table_name,
            'record_id': str(record_id),
            'old': old_values,
            'new': new_values,
        })

    def _write_change_log(self, entries: list):
        if not entries:
            return
        log_file = self.log_path / f"{datetime.now().strftime('%Y-%m-%d')}_changes.jsonl"
        with open(log_file, 'a') as f:
            for entry in entries:
                f.write(json.dumps(entry, default=str) + '\n')

    def get_stats(self) -> dict:
        """Get database statistics."""
        with self.session() as session:
            instances = session.query(ProtocolInstance)
            return {
                'animals': session.query(Animal).count(),
                'events': session.query(ReproEvent).count(),
                'protocols': session.query(Protocol).count(),
                'instances': instances.count(),
                'active_instances': instances.filter(ProtocolInstance.status == ACTIVE).count(),
                'completed_instances': instances.filter(ProtocolInstance.status == COMPLETED).count(),
                'canceled_instances': instances.filter(ProtocolInstance.status == CANCELED).count(),
                'db_path': str(self.db_path or self.url),
                'db_size_mb': (self.db_path.stat().st_size / (1024 * 1024)
                               if self.db_path and self.db_path.exists() else 0),
            }

    def backup(self, backup_path: Optional[Path] = None) -> Path:
        """
        Create a backup of the database file.

        Args:
            backup_path: Destination path. Defaults to timestamped backup in same directory.

        Returns:
            Path to the backup file.
        """
        if self.db_path is None:
            raise ValueError("Only file-backed databases can be backed up")
        if backup_path is None:
            timestamp = datetime.now().strftime('%Y%m%d_%H%M%S')
            backup_path = self.db_path.parent / f"herdsync_backup_{timestamp}.db"

        shutil.copy2(self.db_path, backup_path)
        logger.info("Backup created: %s", backup_path)
        return Path(backup_path)


# Global database instance
_db: Optional[Database] = None


def get_db(db_path: Optional[Path] = None) -> Database:
    """Get or create the global database instance."""
    global _db
    if _db is None or (db_path is not None and _db.db_path != Path(db_path)):
        _db = Database(db_path)
    return _db


def init_database(db_path: Optional[Path] = None) -> Database:
    """Initialize the database and return the instance."""
    db = get_db(db_path)
    db.init_db()
    return db
