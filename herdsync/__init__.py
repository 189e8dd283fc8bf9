"""
HerdSync - Reproduction Protocol Tracking

Tracks synchronization/treatment protocols applied to herd animals:
protocol definitions, per-animal protocol runs with frozen step snapshots,
and cohort ("batch") progress derived from those runs.

Usage:
    herdsync init               # Create database and seed default protocols
    herdsync protocols          # List protocol definitions
    herdsync enroll             # Start a protocol for a set of animals
    herdsync batches            # Show batch progress
    herdsync tasks              # Show steps due today
    herdsync import             # Import herd spreadsheet
    herdsync-web                # Launch JSON API
"""

__version__ = "0.1.0"

import os
from pathlib import Path

# Default paths - use environment variable or fallback to default
HERDSYNC_ROOT = Path(os.environ.get("HERDSYNC_ROOT", Path.home() / ".herdsync"))
DEFAULT_DB_PATH = HERDSYNC_ROOT / "herdsync.db"
DEFAULT_EXPORT_PATH = HERDSYNC_ROOT / "exports"
