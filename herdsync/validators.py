"""
Validation helpers for HerdSync.

These validators are used by the schema, the tracking services, the CLI and
the importer to provide consistent, user-friendly error messages.
"""

import re
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Tuple

from .errors import HerdSyncError


class ValidationError(HerdSyncError):
    """Malformed input, with the offending field and value attached."""

    def __init__(self, field: str, value, message: str):
        self.field = field
        self.value = value
        self.message = message
        super().__init__(f"{field}: {message}")


STEP_KINDS = ('INJECTION', 'AI', 'CHECK', 'MOVE')

EVENT_TYPES = (
    'HEAT', 'BREED', 'PREG_CHECK', 'HEALTH', 'CALVING', 'DRY_OFF', 'VACCINE', 'SYNC_SHOT',
)

INSTANCE_STATUSES = ('ACTIVE', 'COMPLETED', 'CANCELED')


# =============================================================================
# ID VALIDATORS
# =============================================================================

ANIMAL_ID_PATTERN = re.compile(r'^[A-Za-z0-9][A-Za-z0-9_\-./]*$')
PROTOCOL_ID_PATTERN = re.compile(r'^[a-z0-9][a-z0-9_\-]*$')


def validate_animal_id(value: str) -> Tuple[bool, str]:
    """
    Validate an animal (tag) ID.

    Args:
        value: Animal ID to validate

    Returns:
        (is_valid, error_message)
    """
    if value is None or str(value).strip() == '':
        return False, "Animal ID is required"
    value = str(value).strip()
    if len(value) > 30:
        return False, f"Animal ID must be at most 30 characters, got: {value}"
    if not ANIMAL_ID_PATTERN.match(value):
        return False, f"Animal ID may only contain letters, digits and _-./, got: {value}"
    return True, ""


def validate_protocol_id(value: str) -> Tuple[bool, str]:
    """Validate a protocol ID (lowercase slug, e.g. 'ovsynch')."""
    if not value:
        return False, "Protocol ID is required"
    if not PROTOCOL_ID_PATTERN.match(value):
        return False, f"Protocol ID must be a lowercase slug (e.g., ovsynch), got: {value}"
    return True, ""


def validate_staff_id(value: str, role: str = "Staff") -> Tuple[bool, str]:
    """Validate an assigned staff identifier (manager, inseminator)."""
    if value is None or str(value).strip() == '':
        return False, f"{role} is required"
    if len(str(value).strip()) > 50:
        return False, f"{role} must be at most 50 characters"
    return True, ""


# =============================================================================
# PROTOCOL VALIDATORS
# =============================================================================

def validate_protocol_name(value: str) -> Tuple[bool, str]:
    """Validate a protocol name."""
    if value is None or str(value).strip() == '':
        return False, "Protocol name is required"
    if len(str(value).strip()) > 100:
        return False, "Protocol name must be at most 100 characters"
    return True, ""


def validate_day_offset(value: int) -> Tuple[bool, str]:
    """
    Validate a step day offset.

    Args:
        value: Days after the protocol start date

    Returns:
        (is_valid, error_message)
    """
    if value is None:
        return False, "Day offset is required"
    if isinstance(value, bool) or not isinstance(value, int):
        return False, f"Day offset must be a whole number, got: {value!r}"
    if value < 0:
        return False, f"Day offset cannot be negative, got: {value}"
    return True, ""


def validate_step_kind(value: str) -> Tuple[bool, str]:
    """Validate step kind."""
    if not value:
        return False, "Step kind is required"
    value = str(value).upper().strip()
    if value not in STEP_KINDS:
        return False, f"Step kind must be one of {STEP_KINDS}, got: {value}"
    return True, ""


def validate_event_type(value: str) -> Tuple[bool, str]:
    """Validate reproductive/health event type."""
    if not value:
        return False, "Event type is required"
    value = str(value).upper().strip()
    if value not in EVENT_TYPES:
        return False, f"Event type must be one of {EVENT_TYPES}, got: {value}"
    return True, ""


# =============================================================================
# DATE HELPERS
# =============================================================================

def parse_date(value: Any, field: str = 'date') -> date:
    """
    Coerce a date, datetime or ISO 'YYYY-MM-DD' string to a date.

    Raises:
        ValidationError: If the value cannot be interpreted as a date
    """
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return datetime.strptime(value.strip(), '%Y-%m-%d').date()
        except ValueError:
            pass
    raise ValidationError(field, value, f"Expected a date in YYYY-MM-DD format, got: {value!r}")


# =============================================================================
# BATCH VALIDATORS
# =============================================================================

def validate_steps(steps: List[Dict[str, Any]]) -> Tuple[bool, List[str]]:
    """
    Validate a list of step dictionaries from an editor or import.

    Returns:
        (is_valid, list_of_errors)
    """
    errors = []
    for idx, step in enumerate(steps):
        day = step.get('day_offset', step.get('day'))
        valid, msg = validate_day_offset(day)
        if not valid:
            errors.append(f"Step {idx + 1}: {msg}")
        valid, msg = validate_step_kind(step.get('kind') or step.get('type'))
        if not valid:
            errors.append(f"Step {idx + 1}: {msg}")
    return len(errors) == 0, errors


def validate_import_row(row: dict, required_fields: List[str]) -> Tuple[bool, List[str]]:
    """
    Validate a row during spreadsheet import.

    Args:
        row: Dictionary of field values
        required_fields: List of required field names

    Returns:
        (is_valid, list_of_errors)
    """
    errors = []

    for field in required_fields:
        if field not in row or row[field] is None or str(row[field]).strip() == '':
            errors.append(f"Missing required field: {field}")

    return len(errors) == 0, errors


def require(check: Tuple[bool, str], field: str, value: Optional[Any]):
    """Raise ValidationError if a `(is_valid, message)` check failed."""
    valid, msg = check
    if not valid:
        raise ValidationError(field, value, msg)
