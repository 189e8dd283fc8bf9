"""
Herd spreadsheet importer.

Reads herd-management exports (DairyComp 305 style .xlsx/.xls/.csv) into the
animal registry. The exports vary between farms, so the importer:
- finds the header row (first row with an ID/COW column and a PEN column)
- maps columns by known aliases (RPRO/STAT/STATUS, BDAT/BIRTH, ...)
- skips summary lines ("Total ...") and repeated header rows
- parses DC305 dates (d/m/yy, d-m-yy, ISO)

This feeds the registry only; it never touches protocol instances.
"""

import logging
import re
from datetime import date, datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

import pandas as pd

from .database import Database, get_db
from .registry import get_animal, upsert_animal
from .validators import validate_animal_id, validate_import_row

logger = logging.getLogger(__name__)

# Animal column -> accepted header names (matched after upper/strip)
COLUMN_ALIASES = {
    'animal_id': ['ID', 'COW'],
    'eid': ['EID', 'RFID', 'TAG'],
    'pen': ['PEN'],
    'breed': ['CBRD', 'BREED'],
    'repro_status': ['RPRO', 'STAT', 'STATUS'],
    'lactation': ['LACT', 'LCT'],
    'days_in_milk': ['DIM'],
    'last_calving_date': ['FDAT', 'FRESH', 'CALVING'],
    'birth_date': ['BDAT', 'BIRTH'],
    'last_heat_date': ['HDAT', 'HEAT'],
    'times_bred': ['TBRD', 'BRED', 'TIMES'],
    'sire1': ['SIR1', 'SIRE'],
    'sire2': ['SIR2'],
    'sire3': ['SIR3'],
    'gender': ['GENDR', 'SEX'],
    'days_open': ['DOPN', 'OPEN'],
    'due_date': ['DUE'],
    'avg_milk': ['MILK', 'MKA', 'AVG'],
}

DATE_FIELDS = ('last_calving_date', 'birth_date', 'last_heat_date', 'due_date')
INT_FIELDS = ('pen', 'lactation', 'days_in_milk', 'times_bred', 'days_open')
INT_DEFAULTS = {'pen': 0, 'lactation': 1, 'days_in_milk': 0, 'times_bred': 0, 'days_open': 0}

HEADER_SCAN_ROWS = 20


def _is_blank(value) -> bool:
    if value is None:
        return True
    try:
        if pd.isna(value):
            return True
    except (TypeError, ValueError):
        pass
    return str(value).strip() == ''


def parse_dc305_date(value) -> Optional[date]:
    """
    Parse the date formats found in DC305 exports.

    Handles date/datetime/Timestamp values, 'd/m/yy', 'd/m/yyyy',
    'd-m-yy', ISO 'yyyy-mm-dd', and stray spaces ('18/ 5/2019').
    Two-digit years above 50 are 19xx, others 20xx.

    Returns:
        The date, or None if the value is empty or unparseable
    """
    if _is_blank(value):
        return None
    if isinstance(value, pd.Timestamp):
        return value.date()
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value

    text = re.sub(r'\s+', '', str(value))
    for sep in ('/', '-'):
        parts = text.split(sep)
        if len(parts) != 3 or not all(p.isdigit() for p in parts):
            continue
        if len(parts[0]) == 4:
            year, month, day = parts
        else:
            day, month, year = parts
            if len(year) == 2:
                year = ('19' if int(year) > 50 else '20') + year
        try:
            return date(int(year), int(month), int(day))
        except ValueError:
            return None
    return None


def _parse_int(value) -> Optional[int]:
    if _is_blank(value):
        return None
    try:
        return int(float(str(value).strip()))
    except (ValueError, TypeError):
        return None


def _parse_float(value) -> Optional[float]:
    if _is_blank(value):
        return None
    try:
        return float(str(value).strip())
    except (ValueError, TypeError):
        return None


def _cell_text(value) -> str:
    if _is_blank(value):
        return ''
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


def read_sheet(path: Path) -> pd.DataFrame:
    """Read the first sheet of a spreadsheet (or a CSV) with no header inference."""
    path = Path(path)
    if path.suffix.lower() == '.csv':
        return pd.read_csv(path, header=None, dtype=object, skip_blank_lines=False)
    engine = 'openpyxl' if path.suffix.lower() in ('.xlsx', '.xlsm') else None
    return pd.read_excel(path, header=None, dtype=object, engine=engine)


def map_columns(headers: List[str]) -> Dict[str, int]:
    """Map Animal field names to column indices using COLUMN_ALIASES."""
    normalized = [str(h).upper().strip() for h in headers]
    mapping = {}
    for field_name, aliases in COLUMN_ALIASES.items():
        for idx, header in enumerate(normalized):
            if header in aliases:
                mapping[field_name] = idx
                break
    return mapping


def find_header_row(df: pd.DataFrame, required=('animal_id', 'pen')) -> Optional[int]:
    """Index of the first row whose headers map to all `required` fields, or None."""
    for i in range(min(HEADER_SCAN_ROWS, len(df))):
        columns = map_columns([_cell_text(v) for v in df.iloc[i]])
        if all(field_name in columns for field_name in required):
            return i
    return None


def read_animal_ids(path: Path) -> List[str]:
    """
    Read just the animal IDs from a selection list spreadsheet.

    Used to pick animals for enrollment from a file. Falls back to the
    first column, from the first row, when no ID/COW header is found.
    """
    df = read_sheet(path)
    if df.empty:
        return []
    header_idx = find_header_row(df, required=('animal_id',))
    if header_idx is None:
        id_col, rows = 0, df
    else:
        headers = [_cell_text(h) for h in df.iloc[header_idx]]
        id_col, rows = map_columns(headers)['animal_id'], df.iloc[header_idx + 1:]

    ids = []
    for _, row in rows.iterrows():
        raw = _cell_text(row.iloc[id_col])
        if not raw or raw.lower().startswith('total') or raw.upper() in ('ID', 'COW'):
            continue
        if validate_animal_id(raw)[0] and raw not in ids:
            ids.append(raw)
    return ids



class HerdImporter:
    """Import a herd export spreadsheet into the animal registry."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_db()
        self.errors: List[str] = []
        self.warnings: List[str] = []
        self.imported_counts: Dict[str, int] = {}

    def import_file(self, path: Path, dry_run: bool = False) -> Dict:
        """
        Import a single herd file.

        Args:
            path: Path to the .xlsx/.xls/.csv file
            dry_run: If True, validate only without writing to database

        Returns:
            Dict with import statistics and any errors
        """
        self.errors = []
        self.warnings = []
        self.imported_counts = {
            'animals_created': 0,
            'animals_updated': 0,
            'rows_skipped': 0,
        }

        path = Path(path)
        if not path.exists():
            self.errors.append(f"File not found: {path}")
            return self._get_result()

        logger.info("%sImporting: %s", '[DRY RUN] ' if dry_run else '', path.name)

        try:
            df = read_sheet(path)
        except Exception as e:
            self.errors.append(f"Failed to open file: {e}")
            return self._get_result()

        if df.empty:
            self.errors.append("File appears to be empty")
            return self._get_result()

        header_idx = find_header_row(df)
        if header_idx is None:
            self.errors.append(
                f"No header row with ID and PEN columns in the first {HEADER_SCAN_ROWS} rows")
            return self._get_result()
        headers = [_cell_text(h) for h in df.iloc[header_idx]]
        columns = map_columns(headers)

        unmapped = [h for i, h in enumerate(headers) if h and i not in columns.values()]
        if unmapped:
            self.warnings.append(f"Ignored columns: {', '.join(unmapped)}")

        with self.db.session() as session:
            for offset, (_, row) in enumerate(df.iloc[header_idx + 1:].iterrows()):
                line = header_idx + offset + 2  # 1-based spreadsheet row
                record = self._row_to_record(row, columns)
                if record is None:
                    self.imported_counts['rows_skipped'] += 1
                    continue

                valid, msg = validate_animal_id(record['animal_id'])
                if not valid:
                    self.warnings.append(f"Row {line}: {msg}")
                    self.imported_counts['rows_skipped'] += 1
                    continue

                if dry_run:
                    exists = get_animal(session, record['animal_id']) is not None
                    self.imported_counts['animals_updated' if exists else 'animals_created'] += 1
                    continue

                try:
                    _, created = upsert_animal(session, record)
                except ValueError as e:
                    self.warnings.append(f"Row {line}: {e}")
                    self.imported_counts['rows_skipped'] += 1
                    continue
                self.imported_counts['animals_created' if created else 'animals_updated'] += 1

            if not dry_run:
                self.db.log_change(session, 'IMPORT', 'animals', path.name,
                                   new_values=self.imported_counts)

        logger.info("Imported %s: %s", path.name, self.imported_counts)
        return self._get_result()

    def _row_to_record(self, row: pd.Series, columns: Dict[str, int]) -> Optional[Dict[str, Any]]:
        """Convert one sheet row to Animal fields; None for blank/summary/header rows."""
        def cell(field_name):
            idx = columns.get(field_name)
            if idx is None or idx >= len(row):
                return None
            return row.iloc[idx]

        raw_id = _cell_text(cell('animal_id'))
        if not raw_id or raw_id.lower().startswith('total') or raw_id.upper() in ('ID', 'COW'):
            return None

        record: Dict[str, Any] = {'animal_id': raw_id}
        for field_name in columns:
            if field_name == 'animal_id':
                continue
            value = cell(field_name)
            if field_name in DATE_FIELDS:
                record[field_name] = parse_dc305_date(value)
            elif field_name in INT_FIELDS:
                parsed = _parse_int(value)
                record[field_name] = parsed if parsed is not None else INT_DEFAULTS[field_name]
            elif field_name == 'avg_milk':
                record[field_name] = _parse_float(value)
            elif field_name == 'gender':
                record[field_name] = 'M' if _cell_text(value).upper().startswith('M') else 'F'
            else:
                record[field_name] = _cell_text(value) or None

        valid, errors = validate_import_row(record, ['animal_id'])
        if not valid:
            self.warnings.extend(errors)
            return None
        return record

    def _get_result(self) -> Dict:
        """Get import result summary."""
        return {
            'success': len(self.errors) == 0,
            'errors': self.errors,
            'warnings': self.warnings,
            'imported': self.imported_counts,
        }
