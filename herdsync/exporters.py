"""
Export functions for HerdSync.

Writes a batch's progress to an Excel workbook for the barn office:
- Summary sheet (one row per batch member)
- Schedule sheet (every step of every member, with due dates)
"""

import pandas as pd
from pathlib import Path
from typing import Optional, List, Dict, Any

from .batches import BatchKey, get_batch
from .database import Database
from .errors import NotFoundError
from .schedule import generate_schedule


def _summary_rows(batch) -> List[Dict[str, Any]]:
    rows = []
    for instance in batch.instances:
        rows.append({
            'AnimalID': instance.animal_id,
            'Status': instance.status,
            'Forced': 'Y' if instance.is_force_completed else '',
            'StepsDone': len(instance.completed_steps),
            'StepsTotal': len(instance.snapshot_steps),
            'Inseminator': instance.inseminator,
            'Notes': instance.notes or '',
            'InstanceID': instance.id,
        })
    return rows


def _schedule_rows(batch) -> List[Dict[str, Any]]:
    rows = []
    for instance in batch.instances:
        for entry in generate_schedule(instance):
            rows.append({
                'AnimalID': instance.animal_id,
                'Step': entry['step_index'],
                'Due': entry['due_date'],
                'Kind': entry['kind'],
                'Description': entry['description'],
                'Product': entry['product'] or '',
                'Done': 'Y' if entry['done'] else '',
            })
    return rows


def export_batch_to_excel(db: Database, key,
                          output_path: Optional[Path] = None) -> Path:
    """
    Export one batch to an Excel workbook.

    Args:
        db: Database instance
        key: Batch key ('protocol_id|YYYY-MM-DD' or BatchKey)
        output_path: Output path. Defaults to exports directory.

    Returns:
        Path to the exported file

    Raises:
        NotFoundError: No instance carries this batch key
    """
    from . import DEFAULT_EXPORT_PATH

    key = BatchKey.parse(key)
    if output_path is None:
        DEFAULT_EXPORT_PATH.mkdir(parents=True, exist_ok=True)
        output_path = DEFAULT_EXPORT_PATH / f"{key.protocol_id}_{key.start_date.isoformat()}.xlsx"

    with db.session() as session:
        batch = get_batch(session, key)
        if batch is None:
            raise NotFoundError('Batch', str(key))

        header = pd.DataFrame([{
            'Protocol': batch.protocol_name,
            'ProtocolID': batch.protocol_id,
            'StartDate': batch.start_date,
            'Manager': batch.manager,
            'Resolved': batch.resolved_count,
            'Total': batch.total_count,
        }])

        with pd.ExcelWriter(output_path, engine='openpyxl') as writer:
            header.to_excel(writer, sheet_name='Batch', index=False)
            pd.DataFrame(_summary_rows(batch)).to_excel(writer, sheet_name='Summary', index=False)
            pd.DataFrame(_schedule_rows(batch)).to_excel(writer, sheet_name='Schedule', index=False)

    return Path(output_path)
