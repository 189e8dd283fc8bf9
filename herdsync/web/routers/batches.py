"""Batch progress endpoints."""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException

from ...tracker import ProtocolTracker
from ..dependencies import get_tracker

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/batches", tags=["batches"])


@router.get("")
def list_batches(state: Optional[str] = None,
                 tracker: ProtocolTracker = Depends(get_tracker)) -> List[dict]:
    return [batch.to_dict() for batch in tracker.list_batches(state)]


@router.get("/{key}")
def get_batch(key: str, tracker: ProtocolTracker = Depends(get_tracker)) -> dict:
    batch = tracker.get_batch(key)
    if batch is None:
        raise HTTPException(status_code=404, detail=f"Batch '{key}' not found")
    return batch.to_dict()


@router.post("/{key}/force-complete")
def force_complete_batch(key: str, tracker: ProtocolTracker = Depends(get_tracker)) -> dict:
    report = tracker.force_complete_batch(key)
    logger.info("Batch %s force-completed via API", report.key)
    return report.to_dict()
