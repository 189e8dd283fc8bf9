"""Protocol catalog endpoints."""

from typing import List

from fastapi import APIRouter, Depends, HTTPException

from ...tracker import ProtocolTracker
from ..dependencies import get_tracker
from ..schemas import ProtocolIn, ProtocolUpdate

router = APIRouter(prefix="/protocols", tags=["protocols"])


@router.get("")
def list_protocols(tracker: ProtocolTracker = Depends(get_tracker)) -> List[dict]:
    return [p.to_dict() for p in tracker.list_protocols()]


@router.get("/{protocol_id}")
def get_protocol(protocol_id: str, tracker: ProtocolTracker = Depends(get_tracker)) -> dict:
    protocol = tracker.get_protocol(protocol_id)
    if protocol is None:
        raise HTTPException(status_code=404, detail=f"Protocol '{protocol_id}' not found")
    return protocol.to_dict()


@router.post("", status_code=201)
def create_protocol(body: ProtocolIn, tracker: ProtocolTracker = Depends(get_tracker)) -> dict:
    protocol = tracker.create_protocol(
        body.name,
        [step.model_dump() for step in body.steps],
        body.description,
        body.id,
    )
    return protocol.to_dict()


@router.put("/{protocol_id}")
def update_protocol(protocol_id: str, body: ProtocolUpdate,
                    tracker: ProtocolTracker = Depends(get_tracker)) -> dict:
    steps = [step.model_dump() for step in body.steps] if body.steps is not None else None
    protocol = tracker.update_protocol(protocol_id, body.name, steps, body.description)
    return protocol.to_dict()


@router.delete("/{protocol_id}", status_code=204)
def delete_protocol(protocol_id: str, tracker: ProtocolTracker = Depends(get_tracker)):
    tracker.delete_protocol(protocol_id)
