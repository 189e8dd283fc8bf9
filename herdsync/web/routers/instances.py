"""Enrollment and per-instance step tracking endpoints."""


from fastapi import APIRouter, Depends, HTTPException

from ...tracker import ProtocolTracker
from ..dependencies import get_tracker
from ..schemas import EnrollmentIn, NoteIn

router = APIRouter(tags=["instances"])


@router.post("/enrollments", status_code=201)
def enroll(body: EnrollmentIn, tracker: ProtocolTracker = Depends(get_tracker)) -> dict:
    result = tracker.enroll(body.animal_ids, body.protocol_id, body.start_date,
                            body.manager, body.inseminator)
    return {
        'created': [instance.to_dict() for instance in result.created],
        'skipped': result.skipped,
    }


@router.get("/instances/{instance_id}")
def get_instance(instance_id: str, tracker: ProtocolTracker = Depends(get_tracker)) -> dict:
    instance = tracker.get_instance(instance_id)
    if instance is None:
        raise HTTPException(status_code=404, detail=f"Protocol instance '{instance_id}' not found")
    return instance.to_dict()


@router.post("/instances/{instance_id}/steps/{step_index}/toggle")
def toggle_step(instance_id: str, step_index: int,
                tracker: ProtocolTracker = Depends(get_tracker)) -> dict:
    return tracker.toggle_step(instance_id, step_index).to_dict()


@router.post("/instances/{instance_id}/annul")
def annul(instance_id: str, tracker: ProtocolTracker = Depends(get_tracker)) -> dict:
    return tracker.annul(instance_id).to_dict()


@router.post("/instances/{instance_id}/force-complete")
def force_complete(instance_id: str, tracker: ProtocolTracker = Depends(get_tracker)) -> dict:
    return tracker.force_complete(instance_id).to_dict()


@router.put("/instances/{instance_id}/note")
def set_note(instance_id: str, body: NoteIn,
             tracker: ProtocolTracker = Depends(get_tracker)) -> dict:
    return tracker.set_note(instance_id, body.text).to_dict()
