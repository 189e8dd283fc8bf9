"""Request bodies for the JSON API."""

from datetime import date
from typing import List, Optional

from pydantic import BaseModel, Field


class StepIn(BaseModel):
    day_offset: int
    kind: str
    description: str = ""
    product: Optional[str] = None


class ProtocolIn(BaseModel):
    name: str
    description: Optional[str] = None
    steps: List[StepIn] = Field(default_factory=list)
    id: Optional[str] = None


class ProtocolUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    steps: Optional[List[StepIn]] = None


class EnrollmentIn(BaseModel):
    animal_ids: List[str]
    protocol_id: str
    start_date: date
    manager: str
    inseminator: str = "auto"


class NoteIn(BaseModel):
    text: str = ""
