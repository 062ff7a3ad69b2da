# app/schemas/valet.py
from pydantic import BaseModel, Field
from datetime import time
from typing import Optional

from app.domain.states import ValetStatus


class ValetCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    phone: str
    employee_id: Optional[str] = None
    shift_start: Optional[time] = None   # e.g. "22:00"
    shift_end: Optional[time] = None     # may be earlier than shift_start (overnight)


class ValetStatusUpdate(BaseModel):
    status: ValetStatus


class ValetOut(BaseModel):
    id: str
    name: str
    phone: str
    employee_id: Optional[str]
    status: ValetStatus
    assignment_sequence: int
    today_count: int
    total_count: int
    shift_start: Optional[time]
    shift_end: Optional[time]
    is_active: bool

    class Config:
        from_attributes = True


class AssignmentStatsOut(BaseModel):
    total_valets: int
    free_valets: int
    busy_valets: int
    on_break: int
    avg_count: float
    min_count: int
    max_count: int
    variance: int
    is_balanced: bool

    class Config:
        from_attributes = True
