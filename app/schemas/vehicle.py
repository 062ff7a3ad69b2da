# app/schemas/vehicle.py
from pydantic import BaseModel, Field
from datetime import datetime
from typing import List, Optional

from app.domain.states import MarkOutSource, VehicleState


class EntryCreate(BaseModel):
    vehicle_number: str = Field(..., min_length=1, max_length=20)
    customer_phone: str = Field(..., min_length=10, max_length=15)
    customer_type: Optional[str] = None
    operator_id: Optional[str] = None


class MarkOutCreate(BaseModel):
    """Address the vehicle by id, token or the customer's phone."""
    vehicle_id: Optional[str] = None
    token: Optional[str] = None
    customer_phone: Optional[str] = None
    selected_minutes: int
    source: MarkOutSource = MarkOutSource.OPERATOR
    operator_id: Optional[str] = None


class ActorBody(BaseModel):
    operator_id: Optional[str] = None


class VehicleOut(BaseModel):
    id: str
    token: str
    plate_number: str
    customer_phone: str
    customer_type: Optional[str]
    zone: str
    slot: str
    state: VehicleState
    parking_valet_id: Optional[str]
    retrieval_valet_id: Optional[str]
    arrived_at: datetime
    parked_at: Optional[datetime]
    markout_requested_at: Optional[datetime]
    scheduled_at: Optional[datetime]
    retrieval_started_at: Optional[datetime]
    delivered_at: Optional[datetime]
    closed_at: Optional[datetime]
    version: int

    class Config:
        from_attributes = True


class TransitionOut(BaseModel):
    vehicle: VehicleOut
    notifications: List[str] = []    # notification kinds queued for the customer
    failed_side_effects: int = 0
