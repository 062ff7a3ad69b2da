# app/schemas/zone.py
from pydantic import BaseModel, Field
from typing import Optional


class ZoneCreate(BaseModel):
    zone_code: str = Field(..., min_length=1, max_length=20)
    total_slots: int = Field(..., ge=1)
    priority: int = 999                  # lower = filled first
    zone_name: Optional[str] = None
    zone_description: Optional[str] = None


class ZoneActiveUpdate(BaseModel):
    is_active: bool


class ZoneOut(BaseModel):
    id: str
    zone_code: str
    zone_name: Optional[str]
    total_slots: int
    available_slots: int
    occupancy_rate: float
    priority: int
    is_active: bool

    class Config:
        from_attributes = True
