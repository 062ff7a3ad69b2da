# app/routers/zones.py
"""Parking zones: setup and live occupancy."""

from fastapi import APIRouter, Depends
from typing import List

from app.container import Container, get_container
from app.schemas.zone import ZoneActiveUpdate, ZoneCreate, ZoneOut

router = APIRouter()


@router.post("/zones", response_model=ZoneOut, status_code=201, summary="Create a parking zone")
def create_zone(body: ZoneCreate, container: Container = Depends(get_container)):
    zone = container.zones.create_zone(
        zone_code=body.zone_code,
        total_slots=body.total_slots,
        priority=body.priority,
        zone_name=body.zone_name,
        zone_description=body.zone_description,
    )
    return ZoneOut.model_validate(zone)


@router.get("/zones", response_model=List[ZoneOut], summary="Zones in fill order")
def list_zones(container: Container = Depends(get_container)):
    return [ZoneOut.model_validate(z) for z in container.zones.list_zones()]


@router.put("/zones/{zone_id}/active", response_model=ZoneOut, summary="Open or close a zone")
def set_zone_active(zone_id: str, body: ZoneActiveUpdate, container: Container = Depends(get_container)):
    return ZoneOut.model_validate(container.zones.set_active(zone_id, body.is_active))
