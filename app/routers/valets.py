# app/routers/valets.py
"""Valet roster: onboarding, duty status, daily reset and fairness stats."""

from fastapi import APIRouter, Depends
from typing import List, Optional

from app.container import Container, get_container
from app.domain.states import ValetStatus
from app.schemas.valet import AssignmentStatsOut, ValetCreate, ValetOut, ValetStatusUpdate
from app.utils.validators import normalize_phone

router = APIRouter()


@router.post("/valets", response_model=ValetOut, status_code=201, summary="Onboard a valet")
def create_valet(body: ValetCreate, container: Container = Depends(get_container)):
    valet = container.dispatcher.create_valet(
        name=body.name.strip(),
        phone=normalize_phone(body.phone),
        employee_id=body.employee_id,
        shift_start=body.shift_start,
        shift_end=body.shift_end,
    )
    return ValetOut.model_validate(valet)


@router.get("/valets", response_model=List[ValetOut], summary="List valets")
def list_valets(status: Optional[ValetStatus] = None, container: Container = Depends(get_container)):
    return [ValetOut.model_validate(v) for v in container.dispatcher.list_valets(status)]


@router.get("/valets/stats", response_model=AssignmentStatsOut, summary="Round-robin fairness")
def assignment_stats(container: Container = Depends(get_container)):
    return AssignmentStatsOut.model_validate(container.dispatcher.assignment_stats())


@router.post("/valets/reset-daily", summary="Zero today's counters (start of day)")
def reset_daily_counters(container: Container = Depends(get_container)):
    return {"status": "reset", "valets": container.dispatcher.reset_daily_counters()}


@router.get("/valets/{valet_id}", response_model=ValetOut, summary="Valet detail")
def get_valet(valet_id: str, container: Container = Depends(get_container)):
    return ValetOut.model_validate(container.dispatcher.get(valet_id))


@router.put("/valets/{valet_id}/status", response_model=ValetOut, summary="Break / off duty / back on duty")
def set_status(valet_id: str, body: ValetStatusUpdate, container: Container = Depends(get_container)):
    return ValetOut.model_validate(container.dispatcher.set_status(valet_id, body.status))
