# app/routers/vehicles.py
"""Valet flow: entry, parking, mark-out, retrieval, delivery, lookups."""

from fastapi import APIRouter, Depends, Query
from typing import List, Optional

from app.container import Container, get_container
from app.domain.intents import TransitionResult
from app.domain.states import VehicleState
from app.schemas.vehicle import ActorBody, EntryCreate, MarkOutCreate, TransitionOut, VehicleOut

router = APIRouter()


def _respond(container: Container, result: TransitionResult) -> TransitionOut:
    failed = container.deliver(result)
    return TransitionOut(
        vehicle=VehicleOut.model_validate(result.vehicle),
        notifications=[n.kind.value for n in result.notifications],
        failed_side_effects=len(failed),
    )


@router.post("/vehicles/entry", response_model=TransitionOut, status_code=201,
             summary="Walk-up entry: reserve slot, dispatch parking valet")
def create_entry(body: EntryCreate, container: Container = Depends(get_container)):
    result = container.lifecycle.create_entry(
        body.vehicle_number, body.customer_phone, body.customer_type, body.operator_id
    )
    return _respond(container, result)


@router.post("/vehicles/{vehicle_id}/park", response_model=TransitionOut, summary="Valet parked the car")
def mark_parked(vehicle_id: str, container: Container = Depends(get_container)):
    return _respond(container, container.lifecycle.mark_parked(vehicle_id))


@router.post("/vehicles/{vehicle_id}/markout-options", response_model=TransitionOut,
             summary="Send the customer the mark-out lead-time choices")
def send_markout_options(vehicle_id: str, container: Container = Depends(get_container)):
    return _respond(container, container.lifecycle.send_markout_options(vehicle_id))


@router.post("/vehicles/markout", response_model=TransitionOut, summary="Customer asked for the car")
def request_mark_out(body: MarkOutCreate, container: Container = Depends(get_container)):
    lifecycle = container.lifecycle
    vehicle = lifecycle.find_vehicle(vehicle_id=body.vehicle_id, token=body.token, phone=body.customer_phone)
    result = lifecycle.request_mark_out(vehicle.id, body.selected_minutes, body.source, body.operator_id)
    return _respond(container, result)


@router.post("/vehicles/{vehicle_id}/retrieval/assign", response_model=TransitionOut,
             summary="Dispatch a retrieval valet")
def assign_retrieval_valet(vehicle_id: str, container: Container = Depends(get_container)):
    return _respond(container, container.lifecycle.assign_retrieval_valet(vehicle_id))


@router.post("/vehicles/{vehicle_id}/retrieval/reassign", response_model=TransitionOut,
             summary="Move the retrieval to another valet")
def reassign_retrieval_valet(vehicle_id: str, container: Container = Depends(get_container)):
    return _respond(container, container.lifecycle.reassign_retrieval_valet(vehicle_id))


@router.post("/vehicles/{vehicle_id}/retrieval/start", response_model=TransitionOut,
             summary="Valet starts bringing the car")
def start_retrieval(vehicle_id: str, body: Optional[ActorBody] = None,
                    container: Container = Depends(get_container)):
    actor_id = body.operator_id if body else None
    return _respond(container, container.lifecycle.start_retrieval(vehicle_id, actor_id))


@router.post("/vehicles/{vehicle_id}/deliver", response_model=TransitionOut, summary="Keys handed over")
def mark_delivered(vehicle_id: str, body: Optional[ActorBody] = None,
                   container: Container = Depends(get_container)):
    operator_id = body.operator_id if body else None
    return _respond(container, container.lifecycle.mark_delivered(vehicle_id, operator_id))


@router.post("/vehicles/{vehicle_id}/close", response_model=TransitionOut, summary="Close the visit")
def close(vehicle_id: str, body: Optional[ActorBody] = None,
          container: Container = Depends(get_container)):
    actor_id = body.operator_id if body else None
    return _respond(container, container.lifecycle.close(vehicle_id, actor_id))


@router.get("/vehicles/search", response_model=VehicleOut, summary="Find by token, plate or phone")
def search_vehicle(token: Optional[str] = None, plate: Optional[str] = None, phone: Optional[str] = None,
                   container: Container = Depends(get_container)):
    return VehicleOut.model_validate(container.lifecycle.find_vehicle(token=token, plate=plate, phone=phone))


@router.get("/vehicles/overdue", response_model=List[VehicleOut], summary="Scheduled but not yet picked up")
def list_overdue(container: Container = Depends(get_container)):
    return [VehicleOut.model_validate(v) for v in container.lifecycle.overdue_vehicles()]


@router.get("/vehicles", response_model=List[VehicleOut], summary="List vehicles")
def list_vehicles(state: Optional[VehicleState] = None,
                  limit: int = Query(100, ge=1, le=500), offset: int = Query(0, ge=0),
                  container: Container = Depends(get_container)):
    vehicles = container.lifecycle.list_vehicles(state, limit=limit, offset=offset)
    return [VehicleOut.model_validate(v) for v in vehicles]


@router.get("/vehicles/{vehicle_id}", response_model=VehicleOut, summary="Vehicle detail")
def get_vehicle(vehicle_id: str, container: Container = Depends(get_container)):
    return VehicleOut.model_validate(container.lifecycle.get_vehicle(vehicle_id))


@router.get("/vehicles/{vehicle_id}/markouts", summary="Mark-out request history")
def markout_history(vehicle_id: str, container: Container = Depends(get_container)):
    container.lifecycle.get_vehicle(vehicle_id)
    return [
        {
            "id": r.id,
            "selected_minutes": r.selected_minutes,
            "requested_at": r.requested_at.isoformat(),
            "retrieve_at": r.retrieve_at.isoformat(),
            "source": r.source.value,
            "status": r.status.value,
        }
        for r in container.scheduler.history(vehicle_id)
    ]
