# tests/test_sql_repositories.py
"""SQLAlchemy stores against an in-memory SQLite database."""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import pytest
from dataclasses import replace
from datetime import datetime, time, timedelta
from unittest.mock import MagicMock
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.container import build_container
from app.database import create_tables
from app.domain.entities import MarkOutRequest, ParkingZone, Valet, Vehicle
from app.domain.exceptions import (
    ConflictError,
    DuplicateEntryError,
    NotFoundError,
    StaleWriteError,
    TokenCollisionError,
)
from app.domain.states import MarkOutStatus, ValetStatus, VehicleState
from app.models.state_transition import StateTransition
from app.repositories.sql import SqlMarkOutStore, SqlValetStore, SqlVehicleStore, SqlZoneStore
from app.services.audit_service import SqlAuditSink

ARRIVED = datetime(2026, 3, 2, 9, 30)


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool
    )
    create_tables(bind=engine)
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def make_vehicle(vehicle_id="veh-1", token="VLT-100000001", plate="KL07AB1234",
                 state=VehicleState.PARKING, arrived_at=ARRIVED, **fields):
    return Vehicle(
        id=vehicle_id, token=token, plate_number=plate, customer_phone="9876543210",
        zone="A", zone_id="zone-a", slot="1", state=state, arrived_at=arrived_at, **fields,
    )


class TestSqlVehicleStore:
    def test_add_and_get(self, session_factory):
        store = SqlVehicleStore(session_factory)
        vehicle = make_vehicle(parking_valet_id="v1")
        store.add(vehicle)
        assert store.get("veh-1") == vehicle
        assert store.find_by_token("VLT-100000001") == vehicle
        assert store.get("missing") is None

    def test_compare_and_swap(self, session_factory):
        store = SqlVehicleStore(session_factory)
        vehicle = store.add(make_vehicle())
        parked = store.update(vehicle.transition(VehicleState.PARKED, parked_at=ARRIVED))
        assert store.get(vehicle.id).version == 2

        with pytest.raises(StaleWriteError):
            store.update(vehicle.transition(VehicleState.PARKED))
        assert store.get(vehicle.id) == parked

    def test_update_unknown_vehicle(self, session_factory):
        store = SqlVehicleStore(session_factory)
        with pytest.raises(NotFoundError):
            store.update(replace(make_vehicle(), version=2))

    def test_token_collision(self, session_factory):
        store = SqlVehicleStore(session_factory)
        store.add(make_vehicle())
        with pytest.raises(TokenCollisionError):
            store.add(make_vehicle(vehicle_id="veh-2", plate="KL07AB9999"))

    def test_one_active_record_per_plate(self, session_factory):
        store = SqlVehicleStore(session_factory)
        store.add(make_vehicle(state=VehicleState.DELIVERED))
        store.add(make_vehicle(vehicle_id="veh-2", token="VLT-100000002"))
        with pytest.raises(DuplicateEntryError):
            store.add(make_vehicle(vehicle_id="veh-3", token="VLT-100000003"))
        assert store.find_active_by_plate("KL07AB1234").id == "veh-2"

    def test_listings(self, session_factory):
        store = SqlVehicleStore(session_factory)
        store.add(make_vehicle())
        store.add(make_vehicle("veh-2", "VLT-100000002", "KL07AB2222", state=VehicleState.SCHEDULED))
        store.add(make_vehicle("veh-3", "VLT-100000003", "KL07AB3333", state=VehicleState.CLOSED,
                               arrived_at=ARRIVED - timedelta(days=1)))

        assert [v.id for v in store.list_by_state(VehicleState.SCHEDULED)] == ["veh-2"]
        assert {v.id for v in store.find_active_by_phone("9876543210")} == {"veh-1", "veh-2"}
        assert {v.id for v in store.list_by_date(ARRIVED.date())} == {"veh-1", "veh-2"}
        assert len(store.list_all(limit=2)) == 2

    def test_delivered_between(self, session_factory):
        store = SqlVehicleStore(session_factory)
        midnight = datetime(2026, 3, 2)
        store.add(make_vehicle(state=VehicleState.CLOSED, delivered_at=midnight + timedelta(hours=9)))
        store.add(make_vehicle("veh-2", "VLT-100000002", "KL07AB2222", state=VehicleState.DELIVERED,
                               delivered_at=midnight - timedelta(minutes=1)))
        store.add(make_vehicle("veh-3", "VLT-100000003", "KL07AB3333", state=VehicleState.DELIVERED,
                               delivered_at=midnight))
        store.add(make_vehicle("veh-4", "VLT-100000004", "KL07AB4444"))

        today = store.list_delivered_between(midnight, midnight + timedelta(days=1))
        assert [v.id for v in today] == ["veh-3", "veh-1"]


class TestSqlOtherStores:
    def test_valet_round_trip_with_overnight_shift(self, session_factory):
        store = SqlValetStore(session_factory)
        valet = Valet(id="v1", name="Suresh", phone="9800000000",
                      shift_start=time(22, 0), shift_end=time(6, 0))
        store.add(valet)
        busy = store.update(valet.assign_task())
        assert store.get("v1") == busy
        assert [v.id for v in store.list_all(ValetStatus.BUSY)] == ["v1"]
        assert store.list_all(ValetStatus.FREE) == []

    def test_zone_slots_persist(self, session_factory):
        store = SqlZoneStore(session_factory)
        zone = store.add(ParkingZone(id="z-b", zone_code="B", total_slots=12, available_slots=12, priority=2))
        store.add(ParkingZone(id="z-a", zone_code="A", total_slots=5, available_slots=5, priority=1))
        store.update(zone.occupy_slot("10").occupy_slot("2"))

        reloaded = store.get("z-b")
        assert reloaded.occupied_slots == frozenset({"2", "10"})
        assert reloaded.available_slots == 10
        assert reloaded.next_slot_label() == "1"
        assert [z.zone_code for z in store.list_all()] == ["A", "B"]

    def test_duplicate_zone_code(self, session_factory):
        store = SqlZoneStore(session_factory)
        store.add(ParkingZone(id="z1", zone_code="A", total_slots=1, available_slots=1))
        with pytest.raises(ConflictError):
            store.add(ParkingZone(id="z2", zone_code="A", total_slots=1, available_slots=1))

    def test_markout_pending_uniqueness(self, session_factory):
        store = SqlMarkOutStore(session_factory)
        request = MarkOutRequest(id="m1", vehicle_id="veh-1", selected_minutes=5,
                                 requested_at=ARRIVED, retrieve_at=ARRIVED + timedelta(minutes=5))
        store.add(request)
        with pytest.raises(ConflictError):
            store.add(replace(request, id="m2"))

        store.update(request.complete())
        assert store.find_pending("veh-1") is None
        assert store.list_for_vehicle("veh-1")[0].status == MarkOutStatus.COMPLETED


class TestSqlEngine:
    def test_full_visit_with_audit_trail(self, session_factory):
        now = [datetime(2026, 3, 2, 10, 0)]
        container = build_container(
            "sql", session_factory=session_factory, notifier=MagicMock(),
            auditor=SqlAuditSink(session_factory), clock=lambda: now[0],
        )
        container.zones.create_zone("A", 3, priority=1)
        container.dispatcher.create_valet("Arjun", "9876500001", "V-001")
        lifecycle = container.lifecycle

        steps = [lifecycle.create_entry("KL07AB1234", "9876543210")]
        vehicle_id = steps[0].vehicle.id
        steps.append(lifecycle.mark_parked(vehicle_id))
        steps.append(lifecycle.request_mark_out(vehicle_id, 5))
        now[0] += timedelta(minutes=5)
        steps.append(lifecycle.start_retrieval(vehicle_id))
        steps.append(lifecycle.mark_delivered(vehicle_id))
        steps.append(lifecycle.close(vehicle_id))
        failed = [intent for result in steps for intent in container.deliver(result)]

        assert failed == []
        assert lifecycle.get_vehicle(vehicle_id).state == VehicleState.CLOSED
        assert container.zones.list_zones()[0].available_slots == 3
        assert container.notifier.send.call_count == 3

        trail = container.auditor.history(vehicle_id)
        assert [(t.from_state, t.to_state) for t in trail] == [
            (None, "PARKING"),
            ("PARKING", "PARKED"),
            ("PARKED", "SCHEDULED"),
            ("SCHEDULED", "RETRIEVAL_ASSIGNED"),
            ("RETRIEVAL_ASSIGNED", "ON_THE_WAY"),
            ("ON_THE_WAY", "DELIVERED"),
            ("DELIVERED", "CLOSED"),
        ]
        assert isinstance(trail[0], StateTransition)
