# tests/test_vehicle_lifecycle.py
"""Unit tests for the vehicle state machine and its coordination with zones and valets."""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import itertools
import threading
import pytest
from dataclasses import replace
from datetime import timedelta
from unittest.mock import patch
from app.domain.exceptions import (
    CapacityError,
    DuplicateEntryError,
    InvalidLeadTimeError,
    InvalidPhoneError,
    InvalidPlateError,
    InvalidStateError,
    InvalidTransitionError,
    NoAvailableValetError,
    NoCapacityError,
    NotFoundError,
    RetrievalTooEarlyError,
    StaleWriteError,
    TokenCollisionError,
    ValidationError,
)
from app.domain.intents import Actor, NotificationKind
from app.domain.states import MarkOutSource, MarkOutStatus, ValetStatus, VehicleState
from app.services.vehicle_lifecycle import VehicleLifecycle
from tests.conftest import add_valet

PLATE = "KL07AB1234"
PHONE = "9876543210"


def enter(engine, plate=PLATE, phone=PHONE):
    return engine.lifecycle.create_entry(plate, phone, operator_id="op-1").vehicle


def drive_to(engine, clock, state, plate=PLATE):
    """Walk a fresh vehicle forward until it reaches `state`."""
    lifecycle = engine.lifecycle
    vehicle = enter(engine, plate)
    if state == VehicleState.PARKING:
        return vehicle
    vehicle = lifecycle.mark_parked(vehicle.id).vehicle
    if state == VehicleState.PARKED:
        return vehicle
    if state == VehicleState.WAITING_MARKOUT:
        return lifecycle.send_markout_options(vehicle.id).vehicle
    vehicle = lifecycle.request_mark_out(vehicle.id, 5).vehicle
    if state == VehicleState.SCHEDULED:
        return vehicle
    clock.advance(minutes=5)
    if state == VehicleState.RETRIEVAL_ASSIGNED:
        return lifecycle.assign_retrieval_valet(vehicle.id).vehicle
    vehicle = lifecycle.start_retrieval(vehicle.id).vehicle
    if state == VehicleState.ON_THE_WAY:
        return vehicle
    vehicle = lifecycle.mark_delivered(vehicle.id).vehicle
    if state == VehicleState.DELIVERED:
        return vehicle
    return lifecycle.close(vehicle.id).vehicle


def total_available(engine):
    return sum(z.available_slots for z in engine.zones.list_zones())


def busy_valets(engine):
    return [v for v in engine.dispatcher.list_valets() if v.status == ValetStatus.BUSY]


# operation name → (source states that allow it, call)
OPERATIONS = {
    "mark_parked": ({VehicleState.PARKING}, lambda lc, v: lc.mark_parked(v.id)),
    "send_markout_options": ({VehicleState.PARKED}, lambda lc, v: lc.send_markout_options(v.id)),
    "request_mark_out": (
        {VehicleState.PARKED, VehicleState.WAITING_MARKOUT},
        lambda lc, v: lc.request_mark_out(v.id, 5),
    ),
    "assign_retrieval_valet": (
        {VehicleState.SCHEDULED, VehicleState.RETRIEVAL_ASSIGNED},
        lambda lc, v: lc.assign_retrieval_valet(v.id),
    ),
    "start_retrieval": (
        {VehicleState.SCHEDULED, VehicleState.RETRIEVAL_ASSIGNED},
        lambda lc, v: lc.start_retrieval(v.id),
    ),
    "mark_delivered": ({VehicleState.ON_THE_WAY}, lambda lc, v: lc.mark_delivered(v.id)),
    "close": ({VehicleState.DELIVERED}, lambda lc, v: lc.close(v.id)),
}

FORBIDDEN = [
    (state, name)
    for state, name in itertools.product(VehicleState, OPERATIONS)
    if state not in OPERATIONS[name][0]
]


class TestCreateEntry:
    def test_entry_reserves_slot_and_parking_valet(self, engine):
        result = engine.lifecycle.create_entry(PLATE, PHONE, "walk-in", "op-1")
        vehicle = result.vehicle

        assert vehicle.state == VehicleState.PARKING
        assert (vehicle.zone, vehicle.slot) == ("A", "1")
        assert vehicle.token.startswith("VLT-")
        assert engine.dispatcher.get(vehicle.parking_valet_id).status == ValetStatus.BUSY
        assert total_available(engine) == 3

    def test_entry_intents(self, engine):
        result = engine.lifecycle.create_entry(PLATE, PHONE, operator_id="op-1")
        [notification] = result.notifications
        [audit] = result.audits

        assert notification.kind == NotificationKind.ENTRY_CONFIRMATION
        assert notification.recipient_phone == PHONE
        assert notification.payload["token"] == result.vehicle.token
        assert notification.payload["slot"] == "1"
        assert audit.from_state is None
        assert audit.to_state == VehicleState.PARKING
        assert audit.triggered_by == Actor.OPERATOR
        assert audit.triggered_by_id == "op-1"

    def test_inputs_are_normalized(self, engine):
        vehicle = enter(engine, plate="kl 07 ab-1234", phone="+91 98765 43210")
        assert vehicle.plate_number == PLATE
        assert vehicle.customer_phone == PHONE

    def test_invalid_plate_touches_nothing(self, engine):
        with pytest.raises(InvalidPlateError):
            enter(engine, plate="??")
        assert total_available(engine) == 4
        assert busy_valets(engine) == []

    def test_invalid_phone_rejected(self, engine):
        with pytest.raises(InvalidPhoneError):
            enter(engine, phone="12345")

    def test_duplicate_active_plate_rejected(self, engine):
        first = enter(engine)
        with pytest.raises(DuplicateEntryError) as exc_info:
            enter(engine, plate="KL-07-AB-1234")
        assert exc_info.value.extra["token"] == first.token
        assert total_available(engine) == 3
        assert len(busy_valets(engine)) == 1

    def test_plate_can_return_after_delivery(self, engine, clock):
        drive_to(engine, clock, VehicleState.DELIVERED)
        assert enter(engine).state == VehicleState.PARKING

    def test_no_valet_releases_the_slot(self, engine):
        for valet_id in ("v1", "v2", "v3"):
            engine.dispatcher.take_break(valet_id)
        with pytest.raises(NoAvailableValetError):
            enter(engine)
        assert total_available(engine) == 4
        assert engine.lifecycle.list_vehicles() == []

    def test_token_collision_is_retried(self, engine, clock):
        tokens = iter(["VLT-000000001", "VLT-000000001", "VLT-000000002"])
        lifecycle = VehicleLifecycle(
            engine.lifecycle.vehicles, engine.zones, engine.dispatcher, engine.scheduler,
            clock=clock, token_factory=lambda: next(tokens),
        )
        first = lifecycle.create_entry(PLATE, PHONE).vehicle
        second = lifecycle.create_entry("KL07AB9999", PHONE).vehicle
        assert (first.token, second.token) == ("VLT-000000001", "VLT-000000002")

    def test_token_collisions_exhausted_roll_back(self, engine, clock):
        lifecycle = VehicleLifecycle(
            engine.lifecycle.vehicles, engine.zones, engine.dispatcher, engine.scheduler,
            clock=clock, token_factory=lambda: "VLT-000000001", token_retry_attempts=2,
        )
        lifecycle.create_entry(PLATE, PHONE)
        with pytest.raises(TokenCollisionError):
            lifecycle.create_entry("KL07AB9999", PHONE)
        assert total_available(engine) == 3
        assert len(busy_valets(engine)) == 1
        assert sum(v.today_count for v in engine.dispatcher.list_valets()) == 1

    def test_concurrent_entries_for_one_plate(self, engine):
        outcomes = []

        def worker():
            try:
                outcomes.append(enter(engine))
            except DuplicateEntryError as e:
                outcomes.append(e)

        threads = [threading.Thread(target=worker) for _ in range(5)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        created = [o for o in outcomes if not isinstance(o, Exception)]
        assert len(created) == 1
        assert total_available(engine) == 3

    def test_concurrent_entries_limited_by_valets(self, engine):
        errors = []

        def worker(plate):
            try:
                enter(engine, plate=plate)
            except NoAvailableValetError as e:
                errors.append(e)

        threads = [threading.Thread(target=worker, args=(f"KL07AB000{i}",)) for i in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(errors) == 1
        assert total_available(engine) == 1
        assert len(busy_valets(engine)) == 3


class TestTransitionTable:
    @pytest.mark.parametrize("state,operation", FORBIDDEN)
    def test_forbidden_operation_fails_without_side_effects(self, engine, clock, state, operation):
        vehicle = drive_to(engine, clock, state)
        available = total_available(engine)
        valets = engine.dispatcher.list_valets()

        with pytest.raises(InvalidTransitionError):
            OPERATIONS[operation][1](engine.lifecycle, vehicle)

        assert engine.lifecycle.get_vehicle(vehicle.id) == vehicle
        assert total_available(engine) == available
        assert engine.dispatcher.list_valets() == valets

    def test_unknown_vehicle(self, engine):
        with pytest.raises(NotFoundError):
            engine.lifecycle.mark_parked("nope")


class TestParkingAndMarkOut:
    def test_mark_parked_frees_parking_valet(self, engine, clock):
        vehicle = enter(engine)
        clock.advance(minutes=3)
        result = engine.lifecycle.mark_parked(vehicle.id)

        assert result.vehicle.state == VehicleState.PARKED
        assert result.vehicle.parked_at == clock.now
        assert engine.dispatcher.get(vehicle.parking_valet_id).status == ValetStatus.FREE
        assert result.audits[0].triggered_by == Actor.VALET

    def test_markout_options_notification(self, engine, clock):
        vehicle = drive_to(engine, clock, VehicleState.PARKED)
        result = engine.lifecycle.send_markout_options(vehicle.id)
        [notification] = result.notifications
        assert result.vehicle.state == VehicleState.WAITING_MARKOUT
        assert notification.kind == NotificationKind.MARKOUT_OPTIONS
        assert notification.payload["options"] == [5, 7, 10]

    @pytest.mark.parametrize("source_state", [VehicleState.PARKED, VehicleState.WAITING_MARKOUT])
    def test_request_mark_out_schedules_retrieval(self, engine, clock, source_state):
        vehicle = drive_to(engine, clock, source_state)
        result = engine.lifecycle.request_mark_out(vehicle.id, 7, MarkOutSource.WHATSAPP)

        assert result.vehicle.state == VehicleState.SCHEDULED
        assert result.vehicle.markout_requested_at == clock.now
        assert result.vehicle.scheduled_at == clock.now + timedelta(minutes=7)
        assert result.audits[0].triggered_by == Actor.CUSTOMER
        pending = engine.scheduler.requests.find_pending(vehicle.id)
        assert pending.selected_minutes == 7

    def test_invalid_lead_time_leaves_vehicle_parked(self, engine, clock):
        vehicle = drive_to(engine, clock, VehicleState.PARKED)
        with pytest.raises(InvalidLeadTimeError):
            engine.lifecycle.request_mark_out(vehicle.id, 6)
        assert engine.lifecycle.get_vehicle(vehicle.id).state == VehicleState.PARKED
        assert engine.scheduler.history(vehicle.id) == []

    def test_failed_vehicle_write_cancels_markout_request(self, engine, clock):
        vehicle = drive_to(engine, clock, VehicleState.PARKED)
        with patch.object(engine.lifecycle.vehicles, "update", side_effect=StaleWriteError("raced")):
            with pytest.raises(StaleWriteError):
                engine.lifecycle.request_mark_out(vehicle.id, 5)

        assert engine.lifecycle.get_vehicle(vehicle.id).state == VehicleState.PARKED
        assert engine.scheduler.requests.find_pending(vehicle.id) is None
        assert [r.status for r in engine.scheduler.history(vehicle.id)] == [MarkOutStatus.CANCELLED]


class TestRetrieval:
    def test_start_before_scheduled_time_is_rejected(self, engine, clock):
        vehicle = drive_to(engine, clock, VehicleState.SCHEDULED)
        clock.advance(minutes=4, seconds=59)
        with pytest.raises(RetrievalTooEarlyError):
            engine.lifecycle.start_retrieval(vehicle.id)
        assert engine.lifecycle.get_vehicle(vehicle.id).state == VehicleState.SCHEDULED
        assert busy_valets(engine) == []

    def test_start_from_scheduled_assigns_valet_on_the_way(self, engine, clock):
        vehicle = drive_to(engine, clock, VehicleState.SCHEDULED)
        clock.advance(minutes=5)
        result = engine.lifecycle.start_retrieval(vehicle.id)

        assert result.vehicle.state == VehicleState.ON_THE_WAY
        assert result.vehicle.retrieval_started_at == clock.now
        assert engine.dispatcher.get(result.vehicle.retrieval_valet_id).status == ValetStatus.BUSY
        assert [(a.from_state, a.to_state) for a in result.audits] == [
            (VehicleState.SCHEDULED, VehicleState.RETRIEVAL_ASSIGNED),
            (VehicleState.RETRIEVAL_ASSIGNED, VehicleState.ON_THE_WAY),
        ]
        assert result.notifications[0].kind == NotificationKind.RETRIEVAL_STARTED
        assert engine.scheduler.history(vehicle.id)[-1].status == MarkOutStatus.COMPLETED

    def test_assign_retrieval_is_idempotent(self, engine, clock):
        vehicle = drive_to(engine, clock, VehicleState.RETRIEVAL_ASSIGNED)
        counts = {v.id: v.today_count for v in engine.dispatcher.list_valets()}

        again = engine.lifecycle.assign_retrieval_valet(vehicle.id)

        assert again.vehicle == vehicle
        assert again.intents == []
        assert {v.id: v.today_count for v in engine.dispatcher.list_valets()} == counts

    def test_assign_retrieval_without_valets(self, engine, clock):
        vehicle = drive_to(engine, clock, VehicleState.SCHEDULED)
        for valet_id in ("v1", "v2", "v3"):
            engine.dispatcher.go_off_duty(valet_id)
        with pytest.raises(NoAvailableValetError):
            engine.lifecycle.assign_retrieval_valet(vehicle.id)
        assert engine.lifecycle.get_vehicle(vehicle.id).state == VehicleState.SCHEDULED

    def test_reassign_retrieval_valet(self, engine, clock):
        vehicle = drive_to(engine, clock, VehicleState.RETRIEVAL_ASSIGNED)
        previous = vehicle.retrieval_valet_id

        result = engine.lifecycle.reassign_retrieval_valet(vehicle.id)

        assert result.vehicle.state == VehicleState.RETRIEVAL_ASSIGNED
        assert result.vehicle.retrieval_valet_id != previous
        assert engine.dispatcher.get(previous).status == ValetStatus.FREE
        assert result.audits[0].metadata["previous_valet_id"] == previous

    def test_reassign_requires_assigned_retrieval(self, engine, clock):
        vehicle = drive_to(engine, clock, VehicleState.SCHEDULED)
        with pytest.raises(InvalidStateError):
            engine.lifecycle.reassign_retrieval_valet(vehicle.id)

    def test_failed_reassign_restores_both_valets(self, engine, clock):
        vehicle = drive_to(engine, clock, VehicleState.RETRIEVAL_ASSIGNED)
        before = engine.dispatcher.get(vehicle.retrieval_valet_id)

        with patch.object(engine.lifecycle.vehicles, "update", side_effect=StaleWriteError("raced")):
            with pytest.raises(StaleWriteError):
                engine.lifecycle.reassign_retrieval_valet(vehicle.id)

        after = engine.dispatcher.get(before.id)
        assert replace(after, version=before.version) == before
        assert [v.id for v in busy_valets(engine)] == [before.id]
        assert engine.lifecycle.get_vehicle(vehicle.id) == vehicle

        engine.lifecycle.start_retrieval(vehicle.id)
        delivered = engine.lifecycle.mark_delivered(vehicle.id).vehicle
        assert delivered.state == VehicleState.DELIVERED
        assert busy_valets(engine) == []
        assert total_available(engine) == 4


class TestDeliveryAndClose:
    def test_delivery_frees_valet_and_slot(self, engine, clock):
        vehicle = drive_to(engine, clock, VehicleState.ON_THE_WAY)
        clock.advance(minutes=3)
        result = engine.lifecycle.mark_delivered(vehicle.id, operator_id="exit-1")

        assert result.vehicle.state == VehicleState.DELIVERED
        assert engine.dispatcher.get(vehicle.retrieval_valet_id).status == ValetStatus.FREE
        assert total_available(engine) == 4
        assert result.vehicle.retrieval_duration() == 3
        assert result.notifications[0].kind == NotificationKind.DELIVERY_CONFIRMATION

    def test_failed_delivery_rolls_back_slot_and_state(self, engine, clock):
        vehicle = drive_to(engine, clock, VehicleState.ON_THE_WAY)
        with patch.object(engine.dispatcher, "complete", side_effect=InvalidStateError("valet gone")):
            with pytest.raises(InvalidStateError):
                engine.lifecycle.mark_delivered(vehicle.id)

        assert engine.lifecycle.get_vehicle(vehicle.id).state == VehicleState.ON_THE_WAY
        assert total_available(engine) == 3
        zone = next(z for z in engine.zones.list_zones() if z.zone_code == vehicle.zone)
        assert vehicle.slot in zone.occupied_slots

    def test_close(self, engine, clock):
        vehicle = drive_to(engine, clock, VehicleState.DELIVERED)
        result = engine.lifecycle.close(vehicle.id)
        assert result.vehicle.state == VehicleState.CLOSED
        assert result.vehicle.closed_at == clock.now
        assert not result.vehicle.is_active


class TestLookups:
    def test_find_by_token_plate_and_phone(self, engine):
        vehicle = enter(engine)
        lifecycle = engine.lifecycle
        assert lifecycle.find_vehicle(token=vehicle.token.lower()) == vehicle
        assert lifecycle.find_vehicle(plate="kl07ab1234") == vehicle
        assert lifecycle.find_vehicle(phone="09876543210") == vehicle

    def test_phone_with_two_active_vehicles_is_ambiguous(self, engine):
        enter(engine)
        enter(engine, plate="KL07AB9999")
        with pytest.raises(ValidationError):
            engine.lifecycle.find_vehicle(phone=PHONE)

    def test_nothing_to_search_by(self, engine):
        with pytest.raises(ValidationError):
            engine.lifecycle.find_vehicle()

    def test_unknown_token(self, engine):
        with pytest.raises(NotFoundError):
            engine.lifecycle.find_vehicle(token="VLT-000")

    def test_overdue_listing(self, engine, clock):
        vehicle = drive_to(engine, clock, VehicleState.SCHEDULED)
        clock.advance(minutes=7, seconds=1)
        assert engine.lifecycle.overdue_vehicles() == [vehicle]
        assert engine.lifecycle.is_overdue_for_retrieval(vehicle)

    def test_overdue_uses_configured_threshold(self, engine, clock):
        engine.scheduler.overdue_threshold_minutes = 10
        vehicle = drive_to(engine, clock, VehicleState.SCHEDULED)
        clock.advance(minutes=15)
        assert not engine.lifecycle.is_overdue_for_retrieval(vehicle)
        assert engine.lifecycle.overdue_vehicles() == []

        clock.advance(seconds=1)
        assert engine.lifecycle.is_overdue_for_retrieval(vehicle)
        assert engine.lifecycle.overdue_vehicles() == [vehicle]


class TestVehicleLocks:
    def test_registry_empty_after_closed_visits(self, engine, clock):
        for plate in ("KL07AB0001", "KL07AB0002", "KL07AB0003"):
            drive_to(engine, clock, VehicleState.CLOSED, plate=plate)
        assert len(engine.lifecycle._locks) == 0

    def test_registry_empty_after_failed_operation(self, engine, clock):
        vehicle = enter(engine)
        with pytest.raises(DuplicateEntryError):
            enter(engine)
        with pytest.raises(InvalidTransitionError):
            engine.lifecycle.close(vehicle.id)
        assert len(engine.lifecycle._locks) == 0


class TestEndToEnd:
    def test_single_slot_single_valet_visit(self, container, clock):
        container.zones.create_zone("A", 1)
        add_valet(container, "v1")
        lifecycle = container.lifecycle

        vehicle = lifecycle.create_entry("KL01AB0001", PHONE).vehicle
        assert vehicle.zone == "A"
        assert container.dispatcher.get("v1").status == ValetStatus.BUSY

        with pytest.raises(CapacityError) as exc_info:
            lifecycle.create_entry("KL01AB0002", "9876500000")
        assert isinstance(exc_info.value, NoCapacityError)

        clock.advance(minutes=2)
        lifecycle.mark_parked(vehicle.id)
        assert container.dispatcher.get("v1").status == ValetStatus.FREE

        scheduled = lifecycle.request_mark_out(vehicle.id, 5).vehicle
        assert scheduled.state == VehicleState.SCHEDULED
        assert scheduled.scheduled_at == clock.now + timedelta(minutes=5)

        clock.advance(minutes=4)
        with pytest.raises(RetrievalTooEarlyError):
            lifecycle.start_retrieval(vehicle.id)

        clock.advance(minutes=1)
        assert lifecycle.start_retrieval(vehicle.id).vehicle.state == VehicleState.ON_THE_WAY

        clock.advance(minutes=3)
        delivered = lifecycle.mark_delivered(vehicle.id).vehicle
        assert delivered.total_duration() == 8
        assert container.dispatcher.get("v1").status == ValetStatus.FREE
        assert container.zones.list_zones()[0].available_slots == 1

        assert lifecycle.close(vehicle.id).vehicle.state == VehicleState.CLOSED
        assert container.dispatcher.get("v1").today_count == 2
