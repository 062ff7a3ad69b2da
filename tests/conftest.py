# tests/conftest.py
"""Shared fixtures: a controllable clock and an in-memory valet engine."""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import pytest
from unittest.mock import MagicMock
from datetime import datetime, timedelta

from app.container import build_container
from app.domain.entities import Valet


class FakeClock:
    def __init__(self, start=datetime(2026, 3, 2, 10, 0, 0)):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, **delta):
        self.now += timedelta(**delta)


def add_valet(container, valet_id, name=None, **fields):
    """Insert a valet with a fixed id so tie-break order is predictable."""
    return container.dispatcher.valets.add(
        Valet(id=valet_id, name=name or valet_id.upper(), phone="9800000000", **fields)
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def container(clock):
    """Empty engine: no zones, no valets. Sinks are mocks."""
    return build_container("memory", notifier=MagicMock(), auditor=MagicMock(), clock=clock)


@pytest.fixture
def engine(container):
    """Zone A (2 slots, preferred), zone B (2 slots), valets v1..v3."""
    container.zones.create_zone("A", 2, priority=1)
    container.zones.create_zone("B", 2, priority=2)
    for valet_id in ("v1", "v2", "v3"):
        add_valet(container, valet_id)
    return container
