# app/routers/stats.py
"""Operator dashboard and daily entry statistics."""

from fastapi import APIRouter, Depends
from datetime import date
from typing import Optional

from app.container import Container, get_container

router = APIRouter()


@router.get("/stats/dashboard", summary="Live dashboard counters")
def dashboard(container: Container = Depends(get_container)):
    return container.dashboard.dashboard()


@router.get("/stats/entries", summary="Entries for a day with peak hours")
def entry_stats(day: Optional[date] = None, container: Container = Depends(get_container)):
    """
    Returns total entries, how many are still being parked vs already parked,
    and the three busiest arrival hours. Defaults to today.
    """
    return container.dashboard.entry_stats(day)


@router.get("/stats/zones", summary="Occupancy rate per zone")
def zone_occupancy(container: Container = Depends(get_container)):
    return container.dashboard.zone_occupancy()
