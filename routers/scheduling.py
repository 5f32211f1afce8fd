"""
Scheduling Router
Version: 1.0

Thin HTTP layer over the scheduling services. Error mapping lives in main.py.
"""
from datetime import date
from typing import List, Optional

import structlog
from fastapi import APIRouter, Depends, Query, Request, status

from schemas import (
    AssignmentReport,
    AssignmentSuggestion,
    Booking,
    BookingFilter,
    BookingSource,
    BookingStatus,
    Employee,
    GuideAssignmentRequest,
    GuideNotesRequest,
    HealthReport,
    SyncReport,
)
from services.wiring import SchedulingServices

router = APIRouter()
logger = structlog.get_logger("scheduling")


def get_services(request: Request) -> SchedulingServices:
    # Built once in main.py lifespan
    return request.app.state.services


# === BOOKINGS ===

@router.get("/bookings", response_model=List[Booking])
async def list_bookings(
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    booking_status: Optional[List[BookingStatus]] = Query(None, alias="status"),
    tour_type: Optional[List[str]] = Query(None),
    guide_id: Optional[List[str]] = Query(None),
    search: Optional[str] = None,
    source: Optional[List[BookingSource]] = Query(None),
    services: SchedulingServices = Depends(get_services),
):
    """Upcoming bookings from both sources, deduplicated and time-ordered."""
    booking_filter = BookingFilter(
        start_date=start_date,
        end_date=end_date,
        statuses=set(booking_status) if booking_status else None,
        tour_types=set(tour_type) if tour_type else None,
        guide_ids=set(guide_id) if guide_id else None,
        search=search,
    )
    if source:
        booking_filter.sources = set(source)
    return await services.aggregator.get_bookings(booking_filter)


@router.put("/bookings/{booking_ref}/guide", response_model=Booking)
async def assign_guide(
    booking_ref: str,
    body: GuideAssignmentRequest,
    services: SchedulingServices = Depends(get_services),
):
    logger.info("Manual assignment", booking_ref=booking_ref, guide_id=body.guide_id)
    return await services.assignments.assign_guide(booking_ref, body.guide_id, body.notes)


@router.delete("/bookings/{booking_ref}/guide")
async def remove_guide(
    booking_ref: str,
    services: SchedulingServices = Depends(get_services),
):
    removed = await services.assignments.remove_guide(booking_ref)
    logger.info("Manual unassignment", booking_ref=booking_ref, guide_id=removed)
    return {"booking_ref": booking_ref, "removed_guide_id": removed}


@router.patch("/bookings/{booking_ref}/guide/notes", status_code=status.HTTP_204_NO_CONTENT)
async def update_guide_notes(
    booking_ref: str,
    body: GuideNotesRequest,
    services: SchedulingServices = Depends(get_services),
):
    await services.assignments.update_guide_notes(booking_ref, body.notes)


# === GUIDES ===

@router.get("/guides/available", response_model=List[Employee])
async def available_guides(
    tour_type: str,
    slot_date: date = Query(..., alias="date"),
    time_slot: str = Query(...),
    services: SchedulingServices = Depends(get_services),
):
    return await services.resolver.available_guides(tour_type, slot_date, time_slot)


@router.get("/guides/{employee_id}/schedule", response_model=List[Booking])
async def guide_schedule(
    employee_id: str,
    start: date,
    end: date,
    services: SchedulingServices = Depends(get_services),
):
    return await services.assignments.guide_schedule(employee_id, start, end)


# === AUTO ASSIGNMENT ===

@router.post("/assignments/auto", response_model=AssignmentReport)
async def run_auto_assign(services: SchedulingServices = Depends(get_services)):
    report = await services.engine.auto_assign()
    logger.info(
        "Auto-assign run via API",
        assigned=report.assigned,
        no_candidates=report.no_candidates,
        failed=report.failed,
    )
    return report


@router.get("/assignments/suggestions", response_model=List[AssignmentSuggestion])
async def assignment_suggestions(services: SchedulingServices = Depends(get_services)):
    return await services.engine.suggestions()


# === CACHE ===

@router.post("/cache/sync", response_model=SyncReport)
async def sync_cache(services: SchedulingServices = Depends(get_services)):
    return await services.cache_sync.sync_all()


@router.get("/cache/health", response_model=HealthReport)
async def cache_health(services: SchedulingServices = Depends(get_services)):
    return await services.cache_sync.health()


@router.delete("/cache")
async def clear_cache(services: SchedulingServices = Depends(get_services)):
    deleted = await services.cache_sync.clear()
    logger.warning("Booking cache cleared via API", deleted=deleted)
    return {"deleted": deleted}
