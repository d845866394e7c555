"""Scheduling router - FastAPI endpoints for schedule items and recurring schedules"""

import logging
from contextlib import contextmanager
from datetime import date, datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from ...auth import get_current_user
from ...config import SCHEDULE_BATCH_SIZE, SCHEDULE_PREVIEW_COUNT, SCHEDULE_WINDOW_DAYS
from ...database import get_db
from ...models import User
from ...models_schedule import RecurrencePattern, ScheduleException, ScheduleItem
from ...utils.datetimes import from_db
from .exceptions import SchedulingError
from .materializer import MaterializationResult
from .notifier import ScheduleNotifier
from .schemas import (
    ExceptionCreate,
    MaterializationResponse,
    OccurrenceResponse,
    RecurrencePatternResponse,
    RecurringScheduleCreate,
    RecurringScheduleUpdate,
    ScheduleExceptionResponse,
    ScheduleItemCreate,
    ScheduleItemResponse,
    ScheduleItemUpdate,
)
from .service import RecurringScheduleService, ScheduleItemService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/schedule", tags=["Schedule"])


def get_schedule_notifier() -> ScheduleNotifier:
    return ScheduleNotifier()


def get_recurring_service(
    db: Session = Depends(get_db), notifier: ScheduleNotifier = Depends(get_schedule_notifier)
) -> RecurringScheduleService:
    """Dependency injection for RecurringScheduleService"""
    return RecurringScheduleService(db, notifier)


def get_item_service(db: Session = Depends(get_db)) -> ScheduleItemService:
    """Dependency injection for ScheduleItemService"""
    return ScheduleItemService(db)


@contextmanager
def domain_errors():
    """Translate scheduling errors into HTTP responses"""
    try:
        yield
    except SchedulingError as e:
        if e.status_code >= 500:
            logger.error(f"❌ Scheduling operation failed: {e.message}")
            raise HTTPException(status_code=e.status_code, detail="Failed to save schedule changes") from e
        raise HTTPException(status_code=e.status_code, detail=e.message) from e


def pattern_response(pattern: RecurrencePattern) -> RecurrencePatternResponse:
    return RecurrencePatternResponse(
        id=pattern.id,
        public_id=pattern.public_id,
        serviceRequestId=pattern.service_request_id,
        rrulePattern=pattern.rrule_pattern,
        timezone=pattern.timezone,
        nextRun=from_db(pattern.next_run),
        state=pattern.state,
        title=pattern.title,
        description=pattern.description,
        exceptions=[e.exception_date for e in pattern.exceptions],
        createdAt=pattern.created_at,
        updatedAt=pattern.updated_at,
    )


def exception_response(exception: ScheduleException) -> ScheduleExceptionResponse:
    return ScheduleExceptionResponse(
        id=exception.id, exceptionDate=exception.exception_date, createdAt=exception.created_at
    )


def item_response(item: ScheduleItem) -> ScheduleItemResponse:
    return ScheduleItemResponse(
        id=item.id,
        public_id=item.public_id,
        userId=item.user_id,
        providerId=item.provider_id,
        serviceRequestId=item.service_request_id,
        recurrencePatternId=item.recurrence_pattern_id,
        title=item.title,
        description=item.description,
        itemType=item.item_type,
        scheduledStart=from_db(item.scheduled_start),
        scheduledEnd=from_db(item.scheduled_end),
        timeSlot=item.time_slot,
        amount=item.amount,
        completed=item.completed,
        completedAt=from_db(item.completed_at),
        createdAt=item.created_at,
    )


def materialization_response(result: MaterializationResult) -> MaterializationResponse:
    return MaterializationResponse(
        patternId=result.pattern_id,
        created=result.created_count,
        skipped=result.skipped_count,
        createdItemIds=[item.id for item in result.created],
        nextRun=result.next_run,
    )


# ============================================================================
# SCHEDULE ITEMS
# ============================================================================


@router.get("", response_model=list[ScheduleItemResponse])
async def get_schedule_items(
    current_user: User = Depends(get_current_user),
    service: ScheduleItemService = Depends(get_item_service),
):
    """Get every item on the current user's schedule"""
    return [item_response(i) for i in service.get_items(current_user)]


@router.get("/range", response_model=list[ScheduleItemResponse])
async def get_schedule_items_in_range(
    start: datetime = Query(...),
    end: datetime = Query(...),
    current_user: User = Depends(get_current_user),
    service: ScheduleItemService = Depends(get_item_service),
):
    """Get schedule items starting inside [start, end]"""
    with domain_errors():
        items = service.get_items_in_range(current_user, start, end)
    return [item_response(i) for i in items]


# ============================================================================
# RECURRING SCHEDULES
# ============================================================================


@router.get("/recurring", response_model=list[RecurrencePatternResponse])
async def get_recurring_schedules(
    current_user: User = Depends(get_current_user),
    service: RecurringScheduleService = Depends(get_recurring_service),
):
    """List recurrence patterns visible to the current user"""
    return [pattern_response(p) for p in service.list_patterns(current_user)]


@router.post("/recurring", response_model=RecurrencePatternResponse, status_code=201)
async def create_recurring_schedule(
    data: RecurringScheduleCreate,
    current_user: User = Depends(get_current_user),
    service: RecurringScheduleService = Depends(get_recurring_service),
):
    """Establish recurrence on a service request and generate the first occurrences"""
    with domain_errors():
        pattern = service.create_pattern(current_user, data)
    return pattern_response(pattern)


@router.get("/recurring/{pattern_id}", response_model=RecurrencePatternResponse)
async def get_recurring_schedule(
    pattern_id: int,
    current_user: User = Depends(get_current_user),
    service: RecurringScheduleService = Depends(get_recurring_service),
):
    with domain_errors():
        pattern = service.get_pattern(current_user, pattern_id)
    return pattern_response(pattern)


@router.put("/recurring/{pattern_id}", response_model=RecurrencePatternResponse)
async def update_recurring_schedule(
    pattern_id: int,
    data: RecurringScheduleUpdate,
    current_user: User = Depends(get_current_user),
    service: RecurringScheduleService = Depends(get_recurring_service),
):
    """Edit a pattern; applyToFuture regenerates upcoming items"""
    with domain_errors():
        pattern = service.update_pattern(current_user, pattern_id, data)
    return pattern_response(pattern)


@router.delete("/recurring/{pattern_id}")
async def delete_recurring_schedule(
    pattern_id: int,
    deleteFutureItems: bool = Query(False),
    current_user: User = Depends(get_current_user),
    service: RecurringScheduleService = Depends(get_recurring_service),
):
    with domain_errors():
        return service.delete_pattern(current_user, pattern_id, delete_future_items=deleteFutureItems)


@router.post("/recurring/{pattern_id}/generate", response_model=MaterializationResponse)
async def generate_recurring_items(
    pattern_id: int,
    batchSize: int = Query(SCHEDULE_BATCH_SIZE, ge=1, le=100),
    current_user: User = Depends(get_current_user),
    service: RecurringScheduleService = Depends(get_recurring_service),
):
    """Generate the next batch of schedule items now"""
    with domain_errors():
        result = service.materialize(current_user, pattern_id, batch_size=batchSize)
    return materialization_response(result)


@router.get("/recurring/{pattern_id}/occurrences", response_model=list[OccurrenceResponse])
async def get_upcoming_occurrences(
    pattern_id: int,
    start: Optional[datetime] = Query(None),
    count: int = Query(SCHEDULE_PREVIEW_COUNT, ge=1, le=366),
    days: int = Query(SCHEDULE_WINDOW_DAYS, ge=1, le=3660),
    current_user: User = Depends(get_current_user),
    service: RecurringScheduleService = Depends(get_recurring_service),
):
    """Preview upcoming occurrences without generating anything"""
    with domain_errors():
        return service.get_upcoming_occurrences(
            current_user, pattern_id, start=start, count=count, days=days
        )


@router.get("/recurring/{pattern_id}/exceptions", response_model=list[ScheduleExceptionResponse])
async def get_recurring_exceptions(
    pattern_id: int,
    current_user: User = Depends(get_current_user),
    service: RecurringScheduleService = Depends(get_recurring_service),
):
    with domain_errors():
        exceptions = service.list_exceptions(current_user, pattern_id)
    return [exception_response(e) for e in exceptions]


@router.post(
    "/recurring/{pattern_id}/exceptions",
    response_model=ScheduleExceptionResponse,
    status_code=201,
)
async def add_recurring_exception(
    pattern_id: int,
    data: ExceptionCreate,
    current_user: User = Depends(get_current_user),
    service: RecurringScheduleService = Depends(get_recurring_service),
):
    """Skip a date; any upcoming item already generated on it is removed"""
    with domain_errors():
        exception = service.add_exception(current_user, pattern_id, data.exceptionDate)
    return exception_response(exception)


@router.delete("/recurring/{pattern_id}/exceptions/{exception_id}")
async def remove_recurring_exception(
    pattern_id: int,
    exception_id: int,
    current_user: User = Depends(get_current_user),
    service: RecurringScheduleService = Depends(get_recurring_service),
):
    with domain_errors():
        return service.remove_exception(current_user, pattern_id, exception_id=exception_id)


@router.delete("/recurring/{pattern_id}/exceptions")
async def remove_recurring_exception_by_date(
    pattern_id: int,
    exceptionDate: date = Query(...),
    current_user: User = Depends(get_current_user),
    service: RecurringScheduleService = Depends(get_recurring_service),
):
    """Stop skipping a date, looked up by the date itself"""
    with domain_errors():
        return service.remove_exception(current_user, pattern_id, exception_date=exceptionDate)


# ============================================================================
# SINGLE SCHEDULE ITEM
# ============================================================================


@router.post("", response_model=ScheduleItemResponse, status_code=201)
async def create_schedule_item(
    data: ScheduleItemCreate,
    current_user: User = Depends(get_current_user),
    service: ScheduleItemService = Depends(get_item_service),
):
    """Create an ad hoc schedule item"""
    with domain_errors():
        item = service.create_item(current_user, data)
    return item_response(item)


@router.get("/{item_id}", response_model=ScheduleItemResponse)
async def get_schedule_item(
    item_id: int,
    current_user: User = Depends(get_current_user),
    service: ScheduleItemService = Depends(get_item_service),
):
    with domain_errors():
        item = service.get_item(current_user, item_id)
    return item_response(item)


@router.put("/{item_id}", response_model=ScheduleItemResponse)
async def update_schedule_item(
    item_id: int,
    data: ScheduleItemUpdate,
    current_user: User = Depends(get_current_user),
    service: ScheduleItemService = Depends(get_item_service),
):
    with domain_errors():
        item = service.update_item(current_user, item_id, data)
    return item_response(item)


@router.post("/{item_id}/complete", response_model=ScheduleItemResponse)
async def toggle_schedule_item_complete(
    item_id: int,
    current_user: User = Depends(get_current_user),
    service: ScheduleItemService = Depends(get_item_service),
):
    """Toggle the completion flag of an item"""
    with domain_errors():
        item = service.toggle_complete(current_user, item_id)
    return item_response(item)


@router.delete("/{item_id}")
async def delete_schedule_item(
    item_id: int,
    current_user: User = Depends(get_current_user),
    service: ScheduleItemService = Depends(get_item_service),
):
    with domain_errors():
        return service.delete_item(current_user, item_id)
