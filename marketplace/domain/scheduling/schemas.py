"""Scheduling domain schemas - Pydantic models for validation"""

from datetime import date, datetime
from typing import Optional, Union

from pydantic import BaseModel, field_validator

from .rrule_codec import RuleFields

ITEM_TYPES = ("service", "invoice", "reminder")


class RecurrenceRuleInput(BaseModel):
    """Recurrence fields as sent by the client; omitted fields keep their stored value"""

    freq: Optional[str] = None
    interval: Optional[int] = None
    dtstart: Optional[datetime] = None
    until: Optional[datetime] = None
    count: Optional[int] = None
    byweekday: Optional[list[Union[int, str]]] = None
    bymonthday: Optional[list[int]] = None
    bymonth: Optional[list[int]] = None
    bysetpos: Optional[list[int]] = None
    # Full DTSTART/RRULE text; replaces every other field when present
    rrule: Optional[str] = None

    def to_fields(self, timezone: Optional[str] = None) -> RuleFields:
        return RuleFields(
            freq=self.freq,
            interval=self.interval,
            dtstart=self.dtstart,
            until=self.until,
            count=self.count,
            by_weekday=self.byweekday,
            by_month_day=self.bymonthday,
            by_month=self.bymonth,
            by_set_pos=self.bysetpos,
            timezone=timezone,
            rrule=self.rrule,
        )


class RecurringScheduleCreate(BaseModel):
    """Schema for establishing recurrence on a service request"""

    serviceRequestId: int
    rruleOptions: RecurrenceRuleInput
    timezone: Optional[str] = None
    exdates: list[date] = []
    title: Optional[str] = None
    description: Optional[str] = None


class RecurringScheduleUpdate(BaseModel):
    """Schema for editing a recurrence pattern"""

    rruleOptions: Optional[RecurrenceRuleInput] = None
    timezone: Optional[str] = None
    # None keeps the stored exception dates, a list replaces them
    exdates: Optional[list[date]] = None
    title: Optional[str] = None
    description: Optional[str] = None
    applyToFuture: bool = False


class ExceptionCreate(BaseModel):
    exceptionDate: date


class ScheduleExceptionResponse(BaseModel):
    id: int
    exceptionDate: date
    createdAt: Optional[datetime] = None


class RecurrencePatternResponse(BaseModel):
    """Schema for recurrence pattern response"""

    id: int
    public_id: Optional[str] = None
    serviceRequestId: int
    rrulePattern: str
    timezone: str
    nextRun: Optional[datetime] = None
    state: str
    title: Optional[str] = None
    description: Optional[str] = None
    exceptions: list[date] = []
    createdAt: Optional[datetime] = None
    updatedAt: Optional[datetime] = None


class OccurrenceResponse(BaseModel):
    """One expanded occurrence, with the schedule item already generated for it"""

    start: datetime
    end: Optional[datetime] = None
    localDate: date
    scheduleItemId: Optional[int] = None
    completed: Optional[bool] = None


class MaterializationResponse(BaseModel):
    patternId: int
    created: int
    skipped: int
    createdItemIds: list[int] = []
    nextRun: Optional[datetime] = None


class ScheduleItemCreate(BaseModel):
    """Schema for an ad hoc schedule item"""

    title: str
    description: Optional[str] = None
    itemType: str = "service"
    scheduledStart: datetime
    scheduledEnd: Optional[datetime] = None
    timeSlot: Optional[str] = None
    amount: Optional[float] = None
    serviceRequestId: Optional[int] = None
    providerId: Optional[int] = None

    @field_validator("itemType")
    @classmethod
    def validate_item_type(cls, v):
        if v not in ITEM_TYPES:
            raise ValueError(f"itemType must be one of: {', '.join(ITEM_TYPES)}")
        return v


class ScheduleItemUpdate(BaseModel):
    """Schema for updating a schedule item; only supplied fields change"""

    title: Optional[str] = None
    description: Optional[str] = None
    itemType: Optional[str] = None
    scheduledStart: Optional[datetime] = None
    scheduledEnd: Optional[datetime] = None
    timeSlot: Optional[str] = None
    amount: Optional[float] = None
    completed: Optional[bool] = None

    @field_validator("itemType")
    @classmethod
    def validate_item_type(cls, v):
        if v is not None and v not in ITEM_TYPES:
            raise ValueError(f"itemType must be one of: {', '.join(ITEM_TYPES)}")
        return v


class ScheduleItemResponse(BaseModel):
    """Schema for schedule item response"""

    id: int
    public_id: Optional[str] = None
    userId: int
    providerId: Optional[int] = None
    serviceRequestId: Optional[int] = None
    recurrencePatternId: Optional[int] = None
    title: str
    description: Optional[str] = None
    itemType: str
    scheduledStart: datetime
    scheduledEnd: Optional[datetime] = None
    timeSlot: Optional[str] = None
    amount: Optional[float] = None
    completed: bool
    completedAt: Optional[datetime] = None
    createdAt: Optional[datetime] = None
