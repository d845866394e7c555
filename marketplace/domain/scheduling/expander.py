"""
Occurrence Expander
Turns a recurrence rule plus its exception dates into concrete UTC instants.

Expansion walks the rule from DTSTART with python-dateutil's RFC 5545 rrule.
Exception dates are removed before COUNT is applied, so COUNT bounds the
number of occurrences that actually happen.
"""

from datetime import date, datetime, timedelta
from typing import Iterable, Iterator, Optional, Union

from dateutil import rrule as rrule_module

from ...config import SCHEDULE_WINDOW_DAYS
from ...utils.datetimes import as_utc
from .rrule_codec import RuleOptions, decode, split_weekday

_FREQ_MAP = {
    "YEARLY": rrule_module.YEARLY,
    "MONTHLY": rrule_module.MONTHLY,
    "WEEKLY": rrule_module.WEEKLY,
    "DAILY": rrule_module.DAILY,
}
_WEEKDAYS = (
    rrule_module.MO,
    rrule_module.TU,
    rrule_module.WE,
    rrule_module.TH,
    rrule_module.FR,
    rrule_module.SA,
    rrule_module.SU,
)


def _as_options(rule: Union[str, RuleOptions]) -> RuleOptions:
    return rule if isinstance(rule, RuleOptions) else decode(rule)


def build_rrule(options: RuleOptions) -> rrule_module.rrule:
    """dateutil rrule for ``options`` without COUNT (applied after exceptions)"""
    kwargs = {
        "dtstart": options.dtstart,
        "interval": options.interval,
        "until": options.until,
        "cache": False,
    }
    if options.by_month:
        kwargs["bymonth"] = options.by_month
    if options.by_month_day:
        kwargs["bymonthday"] = options.by_month_day
    if options.by_weekday:
        weekdays = []
        for code in options.by_weekday:
            index, ordinal = split_weekday(code)
            weekdays.append(_WEEKDAYS[index](ordinal) if ordinal else _WEEKDAYS[index])
        kwargs["byweekday"] = weekdays
    if options.by_set_pos:
        kwargs["bysetpos"] = options.by_set_pos
    return rrule_module.rrule(_FREQ_MAP[options.freq], **kwargs)


def iter_occurrences(
    rule: Union[str, RuleOptions], exceptions: Iterable[date] = ()
) -> Iterator[datetime]:
    """Every occurrence of the rule in ascending order, as aware UTC datetimes"""
    options = _as_options(rule)
    excluded = frozenset(exceptions)
    emitted = 0
    previous = None
    for occurrence in build_rrule(options):
        # occurrence is in the rule's zone, so .date() is the local calendar date
        if occurrence.date() in excluded:
            continue
        instant = as_utc(occurrence)
        if instant == previous:
            continue
        previous = instant
        yield instant
        emitted += 1
        if options.count is not None and emitted >= options.count:
            return


def expand(
    rule: Union[str, RuleOptions],
    exceptions: Iterable[date] = (),
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    count: Optional[int] = None,
) -> list[datetime]:
    """
    Occurrences with ``start <= t <= end``, at most ``count`` of them.

    With neither ``end`` nor ``count`` the window closes SCHEDULE_WINDOW_DAYS
    after ``start``. ``start`` defaults to the rule's DTSTART.
    """
    options = _as_options(rule)
    window_start = as_utc(start) if start is not None else as_utc(options.dtstart)
    if end is None and count is None:
        end = window_start + timedelta(days=SCHEDULE_WINDOW_DAYS)
    window_end = as_utc(end) if end is not None else None
    if count is not None and count <= 0:
        return []

    results = []
    for instant in iter_occurrences(options, exceptions):
        if window_end is not None and instant > window_end:
            break
        if instant < window_start:
            continue
        results.append(instant)
        if count is not None and len(results) >= count:
            break
    return results


def next_after(
    rule: Union[str, RuleOptions], exceptions: Iterable[date], instant: datetime
) -> Optional[datetime]:
    """First occurrence strictly after ``instant``, or None when the rule is exhausted"""
    threshold = as_utc(instant)
    for occurrence in iter_occurrences(rule, exceptions):
        if occurrence > threshold:
            return occurrence
    return None


def occurrences_on(
    rule: Union[str, RuleOptions], day: date, exceptions: Iterable[date] = ()
) -> list[datetime]:
    """Occurrences whose local calendar date is ``day``"""
    options = _as_options(rule)
    tzinfo = options.tzinfo
    results = []
    for instant in iter_occurrences(options, exceptions):
        local_day = instant.astimezone(tzinfo).date()
        if local_day > day:
            break
        if local_day == day:
            results.append(instant)
    return results
