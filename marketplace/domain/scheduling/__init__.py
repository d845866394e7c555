"""Scheduling domain - Recurring schedules and the schedule items they generate

Layout:
- rrule_codec.py   canonical DTSTART/RRULE text, validation and merging
- expander.py      rule + exception dates -> UTC occurrence instants
- repository.py    database operations for patterns, exceptions and items
- materializer.py  idempotent generation of schedule items
- notifier.py      notification events for new items and failure alerts
- service.py       pattern lifecycle, schedule items, due-pattern processing
- router.py        /schedule endpoints
"""

from .router import router

__all__ = ["router"]
