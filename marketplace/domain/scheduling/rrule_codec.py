"""
Recurrence Rule Codec
Converts between the canonical rule text stored on a pattern and a typed
RuleOptions value, and merges partial updates onto a stored rule.

Canonical text is two lines:

    DTSTART;TZID=America/New_York:20250106T090000
    RRULE:FREQ=WEEKLY;INTERVAL=1;BYDAY=MO;COUNT=4

UTC rules are written as DTSTART:20250106T090000Z. RRULE parts always appear
in the order FREQ, INTERVAL, BYMONTH, BYMONTHDAY, BYDAY, BYSETPOS and then
COUNT or UNTIL. UNTIL is always UTC.
"""

import re
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Sequence, Union

from dateutil import tz
from dateutil.rrule import rrulestr

from ...utils.datetimes import UTC, as_utc
from .exceptions import InvalidRuleError

FREQUENCIES = ("YEARLY", "MONTHLY", "WEEKLY", "DAILY")
WEEKDAY_CODES = ("MO", "TU", "WE", "TH", "FR", "SA", "SU")
WEEKDAY_NAMES = {
    "MONDAY": "MO",
    "TUESDAY": "TU",
    "WEDNESDAY": "WE",
    "THURSDAY": "TH",
    "FRIDAY": "FR",
    "SATURDAY": "SA",
    "SUNDAY": "SU",
}

_DATETIME_FORMAT = "%Y%m%dT%H%M%S"
_WEEKDAY_RE = re.compile(r"^([+-]?\d{1,2})?([A-Z]{2})$")
_RULE_KEYS = ("FREQ", "INTERVAL", "BYMONTH", "BYMONTHDAY", "BYDAY", "BYSETPOS", "COUNT", "UNTIL")
# February counts its leap day
_MONTH_LENGTHS = {
    1: 31, 2: 29, 3: 31, 4: 30, 5: 31, 6: 30, 7: 31, 8: 31, 9: 30, 10: 31, 11: 30, 12: 31
}


@dataclass(frozen=True)
class RuleOptions:
    """Decoded recurrence rule. ``dtstart`` is aware, ``until`` is aware UTC."""

    freq: str
    dtstart: datetime
    tzid: str = "UTC"
    interval: int = 1
    by_month: tuple = ()
    by_month_day: tuple = ()
    by_weekday: tuple = ()
    by_set_pos: tuple = ()
    count: Optional[int] = None
    until: Optional[datetime] = None

    @property
    def tzinfo(self):
        return resolve_timezone(self.tzid)

    @property
    def is_bounded(self) -> bool:
        return self.count is not None or self.until is not None


@dataclass
class RuleFields:
    """Partial rule input. ``None`` keeps the stored value, an empty list clears it."""

    freq: Optional[str] = None
    interval: Optional[int] = None
    dtstart: Optional[datetime] = None
    until: Optional[datetime] = None
    count: Optional[int] = None
    by_weekday: Optional[Sequence[Union[str, int]]] = None
    by_month_day: Optional[Sequence[int]] = None
    by_month: Optional[Sequence[int]] = None
    by_set_pos: Optional[Sequence[int]] = None
    timezone: Optional[str] = None
    rrule: Optional[str] = None


def resolve_timezone(tzid: str):
    if not tzid or not tzid.strip():
        raise InvalidRuleError("Timezone must not be empty")
    if tzid.strip().upper() == "UTC":
        return UTC
    zone = tz.gettz(tzid.strip())
    if zone is None:
        raise InvalidRuleError(f"Unknown timezone: {tzid}")
    return zone


def canonical_tzid(tzid: str) -> str:
    return "UTC" if resolve_timezone(tzid) is UTC else tzid.strip()


# ============================================================================
# FIELD NORMALIZATION
# ============================================================================


def _normalize_freq(value) -> str:
    if isinstance(value, str) and value.strip().upper() in FREQUENCIES:
        return value.strip().upper()
    raise InvalidRuleError(f"Unrecognized frequency: {value!r}")


def _positive_int(value, name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise InvalidRuleError(f"{name} must be a positive integer, got {value!r}")
    return value


def _int_list(values, name: str, low: int, high: int, allow_negative: bool) -> tuple:
    result = set()
    for value in values:
        if isinstance(value, bool) or not isinstance(value, int):
            raise InvalidRuleError(f"{name} values must be integers, got {value!r}")
        magnitude = abs(value) if allow_negative else value
        if value == 0 or not low <= magnitude <= high:
            raise InvalidRuleError(f"{name} value out of range: {value}")
        result.add(value)
    return tuple(sorted(result))


def _normalize_weekday(value) -> str:
    if isinstance(value, bool):
        raise InvalidRuleError(f"Invalid weekday: {value!r}")
    if isinstance(value, int):
        if 0 <= value <= 6:
            return WEEKDAY_CODES[value]
        raise InvalidRuleError(f"Weekday index out of range: {value}")
    if not isinstance(value, str):
        raise InvalidRuleError(f"Invalid weekday: {value!r}")

    text = value.strip().upper()
    text = WEEKDAY_NAMES.get(text, text)
    match = _WEEKDAY_RE.match(text)
    if not match or match.group(2) not in WEEKDAY_CODES:
        raise InvalidRuleError(f"Invalid weekday: {value!r}")
    code = match.group(2)
    if match.group(1):
        ordinal = int(match.group(1))
        if ordinal == 0 or abs(ordinal) > 53:
            raise InvalidRuleError(f"Weekday ordinal out of range: {value!r}")
        return f"{ordinal}{code}"
    return code


def split_weekday(code: str) -> tuple[int, Optional[int]]:
    """('1MO') -> (0, 1); ('FR') -> (4, None)"""
    ordinal = int(code[:-2]) if len(code) > 2 else None
    return WEEKDAY_CODES.index(code[-2:]), ordinal


def _weekday_list(values) -> tuple:
    codes = {_normalize_weekday(v) for v in values}
    return tuple(sorted(codes, key=lambda c: (split_weekday(c)[0], split_weekday(c)[1] or 0)))


def _localize(value: datetime, tzinfo) -> datetime:
    """Attach ``tzinfo`` to naive wall-clock input, convert aware input"""
    value = value.replace(microsecond=0)
    if value.tzinfo is None:
        return value.replace(tzinfo=tzinfo)
    return value.astimezone(tzinfo)


def _validate(options: RuleOptions) -> RuleOptions:
    if options.count is not None and options.until is not None:
        raise InvalidRuleError("A rule may end by COUNT or by UNTIL, not both")
    if options.until is not None and options.until < options.dtstart:
        raise InvalidRuleError("UNTIL must not be earlier than the start date")
    if options.freq in ("DAILY", "WEEKLY") and any(
        split_weekday(code)[1] is not None for code in options.by_weekday
    ):
        raise InvalidRuleError("Ordinal weekdays (e.g. 1MO) need a MONTHLY or YEARLY frequency")
    if options.by_set_pos and not (options.by_weekday or options.by_month_day or options.by_month):
        raise InvalidRuleError("BYSETPOS needs another BY* constraint to select from")

    # rules that can never match would be scanned up to year 9999
    if options.freq == "MONTHLY" or options.by_month:
        for code in options.by_weekday:
            ordinal = split_weekday(code)[1]
            if ordinal is not None and abs(ordinal) > 5:
                raise InvalidRuleError(f"A month has at most 5 of each weekday, got {code}")
    longest = max(_MONTH_LENGTHS[m] for m in (options.by_month or _MONTH_LENGTHS))
    for day in options.by_month_day:
        if abs(day) > longest:
            raise InvalidRuleError(f"BYMONTHDAY {day} does not exist in the selected months")
    return options


# ============================================================================
# ENCODE / DECODE
# ============================================================================


def encode(options: RuleOptions) -> str:
    if options.tzid == "UTC":
        dtstart_line = f"DTSTART:{as_utc(options.dtstart).strftime(_DATETIME_FORMAT)}Z"
    else:
        local_start = options.dtstart.astimezone(options.tzinfo)
        dtstart_line = f"DTSTART;TZID={options.tzid}:{local_start.strftime(_DATETIME_FORMAT)}"

    parts = [f"FREQ={options.freq}", f"INTERVAL={options.interval}"]
    if options.by_month:
        parts.append("BYMONTH=" + ",".join(str(v) for v in options.by_month))
    if options.by_month_day:
        parts.append("BYMONTHDAY=" + ",".join(str(v) for v in options.by_month_day))
    if options.by_weekday:
        parts.append("BYDAY=" + ",".join(options.by_weekday))
    if options.by_set_pos:
        parts.append("BYSETPOS=" + ",".join(str(v) for v in options.by_set_pos))
    if options.count is not None:
        parts.append(f"COUNT={options.count}")
    elif options.until is not None:
        parts.append(f"UNTIL={as_utc(options.until).strftime(_DATETIME_FORMAT)}Z")

    return f"{dtstart_line}\nRRULE:{';'.join(parts)}"


def _parse_datetime(value: str, tzinfo) -> datetime:
    text = value.strip().upper()
    is_utc = text.endswith("Z")
    raw = text[:-1] if is_utc else text
    for fmt in (_DATETIME_FORMAT, "%Y%m%d"):
        try:
            parsed = datetime.strptime(raw, fmt)
            break
        except ValueError:
            continue
    else:
        raise InvalidRuleError(f"Invalid date-time value: {value!r}")
    return parsed.replace(tzinfo=UTC if is_utc else tzinfo)


def _parse_int_csv(value: str, key: str) -> list:
    try:
        return [int(v) for v in value.split(",") if v.strip()]
    except ValueError:
        raise InvalidRuleError(f"{key} must be a comma-separated list of integers") from None


def decode(text: str) -> RuleOptions:
    """Parse canonical (or compatible RFC 5545) rule text into RuleOptions"""
    if not text or not text.strip():
        raise InvalidRuleError("Recurrence rule is empty")

    dtstart_value = None
    tzid = "UTC"
    rule_parts = None

    for line in text.strip().splitlines():
        line = line.strip()
        if not line:
            continue
        name, sep, value = line.partition(":")
        if not sep:
            raise InvalidRuleError(f"Malformed rule line: {line!r}")
        head, *params = name.split(";")
        head = head.strip().upper()

        if head == "DTSTART":
            for param in params:
                key, _, param_value = param.partition("=")
                if key.strip().upper() == "TZID":
                    tzid = param_value.strip()
            dtstart_value = value
        elif head == "RRULE":
            rule_parts = {}
            for part in value.split(";"):
                if not part.strip():
                    continue
                key, eq, part_value = part.partition("=")
                key = key.strip().upper()
                if not eq or key not in _RULE_KEYS:
                    raise InvalidRuleError(f"Unsupported RRULE part: {part!r}")
                rule_parts[key] = part_value.strip()
        else:
            raise InvalidRuleError(f"Unsupported rule property: {head}")

    if dtstart_value is None:
        raise InvalidRuleError("Recurrence rule is missing DTSTART")
    if rule_parts is None:
        raise InvalidRuleError("Recurrence rule is missing RRULE")
    if "FREQ" not in rule_parts:
        raise InvalidRuleError("RRULE is missing FREQ")

    if dtstart_value.strip().upper().endswith("Z"):
        tzid = "UTC"
    tzid = canonical_tzid(tzid)
    tzinfo = resolve_timezone(tzid)
    dtstart = _parse_datetime(dtstart_value, tzinfo)

    try:
        interval = int(rule_parts.get("INTERVAL", "1"))
        count = int(rule_parts["COUNT"]) if "COUNT" in rule_parts else None
    except ValueError:
        raise InvalidRuleError("INTERVAL and COUNT must be integers") from None

    until = None
    if "UNTIL" in rule_parts:
        until = as_utc(_parse_datetime(rule_parts["UNTIL"], tzinfo))

    options = RuleOptions(
        freq=_normalize_freq(rule_parts["FREQ"]),
        dtstart=dtstart,
        tzid=tzid,
        interval=_positive_int(interval, "INTERVAL"),
        by_month=_int_list(
            _parse_int_csv(rule_parts.get("BYMONTH", ""), "BYMONTH"), "BYMONTH", 1, 12, False
        ),
        by_month_day=_int_list(
            _parse_int_csv(rule_parts.get("BYMONTHDAY", ""), "BYMONTHDAY"),
            "BYMONTHDAY",
            1,
            31,
            True,
        ),
        by_weekday=_weekday_list(v for v in rule_parts.get("BYDAY", "").split(",") if v.strip()),
        by_set_pos=_int_list(
            _parse_int_csv(rule_parts.get("BYSETPOS", ""), "BYSETPOS"), "BYSETPOS", 1, 366, True
        ),
        count=_positive_int(count, "COUNT") if count is not None else None,
        until=until,
    )
    _validate(options)

    try:
        rrulestr(text.strip())
    except (ValueError, TypeError) as e:
        raise InvalidRuleError(f"Recurrence rule is not valid RFC 5545: {e}") from e
    return options


# ============================================================================
# NORMALIZE
# ============================================================================


def normalize(
    existing: Optional[str], fields: RuleFields, default_timezone: Optional[str] = None
) -> str:
    """
    Merge ``fields`` onto the ``existing`` rule text and return canonical text.

    A raw ``fields.rrule`` replaces everything else. An explicit COUNT wins
    over an explicit UNTIL given in the same update; supplying either drops
    the stored termination. When the timezone changes without a new start,
    the start keeps its local wall-clock time in the new zone.
    """
    if fields.rrule:
        return encode(decode(fields.rrule))

    base = decode(existing) if existing else None

    if fields.timezone is not None:
        tzid = canonical_tzid(fields.timezone)
    elif base is not None:
        tzid = base.tzid
    else:
        tzid = canonical_tzid(default_timezone or "UTC")
    tzinfo = resolve_timezone(tzid)

    if fields.dtstart is not None:
        dtstart = _localize(fields.dtstart, tzinfo)
    elif base is not None:
        dtstart = base.dtstart
        if tzid != base.tzid:
            dtstart = dtstart.astimezone(base.tzinfo).replace(tzinfo=tzinfo)
    else:
        raise InvalidRuleError("A start date (dtstart) is required")

    freq = fields.freq if fields.freq is not None else (base.freq if base else None)
    if freq is None:
        raise InvalidRuleError("Frequency is required")

    interval = fields.interval if fields.interval is not None else (base.interval if base else 1)

    def pick(new, old_attr):
        return new if new is not None else (getattr(base, old_attr) if base else ())

    if fields.count is not None:
        count, until = _positive_int(fields.count, "COUNT"), None
    elif fields.until is not None:
        count, until = None, as_utc(_localize(fields.until, tzinfo))
    elif base is not None:
        count, until = base.count, base.until
    else:
        count, until = None, None

    options = RuleOptions(
        freq=_normalize_freq(freq),
        dtstart=dtstart,
        tzid=tzid,
        interval=_positive_int(interval, "INTERVAL"),
        by_month=_int_list(pick(fields.by_month, "by_month"), "BYMONTH", 1, 12, False),
        by_month_day=_int_list(
            pick(fields.by_month_day, "by_month_day"), "BYMONTHDAY", 1, 31, True
        ),
        by_weekday=_weekday_list(pick(fields.by_weekday, "by_weekday")),
        by_set_pos=_int_list(pick(fields.by_set_pos, "by_set_pos"), "BYSETPOS", 1, 366, True),
        count=count,
        until=until,
    )
    return encode(_validate(options))
