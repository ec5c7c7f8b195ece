"""
Schedule Calculator: recurrence rule → next occurrence date.

Pure functions only: no database access, no clock reads. The same inputs
always produce the same date, which is what lets the occurrence generator
replay a sweep safely.

A rule is a frequency (daily, weekly, monthly, quarterly, yearly, custom),
an optional day rule, a start date and an optional end date. Period ``k``
starts at ``start_date + k * step``; the day rule then picks one date inside
that period. Stepping from the start date (rather than from the previous
result) keeps month-end anchors from drifting: Jan 31 → Feb 29 → Mar 31.

Supported day rules (case-insensitive):
    None / ""                      anchor on the start date's day
    "15", "15th", "1st", "day 15"  day of month, clamped to the month end
    "last day"                     last calendar day of the month
    "last business day"            last Monday–Friday of the month
    "first business day"           first Monday–Friday of the month
    "monday" … "sunday", "mon" …   weekday (weekly rules only)
    "business days", "weekdays"    skip Saturday/Sunday (daily rules only)

``custom`` rules carry an opaque expression that is handed to a pluggable
evaluator; the calculator only enforces the date bounds and monotonicity.

Usage:
    rule = ScheduleRule.from_entity(task)
    nxt = next_occurrence(rule, after=date(2024, 1, 31))
"""

from __future__ import annotations

import calendar
import re
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Callable, Iterator

from dateutil.relativedelta import relativedelta

from app.core.exceptions import InvalidScheduleError

# ── Constants ────────────────────────────────────────────────────────────────

DEFAULT_SLA_DAYS = 7

FREQUENCY_STEPS = {
    "daily": relativedelta(days=1),
    "weekly": relativedelta(weeks=1),
    "monthly": relativedelta(months=1),
    "quarterly": relativedelta(months=3),
    "yearly": relativedelta(years=1),
}
FREQUENCIES = set(FREQUENCY_STEPS) | {"custom"}

WEEKDAYS = {
    "monday": 0, "mon": 0,
    "tuesday": 1, "tue": 1, "tues": 1,
    "wednesday": 2, "wed": 2,
    "thursday": 3, "thu": 3, "thurs": 3,
    "friday": 4, "fri": 4,
    "saturday": 5, "sat": 5,
    "sunday": 6, "sun": 6,
}

_DAY_OF_MONTH_RE = re.compile(r"^(?:day\s+)?(\d{1,2})(?:st|nd|rd|th)?(?:\s+of\s+(?:the\s+)?month)?$")

_PHRASES = {
    "last day": "last_day",
    "last day of month": "last_day",
    "last day of the month": "last_day",
    "month end": "last_day",
    "last business day": "last_business_day",
    "last working day": "last_business_day",
    "first business day": "first_business_day",
    "first working day": "first_business_day",
    "business days": "business_days",
    "business day": "business_days",
    "weekdays": "business_days",
}

# Which parsed day-rule kinds make sense for each frequency
_ALLOWED_KINDS = {
    "daily": {"anchor", "business_days"},
    "weekly": {"anchor", "weekday"},
    "monthly": {"anchor", "day", "last_day", "last_business_day", "first_business_day"},
    "quarterly": {"anchor", "day", "last_day", "last_business_day", "first_business_day"},
    "yearly": {"anchor", "day", "last_day", "last_business_day", "first_business_day"},
}

# Upper bound on periods scanned past the estimated starting period
_MAX_PERIOD_SCAN = 1000

CustomEvaluator = Callable[[str, date], "date | None"]
_custom_evaluator: CustomEvaluator | None = None


def register_custom_evaluator(fn: CustomEvaluator | None) -> CustomEvaluator | None:
    """Install the process-wide evaluator for ``custom`` rules.

    The evaluator is called as ``fn(day_rule, after)`` and must return the
    first date strictly after ``after``, or None when the rule is exhausted.
    Usable as a decorator. Passing None uninstalls it.
    """
    global _custom_evaluator
    _custom_evaluator = fn
    return fn


# ═══════════════════════════════════════════════════════════════════════════
#  Rule value object
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class ScheduleRule:
    task_type: str
    frequency: str | None
    day_rule: str | None = None
    start_date: date | None = None
    end_date: date | None = None

    @classmethod
    def recurring(cls, frequency, day_rule=None, start_date=None, end_date=None) -> ScheduleRule:
        return cls("recurring", frequency, day_rule, start_date, end_date)

    @classmethod
    def from_entity(cls, entity) -> ScheduleRule:
        """Build a rule from anything carrying ``task_type`` + ``schedule_*`` columns."""
        return cls(
            task_type=entity.task_type,
            frequency=entity.schedule_frequency,
            day_rule=entity.schedule_day_rule,
            start_date=entity.schedule_start_date,
            end_date=entity.schedule_end_date,
        )

    def validate(self) -> tuple[str, int | None]:
        """Raise InvalidScheduleError unless the rule is usable; return the parsed day rule."""
        if self.task_type != "recurring":
            raise InvalidScheduleError("Only recurring rules produce occurrences",
                                       details={"task_type": self.task_type})
        if not self.frequency:
            raise InvalidScheduleError("Recurring rule requires a frequency")
        if self.frequency not in FREQUENCIES:
            raise InvalidScheduleError(f"Unknown frequency '{self.frequency}'",
                                       details={"allowed": sorted(FREQUENCIES)})
        if self.start_date is None:
            raise InvalidScheduleError("Recurring rule requires a start date")
        if self.end_date is not None and self.start_date > self.end_date:
            raise InvalidScheduleError(
                f"Start date {self.start_date} is after end date {self.end_date}",
                details={"start_date": self.start_date.isoformat(), "end_date": self.end_date.isoformat()},
            )
        if self.frequency == "custom":
            if not (self.day_rule or "").strip():
                raise InvalidScheduleError("Custom rule requires an expression in day_rule")
            return ("custom", None)

        parsed = parse_day_rule(self.day_rule)
        if parsed[0] not in _ALLOWED_KINDS[self.frequency]:
            raise InvalidScheduleError(
                f"Day rule '{self.day_rule}' is not valid for {self.frequency} schedules",
            )
        return parsed


def parse_day_rule(day_rule: str | None) -> tuple[str, int | None]:
    """Parse a day-rule string into ``(kind, value)``."""
    if day_rule is None:
        return ("anchor", None)
    text = " ".join(str(day_rule).strip().lower().split())
    if not text:
        return ("anchor", None)
    if text in _PHRASES:
        return (_PHRASES[text], None)
    if text in WEEKDAYS:
        return ("weekday", WEEKDAYS[text])
    m = _DAY_OF_MONTH_RE.match(text)
    if m:
        day = int(m.group(1))
        if 1 <= day <= 31:
            return ("day", day)
    raise InvalidScheduleError(f"Unrecognised day rule '{day_rule}'", details={"day_rule": day_rule})


# ═══════════════════════════════════════════════════════════════════════════
#  Calendar helpers
# ═══════════════════════════════════════════════════════════════════════════

def _last_day_of_month(d: date) -> date:
    return d.replace(day=calendar.monthrange(d.year, d.month)[1])


def _is_business_day(d: date) -> bool:
    return d.weekday() < 5


def _pick_in_period(period_start: date, kind: str, value: int | None) -> date | None:
    """Apply a parsed day rule to the period beginning at ``period_start``."""
    if kind == "anchor":
        return period_start
    if kind == "business_days":
        return period_start if _is_business_day(period_start) else None
    if kind == "weekday":
        return period_start + timedelta(days=(value - period_start.weekday()) % 7)
    if kind == "day":
        last = _last_day_of_month(period_start)
        return period_start.replace(day=min(value, last.day))
    if kind == "last_day":
        return _last_day_of_month(period_start)
    if kind == "last_business_day":
        d = _last_day_of_month(period_start)
        while not _is_business_day(d):
            d -= timedelta(days=1)
        return d
    if kind == "first_business_day":
        d = period_start.replace(day=1)
        while not _is_business_day(d):
            d += timedelta(days=1)
        return d
    raise InvalidScheduleError(f"Unsupported day rule kind '{kind}'")


def _estimate_period(frequency: str, start: date, after: date) -> int:
    """Index of a period at or shortly before the one containing ``after``."""
    if after <= start:
        return 0
    if frequency == "daily":
        k = (after - start).days
    elif frequency == "weekly":
        k = (after - start).days // 7
    else:
        months = (after.year - start.year) * 12 + (after.month - start.month)
        step = FREQUENCY_STEPS[frequency]
        k = months // (step.years * 12 + step.months)
    return max(k - 1, 0)


def _as_date(value) -> date:
    if isinstance(value, datetime):
        return value.date()
    return value


# ═══════════════════════════════════════════════════════════════════════════
#  Public API
# ═══════════════════════════════════════════════════════════════════════════

def next_occurrence(rule: ScheduleRule, after, evaluator: CustomEvaluator | None = None) -> date | None:
    """
    Return the first occurrence strictly after ``after``.

    Occurrences never precede ``rule.start_date``: when ``after`` is earlier
    than the start date, the start date itself is eligible. Returns None once
    the next candidate would fall after ``rule.end_date``.

    Raises:
        InvalidScheduleError: malformed or non-recurring rule, missing custom
            evaluator, or an evaluator result that is not after ``after``.
    """
    kind, value = rule.validate()
    after = _as_date(after)

    if rule.frequency == "custom":
        return _next_custom(rule, after, evaluator or _custom_evaluator)

    step = FREQUENCY_STEPS[rule.frequency]
    k0 = _estimate_period(rule.frequency, rule.start_date, after)
    for k in range(k0, k0 + _MAX_PERIOD_SCAN):
        period_start = rule.start_date + step * k
        candidate = _pick_in_period(period_start, kind, value)
        if candidate is None or candidate < rule.start_date or candidate <= after:
            continue
        if rule.end_date is not None and candidate > rule.end_date:
            return None
        return candidate

    raise InvalidScheduleError(
        f"No occurrence found within {_MAX_PERIOD_SCAN} periods after {after}",
        details={"frequency": rule.frequency, "day_rule": rule.day_rule},
    )


def _next_custom(rule: ScheduleRule, after: date, evaluator: CustomEvaluator | None) -> date | None:
    if evaluator is None:
        raise InvalidScheduleError("No evaluator registered for custom schedules",
                                   details={"day_rule": rule.day_rule})
    effective_after = max(after, rule.start_date - timedelta(days=1))
    result = evaluator(rule.day_rule, effective_after)
    if result is None:
        return None
    result = _as_date(result)
    if result <= effective_after:
        raise InvalidScheduleError(
            f"Custom evaluator returned {result}, which is not after {effective_after}",
            details={"day_rule": rule.day_rule},
        )
    if rule.end_date is not None and result > rule.end_date:
        return None
    return result


def first_occurrence_on_or_after(rule: ScheduleRule, day, evaluator: CustomEvaluator | None = None) -> date | None:
    return next_occurrence(rule, _as_date(day) - timedelta(days=1), evaluator)


def occurrences_between(rule: ScheduleRule, after, until, *, limit: int = 366,
                        evaluator: CustomEvaluator | None = None) -> Iterator[date]:
    """Yield successive occurrences in ``(after, until]``, at most ``limit`` of them."""
    until = _as_date(until)
    current = _as_date(after)
    for _ in range(limit):
        nxt = next_occurrence(rule, current, evaluator)
        if nxt is None or nxt > until:
            return
        yield nxt
        current = nxt


def due_date_for(occurrence_date: date, sla_days: int | None = None) -> date:
    """Due date = occurrence date + SLA days."""
    days = DEFAULT_SLA_DAYS if sla_days is None else sla_days
    if days < 0:
        raise InvalidScheduleError("SLA days cannot be negative", details={"sla_days": days})
    return occurrence_date + timedelta(days=days)
