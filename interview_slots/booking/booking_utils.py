# Utility functions for booking functionality: input validation and slot generation.
# Every rule, date, time and amount the engine accepts passes through here before it reaches the store.
import re
import logging
from datetime import date, datetime, time
from decimal import Decimal, InvalidOperation
from typing import Dict, Iterable, List, Optional, Set

from .error_utils import ValidationError
from .models import WEEKDAYS, AvailabilityRules, DayAvailabilityRule, PaymentMethod
from .period import Period

logger = logging.getLogger(__name__)

TIME_PATTERN = re.compile(r'^([0-1]?[0-9]|2[0-3]):([0-5][0-9])$')
DATE_PATTERN = re.compile(r'^\d{4}-\d{2}-\d{2}$')
CENT = Decimal('0.01')
# Upper bound on a single booking amount to avoid oversized input
MAX_AMOUNT = Decimal('1000000')


def parse_time(value, field_name: str = "time") -> time:
    """
    Parse an "HH:MM" 24 hour string into a time. Raises ValidationError on anything else.
    """
    if isinstance(value, time):
        return value
    if not isinstance(value, str):
        raise ValidationError(f"{field_name} must be a string in HH:MM format")
    match = TIME_PATTERN.fullmatch(value.strip())
    if not match:
        raise ValidationError(f"{field_name} '{value}' is not in HH:MM format")
    return time(int(match.group(1)), int(match.group(2)))


def parse_date(value, field_name: str = "date") -> date:
    """
    Parse a "YYYY-MM-DD" string into a date. Raises ValidationError on malformed or impossible dates (2025-02-30).
    """
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str) or not DATE_PATTERN.fullmatch(value.strip()):
        raise ValidationError(f"{field_name} '{value}' is not in YYYY-MM-DD format")
    try:
        return date.fromisoformat(value.strip())
    except ValueError:
        raise ValidationError(f"{field_name} '{value}' is not a valid calendar date")


def parse_amount(value, field_name: str = "amount") -> Decimal:
    """
    Convert a caller supplied amount into a positive Decimal with at most two decimal places.
    Floats go through str() so 19.99 stays 19.99.
    """
    if isinstance(value, bool) or value is None:
        raise ValidationError(f"{field_name} is required")
    try:
        amount = Decimal(str(value).strip())
    except InvalidOperation:
        raise ValidationError(f"{field_name} '{value}' is not a number")
    if not amount.is_finite() or amount <= 0:
        raise ValidationError(f"{field_name} must be greater than zero")
    if amount > MAX_AMOUNT:
        raise ValidationError(f"{field_name} exceeds the maximum of {MAX_AMOUNT}")
    if amount != amount.quantize(CENT):
        raise ValidationError(f"{field_name} cannot have more than two decimal places")
    return amount.quantize(CENT)


def parse_payment_method(value) -> PaymentMethod:
    try:
        return PaymentMethod(value)
    except ValueError:
        allowed = ", ".join(method.value for method in PaymentMethod)
        raise ValidationError(f"paymentMethod must be one of: {allowed}")


def require_text(value, field_name: str, max_length: int = 255) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{field_name} is required")
    value = value.strip()
    if len(value) > max_length:
        raise ValidationError(f"{field_name} is too long")
    return value


def validate_cancel_reason(reason, min_length: int) -> str:
    """
    Strips the reason and enforces the minimum length. Control characters other than tab/newline are rejected.
    """
    if not isinstance(reason, str):
        raise ValidationError("A cancellation reason is required")
    reason = reason.strip()
    if len(reason) < min_length:
        raise ValidationError(f"Cancellation reason must be at least {min_length} characters")
    if len(reason) > 1000:
        raise ValidationError("Cancellation reason is too long. Max 1000 characters.")
    allowed_control_codes = {9, 10, 13}  # Tab, LF, CR
    for ch in reason:
        if ord(ch) < 32 and ord(ch) not in allowed_control_codes:
            raise ValidationError("Cancellation reason contains disallowed characters")
    return reason


def _validate_day_rule(raw: dict, max_buffer: int) -> DayAvailabilityRule:
    if not isinstance(raw, dict):
        raise ValidationError("Each day rule must be an object")
    weekday = raw.get('day', raw.get('weekday'))
    if weekday not in WEEKDAYS:
        raise ValidationError(f"Unknown weekday '{weekday}'. Use one of {', '.join(WEEKDAYS)}")

    enabled = raw.get('enabled', False)
    if not isinstance(enabled, bool):
        raise ValidationError(f"enabled for {weekday} must be true or false")

    buffer_minutes = raw.get('bufferTime', raw.get('bufferMinutes', 0))
    if isinstance(buffer_minutes, bool) or not isinstance(buffer_minutes, int):
        raise ValidationError(f"Buffer time for {weekday} must be a whole number of minutes")
    if buffer_minutes < 0 or buffer_minutes > max_buffer:
        raise ValidationError(f"Buffer time for {weekday} must be between 0 and {max_buffer} minutes")

    raw_start = raw.get('startTime') or None
    raw_end = raw.get('endTime') or None
    if not enabled:
        # Disabled days keep whatever valid times they had so the provider can re-enable them later
        start_time = parse_time(raw_start, f"{weekday} startTime") if raw_start else None
        end_time = parse_time(raw_end, f"{weekday} endTime") if raw_end else None
        return DayAvailabilityRule(weekday, False, start_time, end_time, buffer_minutes)

    if raw_start is None or raw_end is None:
        raise ValidationError(f"{weekday} is enabled but is missing a start or end time")
    start_time = parse_time(raw_start, f"{weekday} startTime")
    end_time = parse_time(raw_end, f"{weekday} endTime")
    if start_time >= end_time:
        raise ValidationError(f"Invalid time range for {weekday}: start time must be before end time")
    return DayAvailabilityRule(weekday, True, start_time, end_time, buffer_minutes)


def _validate_blocked_dates(raw_dates: Iterable, today: date, previously_blocked: Set[date]) -> Set[date]:
    if raw_dates is None:
        return set()
    if isinstance(raw_dates, (str, bytes)) or not isinstance(raw_dates, (list, tuple, set)):
        raise ValidationError("blockedDates must be a list of YYYY-MM-DD dates")
    blocked = set()
    for raw in raw_dates:
        day = parse_date(raw, "Blocked date")
        # Dates stored before they passed may be re-submitted, new ones must not be in the past
        if day < today and day not in previously_blocked:
            raise ValidationError(f"Cannot block past date {day.isoformat()}")
        blocked.add(day)
    return blocked


def _validate_excluded_windows(raw_windows, today: date) -> Dict[date, List[Period]]:
    if not raw_windows:
        return {}
    if not isinstance(raw_windows, dict):
        raise ValidationError("excludedSlotsByDate must map dates to lists of time ranges")
    excluded = {}
    for raw_day, windows in raw_windows.items():
        day = parse_date(raw_day, "Excluded slot date")
        if not isinstance(windows, (list, tuple)):
            raise ValidationError(f"Excluded slots for {day.isoformat()} must be a list")
        periods = []
        for window in windows:
            if not isinstance(window, dict):
                raise ValidationError(f"Excluded slots for {day.isoformat()} must be time ranges")
            start_time = parse_time(window.get('startTime'), "Excluded slot startTime")
            end_time = parse_time(window.get('endTime'), "Excluded slot endTime")
            if start_time >= end_time:
                raise ValidationError(f"Excluded slot on {day.isoformat()} must start before it ends")
            periods.append(Period(start_time, end_time))
        # Past dates no longer affect availability, drop them rather than storing dead data
        if periods and day >= today:
            excluded[day] = sorted(periods, key=lambda period: period.begin_period)
    return excluded


def validate_rules(provider_id: str, raw_day_rules, raw_blocked_dates, raw_excluded_windows=None, *,
                   today: date, max_buffer: int, previously_blocked: Optional[Set[date]] = None) -> AvailabilityRules:
    """
    Single point of validation for a provider's availability rules. Nothing is saved unless every piece is valid.

    Input: raw day rules as sent by the caller ({"day", "enabled", "startTime", "endTime", "bufferTime"}),
        a list of blocked "YYYY-MM-DD" dates and an optional {date: [{"startTime", "endTime"}]} map.

    Returns: AvailabilityRules with exactly seven day rules ordered Sun..Sat. Days the caller left out are disabled.
    """
    provider_id = require_text(provider_id, "providerId")
    if not isinstance(raw_day_rules, (list, tuple)):
        raise ValidationError("slotRules must be a list of day rules")

    rules_by_day = {}
    for raw in raw_day_rules:
        rule = _validate_day_rule(raw, max_buffer)
        if rule.weekday in rules_by_day:
            raise ValidationError(f"Duplicate rule for {rule.weekday}")
        rules_by_day[rule.weekday] = rule

    day_rules = [rules_by_day.get(day, DayAvailabilityRule(day)) for day in WEEKDAYS]
    blocked = _validate_blocked_dates(raw_blocked_dates, today, previously_blocked or set())
    excluded = _validate_excluded_windows(raw_excluded_windows, today)
    logger.info(f"Validated rules for provider {provider_id}: "
                f"{sum(rule.enabled for rule in day_rules)} active day(s), {len(blocked)} blocked date(s)")
    return AvailabilityRules(provider_id, day_rules, blocked, excluded)


def _to_minutes(value: time) -> int:
    return value.hour * 60 + value.minute


def _from_minutes(minutes: int) -> time:
    return time(minutes // 60, minutes % 60)


def generate_slots(rule: Optional[DayAvailabilityRule], duration_minutes: int) -> List[Period]:
    """
    Splits one day rule into back-to-back interview windows.

    Each window is exactly duration_minutes long. Window starts advance by duration + buffer and generation
    stops before a window would end after the rule's end time. A disabled, incomplete or too short rule gives [].
    """
    if rule is None or not rule.enabled or rule.start_time is None or rule.end_time is None:
        return []
    if duration_minutes <= 0 or rule.buffer_minutes < 0:
        return []
    begin = _to_minutes(rule.start_time)
    end = _to_minutes(rule.end_time)
    if begin >= end:
        return []

    step = duration_minutes + rule.buffer_minutes
    slots = []
    current = begin
    while current + duration_minutes <= end:
        slots.append(Period(_from_minutes(current), _from_minutes(current + duration_minutes)))
        current += step
    return slots
