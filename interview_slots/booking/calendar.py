"""
Availability reconciliation for interview bookings.

Problem:

Given a provider's weekly rules, blocked dates and the bookings already made, show which interview slots on a
given date a requester can still book.

Algorithm:
1. A blocked date has no slots at all.
2. Generate the day's windows from the weekday rule and drop any that hit an excluded window for that date.
3. A window intersecting a pending, confirmed or completed booking is unavailable.
4. On today's date a window starting at or before the current time is unavailable, on past dates every window is.
5. Return the whole list so the caller can render booked vs open slots.

Step 4 depends on the clock, so results are recomputed on every request.
"""
from datetime import date, datetime
from typing import Iterable, List, Optional

from .booking_utils import generate_slots
from .models import ACTIVE_STATUSES, AvailabilityRules, Booking, Slot, weekday_name
from .period import Period


def reconcile(day: date, windows: List[Period], bookings: Iterable[Booking], now: datetime,
              blocked_dates=frozenset(), excluded_windows: Iterable[Period] = ()) -> List[Slot]:
    if day in blocked_dates:
        return []

    excluded_windows = list(excluded_windows)
    taken = [booking.period for booking in bookings
             if booking.date == day and booking.status in ACTIVE_STATUSES]

    slots = []
    for window in windows:
        if any(window.overlaps(excluded) for excluded in excluded_windows):
            continue
        available = not any(window.overlaps(period) for period in taken)
        if day < now.date():
            available = False
        elif day == now.date() and window.begin_period <= now.time():
            available = False
        slots.append(Slot(window, available))
    return slots


class AvailabilityCalendar:

    def __init__(self, rules: Optional[AvailabilityRules], duration_minutes: int):
        self._rules = rules
        self._duration_minutes = duration_minutes

    def windows_for(self, day: date) -> List[Period]:
        if self._rules is None:
            return []
        return generate_slots(self._rules.rule_for(day), self._duration_minutes)

    def slots_for(self, day: date, bookings: Iterable[Booking], now: datetime) -> List[Slot]:
        if self._rules is None:
            return []
        return reconcile(day, self.windows_for(day), bookings, now,
                         blocked_dates=self._rules.blocked_dates,
                         excluded_windows=self._rules.excluded_windows.get(day, ()))

    def is_bookable(self, day: date, period: Period, bookings: Iterable[Booking], now: datetime) -> bool:
        """
        True only if period matches one generated slot exactly and that slot is currently available.
        """
        return any(slot.available and slot.period == period for slot in self.slots_for(day, bookings, now))

    def availability_view(self, day: date, bookings: Iterable[Booking], now: datetime):
        return {
            "date": day.isoformat(),
            "weekday": weekday_name(day),
            "slots": [slot.to_dict() for slot in self.slots_for(day, bookings, now)],
        }
