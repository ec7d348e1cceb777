# Records passed between the store, the booking service and the Flask routes.
from dataclasses import dataclass, field, replace
from datetime import date, datetime, time
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional, Set

from .period import Period

WEEKDAYS = ['Sun', 'Mon', 'Tue', 'Wed', 'Thu', 'Fri', 'Sat']


def weekday_name(day: date) -> str:
    # date.weekday() is Monday based, WEEKDAYS is Sunday based
    return WEEKDAYS[(day.weekday() + 1) % 7]


class BookingStatus(str, Enum):
    PENDING = 'pending'
    CONFIRMED = 'confirmed'
    COMPLETED = 'completed'
    CANCELLED = 'cancelled'


class PaymentMethod(str, Enum):
    WALLET = 'wallet'
    EXTERNAL = 'external'


class EntryType(str, Enum):
    CREDIT = 'credit'
    DEBIT = 'debit'


# Bookings in these states hold their time window
ACTIVE_STATUSES = (BookingStatus.PENDING, BookingStatus.CONFIRMED, BookingStatus.COMPLETED)


@dataclass
class DayAvailabilityRule:
    weekday: str
    enabled: bool = False
    start_time: Optional[time] = None
    end_time: Optional[time] = None
    buffer_minutes: int = 0

    def to_dict(self):
        return {
            "day": self.weekday,
            "enabled": self.enabled,
            "startTime": self.start_time.strftime("%H:%M") if self.start_time else "",
            "endTime": self.end_time.strftime("%H:%M") if self.end_time else "",
            "bufferTime": self.buffer_minutes,
        }


@dataclass
class AvailabilityRules:
    """
    A provider's full weekly template plus its date exceptions.
    day_rules always holds seven entries ordered Sun..Sat once validated.
    """
    provider_id: str
    day_rules: List[DayAvailabilityRule]
    blocked_dates: Set[date] = field(default_factory=set)
    excluded_windows: Dict[date, List[Period]] = field(default_factory=dict)
    updated_at: Optional[datetime] = None

    def rule_for(self, day: date) -> Optional[DayAvailabilityRule]:
        name = weekday_name(day)
        for rule in self.day_rules:
            if rule.weekday == name:
                return rule
        return None

    def to_dict(self):
        return {
            "providerId": self.provider_id,
            "slotRules": [rule.to_dict() for rule in self.day_rules],
            "blockedDates": sorted(day.isoformat() for day in self.blocked_dates),
            "excludedSlotsByDate": {
                day.isoformat(): [window.to_dict() for window in windows]
                for day, windows in sorted(self.excluded_windows.items())
            },
            "updatedAt": self.updated_at.isoformat() if self.updated_at else None,
        }


@dataclass
class Slot:
    period: Period
    available: bool

    def to_dict(self):
        slot = self.period.to_dict()
        slot["available"] = self.available
        return slot


@dataclass
class Booking:
    id: str
    requester_id: str
    provider_id: str
    date: date
    start_time: time
    end_time: time
    gross_amount: Decimal
    platform_fee: Decimal
    provider_payout: Decimal
    payment_method: PaymentMethod
    status: BookingStatus
    created_at: datetime
    updated_at: datetime
    external_payment_reference: Optional[str] = None
    cancel_reason: Optional[str] = None

    @property
    def period(self) -> Period:
        return Period(self.start_time, self.end_time)

    @property
    def starts_at(self) -> datetime:
        return datetime.combine(self.date, self.start_time)

    def with_changes(self, **changes) -> "Booking":
        return replace(self, **changes)

    def to_dict(self):
        return {
            "id": self.id,
            "requesterId": self.requester_id,
            "providerId": self.provider_id,
            "date": self.date.isoformat(),
            "startTime": self.start_time.strftime("%H:%M"),
            "endTime": self.end_time.strftime("%H:%M"),
            "grossAmount": str(self.gross_amount),
            "platformFee": str(self.platform_fee),
            "providerPayout": str(self.provider_payout),
            "paymentMethod": self.payment_method.value,
            "externalPaymentReference": self.external_payment_reference,
            "status": self.status.value,
            "cancelReason": self.cancel_reason,
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
        }


@dataclass(frozen=True)
class LedgerEntry:
    id: str
    account_id: str
    type: EntryType
    amount: Decimal
    reason: str
    created_at: datetime
    related_booking_id: Optional[str] = None

    @property
    def signed_amount(self) -> Decimal:
        return self.amount if self.type == EntryType.CREDIT else -self.amount

    def to_dict(self):
        return {
            "id": self.id,
            "accountId": self.account_id,
            "type": self.type.value,
            "amount": str(self.amount),
            "reason": self.reason,
            "relatedBookingId": self.related_booking_id,
            "createdAt": self.created_at.isoformat(),
        }
