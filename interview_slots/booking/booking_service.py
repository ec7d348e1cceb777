from datetime import datetime, timedelta
from typing import List, Optional
from uuid import uuid4
from zoneinfo import ZoneInfo
import logging

from interview_slots import config
from . import booking_utils as util
from .calendar import AvailabilityCalendar
from .commission import FlatRateCommission, split
from .error_utils import (BookingNotFound, CancellationWindowClosed, InvalidTransition, SlotUnavailable,
                          ValidationError)
from .ledger import LedgerWriter
from .models import AvailabilityRules, Booking, BookingStatus, DayAvailabilityRule, PaymentMethod, WEEKDAYS
from .period import Period

logger = logging.getLogger(__name__)

PAYMENT_REASON = "Interview booking payment"
PAYOUT_REASON = "Interview session payout"
FEE_REASON = "Platform commission"
REFUND_REASON = "Refund for cancelled booking"
PAYOUT_REVERSAL_REASON = "Payout reversed for cancelled booking"
FEE_REVERSAL_REASON = "Commission reversed for cancelled booking"


def slot_lock_key(provider_id: str, day) -> str:
    return f"slot:{provider_id}:{day.isoformat()}"


class BookingService:
    """
    Owns availability rules, the availability view and the booking lifecycle:

        pending -> confirmed -> completed
        pending | confirmed -> cancelled

    Holds no state between calls besides the store it was given. Every mutation runs in one store transaction
    so a booking and the ledger entries it causes are written together or not at all.
    """

    def __init__(self, db, commission_policy=None, clock=None, timezone: str = None):
        self._db = db
        self._tz = ZoneInfo(timezone or config.TIMEZONE)
        self._clock = clock or (lambda: datetime.now(self._tz))
        self.commission_policy = commission_policy or FlatRateCommission(config.PLATFORM_COMMISSION_RATE)
        self.duration_minutes = config.INTERVIEW_DURATION_MINUTES
        self.max_buffer_minutes = config.MAX_BUFFER_MINUTES
        self.cancellation_cutoff = timedelta(hours=config.CANCELLATION_CUTOFF_HOURS)
        self.min_cancel_reason_length = config.MIN_CANCEL_REASON_LENGTH
        self.platform_account_id = config.PLATFORM_ACCOUNT_ID
        self.ledger = LedgerWriter(db, self._clock)

    def _local_now(self) -> datetime:
        # Provider-local wall clock, compared against naive booking dates and times
        return self._clock().astimezone(self._tz).replace(tzinfo=None)

    def _touch(self, booking: Booking) -> datetime:
        return max(self._clock(), booking.updated_at)

    # Rule management

    def get_rules(self, provider_id: str):
        provider_id = util.require_text(provider_id, "providerId")
        rules = self._db.get_rules(provider_id)
        if rules is None:
            rules = AvailabilityRules(provider_id, [DayAvailabilityRule(day) for day in WEEKDAYS])
        return rules.to_dict()

    def save_rules(self, provider_id: str, day_rules, blocked_dates, excluded_windows=None) -> AvailabilityRules:
        """
        Validates and stores a provider's complete rule set. Either everything is saved or nothing is.
        """
        provider_id = util.require_text(provider_id, "providerId")
        with self._db.transaction(lock_key=f"rules:{provider_id}") as tx:
            existing = tx.fetch_rules(provider_id)
            rules = util.validate_rules(provider_id, day_rules, blocked_dates, excluded_windows,
                                        today=self._local_now().date(),
                                        max_buffer=self.max_buffer_minutes,
                                        previously_blocked=existing.blocked_dates if existing else set())
            rules.updated_at = self._clock()
            tx.save_rules(rules)
        logger.info(f"Saved availability rules for provider {provider_id}")
        return rules

    # Availability query

    def get_available_slots(self, provider_id: str, day):
        provider_id = util.require_text(provider_id, "providerId")
        day = util.parse_date(day)
        with self._db.transaction() as tx:
            rules = tx.fetch_rules(provider_id)
            bookings = tx.fetch_active_bookings(provider_id, day) if rules else []
        calendar = AvailabilityCalendar(rules, self.duration_minutes)
        return calendar.availability_view(day, bookings, self._local_now())

    # Booking operations

    def create_booking(self, requester_id, provider_id, day, start_time, end_time, amount, payment_method,
                       external_payment_ref=None) -> Booking:
        """
        Books one slot. The slot is re-checked against the live booking set while holding the provider/date lock,
        so of two requests racing for the same slot exactly one succeeds and the other gets SlotUnavailable.

        Wallet payments are debited and paid out in the same transaction and the booking is confirmed at once.
        External payments leave the booking pending until confirm_booking is called.
        """
        requester_id = util.require_text(requester_id, "requesterId")
        provider_id = util.require_text(provider_id, "providerId")
        if requester_id == provider_id:
            raise ValidationError("A provider cannot book their own interview slot")
        # The platform account only ever holds commission income
        if self.platform_account_id in (requester_id, provider_id):
            raise ValidationError("The platform account cannot take part in a booking")
        day = util.parse_date(day)
        period = Period(util.parse_time(start_time, "startTime"), util.parse_time(end_time, "endTime"))
        if period.begin_period >= period.end_period:
            raise ValidationError("startTime must be before endTime")
        gross_amount = util.parse_amount(amount)
        method = util.parse_payment_method(payment_method)
        if external_payment_ref is not None:
            external_payment_ref = util.require_text(external_payment_ref, "externalPaymentRef")

        fee, payout = split(gross_amount, self.commission_policy)

        with self._db.transaction(lock_key=slot_lock_key(provider_id, day)) as tx:
            rules = tx.fetch_rules(provider_id)
            bookings = tx.fetch_active_bookings(provider_id, day)
            calendar = AvailabilityCalendar(rules, self.duration_minutes)
            if not calendar.is_bookable(day, period, bookings, self._local_now()):
                logger.info(f"Rejected booking of {provider_id} on {day} at {period}: slot unavailable")
                raise SlotUnavailable("This slot is no longer available. Please pick another slot.")

            now = self._clock()
            booking = Booking(
                id=str(uuid4()),
                requester_id=requester_id,
                provider_id=provider_id,
                date=day,
                start_time=period.begin_period,
                end_time=period.end_period,
                gross_amount=gross_amount,
                platform_fee=fee,
                provider_payout=payout,
                payment_method=method,
                status=BookingStatus.CONFIRMED if method == PaymentMethod.WALLET else BookingStatus.PENDING,
                external_payment_reference=external_payment_ref,
                created_at=now,
                updated_at=now,
            )
            tx.insert_booking(booking)
            if method == PaymentMethod.WALLET:
                self.ledger.debit(requester_id, gross_amount, PAYMENT_REASON, booking.id, tx=tx)
                self._record_payout(tx, booking)

        logger.info(f"Booking {booking.id} created as {booking.status.value} for provider {provider_id} "
                    f"on {day} at {period}")
        return booking

    def _record_payout(self, tx, booking: Booking):
        if booking.provider_payout > 0:
            self.ledger.credit(booking.provider_id, booking.provider_payout, PAYOUT_REASON, booking.id, tx=tx)
        if booking.platform_fee > 0:
            self.ledger.credit(self.platform_account_id, booking.platform_fee, FEE_REASON, booking.id, tx=tx)

    def _reverse_payment(self, tx, booking: Booking):
        self.ledger.credit(booking.requester_id, booking.gross_amount, REFUND_REASON, booking.id, tx=tx)
        if booking.provider_payout > 0:
            self.ledger.debit(booking.provider_id, booking.provider_payout, PAYOUT_REVERSAL_REASON, booking.id,
                              tx=tx, require_funds=False)
        if booking.platform_fee > 0:
            self.ledger.debit(self.platform_account_id, booking.platform_fee, FEE_REVERSAL_REASON, booking.id,
                              tx=tx, require_funds=False)

    @staticmethod
    def _fetch_for_update(tx, booking_id) -> Booking:
        booking_id = util.require_text(booking_id, "bookingId")
        booking = tx.fetch_booking(booking_id, for_update=True)
        if booking is None:
            raise BookingNotFound(f"Booking {booking_id} does not exist")
        return booking

    def confirm_booking(self, booking_id, external_payment_ref) -> Booking:
        """
        Marks an externally paid booking as confirmed once the gateway payment is verified.
        Repeating the call with the same reference returns the booking unchanged.

        A payment that settles after its pending booking was cancelled is refunded to the requester's wallet
        and the booking stays cancelled.
        """
        external_payment_ref = util.require_text(external_payment_ref, "externalPaymentRef")
        with self._db.transaction() as tx:
            booking = self._fetch_for_update(tx, booking_id)
            if booking.payment_method != PaymentMethod.EXTERNAL:
                raise InvalidTransition("Wallet bookings are confirmed when they are created")
            if booking.status == BookingStatus.CONFIRMED and booking.external_payment_reference == external_payment_ref:
                return booking
            if booking.status == BookingStatus.CANCELLED:
                return self._refund_late_payment(tx, booking, external_payment_ref)
            if booking.status != BookingStatus.PENDING:
                raise InvalidTransition(f"Cannot confirm a {booking.status.value} booking")
            if booking.external_payment_reference not in (None, external_payment_ref):
                raise ValidationError("Payment reference does not match the one recorded for this booking")

            confirmed = booking.with_changes(status=BookingStatus.CONFIRMED,
                                             external_payment_reference=external_payment_ref,
                                             updated_at=self._touch(booking))
            tx.update_booking(confirmed)
            self._record_payout(tx, confirmed)
        logger.info(f"Booking {confirmed.id} confirmed with payment {external_payment_ref}")
        return confirmed

    def _refund_late_payment(self, tx, booking: Booking, external_payment_ref: str) -> Booking:
        refunds = [entry for entry in tx.fetch_ledger_entries(booking.requester_id)
                   if entry.related_booking_id == booking.id and entry.reason == REFUND_REASON]
        if refunds:
            # Either refunded on cancel or by an earlier delivery of this payment
            if booking.external_payment_reference != external_payment_ref:
                raise InvalidTransition(f"Cannot confirm a {booking.status.value} booking")
            return booking
        if booking.external_payment_reference not in (None, external_payment_ref):
            raise ValidationError("Payment reference does not match the one recorded for this booking")

        refunded = booking.with_changes(external_payment_reference=external_payment_ref,
                                        updated_at=self._touch(booking))
        tx.update_booking(refunded)
        self.ledger.credit(booking.requester_id, booking.gross_amount, REFUND_REASON, booking.id, tx=tx)
        logger.info(f"Payment {external_payment_ref} settled after booking {booking.id} was cancelled, "
                    f"refunded {booking.gross_amount} to {booking.requester_id}")
        return refunded

    def cancel_booking(self, booking_id, reason) -> Booking:
        """
        Cancels a pending or confirmed booking at least cancellation_cutoff before it starts.
        Captured payments are refunded to the requester's wallet and the payout and commission are reversed.
        """
        reason = util.validate_cancel_reason(reason, self.min_cancel_reason_length)
        with self._db.transaction() as tx:
            booking = self._fetch_for_update(tx, booking_id)
            if booking.status not in (BookingStatus.PENDING, BookingStatus.CONFIRMED):
                raise InvalidTransition(f"Cannot cancel a {booking.status.value} booking")
            if booking.starts_at - self._local_now() < self.cancellation_cutoff:
                raise CancellationWindowClosed(
                    f"Bookings can only be cancelled at least {int(self.cancellation_cutoff.total_seconds() // 3600)} "
                    f"hours before they start")

            cancelled = booking.with_changes(status=BookingStatus.CANCELLED, cancel_reason=reason,
                                             updated_at=self._touch(booking))
            tx.update_booking(cancelled)
            # Pending external bookings never captured any money
            if booking.status == BookingStatus.CONFIRMED:
                self._reverse_payment(tx, booking)
        logger.info(f"Booking {cancelled.id} cancelled (was {booking.status.value})")
        return cancelled

    def complete_booking(self, booking_id) -> Booking:
        with self._db.transaction() as tx:
            booking = self._fetch_for_update(tx, booking_id)
            if booking.status == BookingStatus.COMPLETED:
                return booking
            if booking.status != BookingStatus.CONFIRMED:
                raise InvalidTransition(f"Cannot complete a {booking.status.value} booking")
            completed = booking.with_changes(status=BookingStatus.COMPLETED, updated_at=self._touch(booking))
            tx.update_booking(completed)
        logger.info(f"Booking {completed.id} completed")
        return completed

    # Reads

    def get_booking(self, booking_id) -> Booking:
        booking_id = util.require_text(booking_id, "bookingId")
        booking = self._db.get_booking(booking_id)
        if booking is None:
            raise BookingNotFound(f"Booking {booking_id} does not exist")
        return booking

    def list_bookings(self, requester_id: str = None, provider_id: str = None,
                      status: Optional[str] = None) -> List[Booking]:
        if not requester_id and not provider_id:
            raise ValidationError("Either requesterId or providerId is required")
        if status:
            try:
                status = BookingStatus(status)
            except ValueError:
                raise ValidationError(f"Unknown booking status '{status}'")
        with self._db.transaction() as tx:
            return tx.fetch_bookings(requester_id=requester_id or None, provider_id=provider_id or None,
                                     status=status or None)

    def payment_history(self, requester_id: str):
        requester_id = util.require_text(requester_id, "requesterId")
        bookings = self.list_bookings(requester_id=requester_id)
        return {
            "stats": {
                "totalBooked": len(bookings),
                "completed": sum(b.status == BookingStatus.COMPLETED for b in bookings),
                "cancelled": sum(b.status == BookingStatus.CANCELLED for b in bookings),
            },
            "payments": [
                {
                    "bookingId": b.id,
                    "date": b.date.isoformat(),
                    "amount": str(b.gross_amount),
                    "paymentMethod": b.payment_method.value,
                    "status": b.status.value,
                    "providerId": b.provider_id,
                }
                for b in sorted(bookings, key=lambda b: b.created_at, reverse=True)
            ],
        }
