"""Cancellation and refund policy for players and turf owners.

Both the preview and the mutating calls go through ``_player_quote`` /
``_owner_checks``, so what a player is shown before cancelling is exactly
what cancelling does.

Player rule: full refund when the slot starts at least
``refund_cutoff_hours`` from now, nothing otherwise. A slot without a
recorded date/time refunds nothing. Quotas count this calendar month at
the facility, from the 1st up to now.

Owner rule: the player always gets the full amount back and the owner is
charged a fixed penalty (cancellation fee + platform fee), recorded on the
booking for settlement elsewhere.
"""
import logging
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal

from sqlalchemy.exc import SQLAlchemyError

from models.booking import BookingStatus
from models.user import User
from services import notifications
from services.errors import (
    ConsistencyViolation,
    GatewayError,
    InvalidReason,
    MonthlyCancelLimitReached,
    NotFound,
    TooLateToCancel,
    Unauthorized,
    WrongState,
)
from utils.audit import log_event
from utils.money import CENT, to_amount, to_minor_units
from utils.timeutil import month_start, naive_utc, slot_start

logger = logging.getLogger(__name__)


@dataclass
class CancellationQuote:
    booking_id: int
    refund_amount: Decimal
    refund_percent: int
    cancellations_used: int
    cancellations_remaining: int
    error: type = None

    @property
    def can_cancel(self) -> bool:
        return self.error is None

    def to_dict(self):
        return {
            "booking_id": self.booking_id,
            "refund_amount": str(self.refund_amount),
            "refund_percent": self.refund_percent,
            "cancellations_remaining": self.cancellations_remaining,
            "can_cancel": self.can_cancel,
            "reason": self.error.code if self.error else None,
        }


@dataclass
class CancellationResult:
    booking_id: int
    refund_amount: Decimal
    refund_percent: int
    cancellations_remaining: int
    penalty: Decimal = None
    # best-effort side effects
    refund_issued: bool = False
    notified: bool = False

    def to_dict(self):
        body = {
            "booking_id": self.booking_id,
            "refund_amount": str(self.refund_amount),
            "refund_percent": self.refund_percent,
            "cancellations_remaining": self.cancellations_remaining,
        }
        if self.penalty is not None:
            body["penalty"] = str(self.penalty)
            body["refund_to_player"] = str(self.refund_amount)
        return body


class CancellationPolicy:

    def __init__(self, session, store, ledger, gateway, notifier, clock, tz_name,
                 refund_cutoff_hours=2, player_monthly_limit=5, owner_monthly_limit=10,
                 owner_cancel_fee="30.00", owner_platform_fee="50.00", reason_min_length=5,
                 currency="INR", audit=log_event):
        self.session = session
        self.store = store
        self.ledger = ledger
        self.gateway = gateway
        self.notifier = notifier
        self.clock = clock
        self.tz_name = tz_name
        self.refund_cutoff = timedelta(hours=refund_cutoff_hours)
        self.player_monthly_limit = player_monthly_limit
        self.owner_monthly_limit = owner_monthly_limit
        self.owner_penalty = to_amount(owner_cancel_fee) + to_amount(owner_platform_fee)
        self.reason_min_length = reason_min_length
        self.currency = currency
        self.audit = audit

    # ---------- rules ----------
    def refund_percent(self, slot, now) -> int:
        start = slot_start(slot, self.tz_name)
        if start is None:
            return 0
        return 100 if start - now >= self.refund_cutoff else 0

    def _player_quote(self, booking, user_id: int, now) -> CancellationQuote:
        if booking is None or booking.user_id != user_id:
            raise NotFound("Booking not found")

        used = self.ledger.player_cancellations_since(user_id, month_start(now, self.tz_name))
        percent = self.refund_percent(booking.slot, now)
        refund = (to_amount(booking.total_amount) * percent / 100).quantize(CENT)
        start = slot_start(booking.slot, self.tz_name)

        error = None
        if not booking.status_enum.is_active:
            error = WrongState
        elif start is not None and now >= start:
            error = TooLateToCancel
        elif used >= self.player_monthly_limit:
            error = MonthlyCancelLimitReached

        return CancellationQuote(
            booking_id=booking.id,
            refund_amount=refund,
            refund_percent=percent,
            cancellations_used=used,
            cancellations_remaining=max(0, self.player_monthly_limit - used),
            error=error,
        )

    def _owner_checks(self, booking, owner_id: int, now) -> int:
        if booking is None or booking.slot is None or booking.slot.turf.owner_id != owner_id:
            raise Unauthorized()
        if not booking.status_enum.is_active:
            raise WrongState()
        used = self.ledger.owner_cancellations_since(owner_id, month_start(now, self.tz_name))
        if used >= self.owner_monthly_limit:
            raise MonthlyCancelLimitReached(
                f"Owners can cancel at most {self.owner_monthly_limit} bookings per month",
                cancellations_remaining=0,
            )
        return used

    # ---------- operations ----------
    def get_cancellation_info(self, booking_id: int, user_id: int) -> CancellationQuote:
        try:
            return self._player_quote(self.ledger.get(booking_id), user_id, self.clock())
        finally:
            self.session.rollback()

    def cancel(self, booking_id: int, user_id: int) -> CancellationResult:
        now = self.clock()
        booking = self.ledger.get(booking_id)
        try:
            quote = self._player_quote(booking, user_id, now)
        except NotFound:
            self.session.rollback()
            raise
        if quote.error is not None:
            self.session.rollback()
            logger.info("Player %s cannot cancel booking %s: %s", user_id, booking_id, quote.error.code)
            if quote.error is MonthlyCancelLimitReached:
                raise MonthlyCancelLimitReached(
                    f"Players can cancel at most {self.player_monthly_limit} bookings per month",
                    cancellations_remaining=0,
                )
            raise quote.error()

        was_confirmed = booking.status == BookingStatus.CONFIRMED.value
        self._apply(booking, BookingStatus.CANCELLED_BY_PLAYER, now, quote.refund_amount)

        result = CancellationResult(
            booking_id=booking.id,
            refund_amount=quote.refund_amount,
            refund_percent=quote.refund_percent,
            cancellations_remaining=max(0, quote.cancellations_remaining - 1),
        )
        if was_confirmed and quote.refund_amount > 0:
            result.refund_issued = self._refund(booking, quote.refund_amount)
        result.notified = self._notify(booking, notifications.CANCELLED_BY_PLAYER, to_owner=True)
        self.audit(
            "BOOKING_CANCEL",
            user_id=user_id,
            entity="booking",
            entity_id=booking.id,
            metadata={"refund_amount": str(quote.refund_amount), "refund_percent": quote.refund_percent},
        )
        return result

    def owner_cancel(self, booking_id: int, owner_id: int, reason) -> CancellationResult:
        reason = (reason or "").strip()
        if len(reason) < self.reason_min_length:
            raise InvalidReason(f"Reason must be at least {self.reason_min_length} characters")

        now = self.clock()
        booking = self.ledger.get(booking_id)
        try:
            used = self._owner_checks(booking, owner_id, now)
        except (Unauthorized, WrongState, MonthlyCancelLimitReached) as exc:
            self.session.rollback()
            logger.info("Owner %s cannot cancel booking %s: %s", owner_id, booking_id, exc.code)
            raise

        refund = to_amount(booking.total_amount)
        was_confirmed = booking.status == BookingStatus.CONFIRMED.value
        self._apply(booking, BookingStatus.CANCELLED_BY_OWNER, now, refund,
                    penalty=self.owner_penalty, reason=reason)

        result = CancellationResult(
            booking_id=booking.id,
            refund_amount=refund,
            refund_percent=100,
            cancellations_remaining=max(0, self.owner_monthly_limit - used - 1),
            penalty=self.owner_penalty,
        )
        if was_confirmed and refund > 0:
            result.refund_issued = self._refund(booking, refund)
        result.notified = self._notify(booking, notifications.CANCELLED_BY_OWNER, to_owner=False,
                                       reason=reason, refund_amount=str(refund))
        self.audit(
            "OWNER_BOOKING_CANCEL",
            user_id=owner_id,
            entity="booking",
            entity_id=booking.id,
            metadata={"reason": reason, "penalty": str(self.owner_penalty), "refund_amount": str(refund)},
        )
        return result

    # ---------- internals ----------
    def _apply(self, booking, target: BookingStatus, now, refund_amount, penalty=None, reason=None):
        """Booking transition and slot release in one transaction, or neither."""
        was_pending = booking.status == BookingStatus.PENDING.value
        booking_id, slot_id, holder_id = booking.id, booking.slot_id, booking.user_id
        try:
            if self.ledger.cancel(booking_id, target, naive_utc(now), refund_amount,
                                  penalty=penalty, reason=reason) != 1:
                self.session.rollback()
                raise WrongState()
            if self.store.release(slot_id, holder_id) != 1:
                self.session.rollback()
                if was_pending:
                    raise WrongState("Booking hold has lapsed")
                logger.error("Consistency violation: confirmed booking %s but slot %s not booked", booking_id, slot_id)
                raise ConsistencyViolation(booking_id=booking_id, slot_id=slot_id)
            self.session.commit()
        except SQLAlchemyError:
            self.session.rollback()
            raise

    def _refund(self, booking, amount) -> bool:
        payment_id = None
        try:
            booking_id, order_ref = booking.id, booking.order_ref
            payment = self.ledger.payment_for_order(order_ref) if order_ref else None
            payment_id = payment.gateway_payment_id if payment is not None else None
        except SQLAlchemyError:
            logger.warning("Could not load payment for booking %s", booking_id, exc_info=True)
        finally:
            # no transaction stays open across the gateway call
            self.session.rollback()
        if not payment_id:
            return False
        try:
            self.gateway.refund(payment_id, to_minor_units(amount))
        except GatewayError as exc:
            logger.warning("Refund of %s for booking %s failed, settle manually: %s", amount, booking_id, exc)
            return False
        try:
            self.ledger.record_refund(order_ref, amount)
            self.session.commit()
        except SQLAlchemyError:
            self.session.rollback()
            logger.warning("Refund for booking %s issued but not recorded", booking_id, exc_info=True)
        return True

    def _notify(self, booking, kind: str, to_owner: bool, **extra) -> bool:
        try:
            slot = booking.slot
            turf = slot.turf
            recipient = self.session.get(User, turf.owner_id if to_owner else booking.user_id)
            context = {
                "booking_id": booking.id,
                "turf_name": turf.name,
                "slot_time": f"{slot.date} {slot.start_time}-{slot.end_time}",
                "currency": self.currency,
                **extra,
            }
        except SQLAlchemyError:
            self.session.rollback()
            logger.warning("Could not load recipient for %s notice", kind, exc_info=True)
            return False
        return self.notifier.notify(recipient.email if recipient else None, kind, context)
