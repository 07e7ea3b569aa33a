import logging
from dataclasses import dataclass, field
from decimal import Decimal

from sqlalchemy.exc import SQLAlchemyError

from models.booking import BookingStatus
from models.slot import SlotStatus
from models.user import User
from services import notifications
from services.errors import (
    BookingExpired,
    BookingNotFound,
    ConsistencyViolation,
    GatewayError,
    InvalidSignature,
    PaymentGatewayUnavailable,
)
from services.gateway import signature_matches
from utils.audit import log_event
from utils.money import to_amount, to_minor_units
from utils.timeutil import naive_utc

logger = logging.getLogger(__name__)

PENDING = BookingStatus.PENDING.value
CONFIRMED = BookingStatus.CONFIRMED.value


@dataclass
class VerificationResult:
    confirmed_booking_ids: list
    already_confirmed: bool = False
    # best-effort side effects; the confirmation stands either way
    earnings_recorded: bool = False
    notified: bool = False
    refunded_booking_ids: list = field(default_factory=list)

    def to_dict(self):
        return {
            "confirmed_booking_ids": self.confirmed_booking_ids,
            "already_confirmed": self.already_confirmed,
        }


class PaymentVerifier:
    """Settles a gateway callback into confirmed bookings and booked slots."""

    def __init__(self, session, store, ledger, gateway, notifier, clock, signing_secret,
                 platform_fee="50.00", platform_entity_id="platform", currency="INR", audit=log_event):
        self.session = session
        self.store = store
        self.ledger = ledger
        self.gateway = gateway
        self.notifier = notifier
        self.clock = clock
        self.signing_secret = signing_secret
        self.platform_fee = to_amount(platform_fee)
        self.platform_entity_id = platform_entity_id
        self.currency = currency
        self.audit = audit

    def verify(self, order_id, payment_id, signature, booking_id=None) -> VerificationResult:
        if not self.signing_secret:
            raise PaymentGatewayUnavailable()
        # 1) authenticity first; nothing below runs on a bad signature
        if not signature_matches(self.signing_secret, order_id, payment_id, signature):
            logger.warning(
                "Payment signature mismatch order=%s payment=%s booking=%s",
                order_id, payment_id, booking_id,
            )
            self.audit(
                "PAYMENT_SIGNATURE_INVALID",
                entity="order",
                entity_id=order_id,
                metadata={"payment_id": payment_id, "booking_id": booking_id},
            )
            raise InvalidSignature()

        for _ in range(2):
            bookings = self._resolve(order_id, booking_id)
            pending = [b for b in bookings if b.status == PENDING]
            confirmed = [b for b in bookings if b.status == CONFIRMED]

            # 3) duplicate callback
            if not pending:
                if confirmed:
                    self.session.rollback()
                    return VerificationResult(confirmed_booking_ids=[b.id for b in confirmed], already_confirmed=True)
                if self._already_settled(order_id, payment_id):
                    # redelivery of a payment we confirmed before its bookings were cancelled
                    self.session.rollback()
                    logger.info("Ignoring redelivered callback for settled order %s", order_id)
                    return VerificationResult(confirmed_booking_ids=[], already_confirmed=True)
                return self._reject_late_payment(order_id, payment_id, bookings)

            outcome = self._confirm(order_id, payment_id, pending)
            if outcome is not None:
                break
        else:
            raise ConsistencyViolation("Bookings for order kept changing during verification")

        # bookings left terminal (superseded or cancelled) were paid for too
        dead = [b for b in bookings if b.status not in (PENDING, CONFIRMED)]
        if dead:
            outcome.refunded_booking_ids = self._refund(order_id, payment_id, dead)

        outcome.earnings_recorded = self._credit_earnings(outcome.confirmed_booking_ids, pending)
        outcome.notified = self._notify_owner(pending)
        self.audit(
            "PAYMENT_PAID",
            user_id=pending[0].user_id,
            entity="order",
            entity_id=order_id,
            metadata={"payment_id": payment_id, "booking_ids": outcome.confirmed_booking_ids},
        )
        return outcome

    def _resolve(self, order_id, booking_id):
        bookings = self.ledger.by_order(order_id)
        if not bookings and booking_id is not None:
            single = self.ledger.get(booking_id)
            bookings = [single] if single is not None else []
        if not bookings:
            self.session.rollback()
            raise BookingNotFound()
        return bookings

    def _confirm(self, order_id, payment_id, pending):
        """One transaction: slots held -> booked, bookings pending -> confirmed.

        Returns None when the picture changed underneath us (duplicate
        callback won, or a hold was superseded) so the caller re-reads.
        """
        payer_id = pending[0].user_id
        booking_ids = [b.id for b in pending]
        slot_ids = [b.slot_id for b in pending]
        now = naive_utc(self.clock())
        try:
            if self.store.mark_booked(slot_ids, payer_id) != len(slot_ids):
                self.session.rollback()
                self._settle_mismatch(order_id, pending)
                return None
            if self.ledger.confirm(booking_ids, now) != len(booking_ids):
                self.session.rollback()
                return None
            if not self.ledger.mark_paid(order_id, payment_id, now):
                self.ledger.record_payment_id(order_id, payment_id)
            self.session.commit()
        except SQLAlchemyError:
            self.session.rollback()
            raise
        logger.info("Confirmed bookings %s for order %s", booking_ids, order_id)
        return VerificationResult(confirmed_booking_ids=booking_ids)

    def _settle_mismatch(self, order_id, pending):
        """Expire pending bookings whose hold went to someone else; anything else is corruption."""
        # the rollback expired these instances, so attribute access re-reads them
        slots = {s.id: s for s in self.store.get_many([b.slot_id for b in pending])}
        superseded = []
        for b in pending:
            if b.status != PENDING:
                continue
            slot = slots.get(b.slot_id)
            if slot is not None and slot.status == SlotStatus.HELD.value and slot.held_by == b.user_id:
                continue
            if slot is None or slot.status == SlotStatus.BOOKED.value:
                self.session.rollback()
                logger.error(
                    "Consistency violation: booking %s pending but slot %s is %s",
                    b.id, b.slot_id, slot.status if slot else "missing",
                )
                raise ConsistencyViolation(booking_id=b.id, slot_id=b.slot_id)
            superseded.append(b.id)

        try:
            if superseded:
                self.ledger.expire(superseded)
                logger.info("Expired superseded bookings %s of order %s", superseded, order_id)
            self.session.commit()
        except SQLAlchemyError:
            self.session.rollback()
            raise

    def _already_settled(self, order_id, payment_id) -> bool:
        payment = self.ledger.payment_for_order(order_id)
        return payment is not None and payment.paid_at is not None and payment.gateway_payment_id == payment_id

    def _reject_late_payment(self, order_id, payment_id, bookings):
        self.session.rollback()
        refunded = self._refund(order_id, payment_id, bookings)
        self.audit(
            "PAYMENT_LATE",
            user_id=bookings[0].user_id,
            entity="order",
            entity_id=order_id,
            metadata={"payment_id": payment_id, "booking_ids": [b.id for b in bookings], "refunded": refunded},
        )
        raise BookingExpired(booking_ids=[b.id for b in bookings])

    def _refund(self, order_id, payment_id, bookings):
        """Best-effort refund of bookings that were paid for but can no longer be honoured."""
        amount = sum((to_amount(b.total_amount) for b in bookings), Decimal("0.00"))
        payment = self.ledger.payment_for_order(order_id)
        if payment is not None:
            # never more than what is left of the charge after earlier refunds
            amount = min(amount, self.ledger.refundable(payment))
        # no transaction stays open across the gateway call
        self.session.rollback()
        if amount <= 0:
            return []
        try:
            self.gateway.refund(payment_id, to_minor_units(amount))
        except GatewayError as exc:
            logger.error("Refund of %s for order %s failed, needs manual settlement: %s", amount, order_id, exc)
            return []
        try:
            self.ledger.record_payment_id(order_id, payment_id)
            self.ledger.record_refund(order_id, amount)
            self.session.commit()
        except SQLAlchemyError:
            self.session.rollback()
            logger.warning("Refund for order %s issued but not recorded", order_id, exc_info=True)
        return [b.id for b in bookings]

    def _credit_earnings(self, booking_ids, bookings) -> bool:
        if not booking_ids:
            return False
        total = sum((to_amount(b.total_amount) for b in bookings), Decimal("0.00"))
        if total <= 0:
            return True
        fee = min(self.platform_fee, total)
        owner_cut = max(Decimal("0.00"), total - fee)
        now = naive_utc(self.clock())
        try:
            owner_id = bookings[0].slot.turf.owner_id
            self.ledger.credit("platform", self.platform_entity_id, fee, now)
            if owner_cut > 0:
                self.ledger.credit("owner", owner_id, owner_cut, now)
            self.session.commit()
        except SQLAlchemyError:
            self.session.rollback()
            logger.warning("Earnings split for bookings %s not recorded; reconcile later", booking_ids, exc_info=True)
            return False
        return True

    def _notify_owner(self, bookings) -> bool:
        try:
            turf = bookings[0].slot.turf
            owner = self.session.get(User, turf.owner_id)
            context = {
                "booking_ids": ", ".join(str(b.id) for b in bookings),
                "turf_name": turf.name,
                "amount": str(sum((to_amount(b.total_amount) for b in bookings), Decimal("0.00"))),
                "currency": self.currency,
            }
        except SQLAlchemyError:
            self.session.rollback()
            logger.warning("Could not load owner for confirmation notice", exc_info=True)
            return False
        return self.notifier.notify(owner.email if owner else None, notifications.BOOKING_CONFIRMED, context)
