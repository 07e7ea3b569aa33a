from decimal import Decimal

from sqlalchemy import case, func, select, update

from models.booking import ACTIVE_STATUSES, Booking, BookingStatus
from models.earning import Earning
from models.payment import Payment
from models.slot import Slot
from models.turf import Turf
from utils.money import to_amount

PENDING = BookingStatus.PENDING.value
CONFIRMED = BookingStatus.CONFIRMED.value
ACTIVE = [s.value for s in ACTIVE_STATUSES]


class BookingLedger:
    """Booking, payment and earnings rows.

    Status changes are conditional on the prior status, so a transition
    applied twice (duplicate gateway callback, double-clicked cancel)
    affects zero rows the second time. Like SlotStore, nothing commits.
    """

    def __init__(self, session):
        self.session = session

    def _transition(self, booking_ids, expected, target: BookingStatus, **values) -> int:
        stmt = (
            update(Booking)
            .where(Booking.id.in_(booking_ids), Booking.status.in_(expected))
            .values(status=target.value, **values)
            .execution_options(synchronize_session=False)
        )
        return self.session.execute(stmt).rowcount

    # ---------- reads ----------
    def get(self, booking_id):
        return self.session.execute(
            select(Booking).where(Booking.id == booking_id).execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def by_order(self, order_ref: str):
        return self.session.execute(
            select(Booking)
            .where(Booking.order_ref == order_ref)
            .order_by(Booking.id.asc())
            .execution_options(populate_existing=True)
        ).scalars().all()

    def for_player(self, user_id: int, status=None):
        q = select(Booking).where(Booking.user_id == user_id)
        if status:
            q = q.where(Booking.status == status)
        return self.session.execute(q.order_by(Booking.created_at.desc())).scalars().all()

    def for_owner(self, owner_id: int, status=None):
        q = (
            select(Booking)
            .join(Turf, Booking.turf_id == Turf.id)
            .where(Turf.owner_id == owner_id)
        )
        if status:
            q = q.where(Booking.status == status)
        return self.session.execute(q.order_by(Booking.created_at.desc()).limit(200)).scalars().all()

    # ---------- creation ----------
    def create_pending(self, user_id: int, claimed, order_ref: str):
        """One pending booking per (slot, captured price) pair."""
        rows = [
            Booking(
                user_id=user_id,
                slot_id=slot_id,
                turf_id=turf_id,
                status=PENDING,
                total_amount=price,
                order_ref=order_ref,
            )
            for slot_id, turf_id, price in claimed
        ]
        self.session.add_all(rows)
        self.session.flush()
        return rows

    def create_confirmed(self, user_id: int, slot, now):
        booking = Booking(
            user_id=user_id,
            slot_id=slot.id,
            turf_id=slot.turf_id,
            status=CONFIRMED,
            total_amount=to_amount(slot.price),
            confirmed_at=now,
        )
        self.session.add(booking)
        self.session.flush()
        return booking

    # ---------- transitions ----------
    def expire_pending_on_slots(self, slot_ids) -> int:
        stmt = (
            update(Booking)
            .where(Booking.slot_id.in_(slot_ids), Booking.status == PENDING)
            .values(status=BookingStatus.EXPIRED.value)
            .execution_options(synchronize_session=False)
        )
        return self.session.execute(stmt).rowcount

    def expire(self, booking_ids) -> int:
        return self._transition(booking_ids, [PENDING], BookingStatus.EXPIRED)

    def confirm(self, booking_ids, now) -> int:
        return self._transition(booking_ids, [PENDING], BookingStatus.CONFIRMED, confirmed_at=now)

    def cancel(self, booking_id: int, target: BookingStatus, now, refund_amount,
               penalty=None, reason=None) -> int:
        return self._transition(
            [booking_id],
            ACTIVE,
            target,
            cancelled_at=now,
            refund_amount=refund_amount,
            penalty_applied=penalty,
            cancellation_reason=reason,
        )

    # ---------- cancellation quota (derived, never stored) ----------
    def player_cancellations_since(self, user_id: int, since) -> int:
        return self.session.execute(
            select(func.count(Booking.id)).where(
                Booking.user_id == user_id,
                Booking.status == BookingStatus.CANCELLED_BY_PLAYER.value,
                Booking.cancelled_at >= since,
            )
        ).scalar_one()

    def owner_cancellations_since(self, owner_id: int, since) -> int:
        # counted across every turf the owner has, through the slot's turf
        return self.session.execute(
            select(func.count(Booking.id))
            .join(Slot, Booking.slot_id == Slot.id)
            .join(Turf, Slot.turf_id == Turf.id)
            .where(
                Turf.owner_id == owner_id,
                Booking.status == BookingStatus.CANCELLED_BY_OWNER.value,
                Booking.cancelled_at >= since,
            )
        ).scalar_one()

    # ---------- payments ----------
    def create_payment(self, payer_id: int, order_ref: str, amount, amount_minor: int, currency: str):
        payment = Payment(
            payer_id=payer_id,
            order_ref=order_ref,
            amount=amount,
            amount_minor=amount_minor,
            currency=currency,
            status="INIT",
        )
        self.session.add(payment)
        return payment

    def payment_for_order(self, order_ref: str):
        return self.session.execute(
            select(Payment).where(Payment.order_ref == order_ref).execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def mark_paid(self, order_ref: str, gateway_payment_id: str, now) -> int:
        stmt = (
            update(Payment)
            .where(Payment.order_ref == order_ref, Payment.status == "INIT")
            .values(status="PAID", gateway_payment_id=gateway_payment_id, paid_at=now)
            .execution_options(synchronize_session=False)
        )
        return self.session.execute(stmt).rowcount

    def refundable(self, payment) -> Decimal:
        if payment is None:
            return Decimal("0.00")
        return max(Decimal("0.00"), to_amount(payment.amount) - to_amount(payment.refunded_amount))

    def record_refund(self, order_ref: str, amount) -> int:
        """Add ``amount`` to the order's refunded total; REFUNDED once it covers the charge."""
        refunded = Payment.refunded_amount + amount
        stmt = (
            update(Payment)
            .where(Payment.order_ref == order_ref)
            .values(
                refunded_amount=refunded,
                status=case((refunded >= Payment.amount, "REFUNDED"), else_=Payment.status),
            )
            .execution_options(synchronize_session=False)
        )
        return self.session.execute(stmt).rowcount

    def record_payment_id(self, order_ref: str, gateway_payment_id: str) -> int:
        stmt = (
            update(Payment)
            .where(Payment.order_ref == order_ref, Payment.gateway_payment_id.is_(None))
            .values(gateway_payment_id=gateway_payment_id)
            .execution_options(synchronize_session=False)
        )
        return self.session.execute(stmt).rowcount

    # ---------- earnings ----------
    def credit(self, entity_type: str, entity_id, amount, now) -> None:
        """Add ``amount`` to a running total, creating the row on first credit."""
        entity_id = str(entity_id)
        stmt = (
            update(Earning)
            .where(Earning.entity_type == entity_type, Earning.entity_id == entity_id)
            .values(amount=Earning.amount + amount, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if self.session.execute(stmt).rowcount:
            return
        self.session.add(Earning(entity_type=entity_type, entity_id=entity_id, amount=amount, updated_at=now))
        self.session.flush()
