import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from services.errors import (
    GatewayError,
    InvalidRequest,
    OwnershipMismatch,
    PaymentGatewayUnavailable,
    SlotUnavailable,
)
from utils.audit import log_event
from utils.money import to_amount, to_minor_units
from utils.timeutil import naive_utc

logger = logging.getLogger(__name__)


@dataclass
class Reservation:
    booking_ids: list
    order_id: str
    amount: Decimal
    amount_minor: int
    currency: str
    hold_expires_at: datetime = None
    slot_ids: list = field(default_factory=list)

    def to_dict(self):
        return {
            "booking_ids": self.booking_ids,
            "order_id": self.order_id,
            "amount": str(self.amount),
            "amount_minor": self.amount_minor,
            "currency": self.currency,
            "hold_expires_at": self.hold_expires_at.isoformat() if self.hold_expires_at else None,
        }


class ReservationCoordinator:
    """Turns a slot selection into held slots, pending bookings and one gateway order.

    The claim is a single conditional UPDATE over the whole selection, so
    either every slot becomes held by the caller or none does. The gateway
    is called between two short transactions, never while rows are locked.
    """

    def __init__(self, session, store, ledger, gateway, clock, currency: str = "INR", audit=log_event):
        self.session = session
        self.store = store
        self.ledger = ledger
        self.gateway = gateway
        self.clock = clock
        self.currency = currency
        self.audit = audit

    def _validate_selection(self, slot_ids, slots):
        found = {s.id for s in slots}
        missing = [sid for sid in slot_ids if sid not in found]
        if missing:
            raise SlotUnavailable("One or more slots do not exist", slot_ids=missing)

        closed = [s.id for s in slots if s.turf is None or not s.turf.is_bookable]
        if closed:
            raise SlotUnavailable("Turf is not accepting bookings", slot_ids=closed)

        owners = {s.turf.owner_id for s in slots}
        if len(owners) > 1:
            raise OwnershipMismatch()

    def _release(self, slot_ids, user_id: int):
        try:
            self.store.release_hold(slot_ids, user_id)
            self.session.commit()
        except SQLAlchemyError:
            self.session.rollback()
            logger.exception("Could not release holds on slots %s; they lapse with the hold TTL", slot_ids)

    def reserve(self, user_id: int, slot_ids) -> Reservation:
        if not isinstance(slot_ids, (list, tuple)) or not slot_ids:
            raise InvalidRequest("No slots selected")
        try:
            slot_ids = list(dict.fromkeys(int(sid) for sid in slot_ids))
        except (TypeError, ValueError):
            raise InvalidRequest("slot_ids must be integers")

        if not self.gateway.is_configured():
            raise PaymentGatewayUnavailable()

        self._validate_selection(slot_ids, self.store.get_many(slot_ids))

        # 1) claim every slot or none
        try:
            claimed = self.store.claim(slot_ids, user_id)
            if claimed != len(slot_ids):
                self.session.rollback()
                taken = self.store.unclaimable(slot_ids, user_id) or slot_ids
                self.session.rollback()
                logger.info("Reservation by user %s lost slots %s", user_id, taken)
                raise SlotUnavailable(slot_ids=taken)
            priced = [(s.id, s.turf_id, to_amount(s.price)) for s in self.store.get_many(slot_ids)]
            self.session.commit()
        except SQLAlchemyError:
            self.session.rollback()
            raise

        total = sum((price for _, _, price in priced), Decimal("0.00"))
        amount_minor = to_minor_units(total)

        # 2) external order, outside any transaction
        try:
            order = self.gateway.create_order(amount_minor, self.currency, metadata={
                "user_id": str(user_id),
                "slot_ids": ",".join(str(sid) for sid in slot_ids),
            })
        except GatewayError as exc:
            logger.warning("Order creation failed for user %s: %s", user_id, exc)
            self._release(slot_ids, user_id)
            raise PaymentGatewayUnavailable("Payment order failed") from exc

        # 3) pending bookings against the order, if the holds survived the gateway call
        try:
            if self.store.refresh_hold(slot_ids, user_id) != len(slot_ids):
                self.session.rollback()
                taken = self.store.unclaimable(slot_ids, user_id) or slot_ids
                self._release(slot_ids, user_id)
                raise SlotUnavailable(slot_ids=taken)
            self.ledger.expire_pending_on_slots(slot_ids)
            bookings = self.ledger.create_pending(user_id, priced, order.order_id)
            self.ledger.create_payment(user_id, order.order_id, total, amount_minor, self.currency)
            booking_ids = [b.id for b in bookings]
            self.session.commit()
        except SQLAlchemyError:
            self.session.rollback()
            self._release(slot_ids, user_id)
            raise

        held = self.store.get_many(slot_ids)
        reservation = Reservation(
            booking_ids=booking_ids,
            order_id=order.order_id,
            amount=total,
            amount_minor=amount_minor,
            currency=self.currency,
            hold_expires_at=held[0].hold_expires_at if held else None,
            slot_ids=slot_ids,
        )
        self.audit(
            "BOOKING_RESERVE",
            user_id=user_id,
            entity="order",
            entity_id=order.order_id,
            metadata={"booking_ids": booking_ids, "slot_ids": slot_ids, "amount": str(total)},
        )
        return reservation

    def book_direct(self, user_id: int, slot_id: int):
        """Legacy no-payment flow: available -> booked with a confirmed booking."""
        slot = self.store.get(slot_id)
        if slot is None:
            raise SlotUnavailable("Slot does not exist", slot_ids=[slot_id])
        self._validate_selection([slot_id], [slot])

        try:
            if self.store.book_directly(slot_id) != 1:
                self.session.rollback()
                raise SlotUnavailable("Slot not available", slot_ids=[slot_id])
            booking = self.ledger.create_confirmed(user_id, self.store.get(slot_id), naive_utc(self.clock()))
            self.session.commit()
        except IntegrityError:
            self.session.rollback()
            raise SlotUnavailable("Slot not available", slot_ids=[slot_id])
        except SQLAlchemyError:
            self.session.rollback()
            raise

        self.audit("BOOKING_CREATE", user_id=user_id, entity="booking", entity_id=booking.id,
                   metadata={"slot_id": slot_id})
        return booking
