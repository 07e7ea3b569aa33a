import enum
from datetime import datetime
from models.db import db


class BookingStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED_BY_PLAYER = "cancelled_by_player"
    CANCELLED_BY_OWNER = "cancelled_by_owner"
    # pending booking whose hold was superseded before payment landed
    EXPIRED = "expired"

    @property
    def is_active(self) -> bool:
        return self in ACTIVE_STATUSES

    def can_transition(self, target: "BookingStatus") -> bool:
        return target in TRANSITIONS[self]


ACTIVE_STATUSES = frozenset({BookingStatus.PENDING, BookingStatus.CONFIRMED})

TRANSITIONS = {
    BookingStatus.PENDING: frozenset({
        BookingStatus.CONFIRMED,
        BookingStatus.CANCELLED_BY_PLAYER,
        BookingStatus.CANCELLED_BY_OWNER,
        BookingStatus.EXPIRED,
    }),
    BookingStatus.CONFIRMED: frozenset({
        BookingStatus.CANCELLED_BY_PLAYER,
        BookingStatus.CANCELLED_BY_OWNER,
    }),
    BookingStatus.CANCELLED_BY_PLAYER: frozenset(),
    BookingStatus.CANCELLED_BY_OWNER: frozenset(),
    BookingStatus.EXPIRED: frozenset(),
}


class Booking(db.Model):
    __tablename__ = "bookings"

    id = db.Column(db.Integer, primary_key=True)

    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    slot_id = db.Column(db.Integer, db.ForeignKey("slots.id"), nullable=False, index=True)
    turf_id = db.Column(db.Integer, db.ForeignKey("turfs.id"), nullable=False, index=True)

    status = db.Column(db.String(30), nullable=False, default=BookingStatus.PENDING.value, index=True)

    # fixed at creation from the slot price, never recomputed
    total_amount = db.Column(db.Numeric(10, 2), nullable=False)
    order_ref = db.Column(db.String(255), nullable=True, index=True)

    refund_amount = db.Column(db.Numeric(10, 2), nullable=True)
    penalty_applied = db.Column(db.Numeric(10, 2), nullable=True)
    cancellation_reason = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    confirmed_at = db.Column(db.DateTime, nullable=True)
    cancelled_at = db.Column(db.DateTime, nullable=True, index=True)

    slot = db.relationship("Slot", lazy="joined")

    __table_args__ = (
        # Hard business-rule: one pending/confirmed booking per slot (prevents double booking)
        db.Index(
            "uq_booking_slot_active",
            "slot_id",
            unique=True,
            sqlite_where=db.text("status IN ('pending', 'confirmed')"),
            postgresql_where=db.text("status IN ('pending', 'confirmed')"),
        ),
    )

    @property
    def status_enum(self) -> BookingStatus:
        return BookingStatus(self.status)

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "slot_id": self.slot_id,
            "turf_id": self.turf_id,
            "status": self.status,
            "total_amount": str(self.total_amount),
            "order_id": self.order_ref,
            "refund_amount": str(self.refund_amount) if self.refund_amount is not None else None,
            "penalty_applied": str(self.penalty_applied) if self.penalty_applied is not None else None,
            "cancellation_reason": self.cancellation_reason,
            "created_at": self.created_at.isoformat(),
            "cancelled_at": self.cancelled_at.isoformat() if self.cancelled_at else None,
        }
