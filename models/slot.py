import enum
from datetime import datetime
from models.db import db


class SlotStatus(str, enum.Enum):
    AVAILABLE = "available"
    HELD = "held"
    BOOKED = "booked"


class Slot(db.Model):
    __tablename__ = "slots"

    id = db.Column(db.Integer, primary_key=True)

    turf_id = db.Column(db.Integer, db.ForeignKey("turfs.id"), nullable=False, index=True)
    # facility-local wall clock; legacy rows may miss date/time
    date = db.Column(db.Date, nullable=True, index=True)
    start_time = db.Column(db.Time, nullable=True)
    end_time = db.Column(db.Time, nullable=True)
    label = db.Column(db.String(60), nullable=True)

    price = db.Column(db.Numeric(10, 2), nullable=False, default=0)

    status = db.Column(db.String(20), nullable=False, default=SlotStatus.AVAILABLE.value, index=True)
    held_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    hold_expires_at = db.Column(db.DateTime, nullable=True)
    # mirrors status == booked for older clients
    is_booked = db.Column(db.Boolean, default=False, nullable=False)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    turf = db.relationship("Turf", lazy="joined")

    __table_args__ = (
        # Prevent duplicate slot times for same turf
        db.UniqueConstraint("turf_id", "date", "start_time", "end_time", name="uq_turf_timeslot"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "turf_id": self.turf_id,
            "date": self.date.isoformat() if self.date else None,
            "start_time": self.start_time.strftime("%H:%M") if self.start_time else None,
            "end_time": self.end_time.strftime("%H:%M") if self.end_time else None,
            "label": self.label,
            "price": str(self.price),
            "status": self.status,
            "is_booked": self.is_booked,
        }
