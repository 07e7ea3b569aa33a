from datetime import datetime
from models.db import db

class Turf(db.Model):
    __tablename__ = "turfs"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    location = db.Column(db.String(160), nullable=False)
    description = db.Column(db.Text, nullable=True)

    # PENDING until an admin reviews the listing; only APPROVED turfs take bookings
    status = db.Column(db.String(20), nullable=False, default="PENDING")
    owner_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    verified_at = db.Column(db.DateTime, nullable=True)
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    @property
    def is_bookable(self) -> bool:
        return self.is_active and self.status == "APPROVED"
