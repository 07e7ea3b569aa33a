from datetime import datetime
from models.db import db

class Payment(db.Model):
    __tablename__ = "payments"

    id = db.Column(db.Integer, primary_key=True)
    payer_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    provider = db.Column(db.String(20), nullable=False, default="STRIPE")
    amount = db.Column(db.Numeric(10, 2), nullable=False)
    amount_minor = db.Column(db.Integer, nullable=False)  # what the gateway was asked to charge
    currency = db.Column(db.String(10), nullable=False, default="INR")

    status = db.Column(db.String(20), nullable=False, default="INIT")  # INIT, PAID, REFUNDED
    order_ref = db.Column(db.String(255), nullable=False, unique=True, index=True)
    gateway_payment_id = db.Column(db.String(255), nullable=True, index=True)
    refunded_amount = db.Column(db.Numeric(10, 2), nullable=False, default=0)  # across every refund of this order

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    paid_at = db.Column(db.DateTime, nullable=True)
