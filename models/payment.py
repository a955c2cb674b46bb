from datetime import datetime
from models.db import db

class PaymentRecord(db.Model):
    """Written once per successful authorization and never edited afterwards."""

    __tablename__ = "payment_records"

    id = db.Column(db.Integer, primary_key=True)
    booking_id = db.Column(db.Integer, db.ForeignKey("bookings.id"), nullable=False, index=True)

    payment_intent_id = db.Column(db.String(255), nullable=False, unique=True, index=True)
    customer_id = db.Column(db.String(255), nullable=False)
    payment_method_id = db.Column(db.String(255), nullable=True)

    amount = db.Column(db.Numeric(10, 2), nullable=False)  # major units
    amount_cents = db.Column(db.Integer, nullable=False)
    currency = db.Column(db.String(10), nullable=False, default="usd")
    capture_method = db.Column(db.String(20), nullable=False, default="automatic")

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    captured_at = db.Column(db.DateTime, nullable=True)
