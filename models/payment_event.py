from datetime import datetime
from models.db import db

EVENT_CAPTURE = "CAPTURE"
EVENT_REFUND = "REFUND"
EVENT_VOID = "VOID"
EVENT_TRANSFER = "TRANSFER"

class PaymentEvent(db.Model):
    """Append-only money movements referencing the original payment intent."""

    __tablename__ = "payment_events"

    id = db.Column(db.Integer, primary_key=True)
    booking_id = db.Column(db.Integer, db.ForeignKey("bookings.id"), nullable=False, index=True)
    payment_intent_id = db.Column(db.String(255), nullable=False, index=True)

    kind = db.Column(db.String(20), nullable=False)
    provider_ref = db.Column(db.String(255), nullable=True)  # re_..., tr_..., pi_...
    amount_cents = db.Column(db.Integer, nullable=False, default=0)
    destination_account_id = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        db.Index(
            "uq_payment_event_one_transfer",
            "booking_id",
            unique=True,
            sqlite_where=db.text("kind = 'TRANSFER'"),
            postgresql_where=db.text("kind = 'TRANSFER'"),
        ),
    )
