from datetime import datetime
from models.db import db

# payment/settlement lifecycle
STATUS_CREATED = "CREATED"
STATUS_PAID = "PAID"
STATUS_COMPLETED = "COMPLETED"
STATUS_CANCELLED = "CANCELLED"

# seller acceptance, independent of payment
BOOKING_PENDING = "PENDING"
BOOKING_CONFIRMED = "CONFIRMED"

class Booking(db.Model):
    __tablename__ = "bookings"

    id = db.Column(db.Integer, primary_key=True)

    buyer_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    service_id = db.Column(db.Integer, db.ForeignKey("services.id"), nullable=False, index=True)
    slot_id = db.Column(db.Integer, db.ForeignKey("time_slots.id"), nullable=False, index=True)
    slot_label = db.Column(db.String(64), nullable=False)

    price = db.Column(db.Numeric(10, 2), nullable=False)

    booking_status = db.Column(db.String(20), nullable=False, default=BOOKING_PENDING)
    status = db.Column(db.String(20), nullable=False, default=STATUS_CREATED)

    payment_intent_id = db.Column(db.String(255), nullable=True, index=True)
    is_paid = db.Column(db.Boolean, default=False, nullable=False)
    # part of the payout idempotency key; moves on only after a rejected transfer
    transfer_attempt = db.Column(db.Integer, default=1, nullable=False)

    # request details
    attendee_name = db.Column(db.String(120), nullable=True)
    attendee_age = db.Column(db.Integer, nullable=True)
    scheduled_date = db.Column(db.String(32), nullable=True)
    notes = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    cancelled_at = db.Column(db.DateTime, nullable=True)
    cancel_reason = db.Column(db.String(120), nullable=True)
    completed_at = db.Column(db.DateTime, nullable=True)

    buyer = db.relationship("User")
    service = db.relationship("Service")
    slot = db.relationship("TimeSlot")

    __table_args__ = (
        # at most one live booking per slot; cancelled bookings free it again
        db.Index(
            "uq_booking_active_slot",
            "slot_id",
            unique=True,
            sqlite_where=db.text("status != 'CANCELLED'"),
            postgresql_where=db.text("status != 'CANCELLED'"),
        ),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in (STATUS_COMPLETED, STATUS_CANCELLED)
