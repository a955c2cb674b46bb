from datetime import datetime
from models.db import db

SLOT_AVAILABLE = "AVAILABLE"
SLOT_BOOKED = "BOOKED"

class TimeSlot(db.Model):
    __tablename__ = "time_slots"

    id = db.Column(db.Integer, primary_key=True)

    service_id = db.Column(db.Integer, db.ForeignKey("services.id"), nullable=False, index=True)
    label = db.Column(db.String(64), nullable=False)  # "10:00", "2026-01-20T18:00", "morning"
    status = db.Column(db.String(20), nullable=False, default=SLOT_AVAILABLE)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    service = db.relationship("Service", back_populates="slots")

    __table_args__ = (
        db.UniqueConstraint("service_id", "label", name="uq_service_slot_label"),
    )
