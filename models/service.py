from datetime import datetime
from models.db import db

class Service(db.Model):
    __tablename__ = "services"

    id = db.Column(db.Integer, primary_key=True)
    owner_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    title = db.Column(db.String(160), nullable=False)
    description = db.Column(db.Text, nullable=True)
    location = db.Column(db.String(160), nullable=True)
    price = db.Column(db.Numeric(10, 2), nullable=False)  # major units (e.g. dollars)

    is_active = db.Column(db.Boolean, default=True, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    owner = db.relationship("User")
    slots = db.relationship("TimeSlot", back_populates="service", order_by="TimeSlot.id")
