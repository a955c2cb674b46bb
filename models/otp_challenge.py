from datetime import datetime
from models.db import db

class OtpChallenge(db.Model):
    __tablename__ = "otp_challenges"

    id = db.Column(db.Integer, primary_key=True)
    subject = db.Column(db.String(255), nullable=False, index=True)  # email or phone
    purpose = db.Column(db.String(64), nullable=False, default="PASSWORD_RESET")

    code_hash = db.Column(db.String(128), nullable=False)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    expires_at = db.Column(db.DateTime, nullable=False)

    attempts = db.Column(db.Integer, default=0, nullable=False)

    __table_args__ = (
        db.UniqueConstraint("subject", "purpose", name="uq_otp_subject_purpose"),
    )
