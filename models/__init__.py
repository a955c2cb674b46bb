from .db import db
from .user import User, Role, user_roles
from .audit_log import AuditLog
from .session import Session
from .service import Service
from .slot import TimeSlot
from .booking import Booking
from .payment import PaymentRecord
from .payment_event import PaymentEvent
from .otp_challenge import OtpChallenge
