from datetime import datetime

from flask import Blueprint, request, current_app, g

from models import db
from models.user import User, Role
from security.password import hash_password, verify_password, MIN_PASSWORD_LENGTH
from security.session import create_session, revoke_current_session, revoke_all_sessions
from services import gateway, otp
from services.errors import ConflictError, OtpTokenInvalid, ValidationError
from utils.audit import log_event
from utils.auth_context import login_required
from utils.responses import send_response


auth_bp = Blueprint("auth", __name__, url_prefix="/auth")

SELF_SERVICE_ROLES = ("BUYER", "SELLER")


def _is_valid_email(email: str) -> bool:
    return isinstance(email, str) and "@" in email and len(email) <= 255


def _check_new_password(password):
    if not isinstance(password, str) or len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")


def _user_view(user: User) -> dict:
    return {
        "id": user.id,
        "email": user.email,
        "name": user.full_name,
        "phone": user.phone_number,
        "roles": [r.name for r in user.roles],
        "customerId": user.customer_id,
        "accountId": user.account_id,
        "onboardingComplete": user.onboarding_complete,
    }


@auth_bp.post("/register")
def register():
    data = request.get_json(silent=True) or {}
    email = (data.get("email") or "").strip().lower()
    password = data.get("password") or ""
    full_name = (data.get("name") or "").strip() or None
    phone = (data.get("phone") or "").strip() or None
    role_name = (data.get("role") or "BUYER").strip().upper()

    if not _is_valid_email(email):
        raise ValidationError("Invalid email")
    _check_new_password(password)
    if role_name not in SELF_SERVICE_ROLES:
        raise ValidationError("role must be BUYER or SELLER")

    if User.query.filter_by(email=email).first():
        log_event("REGISTER_FAIL_EMAIL_EXISTS", metadata={"email": email})
        raise ConflictError("User already exists with this email")

    # Stripe objects first: if they fail no local user is left half-created
    customer = gateway.create_customer(email, name=full_name)
    account_id = None
    onboarding_url = None
    if role_name == "SELLER":
        account = gateway.create_connected_account(email, email)
        account_id = account.id
        onboarding_url = gateway.create_account_link(account_id)

    user = User(
        email=email,
        password_hash=hash_password(password, current_app.config.get("BCRYPT_ROUNDS", 12)),
        full_name=full_name,
        phone_number=phone,
        customer_id=customer.id,
        account_id=account_id,
    )
    db.session.add(user)
    db.session.flush()

    role = Role.query.filter_by(name=role_name).first()
    if role:
        user.roles.append(role)
    db.session.commit()

    log_event("REGISTER_SUCCESS", actor_id=user.id, metadata={"role": role_name})

    data = _user_view(user)
    data["accessToken"] = create_session(user.id)
    data["onboardingUrl"] = onboarding_url
    return send_response("User registered successfully", data, 201)


@auth_bp.post("/login")
def login():
    data = request.get_json(silent=True) or {}
    email = (data.get("email") or "").strip().lower()
    password = data.get("password") or ""

    user = User.query.filter_by(email=email).first()
    if not user or not verify_password(password, user.password_hash):
        log_event("LOGIN_FAIL", actor_id=user.id if user else None, metadata={"email": email})
        raise ValidationError("Invalid credentials", status_code=401)

    token = create_session(user.id)
    log_event("LOGIN_SUCCESS", actor_id=user.id)

    out = _user_view(user)
    out["accessToken"] = token
    return send_response("User logged in successfully", out)


@auth_bp.get("/me")
@login_required
def me():
    return send_response("Profile retrieved", _user_view(g.user))


@auth_bp.post("/logout")
@login_required
def logout():
    revoke_current_session()
    log_event("LOGOUT", actor_id=g.user.id)
    return send_response("Logged out")


@auth_bp.post("/forgot-password")
def forgot_password():
    data = request.get_json(silent=True) or {}
    email = (data.get("email") or "").strip().lower()
    if not _is_valid_email(email):
        raise ValidationError("Invalid email")

    # same answer whether or not the account exists
    user = User.query.filter_by(email=email).first()
    if user:
        otp.issue(email, otp.PURPOSE_PASSWORD_RESET, current_app.config.get("OTP_TTL_SECONDS", 300))
        log_event("PASSWORD_RESET_OTP_SENT", actor_id=user.id)
    return send_response("If the account exists, an OTP has been sent")


@auth_bp.post("/verify-otp")
def verify_otp():
    data = request.get_json(silent=True) or {}
    email = (data.get("email") or "").strip().lower()
    code = data.get("otp")
    if not _is_valid_email(email) or code is None:
        raise ValidationError("email and otp are required")

    confirmation = otp.verify(email, code, otp.PURPOSE_PASSWORD_RESET)
    user = User.query.filter_by(email=email).first()
    if not user:
        raise OtpTokenInvalid()
    # bound to the current password; any change invalidates the token
    token = otp.sign_confirmation(otp.PURPOSE_PASSWORD_RESET, email, confirmation,
                                  pwc=user.password_changed_at.isoformat())
    return send_response("OTP verified", {"resetToken": token})


@auth_bp.post("/change-password")
def change_password():
    data = request.get_json(silent=True) or {}
    new_password = data.get("newPassword") or ""
    reset_token = data.get("resetToken")

    if reset_token:
        claims = otp.load_confirmation(reset_token, otp.PURPOSE_PASSWORD_RESET)
        user = User.query.filter_by(email=claims.get("sub")).first()
        if not user or claims.get("pwc") != user.password_changed_at.isoformat():
            raise OtpTokenInvalid()
    else:
        user = getattr(g, "user", None)
        if user is None:
            raise ValidationError("Authentication required", status_code=401)
        if not verify_password(data.get("currentPassword") or "", user.password_hash):
            raise ValidationError("Invalid current password", status_code=401)

    _check_new_password(new_password)
    user.password_hash = hash_password(new_password, current_app.config.get("BCRYPT_ROUNDS", 12))
    user.password_changed_at = datetime.utcnow()
    db.session.commit()

    revoked = revoke_all_sessions(user.id)
    log_event("PASSWORD_CHANGED", actor_id=user.id, metadata={"revoked_sessions": revoked, "via_reset": bool(reset_token)})
    return send_response("Password changed successfully")
