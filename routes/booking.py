from flask import Blueprint, request, g

from security.rbac import require_roles
from services import settlement
from services.errors import ValidationError
from utils.auth_context import login_required
from utils.responses import send_response

booking_bp = Blueprint("booking", __name__, url_prefix="/bookings")


# ---------- BUYERS: request and manage bookings ----------
@booking_bp.post("/request-booking")
@login_required
def request_booking():
    data = request.get_json(silent=True) or {}
    service_id = data.get("serviceId")
    if not service_id or not data.get("time"):
        raise ValidationError("serviceId and time are required")

    booking = settlement.request_booking(g.user, service_id, data.get("time"), data)
    return send_response("Booking requested successfully", settlement.booking_view(booking), 201)


@booking_bp.get("/my-bookings")
@login_required
def my_bookings():
    page = max(request.args.get("page", default=1, type=int), 1)
    limit = min(max(request.args.get("limit", default=20, type=int), 1), 100)
    rows, total = settlement.list_my_bookings(g.user, request.args.get("status"), page, limit)
    return send_response("Bookings retrieved", {
        "meta": {"total": total, "page": page, "limit": limit},
        "data": [settlement.booking_view(b) for b in rows],
    })


@booking_bp.post("/cancel-booking/<int:booking_id>")
@login_required
def cancel_booking(booking_id: int):
    data = request.get_json(silent=True) or {}
    booking = settlement.cancel_booking(g.user, booking_id, (data.get("reason") or "").strip() or None)
    return send_response("Booking cancelled", settlement.booking_view(booking))


@booking_bp.post("/resend-otp/<int:booking_id>")
@login_required
def resend_otp(booking_id: int):
    expires_at = settlement.resend_completion_otp(g.user, booking_id)
    return send_response("Confirmation code sent", {"expiresAt": expires_at.isoformat()})


# ---------- SELLERS: respond to bookings ----------
@booking_bp.get("/my-booking-as-seller")
@require_roles("SELLER")
def my_booking_as_seller():
    rows = settlement.list_seller_bookings(g.user, request.args.get("status"))
    return send_response("Bookings retrieved", [settlement.booking_view(b) for b in rows])


@booking_bp.get("/my-single-booking-as-seller/<int:booking_id>")
@require_roles("SELLER")
def my_single_booking_as_seller(booking_id: int):
    booking = settlement.get_seller_booking(g.user, booking_id)
    return send_response("Booking retrieved", settlement.booking_view(booking))


@booking_bp.post("/accept-booking/<int:booking_id>")
@login_required
def accept_booking(booking_id: int):
    booking = settlement.accept_booking(g.user, booking_id)
    return send_response("Booking accepted", settlement.booking_view(booking))


@booking_bp.post("/decline-booking/<int:booking_id>")
@login_required
def decline_booking(booking_id: int):
    data = request.get_json(silent=True) or {}
    booking = settlement.decline_booking(g.user, booking_id, (data.get("reason") or "").strip() or None)
    return send_response("Booking declined", settlement.booking_view(booking))


# ---------- completion ----------
@booking_bp.post("/verify-otp/<int:booking_id>")
@login_required
def verify_otp(booking_id: int):
    data = request.get_json(silent=True) or {}
    if data.get("otp") is None:
        raise ValidationError("otp is required")
    token = settlement.verify_completion_otp(g.user, booking_id, data.get("otp"))
    return send_response("OTP verified", {"releaseToken": token})


@booking_bp.post("/complete-booking/<int:booking_id>")
@login_required
def complete_booking(booking_id: int):
    data = request.get_json(silent=True) or {}
    if data.get("otp") is None:
        raise ValidationError("otp is required")
    result = settlement.complete_booking(g.user, booking_id, data.get("otp"))
    return send_response("Booking completed and funds transferred", result)


@booking_bp.post("/reconcile/<int:booking_id>")
@require_roles("ADMIN")
def reconcile(booking_id: int):
    actions = settlement.reconcile_booking(booking_id)
    booking = settlement.get_booking(booking_id)
    return send_response("Booking reconciled", {"actions": actions, "booking": settlement.booking_view(booking)})
