from flask import Blueprint, request, g

from models import db
from security.rbac import require_roles
from services import gateway, payouts, settlement
from services.errors import ValidationError
from utils.audit import log_event
from utils.auth_context import login_required
from utils.responses import send_response

payments_bp = Blueprint("payments", __name__, url_prefix="/payments")


# ---------- saved cards ----------
@payments_bp.post("/save-card")
@login_required
def save_card():
    data = request.get_json(silent=True) or {}
    payment_method_id = (data.get("paymentMethodId") or "").strip()
    if not payment_method_id:
        raise ValidationError("paymentMethodId is required")

    user = g.user
    if not user.customer_id:
        address = data.get("address") or None
        customer = gateway.create_customer(user.email, name=user.full_name, address=address)
        user.customer_id = customer.id
        db.session.commit()

    gateway.attach_payment_method(user.customer_id, payment_method_id)
    gateway.set_default_payment_method(user.customer_id, payment_method_id)

    log_event("CARD_SAVED", actor_id=user.id, metadata={"payment_method_id": payment_method_id})
    return send_response("Card saved", {"customerId": user.customer_id, "paymentMethodId": payment_method_id})


@payments_bp.get("/cards")
@login_required
def list_cards():
    if not g.user.customer_id:
        return send_response("Cards retrieved", [])
    return send_response("Cards retrieved", gateway.list_cards(g.user.customer_id))


@payments_bp.delete("/cards/<payment_method_id>")
@login_required
def delete_card(payment_method_id: str):
    owned = {c["id"] for c in gateway.list_cards(g.user.customer_id)} if g.user.customer_id else set()
    if payment_method_id not in owned:
        raise ValidationError("Card not found on your account", status_code=404)
    gateway.detach_payment_method(payment_method_id)
    log_event("CARD_DELETED", actor_id=g.user.id, metadata={"payment_method_id": payment_method_id})
    return send_response("Card deleted successfully")


# ---------- booking payments ----------
@payments_bp.post("/make-payment")
@login_required
def make_payment():
    data = request.get_json(silent=True) or {}
    booking_id = data.get("bookingId")
    payment_method_id = (data.get("paymentMethodId") or "").strip()
    if not booking_id or not payment_method_id:
        raise ValidationError("bookingId and paymentMethodId are required")

    result, record = settlement.authorize_payment(g.user, booking_id, payment_method_id, data.get("amount"))
    if not result.success:
        # not an exception: the booking stays payable and the client may retry
        return send_response("PaymentIntent not succeeded", result.to_dict(), 402)

    return send_response("Payment processed successfully", {
        "paymentId": record.id,
        "paymentIntentId": record.payment_intent_id,
        "status": result.status,
    })


@payments_bp.post("/capture-payment")
@login_required
def capture_payment():
    data = request.get_json(silent=True) or {}
    payment_intent_id = (data.get("paymentIntentId") or "").strip()
    if not payment_intent_id:
        raise ValidationError("paymentIntentId is required")

    intent = settlement.capture_payment(g.user, payment_intent_id)
    return send_response("Payment captured", {
        "paymentIntentId": intent.id,
        "status": intent.status,
        "amountReceived": intent.amount_received,
    })


@payments_bp.post("/refund-payment/<int:order_id>")
@login_required
def refund_payment(order_id: int):
    data = request.get_json(silent=True) or {}
    result = settlement.refund_payment(g.user, order_id, data.get("amount"))
    return send_response("Refund payment successfully", result)


@payments_bp.post("/transfer-funds/<int:booking_id>")
@login_required
def transfer_funds(booking_id: int):
    data = request.get_json(silent=True) or {}
    release_token = data.get("releaseToken")
    if not release_token:
        raise ValidationError("releaseToken is required; verify the booking OTP first")

    result = settlement.release_payout(g.user, booking_id, release_token)
    return send_response("Funds transferred to the seller", result)


# ---------- seller payouts ----------
@payments_bp.post("/onboarding-link")
@require_roles("SELLER")
def onboarding_link():
    status = payouts.sync_account_status(g.user) if g.user.account_id else None
    if status and status.onboarding_complete:
        return send_response("Onboarding already complete", {"onboardingComplete": True})

    url = payouts.send_onboarding_link(g.user)
    return send_response("Onboarding link sent", {"onboardingComplete": False, "url": url})
