import logging

from flask import Blueprint, request

from services import gateway, payouts
from utils.audit import log_event
from utils.responses import send_response

logger = logging.getLogger(__name__)

webhook_bp = Blueprint("webhook", __name__, url_prefix="/webhooks")


@webhook_bp.post("/stripe")
def stripe_webhook():
    event = gateway.construct_event(request.data, request.headers.get("Stripe-Signature"))

    event_type = event["type"]
    obj = event["data"]["object"]

    if event_type == "account.updated":
        user = payouts.mark_account_updated(
            obj["id"],
            charges_enabled=bool(obj.get("charges_enabled")),
            details_submitted=bool(obj.get("details_submitted")),
        )
        if user:
            log_event("PAYOUT_ACCOUNT_UPDATED", entity="user", entity_id=user.id,
                      metadata={"account_id": obj["id"], "onboarding_complete": user.onboarding_complete})
        else:
            logger.info("account.updated for unknown account %s", obj["id"])
    elif event_type == "payment_intent.payment_failed":
        log_event("PAYMENT_INTENT_FAILED", entity="payment", entity_id=obj.get("id"),
                  metadata={"booking_id": (obj.get("metadata") or {}).get("booking_id")})
    else:
        logger.debug("Ignoring Stripe event %s", event_type)

    return send_response("Webhook received", {"received": True})
