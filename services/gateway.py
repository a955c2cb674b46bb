"""
Stripe adapter. Nothing else in the codebase imports stripe.

Amounts cross this boundary in minor units (cents). Processor errors are
mapped to GatewayError subclasses with the failing operation and reference;
nothing is retried here.
"""
import logging
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation

import stripe
from flask import current_app

from services.errors import (
    CaptureFailed,
    GatewayError,
    NoConnectedAccount,
    RefundFailed,
    TransferFailed,
    ValidationError,
)

logger = logging.getLogger(__name__)

# statuses meaning the buyer's funds are secured
AUTHORIZED_STATUSES = ("succeeded", "requires_capture")


@dataclass
class AuthorizationResult:
    success: bool
    status: str
    payment_intent_id: str | None = None
    amount_cents: int = 0
    amount_received: int = 0
    message: str | None = None

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "status": self.status,
            "paymentIntentId": self.payment_intent_id,
            "message": self.message,
        }


@dataclass
class AccountStatus:
    account_id: str
    charges_enabled: bool
    details_submitted: bool
    requirements: list = field(default_factory=list)

    @property
    def onboarding_complete(self) -> bool:
        return self.charges_enabled and self.details_submitted


def to_minor_units(amount) -> int:
    try:
        value = Decimal(str(amount))
    except (InvalidOperation, ValueError):
        raise ValidationError("amount must be a number", {"amount": amount})
    if not value.is_finite():
        raise ValidationError("amount must be a number", {"amount": amount})
    return int((value * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(cents: int) -> Decimal:
    return (Decimal(cents) / 100).quantize(Decimal("0.01"))


def transfer_amount(amount_received: int, fee_percent: int | None = None) -> int:
    """Seller share of amount_received (cents), always rounded down."""
    if fee_percent is None:
        fee_percent = current_app.config.get("PLATFORM_FEE_PERCENT", 10)
    if not 0 <= fee_percent <= 100:
        raise ValidationError("platform fee must be between 0 and 100 percent")
    return (int(amount_received) * (100 - fee_percent)) // 100


def _currency() -> str:
    return current_app.config.get("PAYMENT_CURRENCY", "usd")


def _configure(operation: str, reference):
    api_key = current_app.config.get("STRIPE_SECRET_KEY")
    if not api_key:
        raise GatewayError(operation, reference, "Stripe secret key missing (STRIPE_SECRET_KEY)", status_code=500)
    stripe.api_key = api_key


def _call(error_cls, operation: str, reference, fn, *args, **kwargs):
    _configure(operation, reference)
    try:
        return fn(*args, **kwargs)
    except stripe.StripeError as exc:
        message = exc.user_message or str(exc) or exc.__class__.__name__
        logger.warning("Stripe %s failed for %s: %s", operation, reference, message)
        raise error_cls(operation, reference, message, status_code=exc.http_status or None)


def authorize(customer_id: str, payment_method_id: str, amount, *, capture_method=None,
              metadata=None, idempotency_key=None) -> AuthorizationResult:
    """
    Off-session, confirm-immediately PaymentIntent for amount (major units).

    A declined card or any non-authorized status comes back as
    AuthorizationResult(success=False); only transport/processor failures raise.
    """
    amount_cents = to_minor_units(amount)
    if amount_cents <= 0:
        raise ValidationError("amount must be greater than zero", {"amount": str(amount)})
    if not customer_id:
        raise ValidationError("customerId is required")
    if not payment_method_id:
        raise ValidationError("paymentMethodId is required")

    capture_method = capture_method or current_app.config.get("PAYMENT_CAPTURE_METHOD", "automatic")
    _configure("authorize", customer_id)
    try:
        intent = stripe.PaymentIntent.create(
            amount=amount_cents,
            currency=_currency(),
            customer=customer_id,
            payment_method=payment_method_id,
            off_session=True,
            confirm=True,
            capture_method=capture_method,
            metadata=metadata or {},
            idempotency_key=idempotency_key,
        )
    except stripe.CardError as exc:
        intent = getattr(exc.error, "payment_intent", None) if exc.error else None
        status = getattr(intent, "status", None) or "requires_payment_method"
        logger.info("Authorization declined for customer %s: %s", customer_id, exc.user_message)
        return AuthorizationResult(
            success=False,
            status=status,
            payment_intent_id=getattr(intent, "id", None),
            amount_cents=amount_cents,
            message=exc.user_message or "Card declined",
        )
    except stripe.StripeError as exc:
        message = exc.user_message or str(exc)
        logger.warning("Stripe authorize failed for %s: %s", customer_id, message)
        raise GatewayError("authorize", customer_id, message, status_code=exc.http_status or None)

    success = intent.status in AUTHORIZED_STATUSES
    return AuthorizationResult(
        success=success,
        status=intent.status,
        payment_intent_id=intent.id,
        amount_cents=amount_cents,
        amount_received=intent.amount_received or 0,
        message=None if success else "PaymentIntent not succeeded",
    )


def retrieve_payment_intent(payment_intent_id: str):
    return _call(GatewayError, "retrieve_payment_intent", payment_intent_id,
                 stripe.PaymentIntent.retrieve, payment_intent_id)


def capture(payment_intent_id: str):
    intent = _call(CaptureFailed, "capture", payment_intent_id, stripe.PaymentIntent.capture, payment_intent_id)
    if intent.status != "succeeded":
        raise CaptureFailed("capture", payment_intent_id, f"PaymentIntent is {intent.status}", status_code=409)
    return intent


def refund(payment_intent_id: str, amount_cents: int | None = None):
    """Full refund unless amount_cents is given."""
    params = {"payment_intent": payment_intent_id}
    if amount_cents is not None:
        if amount_cents <= 0:
            raise ValidationError("refund amount must be greater than zero")
        params["amount"] = amount_cents
    return _call(RefundFailed, "refund", payment_intent_id, stripe.Refund.create, **params)


def void(payment_intent_id: str):
    """Releases an authorization that was never captured."""
    return _call(RefundFailed, "void", payment_intent_id, stripe.PaymentIntent.cancel, payment_intent_id)


def transfer(destination_account_id: str, amount_cents: int, description: str, *,
             idempotency_key=None, metadata=None):
    if not destination_account_id:
        raise NoConnectedAccount(None)
    if amount_cents <= 0:
        raise ValidationError("transfer amount must be greater than zero")
    return _call(
        TransferFailed, "transfer", destination_account_id,
        stripe.Transfer.create,
        amount=amount_cents,
        currency=_currency(),
        destination=destination_account_id,
        description=description,
        metadata=metadata or {},
        idempotency_key=idempotency_key,
    )


def retrieve_account(account_id: str) -> AccountStatus:
    account = _call(GatewayError, "retrieve_account", account_id, stripe.Account.retrieve, account_id)
    requirements = getattr(account, "requirements", None)
    currently_due = list(getattr(requirements, "currently_due", None) or []) if requirements else []
    return AccountStatus(
        account_id=account.id,
        charges_enabled=bool(account.charges_enabled),
        details_submitted=bool(account.details_submitted),
        requirements=currently_due,
    )


def create_connected_account(email: str, user_ref):
    return _call(
        GatewayError, "create_account", email,
        stripe.Account.create,
        type="express",
        country=current_app.config.get("CONNECT_ACCOUNT_COUNTRY", "US"),
        email=email,
        metadata={"userId": str(user_ref)},
        capabilities={
            "card_payments": {"requested": True},
            "transfers": {"requested": True},
        },
    )


def create_account_link(account_id: str) -> str:
    link = _call(
        GatewayError, "create_account_link", account_id,
        stripe.AccountLink.create,
        account=account_id,
        refresh_url=current_app.config["ONBOARDING_REFRESH_URL"],
        return_url=current_app.config["ONBOARDING_RETURN_URL"],
        type="account_onboarding",
    )
    return link.url


def create_customer(email: str, name=None, address=None):
    params = {"email": email}
    if name:
        params["name"] = name
    if address:
        params["address"] = address
    return _call(GatewayError, "create_customer", email, stripe.Customer.create, **params)


def attach_payment_method(customer_id: str, payment_method_id: str):
    return _call(GatewayError, "attach_payment_method", payment_method_id,
                 stripe.PaymentMethod.attach, payment_method_id, customer=customer_id)


def set_default_payment_method(customer_id: str, payment_method_id: str):
    return _call(GatewayError, "update_customer", customer_id,
                 stripe.Customer.modify, customer_id,
                 invoice_settings={"default_payment_method": payment_method_id})


def list_cards(customer_id: str) -> list[dict]:
    methods = _call(GatewayError, "list_payment_methods", customer_id,
                    stripe.PaymentMethod.list, customer=customer_id, type="card")
    return [
        {"id": pm.id, "brand": pm.card.brand, "last4": pm.card.last4}
        for pm in methods.data
    ]


def detach_payment_method(payment_method_id: str):
    return _call(GatewayError, "detach_payment_method", payment_method_id,
                 stripe.PaymentMethod.detach, payment_method_id)


def construct_event(payload: bytes, sig_header: str):
    secret = current_app.config.get("STRIPE_WEBHOOK_SECRET")
    if not secret:
        raise GatewayError("webhook", None, "Webhook secret not configured", status_code=500)
    try:
        return stripe.Webhook.construct_event(payload, sig_header, secret)
    except (ValueError, stripe.SignatureVerificationError):
        raise ValidationError("Invalid webhook signature")
