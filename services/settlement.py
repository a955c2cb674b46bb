"""
Booking lifecycle and payment settlement.

    CREATED --authorize ok--------------------------> PAID
    CREATED --authorize declined--------------------> CREATED (slot stays booked)
    PAID    --OTP verified, capture, transfer-------> COMPLETED
    CREATED/PAID --decline/cancel/full refund-------> CANCELLED

Cancellation is the only compensation path: funds go back first, then the
booking is cancelled and its slot released. A refund failure leaves the
booking untouched so the caller can retry. COMPLETED is written only after
the payout transfer succeeded, and a booking is transferred at most once.

Every money movement is recorded as a PaymentEvent as soon as Stripe
confirms it, so reconcile_booking() can resume a flow that stopped halfway.
"""
import logging
from datetime import datetime

from flask import current_app
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from models import db
from models.booking import (
    Booking,
    BOOKING_CONFIRMED,
    BOOKING_PENDING,
    STATUS_CANCELLED,
    STATUS_COMPLETED,
    STATUS_CREATED,
    STATUS_PAID,
)
from models.payment import PaymentRecord
from models.payment_event import PaymentEvent, EVENT_CAPTURE, EVENT_REFUND, EVENT_TRANSFER, EVENT_VOID
from models.service import Service
from models.slot import SLOT_BOOKED
from services import gateway, otp, payouts, slots
from services.errors import (
    BookingNotFound,
    ConflictError,
    ForbiddenError,
    InvalidRefundState,
    InvalidTransition,
    OtpTokenInvalid,
    PaymentNotFound,
    ServiceNotFound,
    SlotUnavailable,
    StateError,
    TransferAlreadyMade,
    TransferFailed,
    ValidationError,
)
from utils.audit import log_event

logger = logging.getLogger(__name__)

RELEASE_PURPOSE = "PAYOUT_RELEASE"


# ---------- lookups and permission checks ----------

def get_booking(booking_id) -> Booking:
    booking = db.session.get(Booking, booking_id)
    if not booking:
        raise BookingNotFound(booking_id)
    return booking


def _is_admin(user) -> bool:
    return user is not None and user.has_role("ADMIN")


def _seller_id(booking: Booking) -> int:
    return booking.service.owner_user_id


def _require_seller(actor, booking: Booking):
    if not _is_admin(actor) and actor.id != _seller_id(booking):
        raise ForbiddenError("Only the seller of this service can do that", {"booking_id": booking.id})


def _require_buyer(actor, booking: Booking):
    if not _is_admin(actor) and actor.id != booking.buyer_id:
        raise ForbiddenError("Only the buyer of this booking can do that", {"booking_id": booking.id})


def _require_party(actor, booking: Booking):
    if not _is_admin(actor) and actor.id not in (booking.buyer_id, _seller_id(booking)):
        raise ForbiddenError("You are not part of this booking", {"booking_id": booking.id})


def _payment_record(booking: Booking) -> PaymentRecord | None:
    if not booking.payment_intent_id:
        return None
    return PaymentRecord.query.filter_by(payment_intent_id=booking.payment_intent_id).first()


def _events(booking: Booking, *kinds):
    return PaymentEvent.query.filter(PaymentEvent.booking_id == booking.id, PaymentEvent.kind.in_(kinds))


def _transfer_event(booking: Booking) -> PaymentEvent | None:
    return _events(booking, EVENT_TRANSFER).first()


def _refunded_cents(booking: Booking) -> int:
    total = (
        db.session.query(func.coalesce(func.sum(PaymentEvent.amount_cents), 0))
        .filter(PaymentEvent.booking_id == booking.id, PaymentEvent.kind.in_((EVENT_REFUND, EVENT_VOID)))
        .scalar()
    )
    return int(total or 0)


def _is_captured(record: PaymentRecord) -> bool:
    if record.captured_at is not None:
        return True
    return PaymentEvent.query.filter_by(payment_intent_id=record.payment_intent_id, kind=EVENT_CAPTURE).first() is not None


def _record_event(booking: Booking, kind: str, provider_ref=None, amount_cents=0, destination=None) -> PaymentEvent:
    event = PaymentEvent(
        booking_id=booking.id,
        payment_intent_id=booking.payment_intent_id,
        kind=kind,
        provider_ref=provider_ref,
        amount_cents=amount_cents,
        destination_account_id=destination,
    )
    db.session.add(event)
    return event


# ---------- booking records ----------

def _parse_details(details) -> dict:
    details = details or {}
    if not isinstance(details, dict):
        raise ValidationError("booking details must be an object")

    age = details.get("age")
    if age is not None:
        try:
            age = int(age)
        except (TypeError, ValueError):
            raise ValidationError("age must be a whole number")
        if age < 0:
            raise ValidationError("age must not be negative")

    def _text(key, limit):
        value = details.get(key)
        if value is None:
            return None
        if not isinstance(value, str):
            raise ValidationError(f"{key} must be a string")
        return value.strip()[:limit] or None

    return {
        "attendee_name": _text("name", 120),
        "attendee_age": age,
        "scheduled_date": _text("date", 32),
        "notes": _text("notes", 2000),
    }


def _issue_completion_otp(booking: Booking):
    address = booking.buyer.contact_address
    if not address:
        logger.warning("Booking %s: buyer %s has no contact address, no OTP issued", booking.id, booking.buyer_id)
        return None
    ttl = current_app.config.get("BOOKING_OTP_TTL_SECONDS", 300)
    return otp.issue(address, otp.booking_purpose(booking.id), ttl_seconds=ttl)


def request_booking(buyer, service_id, slot_label, details=None) -> Booking:
    fields = _parse_details(details)

    service = db.session.get(Service, service_id) if service_id else None
    if not service or not service.is_active:
        raise ServiceNotFound(service_id)
    if service.owner_user_id == buyer.id:
        raise ValidationError("You cannot book your own service")
    if "@" not in (buyer.contact_address or ""):
        # completion codes only go out by email
        raise ValidationError("Add an email address to your account to receive the booking code")

    slot = slots.find_available_slot(service.id, slot_label)
    slots.mark_booked(service.id, slot.label)

    booking = Booking(
        buyer_id=buyer.id,
        service_id=service.id,
        slot_id=slot.id,
        slot_label=slot.label,
        price=service.price,
        status=STATUS_CREATED,
        booking_status=BOOKING_PENDING,
        is_paid=False,
        **fields,
    )
    db.session.add(booking)
    try:
        db.session.commit()
    except IntegrityError:
        # uq_booking_active_slot: another live booking already holds the slot
        db.session.rollback()
        raise SlotUnavailable(service.id, slot.label)

    log_event("BOOKING_REQUEST", actor_id=buyer.id, entity="booking", entity_id=booking.id,
              metadata={"service_id": service.id, "slot": slot.label})
    _issue_completion_otp(booking)
    return booking


def accept_booking(actor, booking_id) -> Booking:
    booking = get_booking(booking_id)
    _require_seller(actor, booking)

    if booking.booking_status == BOOKING_CONFIRMED:
        return booking
    if booking.status == STATUS_CANCELLED:
        raise InvalidTransition(booking.id, booking.status, "accept")

    if current_app.config.get("REQUIRE_ONBOARDING_TO_ACCEPT", True):
        payouts.ensure_payout_ready(booking.service.owner)

    booking.booking_status = BOOKING_CONFIRMED
    db.session.commit()
    log_event("BOOKING_ACCEPT", actor_id=actor.id, entity="booking", entity_id=booking.id)
    return booking


def _return_funds(booking: Booking):
    """Refunds (or voids) whatever is still held for the booking. Commits the event."""
    if not booking.is_paid or not booking.payment_intent_id:
        return None

    record = _payment_record(booking)
    if record is None:
        raise PaymentNotFound(booking.payment_intent_id)

    remaining = record.amount_cents - _refunded_cents(booking)
    if remaining <= 0:
        return None

    if _is_captured(record):
        refund = gateway.refund(booking.payment_intent_id)
        event = _record_event(booking, EVENT_REFUND, provider_ref=refund.id, amount_cents=remaining)
    else:
        intent = gateway.void(booking.payment_intent_id)
        event = _record_event(booking, EVENT_VOID, provider_ref=intent.id, amount_cents=remaining)
    db.session.commit()
    logger.info("Booking %s: returned %s cents to the buyer (%s)", booking.id, remaining, event.kind)
    return event


def _cancel(booking: Booking, actor, reason: str, action: str) -> Booking:
    if booking.status == STATUS_CANCELLED:
        return booking
    if booking.status == STATUS_COMPLETED:
        raise InvalidTransition(booking.id, booking.status, "cancel")

    # funds first: if this raises, nothing below has happened
    event = _return_funds(booking)

    booking.status = STATUS_CANCELLED
    booking.cancelled_at = datetime.utcnow()
    booking.cancel_reason = (reason or "")[:120] or None
    slots.mark_available(booking.service_id, booking.slot_label)
    db.session.commit()

    log_event(action, actor_id=actor.id if actor else None, entity="booking", entity_id=booking.id,
              metadata={"reason": reason, "refund": event.kind if event else None})
    return booking


def decline_booking(actor, booking_id, reason=None) -> Booking:
    booking = get_booking(booking_id)
    _require_seller(actor, booking)
    return _cancel(booking, actor, reason or "Declined by seller", "BOOKING_DECLINE")


def cancel_booking(actor, booking_id, reason=None) -> Booking:
    booking = get_booking(booking_id)
    _require_buyer(actor, booking)
    return _cancel(booking, actor, reason or "Cancelled by buyer", "BOOKING_CANCEL")


def resend_completion_otp(actor, booking_id) -> datetime:
    booking = get_booking(booking_id)
    _require_buyer(actor, booking)
    if booking.is_terminal:
        raise InvalidTransition(booking.id, booking.status, "send a code for")
    expires_at = _issue_completion_otp(booking)
    if expires_at is None:
        raise ValidationError("Add an email or phone number to receive the code")
    return expires_at


def list_my_bookings(buyer, status=None, page=1, limit=20):
    q = Booking.query.filter_by(buyer_id=buyer.id, is_paid=True)
    if status:
        q = q.filter_by(status=status)
    total = q.count()
    rows = q.order_by(Booking.created_at.desc()).offset((page - 1) * limit).limit(limit).all()
    return rows, total


def list_seller_bookings(seller, status=None):
    q = (
        Booking.query
        .join(Service, Booking.service_id == Service.id)
        .filter(Service.owner_user_id == seller.id, Booking.is_paid.is_(False))
    )
    if status:
        q = q.filter(Booking.status == status)
    return q.order_by(Booking.created_at.desc()).limit(200).all()


def get_seller_booking(actor, booking_id) -> Booking:
    booking = get_booking(booking_id)
    _require_seller(actor, booking)
    return booking


# ---------- payments ----------

def authorize_payment(actor, booking_id, payment_method_id, amount=None):
    """
    Charges the buyer's saved card for the booking price.

    Returns (AuthorizationResult, PaymentRecord | None). A declined or
    unconfirmed intent is not an exception: the booking stays CREATED.
    """
    booking = get_booking(booking_id)
    _require_buyer(actor, booking)

    if booking.is_paid:
        raise ConflictError("Booking is already paid", {"booking_id": booking.id})
    if booking.status != STATUS_CREATED:
        raise InvalidTransition(booking.id, booking.status, "pay for")

    price_cents = gateway.to_minor_units(booking.price)
    if amount is not None:
        requested = gateway.to_minor_units(amount)
        if requested <= 0:
            raise ValidationError("amount must be greater than zero", {"amount": str(amount)})
        if requested != price_cents:
            raise ValidationError("amount does not match the booking price",
                                  {"amount": str(amount), "price": str(booking.price)})

    buyer = booking.buyer
    if not buyer.customer_id:
        raise ValidationError("No saved payment profile, save a card first")

    capture_method = current_app.config.get("PAYMENT_CAPTURE_METHOD", "automatic")
    result = gateway.authorize(
        buyer.customer_id,
        payment_method_id,
        booking.price,
        capture_method=capture_method,
        metadata={"booking_id": str(booking.id)},
    )

    if not result.success:
        log_event("PAYMENT_AUTHORIZE_FAILED", actor_id=actor.id, entity="booking", entity_id=booking.id,
                  metadata={"status": result.status, "payment_intent_id": result.payment_intent_id})
        return result, None

    now = datetime.utcnow()
    record = PaymentRecord(
        booking_id=booking.id,
        payment_intent_id=result.payment_intent_id,
        customer_id=buyer.customer_id,
        payment_method_id=payment_method_id,
        amount=booking.price,
        amount_cents=result.amount_cents,
        currency=current_app.config.get("PAYMENT_CURRENCY", "usd"),
        capture_method=capture_method,
        captured_at=now if result.status == "succeeded" else None,
    )
    db.session.add(record)
    booking.payment_intent_id = result.payment_intent_id
    booking.is_paid = True
    booking.status = STATUS_PAID
    db.session.commit()

    log_event("PAYMENT_AUTHORIZED", actor_id=actor.id, entity="booking", entity_id=booking.id,
              metadata={"payment_intent_id": result.payment_intent_id, "status": result.status})
    return result, record


def capture_payment(actor, payment_intent_id):
    record = PaymentRecord.query.filter_by(payment_intent_id=payment_intent_id).first() if payment_intent_id else None
    if not record:
        raise PaymentNotFound(payment_intent_id)

    booking = get_booking(record.booking_id)
    _require_party(actor, booking)
    if booking.status == STATUS_CANCELLED:
        raise InvalidTransition(booking.id, booking.status, "capture payment for")
    if _is_captured(record):
        raise ConflictError("Payment already captured", {"payment_intent_id": payment_intent_id})

    intent = gateway.capture(payment_intent_id)
    _record_event(booking, EVENT_CAPTURE, provider_ref=intent.id, amount_cents=intent.amount_received or 0)
    db.session.commit()

    log_event("PAYMENT_CAPTURED", actor_id=actor.id, entity="payment", entity_id=record.id,
              metadata={"payment_intent_id": payment_intent_id})
    return intent


def refund_payment(actor, booking_id, amount=None) -> dict:
    """
    Full refund (default) cancels the booking and frees its slot; a partial
    refund only records the money returned.
    """
    booking = get_booking(booking_id)
    _require_seller(actor, booking)

    if not booking.is_paid or not booking.payment_intent_id:
        raise InvalidRefundState(booking.id, "Booking has not been paid")
    if booking.status == STATUS_COMPLETED:
        raise InvalidRefundState(booking.id, "Booking is already settled")

    record = _payment_record(booking)
    if record is None:
        raise PaymentNotFound(booking.payment_intent_id)
    remaining = record.amount_cents - _refunded_cents(booking)
    if booking.status == STATUS_CANCELLED or remaining <= 0:
        raise InvalidRefundState(booking.id, "Payment has already been refunded")

    cents = None if amount is None else gateway.to_minor_units(amount)
    if cents is not None and cents <= 0:
        raise ValidationError("refund amount must be greater than zero")
    if cents is not None and cents > remaining:
        raise ValidationError("refund amount exceeds the refundable balance",
                              {"refundable": str(gateway.from_minor_units(remaining))})

    if cents is None or cents == remaining:
        _cancel(booking, actor, "Refunded", "PAYMENT_REFUND")
        refunded = remaining
    else:
        if not _is_captured(record):
            raise InvalidRefundState(booking.id, "Payment has not been captured yet")
        refund = gateway.refund(booking.payment_intent_id, cents)
        _record_event(booking, EVENT_REFUND, provider_ref=refund.id, amount_cents=cents)
        db.session.commit()
        log_event("PAYMENT_PARTIAL_REFUND", actor_id=actor.id, entity="booking", entity_id=booking.id,
                  metadata={"amount_cents": cents})
        refunded = cents

    return {
        "bookingId": booking.id,
        "paymentIntentId": booking.payment_intent_id,
        "refundedAmount": str(gateway.from_minor_units(refunded)),
        "status": booking.status,
    }


# ---------- completion and payout ----------

def _require_settleable(booking: Booking):
    if booking.status == STATUS_COMPLETED:
        raise TransferAlreadyMade(booking.id)
    if booking.status != STATUS_PAID or not booking.payment_intent_id:
        raise InvalidTransition(booking.id, booking.status, "complete")


def verify_completion_otp(actor, booking_id, code) -> str:
    """Consumes the buyer's completion code and returns a short-lived release token."""
    booking = get_booking(booking_id)
    _require_party(actor, booking)
    _require_settleable(booking)

    subject = booking.buyer.contact_address
    confirmation = otp.verify(subject, code, otp.booking_purpose(booking.id))
    token = otp.sign_confirmation(RELEASE_PURPOSE, subject, confirmation, bid=booking.id)

    log_event("BOOKING_OTP_VERIFIED", actor_id=actor.id, entity="booking", entity_id=booking.id)
    return token


def _finalize(booking: Booking, when=None):
    booking.status = STATUS_COMPLETED
    booking.completed_at = when or datetime.utcnow()


def _settlement_view(booking: Booking, event: PaymentEvent, amount_received: int | None = None) -> dict:
    out = {
        "bookingId": booking.id,
        "status": booking.status,
        "transferId": event.provider_ref,
        "destination": event.destination_account_id,
        "transferredAmount": event.amount_cents,
    }
    if amount_received is not None:
        out["amountReceived"] = amount_received
        out["platformFee"] = amount_received - event.amount_cents
    return out


def transfer_idempotency_key(booking_id, amount_cents, attempt) -> str:
    return f"booking-{booking_id}-transfer-{amount_cents}-{attempt}"


def _settle(booking: Booking, destination=None) -> dict:
    _require_settleable(booking)

    existing = _transfer_event(booking)
    if existing:
        # transfer went through but the status write did not
        _finalize(booking, existing.created_at)
        db.session.commit()
        return _settlement_view(booking, existing)

    if destination is None:
        destination = payouts.ensure_payout_ready(booking.service.owner)

    intent = gateway.retrieve_payment_intent(booking.payment_intent_id)
    if intent.status == "requires_capture":
        intent = gateway.capture(intent.id)
        _record_event(booking, EVENT_CAPTURE, provider_ref=intent.id, amount_cents=intent.amount_received or 0)
        db.session.commit()

    if intent.status != "succeeded":
        raise StateError("Payment intent has not been successful.",
                         {"booking_id": booking.id, "intent_status": intent.status})

    amount_received = int(intent.amount_received or 0)
    if amount_received <= 0:
        raise StateError("No funds available in the payment intent.", {"booking_id": booking.id})

    net_received = amount_received - _refunded_cents(booking)
    amount = gateway.transfer_amount(net_received)
    if amount <= 0:
        raise StateError("Nothing left to transfer after refunds", {"booking_id": booking.id})

    attempt = booking.transfer_attempt
    try:
        transfer = gateway.transfer(
            destination,
            amount,
            f"Payout for booking #{booking.id}",
            idempotency_key=transfer_idempotency_key(booking.id, amount, attempt),
            metadata={"booking_id": str(booking.id), "attempt": str(attempt)},
        )
    except TransferFailed as exc:
        # Stripe keeps a rejection under its key; timeouts reuse the key
        if exc.declined:
            booking.transfer_attempt = attempt + 1
            db.session.commit()
        raise

    event = _record_event(booking, EVENT_TRANSFER, provider_ref=transfer.id, amount_cents=amount,
                          destination=destination)
    _finalize(booking)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise TransferAlreadyMade(booking.id)

    log_event("PAYOUT_TRANSFER", entity="booking", entity_id=booking.id,
              metadata={"transfer_id": transfer.id, "amount_cents": amount, "amount_received": amount_received})
    return _settlement_view(booking, event, amount_received)


def release_payout(actor, booking_id, release_token) -> dict:
    booking = get_booking(booking_id)
    _require_party(actor, booking)

    claims = otp.load_confirmation(release_token, RELEASE_PURPOSE)
    if claims.get("bid") != booking.id:
        raise OtpTokenInvalid("Confirmation token does not match this booking")
    return _settle(booking)


def complete_booking(actor, booking_id, code) -> dict:
    """Verify the buyer's code and pay the seller in one step."""
    booking = get_booking(booking_id)
    _require_party(actor, booking)
    _require_settleable(booking)

    # check the payout side before the code is used up
    destination = payouts.ensure_payout_ready(booking.service.owner)

    subject = booking.buyer.contact_address
    otp.verify(subject, code, otp.booking_purpose(booking.id))
    log_event("BOOKING_OTP_VERIFIED", actor_id=actor.id, entity="booking", entity_id=booking.id)
    return _settle(booking, destination)


# ---------- recovery ----------

def reconcile_booking(booking_id) -> list[str]:
    """
    Brings a booking in line with the money movements already recorded.
    Safe to run any number of times.
    """
    booking = get_booking(booking_id)
    actions = []

    transfer_event = _transfer_event(booking)
    if transfer_event and booking.status == STATUS_PAID:
        _finalize(booking, transfer_event.created_at)
        actions.append("completed")
    elif transfer_event and booking.status == STATUS_CANCELLED:
        logger.warning("Booking %s is cancelled but transfer %s was paid out; needs manual review",
                       booking.id, transfer_event.provider_ref)
    elif booking.status not in (STATUS_CANCELLED, STATUS_COMPLETED) and booking.is_paid:
        record = _payment_record(booking)
        if record and _refunded_cents(booking) >= record.amount_cents:
            booking.status = STATUS_CANCELLED
            booking.cancelled_at = datetime.utcnow()
            booking.cancel_reason = booking.cancel_reason or "Refunded"
            actions.append("cancelled")

    if booking.status == STATUS_CANCELLED and booking.slot.status == SLOT_BOOKED:
        holder = (
            Booking.query
            .filter(Booking.slot_id == booking.slot_id, Booking.id != booking.id, Booking.status != STATUS_CANCELLED)
            .first()
        )
        if holder is None and slots.mark_available(booking.service_id, booking.slot_label):
            actions.append("slot_released")

    db.session.commit()
    if actions:
        logger.info("Reconciled booking %s: %s", booking.id, ", ".join(actions))
        log_event("BOOKING_RECONCILE", entity="booking", entity_id=booking.id, metadata={"actions": actions})
    return actions


def booking_view(booking: Booking) -> dict:
    return {
        "id": booking.id,
        "buyerId": booking.buyer_id,
        "serviceId": booking.service_id,
        "time": booking.slot_label,
        "price": str(booking.price),
        "bookingStatus": booking.booking_status,
        "status": booking.status,
        "isPaid": booking.is_paid,
        "paymentIntentId": booking.payment_intent_id,
        "name": booking.attendee_name,
        "age": booking.attendee_age,
        "date": booking.scheduled_date,
        "notes": booking.notes,
        "createdAt": booking.created_at.isoformat() if booking.created_at else None,
        "cancelledAt": booking.cancelled_at.isoformat() if booking.cancelled_at else None,
        "completedAt": booking.completed_at.isoformat() if booking.completed_at else None,
    }
