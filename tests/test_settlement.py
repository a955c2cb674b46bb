from datetime import datetime, timedelta
from decimal import Decimal

import pytest
import stripe

from conftest import TEST_CODE, make_user
from models import db
from models.booking import Booking, STATUS_CANCELLED, STATUS_COMPLETED, STATUS_CREATED, STATUS_PAID, BOOKING_CONFIRMED
from models.otp_challenge import OtpChallenge
from models.payment import PaymentRecord
from models.payment_event import PaymentEvent, EVENT_CAPTURE, EVENT_REFUND, EVENT_TRANSFER, EVENT_VOID
from models.slot import TimeSlot, SLOT_AVAILABLE, SLOT_BOOKED
from services import otp, settlement
from services.errors import (
    ConflictError,
    ForbiddenError,
    InvalidRefundState,
    InvalidTransition,
    NoConnectedAccount,
    OtpExpired,
    OtpTokenInvalid,
    RefundFailed,
    ServiceNotFound,
    SlotUnavailable,
    TransferAlreadyMade,
    TransferFailed,
    ValidationError,
)


def _slot_status(service, label="10:00"):
    return TimeSlot.query.filter_by(service_id=service.id, label=label).one().status


def _book(buyer, service, label="10:00"):
    return settlement.request_booking(buyer, service.id, label, {"name": "Alex", "age": "12", "date": "2026-11-02"})


def _book_and_pay(buyer, service, label="10:00"):
    booking = _book(buyer, service, label)
    result, _ = settlement.authorize_payment(buyer, booking.id, "pm_card")
    assert result.success
    return booking


def _events(booking, kind):
    return PaymentEvent.query.filter_by(booking_id=booking.id, kind=kind).all()


# ---------- requesting ----------

def test_request_booking_claims_slot_and_issues_otp(buyer, service):
    booking = _book(buyer, service)

    assert booking.status == STATUS_CREATED
    assert booking.is_paid is False
    assert booking.price == Decimal("50.00")
    assert booking.attendee_age == 12
    assert _slot_status(service) == SLOT_BOOKED
    assert OtpChallenge.query.filter_by(subject=buyer.email, purpose=otp.booking_purpose(booking.id)).count() == 1

    other = make_user("other@example.com", "BUYER")
    with pytest.raises(SlotUnavailable):
        _book(other, service)


def test_request_booking_rejects_own_service(seller, service):
    with pytest.raises(ValidationError):
        _book(seller, service)
    assert _slot_status(service) == SLOT_AVAILABLE


def test_request_booking_unknown_service(buyer):
    with pytest.raises(ServiceNotFound):
        settlement.request_booking(buyer, 999, "10:00")


def test_request_booking_bad_details_leave_slot_alone(buyer, service):
    with pytest.raises(ValidationError):
        settlement.request_booking(buyer, service.id, "10:00", {"age": "old"})
    assert _slot_status(service) == SLOT_AVAILABLE


def test_active_booking_index_blocks_second_claim_of_freed_slot(buyer, service):
    first = _book(buyer, service)
    # slot row out of step with the live booking that still holds it
    TimeSlot.query.filter_by(service_id=service.id, label="10:00").update({"status": SLOT_AVAILABLE})
    db.session.commit()

    other = make_user("other@example.com", "BUYER")
    with pytest.raises(SlotUnavailable):
        _book(other, service)

    live = Booking.query.filter(Booking.slot_id == first.slot_id, Booking.status != STATUS_CANCELLED).all()
    assert [b.id for b in live] == [first.id]
    assert Booking.query.filter_by(buyer_id=other.id).count() == 0


def test_request_booking_needs_buyer_email(buyer, service):
    buyer.email = ""
    buyer.phone_number = "+15550100"
    db.session.commit()

    with pytest.raises(ValidationError):
        _book(buyer, service)
    assert _slot_status(service) == SLOT_AVAILABLE
    assert Booking.query.count() == 0


# ---------- paying ----------

def test_authorize_marks_booking_paid(buyer, service):
    booking = _book(buyer, service)
    result, record = settlement.authorize_payment(buyer, booking.id, "pm_card")

    assert result.success
    assert booking.status == STATUS_PAID
    assert booking.is_paid is True
    assert booking.payment_intent_id == result.payment_intent_id
    assert record.amount == Decimal("50.00")
    assert record.amount_cents == 5000
    assert record.captured_at is not None


def test_declined_card_keeps_booking_payable(buyer, service, fake_stripe):
    booking = _book(buyer, service)
    fake_stripe.decline_next = True

    result, record = settlement.authorize_payment(buyer, booking.id, "pm_card")
    assert result.success is False
    assert record is None
    assert booking.status == STATUS_CREATED
    assert PaymentRecord.query.count() == 0

    result, record = settlement.authorize_payment(buyer, booking.id, "pm_card")
    assert result.success and record is not None


def test_authorize_amount_must_match_price(buyer, service, fake_stripe):
    booking = _book(buyer, service)
    with pytest.raises(ValidationError):
        settlement.authorize_payment(buyer, booking.id, "pm_card", amount="49.99")
    with pytest.raises(ValidationError):
        settlement.authorize_payment(buyer, booking.id, "pm_card", amount=0)
    assert "PaymentIntent.create" not in fake_stripe.operations()


def test_authorize_twice_conflicts(buyer, service):
    booking = _book_and_pay(buyer, service)
    with pytest.raises(ConflictError):
        settlement.authorize_payment(buyer, booking.id, "pm_card")


def test_only_buyer_can_pay(buyer, seller, service):
    booking = _book(buyer, service)
    with pytest.raises(ForbiddenError):
        settlement.authorize_payment(seller, booking.id, "pm_card")


def test_manual_capture(app, buyer, service, fake_stripe):
    app.config["PAYMENT_CAPTURE_METHOD"] = "manual"
    booking = _book(buyer, service)
    _, record = settlement.authorize_payment(buyer, booking.id, "pm_card")
    assert record.captured_at is None

    intent = settlement.capture_payment(buyer, record.payment_intent_id)
    assert intent.status == "succeeded"
    assert [e.amount_cents for e in _events(booking, EVENT_CAPTURE)] == [5000]

    with pytest.raises(ConflictError):
        settlement.capture_payment(buyer, record.payment_intent_id)


# ---------- accepting, declining, cancelling ----------

def test_accept_requires_finished_onboarding(seller, buyer, service, fake_stripe):
    booking = _book(buyer, service)
    fake_stripe.add_account("acct_seller", charges_enabled=False, details_submitted=False)

    with pytest.raises(NoConnectedAccount) as exc:
        settlement.accept_booking(seller, booking.id)
    assert exc.value.onboarding_url.endswith("/acct_seller")

    fake_stripe.add_account("acct_seller")
    assert settlement.accept_booking(seller, booking.id).booking_status == BOOKING_CONFIRMED


def test_decline_paid_booking_refunds_then_frees_slot(seller, buyer, service, fake_stripe):
    booking = _book_and_pay(buyer, service)

    settlement.decline_booking(seller, booking.id, "Pitch closed")

    assert len(fake_stripe.refunds) == 1
    assert fake_stripe.refunds[0].payment_intent == booking.payment_intent_id
    assert fake_stripe.refunds[0].amount == 5000
    assert booking.status == STATUS_CANCELLED
    assert booking.cancel_reason == "Pitch closed"
    assert _slot_status(service) == SLOT_AVAILABLE
    assert [e.amount_cents for e in _events(booking, EVENT_REFUND)] == [5000]


def test_refund_failure_leaves_booking_untouched(seller, buyer, service, fake_stripe):
    booking = _book_and_pay(buyer, service)
    fake_stripe.fail("Refund.create", stripe.APIConnectionError("processor unreachable"))

    with pytest.raises(RefundFailed):
        settlement.decline_booking(seller, booking.id)

    db.session.rollback()
    assert booking.status == STATUS_PAID
    assert _slot_status(service) == SLOT_BOOKED
    assert _events(booking, EVENT_REFUND) == []


def test_decline_unpaid_booking_needs_no_refund(seller, buyer, service, fake_stripe):
    booking = _book(buyer, service)
    settlement.decline_booking(seller, booking.id)

    assert "Refund.create" not in fake_stripe.operations()
    assert booking.status == STATUS_CANCELLED
    assert _slot_status(service) == SLOT_AVAILABLE

    # the freed slot can be booked again
    again = _book(buyer, service)
    assert again.id != booking.id


def test_decline_is_idempotent(seller, buyer, service, fake_stripe):
    booking = _book_and_pay(buyer, service)
    settlement.decline_booking(seller, booking.id)
    settlement.decline_booking(seller, booking.id)
    assert len(fake_stripe.refunds) == 1


def test_buyer_cannot_decline(buyer, service):
    booking = _book(buyer, service)
    with pytest.raises(ForbiddenError):
        settlement.decline_booking(buyer, booking.id)


def test_cancel_uncaptured_payment_voids(app, buyer, service, fake_stripe):
    app.config["PAYMENT_CAPTURE_METHOD"] = "manual"
    booking = _book_and_pay(buyer, service)

    settlement.cancel_booking(buyer, booking.id)

    assert fake_stripe.voids == [booking.payment_intent_id]
    assert fake_stripe.refunds == []
    assert [e.amount_cents for e in _events(booking, EVENT_VOID)] == [5000]
    assert booking.status == STATUS_CANCELLED


# ---------- refunds ----------

def test_full_refund_round_trip(seller, buyer, service, fake_stripe):
    booking = _book_and_pay(buyer, service)

    result = settlement.refund_payment(seller, booking.id)

    assert result["refundedAmount"] == "50.00"
    assert result["status"] == STATUS_CANCELLED
    assert fake_stripe.refunds[0].amount == 5000
    assert _slot_status(service) == SLOT_AVAILABLE

    with pytest.raises(InvalidRefundState):
        settlement.refund_payment(seller, booking.id)


def test_partial_refund_keeps_booking(seller, buyer, service, fake_stripe):
    booking = _book_and_pay(buyer, service)

    result = settlement.refund_payment(seller, booking.id, "20")
    assert result["refundedAmount"] == "20.00"
    assert booking.status == STATUS_PAID
    assert _slot_status(service) == SLOT_BOOKED

    with pytest.raises(ValidationError):
        settlement.refund_payment(seller, booking.id, "30.01")

    # the rest refunds as a full refund and cancels
    result = settlement.refund_payment(seller, booking.id, "30")
    assert booking.status == STATUS_CANCELLED
    assert sum(e.amount_cents for e in _events(booking, EVENT_REFUND)) == 5000


def test_refund_requires_payment(seller, buyer, service):
    booking = _book(buyer, service)
    with pytest.raises(InvalidRefundState):
        settlement.refund_payment(seller, booking.id)


def test_buyer_cannot_refund(buyer, service):
    booking = _book_and_pay(buyer, service)
    with pytest.raises(ForbiddenError):
        settlement.refund_payment(buyer, booking.id)


# ---------- completion and payout ----------

def test_complete_booking_transfers_seller_share(seller, buyer, service, fake_stripe):
    booking = _book_and_pay(buyer, service)

    result = settlement.complete_booking(seller, booking.id, TEST_CODE)

    assert result["status"] == STATUS_COMPLETED
    assert result["amountReceived"] == 5000
    assert result["transferredAmount"] == 4500
    assert result["platformFee"] == 500
    assert booking.status == STATUS_COMPLETED
    assert booking.completed_at is not None

    (transfer,) = fake_stripe.transfers
    assert transfer.destination == "acct_seller"
    assert transfer.amount == 4500
    assert transfer.idempotency_key == f"booking-{booking.id}-transfer-4500-1"
    assert len(_events(booking, EVENT_TRANSFER)) == 1

    with pytest.raises(TransferAlreadyMade):
        settlement.complete_booking(seller, booking.id, TEST_CODE)
    with pytest.raises(InvalidRefundState):
        settlement.refund_payment(seller, booking.id)


def test_complete_requires_paid_booking(seller, buyer, service, fake_stripe):
    booking = _book(buyer, service)
    with pytest.raises(InvalidTransition):
        settlement.complete_booking(seller, booking.id, TEST_CODE)
    assert fake_stripe.transfers == []


def test_expired_otp_blocks_transfer(seller, buyer, service, fake_stripe):
    booking = _book_and_pay(buyer, service)
    row = OtpChallenge.query.filter_by(purpose=otp.booking_purpose(booking.id)).one()
    row.expires_at = datetime.utcnow() - timedelta(seconds=1)
    db.session.commit()

    with pytest.raises(OtpExpired):
        settlement.complete_booking(seller, booking.id, TEST_CODE)

    assert booking.status == STATUS_PAID
    assert "Transfer.create" not in fake_stripe.operations()


def test_unfinished_onboarding_keeps_booking_paid(seller, buyer, service, fake_stripe):
    booking = _book_and_pay(buyer, service)
    fake_stripe.add_account("acct_seller", charges_enabled=False, details_submitted=True)

    with pytest.raises(NoConnectedAccount) as exc:
        settlement.complete_booking(seller, booking.id, TEST_CODE)

    assert exc.value.onboarding_url
    assert booking.status == STATUS_PAID
    assert seller.onboarding_complete is False
    assert fake_stripe.transfers == []
    # the code was not used up
    assert OtpChallenge.query.filter_by(purpose=otp.booking_purpose(booking.id)).count() == 1


def test_seller_without_account(buyer, service, fake_stripe):
    booking = _book_and_pay(buyer, service)
    owner = service.owner
    owner.account_id = None
    db.session.commit()

    with pytest.raises(NoConnectedAccount):
        settlement.complete_booking(owner, booking.id, TEST_CODE)
    assert booking.status == STATUS_PAID


def test_release_token_flow_and_retry_after_transfer_failure(seller, buyer, service, fake_stripe):
    booking = _book_and_pay(buyer, service)
    token = settlement.verify_completion_otp(buyer, booking.id, TEST_CODE)

    fake_stripe.fail("Transfer.create", stripe.APIConnectionError("timeout"))
    with pytest.raises(TransferFailed):
        settlement.release_payout(seller, booking.id, token)
    db.session.rollback()
    assert booking.status == STATUS_PAID
    assert booking.transfer_attempt == 1
    assert _events(booking, EVENT_TRANSFER) == []

    result = settlement.release_payout(seller, booking.id, token)
    assert result["transferredAmount"] == 4500
    assert booking.status == STATUS_COMPLETED

    # a timeout may have reached Stripe, so the retry keeps the key
    keys = [kwargs["idempotency_key"] for op, kwargs in fake_stripe.calls if op == "Transfer.create"]
    assert keys == [settlement.transfer_idempotency_key(booking.id, 4500, 1)] * 2
    assert len(fake_stripe.transfers) == 1


def test_declined_transfer_retries_under_a_new_key(seller, buyer, service, fake_stripe):
    booking = _book_and_pay(buyer, service)
    token = settlement.verify_completion_otp(buyer, booking.id, TEST_CODE)
    first_key = settlement.transfer_idempotency_key(booking.id, 4500, 1)

    fake_stripe.fail("Transfer.create",
                     stripe.InvalidRequestError("Insufficient available balance", None, http_status=400))
    with pytest.raises(TransferFailed):
        settlement.release_payout(seller, booking.id, token)
    db.session.rollback()
    assert booking.status == STATUS_PAID
    assert booking.transfer_attempt == 2

    # Stripe would answer the first key with the stored rejection
    with pytest.raises(stripe.InvalidRequestError):
        stripe.Transfer.create(amount=4500, currency="usd", destination="acct_seller", idempotency_key=first_key)

    result = settlement.release_payout(seller, booking.id, token)
    assert result["transferredAmount"] == 4500
    assert booking.status == STATUS_COMPLETED
    (transfer,) = fake_stripe.transfers
    assert transfer.idempotency_key == settlement.transfer_idempotency_key(booking.id, 4500, 2)


def test_refund_between_transfer_attempts_changes_the_key(seller, buyer, service, fake_stripe):
    booking = _book_and_pay(buyer, service)
    token = settlement.verify_completion_otp(buyer, booking.id, TEST_CODE)

    fake_stripe.fail("Transfer.create", stripe.APIError("Internal error", http_status=500))
    with pytest.raises(TransferFailed):
        settlement.release_payout(seller, booking.id, token)
    db.session.rollback()
    assert booking.transfer_attempt == 1

    settlement.refund_payment(seller, booking.id, "20")
    result = settlement.release_payout(seller, booking.id, token)

    assert result["transferredAmount"] == 2700
    (transfer,) = fake_stripe.transfers
    assert transfer.idempotency_key == settlement.transfer_idempotency_key(booking.id, 2700, 1)


def test_release_token_is_bound_to_booking(seller, buyer, service):
    first = _book_and_pay(buyer, service, "10:00")
    second = _book_and_pay(buyer, service, "11:00")
    token = settlement.verify_completion_otp(buyer, first.id, TEST_CODE)

    with pytest.raises(OtpTokenInvalid):
        settlement.release_payout(seller, second.id, token)
    assert second.status == STATUS_PAID


def test_manual_capture_is_captured_before_transfer(app, seller, buyer, service, fake_stripe):
    app.config["PAYMENT_CAPTURE_METHOD"] = "manual"
    booking = _book_and_pay(buyer, service)

    result = settlement.complete_booking(seller, booking.id, TEST_CODE)

    ops = fake_stripe.operations()
    assert ops.index("PaymentIntent.capture") < ops.index("Transfer.create")
    assert result["transferredAmount"] == 4500


def test_payout_after_partial_refund_uses_net_amount(seller, buyer, service, fake_stripe):
    booking = _book_and_pay(buyer, service)
    settlement.refund_payment(seller, booking.id, "20")

    result = settlement.complete_booking(seller, booking.id, TEST_CODE)
    assert result["transferredAmount"] == 2700


def test_odd_amount_fee_rounds_in_platform_favour(seller, buyer, service):
    service.price = Decimal("9.99")
    db.session.commit()
    booking = _book_and_pay(buyer, service)

    result = settlement.complete_booking(seller, booking.id, TEST_CODE)
    assert result["amountReceived"] == 999
    assert result["transferredAmount"] == 899


# ---------- reconciliation ----------

def test_reconcile_finishes_recorded_transfer(buyer, service):
    booking = _book_and_pay(buyer, service)
    db.session.add(PaymentEvent(booking_id=booking.id, payment_intent_id=booking.payment_intent_id,
                                kind=EVENT_TRANSFER, provider_ref="tr_lost", amount_cents=4500,
                                destination_account_id="acct_seller"))
    db.session.commit()

    assert settlement.reconcile_booking(booking.id) == ["completed"]
    assert booking.status == STATUS_COMPLETED
    assert settlement.reconcile_booking(booking.id) == []


def test_reconcile_cancels_fully_refunded_booking(buyer, service):
    booking = _book_and_pay(buyer, service)
    db.session.add(PaymentEvent(booking_id=booking.id, payment_intent_id=booking.payment_intent_id,
                                kind=EVENT_REFUND, provider_ref="re_lost", amount_cents=5000))
    db.session.commit()

    assert settlement.reconcile_booking(booking.id) == ["cancelled", "slot_released"]
    assert booking.status == STATUS_CANCELLED
    assert _slot_status(service) == SLOT_AVAILABLE


def test_reconcile_leaves_live_booking_alone(buyer, service):
    booking = _book_and_pay(buyer, service)
    assert settlement.reconcile_booking(booking.id) == []
    assert booking.status == STATUS_PAID


def test_reconcile_never_completes_cancelled_booking(seller, buyer, service):
    booking = _book_and_pay(buyer, service)
    settlement.decline_booking(seller, booking.id)
    db.session.add(PaymentEvent(booking_id=booking.id, payment_intent_id=booking.payment_intent_id,
                                kind=EVENT_TRANSFER, provider_ref="tr_stray", amount_cents=4500,
                                destination_account_id="acct_seller"))
    db.session.commit()

    assert settlement.reconcile_booking(booking.id) == []
    assert booking.status == STATUS_CANCELLED
    assert booking.completed_at is None


# ---------- listings ----------

def test_list_bookings_split_by_payment(seller, buyer, service):
    paid = _book_and_pay(buyer, service, "10:00")
    unpaid = _book(buyer, service, "11:00")

    rows, total = settlement.list_my_bookings(buyer)
    assert total == 1 and rows[0].id == paid.id

    assert [b.id for b in settlement.list_seller_bookings(seller)] == [unpaid.id]
