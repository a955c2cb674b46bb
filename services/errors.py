"""
Error taxonomy for the settlement engine.

Every error carries an HTTP status, a human message and a details dict so the
app-level error handler can turn it into the standard response envelope.
"""


class SettlementError(Exception):
    status_code = 500

    def __init__(self, message: str, details: dict | None = None, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        if status_code is not None:
            self.status_code = status_code

    @property
    def code(self) -> str:
        return self.__class__.__name__

    def to_dict(self) -> dict:
        return {"code": self.code, **self.details}


class ValidationError(SettlementError):
    status_code = 400


class ForbiddenError(SettlementError):
    status_code = 403


class NotFoundError(SettlementError):
    status_code = 404


class BookingNotFound(NotFoundError):
    def __init__(self, booking_id):
        super().__init__("Booking not found", {"booking_id": booking_id})


class ServiceNotFound(NotFoundError):
    def __init__(self, service_id):
        super().__init__("Service not available", {"service_id": service_id})


class PaymentNotFound(NotFoundError):
    def __init__(self, payment_intent_id):
        super().__init__("Payment not found", {"payment_intent_id": payment_intent_id})


class OtpNotFound(NotFoundError):
    def __init__(self):
        super().__init__("No active OTP for this subject")


class ConflictError(SettlementError):
    status_code = 409


class SlotUnavailable(ConflictError):
    def __init__(self, service_id, slot_label, reason="Selected time slot is not available"):
        super().__init__(reason, {"service_id": service_id, "slot": slot_label})


class InvalidRefundState(ConflictError):
    def __init__(self, booking_id, reason):
        super().__init__(reason, {"booking_id": booking_id})


class TransferAlreadyMade(ConflictError):
    def __init__(self, booking_id):
        super().__init__("Funds were already transferred for this booking", {"booking_id": booking_id})


class GatewayError(SettlementError):
    """The payment processor rejected a call. Never retried here."""

    status_code = 502

    def __init__(self, operation: str, reference, message: str, status_code: int | None = None):
        super().__init__(
            f"{operation} failed for {reference}: {message}",
            {"operation": operation, "reference": reference},
            status_code=status_code,
        )
        self.operation = operation
        self.reference = reference
        self.processor_status = status_code

    @property
    def declined(self) -> bool:
        """The processor answered with a 4xx: the request was rejected, not executed."""
        return self.processor_status is not None and 400 <= self.processor_status < 500


class CaptureFailed(GatewayError):
    pass


class RefundFailed(GatewayError):
    pass


class TransferFailed(GatewayError):
    pass


class StateError(SettlementError):
    status_code = 409


class InvalidTransition(StateError):
    def __init__(self, booking_id, current, action):
        super().__init__(
            f"Cannot {action} a booking in status {current}",
            {"booking_id": booking_id, "status": current},
        )


class NoConnectedAccount(StateError):
    status_code = 400

    def __init__(self, user_id, onboarding_url=None, reason="No connected account found for the user."):
        details = {"user_id": user_id}
        if onboarding_url:
            details["onboarding_url"] = onboarding_url
        super().__init__(reason, details)
        self.onboarding_url = onboarding_url


class OtpError(SettlementError):
    status_code = 400


class OtpExpired(OtpError):
    def __init__(self):
        super().__init__("OTP has expired")


class OtpMismatch(OtpError):
    def __init__(self, attempts_left: int):
        super().__init__("Invalid OTP", {"attempts_left": attempts_left})


class OtpTokenInvalid(OtpError):
    status_code = 401

    def __init__(self, reason="Confirmation token is invalid or expired"):
        super().__init__(reason)
