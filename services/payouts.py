"""Seller payout accounts: onboarding state and onboarding links."""
import logging

from models import db
from models.user import User
from services import gateway
from services.errors import NoConnectedAccount
from utils.emailer import notify

logger = logging.getLogger(__name__)


def _onboarding_email(user: User, url: str) -> tuple[str, str]:
    body = (
        f"Dear {user.full_name or user.email},\n\n"
        "To receive payouts for your bookings, please complete your onboarding:\n\n"
        f"{url}\n\n"
        "This link is valid for a limited time. If you didn't request this, ignore this email.\n\n"
        "Thank you,\nThe Support Team"
    )
    return "Your Onboarding Url", body


def send_onboarding_link(user: User) -> str:
    if not user.account_id:
        raise NoConnectedAccount(user.id)
    url = gateway.create_account_link(user.account_id)
    subject, body = _onboarding_email(user, url)
    notify(user.email, subject, body)
    return url


def sync_account_status(user: User):
    """Refreshes user.onboarding_complete from Stripe and returns the status."""
    status = gateway.retrieve_account(user.account_id)
    if user.onboarding_complete != status.onboarding_complete:
        user.onboarding_complete = status.onboarding_complete
        db.session.commit()
    return status


def ensure_payout_ready(user: User) -> str:
    """
    Returns the seller's connected account id, or raises NoConnectedAccount.

    An account that exists but is not fully onboarded gets a fresh onboarding
    link (emailed and attached to the error) instead of a transfer attempt.
    """
    if not user.account_id:
        raise NoConnectedAccount(user.id)

    status = sync_account_status(user)
    if status.onboarding_complete:
        return user.account_id

    url = send_onboarding_link(user)
    logger.info("Seller %s has not finished onboarding; sent a new link", user.id)
    raise NoConnectedAccount(
        user.id,
        onboarding_url=url,
        reason="Seller has not completed payout onboarding",
    )


def mark_account_updated(account_id: str, charges_enabled: bool, details_submitted: bool) -> User | None:
    user = User.query.filter_by(account_id=account_id).first()
    if not user:
        return None
    user.onboarding_complete = bool(charges_enabled and details_submitted)
    db.session.commit()
    return user
