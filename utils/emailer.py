import logging
import smtplib
from email.message import EmailMessage

from flask import current_app

logger = logging.getLogger(__name__)


def send_email(to_email: str, subject: str, body: str, html: str | None = None):
    """Returns (sent, error). Delivery problems are reported, never raised."""
    host = current_app.config.get("SMTP_HOST")
    port = current_app.config.get("SMTP_PORT", 587)
    username = current_app.config.get("SMTP_USERNAME")
    password = current_app.config.get("SMTP_PASSWORD")
    from_email = current_app.config.get("SMTP_FROM_EMAIL") or username
    use_tls = current_app.config.get("SMTP_USE_TLS", True)

    if not host or not from_email:
        return False, "Email not configured"

    msg = EmailMessage()
    msg["From"] = from_email
    msg["To"] = to_email
    msg["Subject"] = subject
    msg.set_content(body)
    if html:
        msg.add_alternative(html, subtype="html")

    try:
        with smtplib.SMTP(host, port, timeout=10) as server:
            if use_tls:
                server.starttls()
            if username and password:
                server.login(username, password)
            server.send_message(msg)
        return True, None
    except (smtplib.SMTPException, OSError) as exc:
        return False, str(exc)


def notify(address: str, subject: str, body: str, html: str | None = None) -> bool:
    """Fire-and-forget notification to an email address or phone number."""
    if not address:
        logger.warning("Notification %r dropped: no address", subject)
        return False
    if "@" not in address:
        # no SMS transport; request_booking refuses buyers without an email address
        logger.warning("Notification %r to %s not sent: no SMS transport configured", subject, address)
        return False

    ok, error = send_email(address, subject, body, html)
    if not ok:
        logger.warning("Notification %r to %s not delivered: %s", subject, address, error)
    return ok
