import os

BASE_DIR = os.path.abspath(os.path.dirname(__file__))

class Config:
    # Secrets
    SECRET_KEY = os.getenv("SECRET_KEY", "dev-only-change-me")

    # SQLite database file stored next to the app as slotsettle.db
    SQLALCHEMY_DATABASE_URI = os.getenv(
        "DATABASE_URL",
        "sqlite:///" + os.path.join(BASE_DIR, "slotsettle.db")
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    # Schema normally comes from "flask db upgrade"; tests create it directly
    CREATE_TABLES_ON_STARTUP = False

    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

    # Bearer sessions: 8 hours lifetime, 20 minutes idle timeout
    SESSION_LIFETIME_SECONDS = 8 * 60 * 60
    IDLE_TIMEOUT_SECONDS = 20 * 60

    # Stripe
    STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY")
    STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET")
    PAYMENT_CURRENCY = os.getenv("PAYMENT_CURRENCY", "usd")
    # "automatic" charges on authorization, "manual" holds funds until capture
    PAYMENT_CAPTURE_METHOD = os.getenv("PAYMENT_CAPTURE_METHOD", "automatic")

    # Platform keeps this share of every received amount
    PLATFORM_FEE_PERCENT = int(os.getenv("PLATFORM_FEE_PERCENT", "10"))

    # Seller payout accounts (Stripe Connect express)
    CONNECT_ACCOUNT_COUNTRY = os.getenv("CONNECT_ACCOUNT_COUNTRY", "US")
    ONBOARDING_REFRESH_URL = os.getenv("ONBOARDING_REFRESH_URL", "http://localhost:5173/onboarding/refresh")
    ONBOARDING_RETURN_URL = os.getenv("ONBOARDING_RETURN_URL", "http://localhost:5173/onboarding/success")
    REQUIRE_ONBOARDING_TO_ACCEPT = os.getenv("REQUIRE_ONBOARDING_TO_ACCEPT", "true").lower() == "true"

    # One-time codes
    OTP_TTL_SECONDS = int(os.getenv("OTP_TTL_SECONDS", "300"))  # password reset
    BOOKING_OTP_TTL_SECONDS = int(os.getenv("BOOKING_OTP_TTL_SECONDS", "300"))
    OTP_MAX_ATTEMPTS = int(os.getenv("OTP_MAX_ATTEMPTS", "5"))
    # Signed reset/release tokens handed out after a successful OTP check
    CONFIRMATION_TOKEN_MAX_AGE_SECONDS = int(os.getenv("CONFIRMATION_TOKEN_MAX_AGE_SECONDS", "600"))

    # bcrypt work factor
    BCRYPT_ROUNDS = int(os.getenv("BCRYPT_ROUNDS", "12"))

    # Email (SMTP)
    SMTP_HOST = os.getenv("SMTP_HOST")
    SMTP_PORT = int(os.getenv("SMTP_PORT", "587"))
    SMTP_USERNAME = os.getenv("SMTP_USERNAME")
    SMTP_PASSWORD = os.getenv("SMTP_PASSWORD")
    SMTP_FROM_EMAIL = os.getenv("SMTP_FROM_EMAIL")
    SMTP_USE_TLS = os.getenv("SMTP_USE_TLS", "true").lower() == "true"

    # Basic app settings
    DEBUG = False
