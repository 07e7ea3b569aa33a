import os

BASE_DIR = os.path.abspath(os.path.dirname(__file__))

class Config:
    # Secrets
    SECRET_KEY = os.getenv("SECRET_KEY", "dev-only-change-me")

    # SQLite database file stored next to the app as turfbook.db
    SQLALCHEMY_DATABASE_URI = os.getenv(
        "DATABASE_URL",
        "sqlite:///" + os.path.join(BASE_DIR, "turfbook.db")
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Session cookie name for our auth token
    AUTH_COOKIE_NAME = "turfbook_session"

    # 8 hours session lifetime
    SESSION_LIFETIME_SECONDS = 8 * 60 * 60

    # Idle timeout: 20 minutes
    IDLE_TIMEOUT_SECONDS = 20 * 60

    # Slot times are wall-clock times at the turf
    FACILITY_TIMEZONE = os.getenv("FACILITY_TIMEZONE", "Asia/Kolkata")
    CURRENCY = os.getenv("CURRENCY", "INR")

    # Reservation holds: a held slot is free again once this lapses
    HOLD_TTL_SECONDS = int(os.getenv("HOLD_TTL_SECONDS", "600"))

    # Cancellation policy
    REFUND_CUTOFF_HOURS = 2              # full refund at or beyond this lead time, nothing inside it
    PLAYER_MONTHLY_CANCEL_LIMIT = 5
    OWNER_MONTHLY_CANCEL_LIMIT = 10
    OWNER_CANCEL_FEE = "30.00"
    OWNER_CANCEL_PLATFORM_FEE = "50.00"
    OWNER_CANCEL_REASON_MIN_LENGTH = 5

    # Earnings split on confirmed payments
    PLATFORM_FEE = "50.00"
    PLATFORM_ENTITY_ID = os.getenv("PLATFORM_ENTITY_ID", "platform")

    # Payments (Stripe)
    STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY")
    # shared secret for HMAC-SHA256(order_id|payment_id) callback signatures
    PAYMENT_SIGNING_SECRET = os.getenv("PAYMENT_SIGNING_SECRET")
    PAYMENT_GATEWAY_TIMEOUT_SECONDS = int(os.getenv("PAYMENT_GATEWAY_TIMEOUT_SECONDS", "10"))

    # Email (SMTP)
    SMTP_HOST = os.getenv("SMTP_HOST")
    SMTP_PORT = int(os.getenv("SMTP_PORT", "587"))
    SMTP_USERNAME = os.getenv("SMTP_USERNAME")
    SMTP_PASSWORD = os.getenv("SMTP_PASSWORD")
    SMTP_FROM_EMAIL = os.getenv("SMTP_FROM_EMAIL")
    SMTP_USE_TLS = os.getenv("SMTP_USE_TLS", "true").lower() == "true"

    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

    # Basic app settings
    DEBUG = False
