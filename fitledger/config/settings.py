"""
Application settings and configuration
"""
import os
from dotenv import load_dotenv

load_dotenv()


def _csv(name: str, default: str) -> list:
    return [item.strip() for item in os.getenv(name, default).split(",") if item.strip()]


class Settings:
    # Application
    APP_NAME = "FitLedger"
    VERSION = "1.0.0"
    DEBUG = os.getenv("DEBUG", "True") == "True"

    # CORS
    ALLOWED_ORIGINS = _csv(
        "ALLOWED_ORIGINS",
        "http://localhost:3000,http://localhost:5173,http://127.0.0.1:5173",
    )

    # Display timezone for datetimes handed back to callers
    DISPLAY_TIMEZONE = os.getenv("DISPLAY_TIMEZONE", "Asia/Kolkata")

    # Commission
    DEFAULT_LAB_COMMISSION_RATE = float(os.getenv("DEFAULT_LAB_COMMISSION_RATE", "10"))
    DEFAULT_TRAINER_COMMISSION_RATE = float(os.getenv("DEFAULT_TRAINER_COMMISSION_RATE", "15"))

    # Payments
    VALID_USER_PAYMENT_METHODS = _csv("VALID_USER_PAYMENT_METHODS", "cash,card,online,upi")
    VALID_INVOICE_PAYMENT_METHODS = _csv(
        "VALID_INVOICE_PAYMENT_METHODS", "bank_transfer,online,cash,cheque"
    )

    # Invoicing
    INVOICE_GRACE_DAYS = int(os.getenv("INVOICE_GRACE_DAYS", "15"))
    GRACE_WARNING_DAYS = int(os.getenv("GRACE_WARNING_DAYS", "5"))

    # Billing scheduler
    BILLING_SCHEDULER_ENABLED = os.getenv("BILLING_SCHEDULER_ENABLED", "False") == "True"
    BILLING_SCHEDULER_INTERVAL_SECONDS = int(os.getenv("BILLING_SCHEDULER_INTERVAL_SECONDS", "3600"))

    # Pagination
    DEFAULT_PAGE_SIZE = 20
    MAX_PAGE_SIZE = 100

    # Analytics
    LEADERBOARD_SIZE = int(os.getenv("LEADERBOARD_SIZE", "10"))


settings = Settings()
