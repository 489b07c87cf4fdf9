"""
Application configuration.

Environment-based config classes for the Flask app, plus the typed view of
the business settings stored in the ``settings`` table.
"""

import os
from dataclasses import dataclass, fields

from dotenv import load_dotenv

basedir = os.path.abspath(os.path.dirname(__file__))

load_dotenv(os.path.join(basedir, ".env"), override=False)


def _env_flag(name, default):
    return os.environ.get(name, default).lower() in ("1", "true", "yes", "on")


class Config:
    """Base configuration shared by all environments."""

    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-change-me")

    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", "sqlite:///" + os.path.join(basedir, "data", "invoices.db")
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Generated PDFs land in <INVOICE_PDF_DIR>/<client>/<invoice number>.pdf
    INVOICE_PDF_DIR = os.environ.get("INVOICE_PDF_DIR", os.path.join(basedir, "data", "invoices"))
    MIGRATIONS_DIR = os.path.join(basedir, "migrations")

    # Daily overdue sweep
    SCHEDULER_ENABLED = _env_flag("SCHEDULER_ENABLED", "true")
    SCHEDULER_API_ENABLED = False
    OVERDUE_CHECK_HOUR = int(os.environ.get("OVERDUE_CHECK_HOUR", "9"))

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")


class DevelopmentConfig(Config):
    DEBUG = True
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "DEBUG")


class ProductionConfig(Config):
    """Production: expects DATABASE_URL and SECRET_KEY in env."""

    DEBUG = False


class TestingConfig(Config):
    """Automated tests: in-memory database, no scheduler."""

    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite://"
    SCHEDULER_ENABLED = False


config_by_name = {
    "development": DevelopmentConfig,
    "production": ProductionConfig,
    "testing": TestingConfig,
}


# Seeded into the settings table on first start
DEFAULT_SETTINGS = {
    "invoice_prefix": "INV-",
    "default_currency": "INR",
    "default_due_days": "30",
    "company_name": "Your Company",
    "company_email": "billing@example.com",
    "company_phone": "",
    "company_whatsapp": "",
    "company_address": "",
    "bank_name": "",
    "account_number": "",
    "ifsc_code": "",
    "account_holder_name": "",
    "upi_id": "",
    "discord_webhook_url": "",
}

CURRENCIES = ("INR", "USD", "EUR", "GBP")


@dataclass(frozen=True)
class BusinessSettings:
    """Typed business settings, built once per request from the key/value rows."""

    invoice_prefix: str = "INV-"
    default_currency: str = "INR"
    default_due_days: int = 30
    company_name: str = ""
    company_email: str = ""
    company_phone: str = ""
    company_whatsapp: str = ""
    company_address: str = ""
    bank_name: str = ""
    account_number: str = ""
    ifsc_code: str = ""
    account_holder_name: str = ""
    upi_id: str = ""
    discord_webhook_url: str = ""

    @classmethod
    def from_pairs(cls, pairs):
        """Build from a ``{key: value}`` mapping; unknown keys are ignored.

        Empty values keep the field default, and so does a due-day offset
        that is not a non-negative integer.
        """
        values = {}
        for field in fields(cls):
            raw = pairs.get(field.name)
            if raw is None or str(raw).strip() == "":
                continue
            raw = str(raw).strip()
            if field.type in (int, "int"):
                try:
                    number = int(raw)
                except ValueError:
                    continue
                if number < 0:
                    continue
                values[field.name] = number
            else:
                values[field.name] = raw
        return cls(**values)
