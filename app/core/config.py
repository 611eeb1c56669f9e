from __future__ import annotations

import os


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


class Config:
    SECRET_KEY = os.getenv("SECRET_KEY", "dev-secret-key")
    SQLALCHEMY_DATABASE_URI = os.getenv(
        "DATABASE_URL",
        "sqlite:///firmas.db",
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
    LOG_FILE = os.getenv("LOG_FILE", "")

    # "allow_all" keeps tenants without workflow config ungoverned;
    # "default_rules" applies DEFAULT_WORKFLOW_CONFIG instead.
    WORKFLOW_FALLBACK = os.getenv("WORKFLOW_FALLBACK", "allow_all")

    SIGNATURE_LINK_TTL_HOURS = int(os.getenv("SIGNATURE_LINK_TTL_HOURS", "24"))
    PUBLIC_SIGNATURE_BASE_URL = os.getenv("PUBLIC_SIGNATURE_BASE_URL", "http://localhost:5000/firma")

    REQUIRE_OTP_FOR_SIGNATURE = _env_bool("REQUIRE_OTP_FOR_SIGNATURE", True)
    OTP_LENGTH = int(os.getenv("OTP_LENGTH", "6"))
    OTP_EXPIRATION_SECONDS = int(os.getenv("OTP_EXPIRATION_SECONDS", "300"))
    OTP_MAX_ATTEMPTS = int(os.getenv("OTP_MAX_ATTEMPTS", "3"))
    OTP_DEFAULT_CHANNEL = os.getenv("OTP_DEFAULT_CHANNEL", "email")

    CONSENT_TEXT_VERSION = os.getenv("CONSENT_TEXT_VERSION", "2024-01")
    LEGAL_FRAMEWORK = {
        "law": "Ley N° 4017/2010 - República del Paraguay",
        "standards": ["ISO 14533", "ISO 27001", "UNCITRAL"],
        "level": "Firma Electrónica Avanzada (referencial eIDAS)",
    }

    # log | smtp | whatsapp
    DELIVERY_CHANNEL = os.getenv("DELIVERY_CHANNEL", "log")
    SMTP_HOST = os.getenv("SMTP_HOST", "")
    SMTP_PORT = int(os.getenv("SMTP_PORT", "587"))
    SMTP_USER = os.getenv("SMTP_USER", "")
    SMTP_PASSWORD = os.getenv("SMTP_PASSWORD", "")
    SMTP_FROM = os.getenv("SMTP_FROM", "noreply@firmas.local")
    SMTP_TLS = _env_bool("SMTP_TLS", True)
    WHATSAPP_API_URL = os.getenv("WHATSAPP_API_URL", "https://graph.facebook.com/v19.0")
    WHATSAPP_PHONE_NUMBER_ID = os.getenv("WHATSAPP_PHONE_NUMBER_ID", "")
    WHATSAPP_ACCESS_TOKEN = os.getenv("WHATSAPP_ACCESS_TOKEN", "")

    REMINDER_INTERVAL_HOURS = int(os.getenv("REMINDER_INTERVAL_HOURS", "24"))
    REMINDER_WINDOW_DAYS = int(os.getenv("REMINDER_WINDOW_DAYS", "3"))
