import os


def _bool_env(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _int_env(name: str, default: int) -> int:
    value = os.environ.get(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


class Config:
    BASE_DIR = os.path.dirname(os.path.dirname(__file__))
    DATABASE_URL = os.environ.get("DATABASE_URL")
    DATABASE_DIR = None if DATABASE_URL else os.path.join(BASE_DIR, "database")
    DB_PATH = DATABASE_URL or os.path.join(DATABASE_DIR, "erp_engine.db")
    DB_AUTO_INIT = _bool_env("DB_AUTO_INIT", False)

    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-erp-engine")
    LOG_JSON = _bool_env("LOG_JSON", True)
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    DEFAULT_CURRENCY = os.environ.get("DEFAULT_CURRENCY", "INR")
    INVOICE_PAYMENT_TERMS_DAYS = _int_env("INVOICE_PAYMENT_TERMS_DAYS", 30)
    RECEIPT_DEFAULT_PAYMENT_METHOD = os.environ.get("RECEIPT_DEFAULT_PAYMENT_METHOD", "bank_transfer")

    # "logging" writes notifications to the log; "recording" keeps them in memory.
    NOTIFIER_BACKEND = os.environ.get("NOTIFIER_BACKEND", "logging")
    ORGANIZATION_NAME = os.environ.get("ORGANIZATION_NAME", "Buyer Organization")

    def __init__(self):
        env = os.environ.get("FLASK_ENV", "development").lower()
        if env == "production" and not self.DATABASE_URL:
            raise RuntimeError("DATABASE_URL is required in production.")
        if env == "production" and self.SECRET_KEY == "dev-secret-erp-engine":
            raise RuntimeError("SECRET_KEY is insecure for production.")
        if self.INVOICE_PAYMENT_TERMS_DAYS < 0:
            raise RuntimeError("INVOICE_PAYMENT_TERMS_DAYS must not be negative.")
