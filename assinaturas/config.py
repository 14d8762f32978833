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
    DB_PATH = DATABASE_URL or os.path.join(DATABASE_DIR, "assinaturas.db")
    DB_AUTO_INIT = _bool_env("DB_AUTO_INIT", False)

    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-assinaturas")
    LOG_JSON = _bool_env("LOG_JSON", True)
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
    RATE_LIMIT_ENABLED = _bool_env("RATE_LIMIT_ENABLED", True)
    RATE_LIMIT_WINDOW_SECONDS = _int_env("RATE_LIMIT_WINDOW_SECONDS", 60)
    RATE_LIMIT_MAX_REQUESTS = _int_env("RATE_LIMIT_MAX_REQUESTS", 300)

    # "simulator" keeps charges in memory; "mercadopago" talks to the real provider.
    BILLING_GATEWAY = os.environ.get("BILLING_GATEWAY", "simulator")
    BILLING_CURRENCY = os.environ.get("BILLING_CURRENCY", "BRL")
    BILLING_STATEMENT_DESCRIPTOR = os.environ.get("BILLING_STATEMENT_DESCRIPTOR", "PLATAFORMA LICITACOES")
    BILLING_DEFAULT_GRACE_DAYS = _int_env("BILLING_DEFAULT_GRACE_DAYS", 7)
    BILLING_GATEWAY_TIMEOUT_SECONDS = _int_env("BILLING_GATEWAY_TIMEOUT_SECONDS", 10)
    BILLING_GATEWAY_RETRY_ATTEMPTS = _int_env("BILLING_GATEWAY_RETRY_ATTEMPTS", 2)
    BILLING_GATEWAY_RETRY_BACKOFF_MS = _int_env("BILLING_GATEWAY_RETRY_BACKOFF_MS", 300)
    BILLING_CHARGE_RETRY_ATTEMPTS = _int_env("BILLING_CHARGE_RETRY_ATTEMPTS", 3)
    BILLING_CHARGE_RETRY_BACKOFF_MS = _int_env("BILLING_CHARGE_RETRY_BACKOFF_MS", 200)
    BILLING_CONCURRENCY_RETRIES = _int_env("BILLING_CONCURRENCY_RETRIES", 3)
    BILLING_PENDING_MIN_AGE_HOURS = _int_env("BILLING_PENDING_MIN_AGE_HOURS", 1)
    BILLING_PENDING_LOOKBACK_DAYS = _int_env("BILLING_PENDING_LOOKBACK_DAYS", 7)

    BILLING_CIRCUIT_ENABLED = _bool_env("BILLING_CIRCUIT_ENABLED", True)
    BILLING_CIRCUIT_ERROR_RATE_THRESHOLD = float(os.environ.get("BILLING_CIRCUIT_ERROR_RATE_THRESHOLD", "0.6"))
    BILLING_CIRCUIT_MIN_SAMPLES = _int_env("BILLING_CIRCUIT_MIN_SAMPLES", 5)
    BILLING_CIRCUIT_WINDOW_SECONDS = _int_env("BILLING_CIRCUIT_WINDOW_SECONDS", 120)
    BILLING_CIRCUIT_OPEN_SECONDS = _int_env("BILLING_CIRCUIT_OPEN_SECONDS", 30)
    BILLING_CIRCUIT_HALF_OPEN_MAX_CALLS = _int_env("BILLING_CIRCUIT_HALF_OPEN_MAX_CALLS", 1)

    BILLING_SCHEDULER_ENABLED = _bool_env("BILLING_SCHEDULER_ENABLED", True)
    BILLING_SCHEDULER_INTERVAL_SECONDS = _int_env("BILLING_SCHEDULER_INTERVAL_SECONDS", 900)
    BILLING_SCHEDULER_MIN_BACKOFF_SECONDS = _int_env("BILLING_SCHEDULER_MIN_BACKOFF_SECONDS", 60)
    BILLING_SCHEDULER_MAX_BACKOFF_SECONDS = _int_env("BILLING_SCHEDULER_MAX_BACKOFF_SECONDS", 3600)

    MERCADOPAGO_BASE_URL = os.environ.get("MERCADOPAGO_BASE_URL", "https://api.mercadopago.com")
    MERCADOPAGO_ACCESS_TOKEN = os.environ.get("MERCADOPAGO_ACCESS_TOKEN")
    MERCADOPAGO_WEBHOOK_SECRET = os.environ.get("MERCADOPAGO_WEBHOOK_SECRET")
    MERCADOPAGO_VERIFY_SSL = _bool_env("MERCADOPAGO_VERIFY_SSL", True)
    MERCADOPAGO_NOTIFICATION_URL = os.environ.get("MERCADOPAGO_NOTIFICATION_URL")
    SIMULATOR_WEBHOOK_SECRET = os.environ.get("SIMULATOR_WEBHOOK_SECRET", "simulator-webhook-secret")

    WEBHOOK_ALLOW_UNSIGNED = _bool_env("WEBHOOK_ALLOW_UNSIGNED", False)
    WEBHOOK_SIGNATURE_TOLERANCE_SECONDS = _int_env("WEBHOOK_SIGNATURE_TOLERANCE_SECONDS", 600)
    WEBHOOK_SIGNATURE_ALERT_THRESHOLD = _int_env("WEBHOOK_SIGNATURE_ALERT_THRESHOLD", 10)
    WEBHOOK_SIGNATURE_ALERT_WINDOW_SECONDS = _int_env("WEBHOOK_SIGNATURE_ALERT_WINDOW_SECONDS", 60)

    # "log" writes notifications to the structured log; "smtp" delivers them by email.
    MAIL_BACKEND = os.environ.get("MAIL_BACKEND", "log")
    MAIL_SMTP_HOST = os.environ.get("MAIL_SMTP_HOST")
    MAIL_SMTP_PORT = _int_env("MAIL_SMTP_PORT", 587)
    MAIL_USERNAME = os.environ.get("MAIL_USERNAME")
    MAIL_PASSWORD = os.environ.get("MAIL_PASSWORD")
    MAIL_USE_TLS = _bool_env("MAIL_USE_TLS", True)
    MAIL_FROM = os.environ.get("MAIL_FROM")
    MAIL_TIMEOUT_SECONDS = _int_env("MAIL_TIMEOUT_SECONDS", 10)

    def __init__(self):
        env = os.environ.get("FLASK_ENV", "development").lower()
        if env == "production" and not self.DATABASE_URL:
            raise RuntimeError("DATABASE_URL nao definida para ambiente de producao.")
        if env == "production" and self.SECRET_KEY == "dev-secret-assinaturas":
            raise RuntimeError("SECRET_KEY insegura para producao.")
        if env == "production" and str(self.BILLING_GATEWAY).strip().lower() == "mercadopago":
            if not self.MERCADOPAGO_ACCESS_TOKEN:
                raise RuntimeError("MERCADOPAGO_ACCESS_TOKEN nao definido para producao.")
            if not self.MERCADOPAGO_WEBHOOK_SECRET:
                raise RuntimeError("MERCADOPAGO_WEBHOOK_SECRET nao definido para producao.")
