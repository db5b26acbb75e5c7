import os

db_url = os.environ.get("DB_URL", "sqlite://:memory:")
notifications_ms_url = os.environ.get(
    "NOTIFICATIONS_MS_URL", "http://localhost:8005"
)
REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379/0")

PAYMONGO_SECRET_KEY = os.environ.get("PAYMONGO_SECRET_KEY", "")
PAYMONGO_PUBLIC_KEY = os.environ.get("PAYMONGO_PUBLIC_KEY", "")
PAYMONGO_API_URL = os.environ.get("PAYMONGO_API_URL", "https://api.paymongo.com/v1")
PAYMONGO_WEBHOOK_SECRET = os.environ.get("PAYMONGO_WEBHOOK_SECRET", "")
GATEWAY_TIMEOUT_SECONDS = float(os.environ.get("GATEWAY_TIMEOUT_SECONDS", "10"))

DEFAULT_CURRENCY = os.environ.get("DEFAULT_CURRENCY", "PHP")
DEFAULT_DEPOSIT_RATIO = float(os.environ.get("DEFAULT_DEPOSIT_RATIO", "0.3"))
RECEIPT_CACHE_TTL = int(os.environ.get("RECEIPT_CACHE_TTL", "300"))
