import os

from dotenv import load_dotenv
from pydantic import BaseModel

load_dotenv()


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name, str(default))
    try:
        return int(raw)
    except ValueError:
        return default


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name, str(default))
    try:
        return float(raw)
    except ValueError:
        return default


class Settings(BaseModel):
    environment: str = os.getenv("ENVIRONMENT", "development")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    port: int = _int_env("PORT", 8000)

    database_url: str = os.getenv("DATABASE_URL", "mongodb://localhost:27017")
    database_name: str = os.getenv("DATABASE_NAME", "photostudio")

    # JWT
    jwt_secret: str = os.getenv("JWT_SECRET", "dev-secret-change")
    jwt_algorithm: str = os.getenv("JWT_ALGORITHM", "HS256")
    jwt_expire_minutes: int = _int_env("JWT_EXPIRE_MINUTES", 60 * 24 * 30)
    jwt_cookie_expire_days: int = _int_env("JWT_COOKIE_EXPIRE_DAYS", 7)

    # Stripe
    stripe_secret_key: str = os.getenv("STRIPE_SECRET_KEY", "")
    stripe_webhook_secret: str = os.getenv("STRIPE_WEBHOOK_SECRET", "")
    stripe_currency: str = os.getenv("STRIPE_CURRENCY", "usd")
    stripe_max_network_retries: int = _int_env("STRIPE_MAX_NETWORK_RETRIES", 2)

    # Calendly
    calendly_api_key: str = os.getenv("CALENDLY_API_KEY", "")
    calendly_webhook_signing_key: str = os.getenv("CALENDLY_WEBHOOK_SIGNING_KEY", "")
    calendly_api_url: str = os.getenv("CALENDLY_API_URL", "https://api.calendly.com")
    http_timeout_seconds: float = _float_env("HTTP_TIMEOUT_SECONDS", 10.0)

    # Asset storage
    aws_access_key_id: str = os.getenv("AWS_ACCESS_KEY_ID", "")
    aws_secret_access_key: str = os.getenv("AWS_SECRET_ACCESS_KEY", "")
    aws_region: str = os.getenv("AWS_REGION", "us-east-1")
    aws_bucket_name: str = os.getenv("AWS_BUCKET_NAME", "")
    images_dir: str = os.getenv("IMAGES_DIR", os.path.join(os.getcwd(), "public", "images"))
    max_upload_bytes: int = _int_env("MAX_UPLOAD_BYTES", 10 * 1024 * 1024)

    # Pricing
    tax_rate: float = _float_env("TAX_RATE", 0.10)
    flat_shipping_fee: float = _float_env("FLAT_SHIPPING_FEE", 10.0)
    free_shipping_threshold: float = _float_env("FREE_SHIPPING_THRESHOLD", 100.0)

    @property
    def is_production(self) -> bool:
        return self.environment.strip().lower() == "production"

    @property
    def s3_enabled(self) -> bool:
        return bool(self.aws_access_key_id and self.aws_secret_access_key)


settings = Settings()
