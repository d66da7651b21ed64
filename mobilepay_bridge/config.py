"""Configuration settings for the MobilePay bridge"""

from pydantic_settings import BaseSettings
from typing import List, Optional
import os


class Settings(BaseSettings):
    """Application settings"""

    # Application
    APP_ENV: str = "development"
    LOG_LEVEL: str = "INFO"
    # Hosting platforms may provide PORT dynamically
    PORT: int = int(os.getenv("PORT", "8000"))

    # Database
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///./mobilepay_bridge.db")

    # Celery
    CELERY_BROKER_URL: str = os.getenv("CELERY_BROKER_URL", "redis://redis:6379/1")
    CELERY_RESULT_BACKEND: str = os.getenv("CELERY_RESULT_BACKEND", "redis://redis:6379/1")

    # MobilePay (Vipps MobilePay Recurring API v3)
    MOBILEPAY_BASE_URL: str = "https://apitest.vipps.no"
    MOBILEPAY_CLIENT_ID: str = ""
    MOBILEPAY_CLIENT_SECRET: str = ""
    MOBILEPAY_SUBSCRIPTION_KEY: str = ""
    MOBILEPAY_MERCHANT_SERIAL_NUMBER: str = ""
    MOBILEPAY_TIMEOUT_SECONDS: float = 30.0
    # Shared secret for X-Webhook-Signature (HMAC-SHA256 over the raw body)
    MOBILEPAY_WEBHOOK_SECRET: Optional[str] = None

    MERCHANT_AGREEMENT_URL: str = "https://academy.familymind.dk/agreement-details"
    MERCHANT_REDIRECT_URL: str = "https://academy.familymind.dk/payment/callback"
    DEFAULT_CURRENCY: str = "DKK"

    # Charge scheduling
    CHARGE_ADVANCE_DAYS: int = 3
    CHARGE_RETRY_DAYS: int = 5
    CHARGE_SCHEDULER_CRON: str = "0 2 * * *"  # daily at 02:00 UTC
    CHARGE_MONITORING_ENABLED: bool = True

    # Billing platform notifications
    BILLING_PLATFORM_URL: str = ""
    BILLING_PLATFORM_API_KEY: str = ""
    NOTIFICATION_TIMEOUT_SECONDS: float = 10.0

    # Course platform (New Zenler)
    COURSE_PLATFORM_URL: str = "https://api.newzenler.com/api/v1"
    COURSE_PLATFORM_API_KEY: str = ""
    COURSE_PLATFORM_ACCOUNT_NAME: str = ""
    COURSE_PLATFORM_COURSE_IDS: str = ""  # comma-separated

    # API authentication
    API_KEY: str = ""  # empty allows all public API calls (development only)
    ADMIN_API_KEY: str = ""

    # CORS
    CORS_ORIGINS: str = "http://localhost:3000,http://localhost:3001"

    # Monitoring
    SENTRY_DSN: Optional[str] = os.getenv("SENTRY_DSN", None)

    @property
    def cors_origins_list(self) -> List[str]:
        """Parse CORS origins from comma-separated string"""
        return [origin.strip() for origin in self.CORS_ORIGINS.split(",") if origin.strip()]

    @property
    def course_ids_list(self) -> List[str]:
        """Parse configured course ids from comma-separated string"""
        return [c.strip() for c in self.COURSE_PLATFORM_COURSE_IDS.split(",") if c.strip()]

    class Config:
        env_file = ".env"
        case_sensitive = True


settings = Settings()
