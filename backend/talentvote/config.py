from __future__ import annotations
import os
from pydantic import BaseModel

class Settings(BaseModel):
    environment: str = os.getenv("ENVIRONMENT", "dev")
    app_name: str = os.getenv("APP_NAME", "talentvote-api")
    app_display_name: str = os.getenv("APP_DISPLAY_NAME", "TalentVote")
    app_version: str = os.getenv("APP_VERSION", "0.1.0")
    git_sha: str = os.getenv("GIT_SHA", "dev")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    cors_origins: list[str] = os.getenv("CORS_ORIGINS", "*").split(",")
    database_url: str = os.getenv("DATABASE_URL", "postgresql+asyncpg://postgres:postgres@db:5432/talentvote_dev")

    # Public URLs used to build gateway callbacks and browser redirects
    public_base_url: str = os.getenv("PUBLIC_BASE_URL", "http://localhost:8000")
    frontend_url: str = os.getenv("FRONTEND_URL", "http://localhost:3000")

    # FedaPay configuration
    fedapay_secret_key: str = os.getenv("FEDAPAY_SECRET_KEY", "")
    fedapay_environment: str = os.getenv("FEDAPAY_ENVIRONMENT", "sandbox")  # sandbox|live
    fedapay_webhook_secret: str = os.getenv("FEDAPAY_WEBHOOK_SECRET", "")
    fedapay_country: str = os.getenv("FEDAPAY_COUNTRY", "bj")
    gateway_create_timeout_seconds: float = float(os.getenv("GATEWAY_CREATE_TIMEOUT_SECONDS", "30"))
    gateway_fetch_timeout_seconds: float = float(os.getenv("GATEWAY_FETCH_TIMEOUT_SECONDS", "10"))

    # Voting / payment rules
    currency: str = os.getenv("VOTE_CURRENCY", "XOF")
    payment_ttl_minutes: int = int(os.getenv("PAYMENT_TTL_MINUTES", "30"))
    status_check_interval_ms: int = int(os.getenv("STATUS_CHECK_INTERVAL_MS", "3000"))

    # Phone canonicalization (deployment specific)
    phone_country_code: str = os.getenv("PHONE_COUNTRY_CODE", "229")
    phone_local_digits: int = int(os.getenv("PHONE_LOCAL_DIGITS", "8"))

    # Auth
    jwt_secret: str = os.getenv("JWT_SECRET", "dev-secret-change-me")
    access_ttl_min: int = int(os.getenv("ACCESS_TTL_MIN", "15"))

    @property
    def is_development(self) -> bool:
        return self.environment in ("dev", "test")

settings = Settings()
