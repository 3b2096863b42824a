"""
Configuration for Docket API
============================

Environment variables:
- DATABASE_URL: SQLAlchemy URL (default: sqlite:///./dev.db)
- JWT_SECRET_KEY: Active signing key for API tokens
- JWT_FALLBACK_SECRET_KEYS: JSON list of previously deployed keys still accepted
  during a key migration, tried in order (default: [])
- JWT_MAX_TOKEN_AGE_SECONDS: Absolute age ceiling for any token (default: 30 days)
- ASSEMBLY_TIMEOUT_SECONDS: Time limit for one entity assembly (default: 30)
- RELATIONSHIP_PAGE_SIZE: Max rows per listing / correlation (default: 50)
- REDIS_URL: Redis for rate limiting (optional)
- TRUSTED_PROXIES: JSON list of proxy IPs / CIDR ranges allowed to set
  X-Forwarded-For (default: [], the peer address is the client)
- HOST / PORT / RELOAD: Bind address for ``python -m docket_api.run``
"""

from typing import List
from pydantic_settings import BaseSettings
from functools import lru_cache

DEFAULT_JWT_SECRET = "dev-secret-key-change-in-production"


class Settings(BaseSettings):
    """Application settings from environment variables"""

    environment: str = "development"

    # Database
    database_url: str = "sqlite:///./dev.db"
    sql_echo: bool = False
    db_connect_timeout: int = 5
    db_retry_backoff_seconds: float = 0.2

    # Tokens
    jwt_secret_key: str = DEFAULT_JWT_SECRET
    jwt_fallback_secret_keys: List[str] = []
    jwt_algorithm: str = "HS256"
    jwt_max_token_age_seconds: int = 30 * 24 * 60 * 60
    jwt_leeway_seconds: int = 10
    jwt_issuer: str = "docketcalendar-api"

    # Assembly
    assembly_timeout_seconds: float = 30.0
    relationship_page_size: int = 50

    # HTTP
    api_prefix: str = "/api/v1"
    cors_allow_origins: str = "http://localhost:3000,http://127.0.0.1:3000"
    redis_url: str = "redis://localhost:6379/0"
    rate_limit_enabled: bool = True
    rate_limit_window_seconds: int = 15 * 60
    rate_limit_max_requests: int = 500
    rate_limit_max_requests_production: int = 50
    # Reverse proxies (IPs or CIDR ranges) whose X-Forwarded-For is honoured
    trusted_proxies: List[str] = []
    redis_retry_seconds: float = 30.0

    # Dev server
    host: str = "0.0.0.0"
    port: int = 8000
    reload: bool = False

    # Service info
    service_version: str = "2.0.0"

    class Config:
        env_prefix = ""
        case_sensitive = False
        env_file = ".env"
        env_file_encoding = "utf-8"

    @property
    def is_production(self) -> bool:
        return self.environment.strip().lower() == "production"

    @property
    def verification_keys(self) -> List[str]:
        """Active key first, then fallbacks; blanks and repeats dropped."""
        keys: List[str] = []
        for key in [self.jwt_secret_key, *self.jwt_fallback_secret_keys]:
            if key and key.strip() and key not in keys:
                keys.append(key)
        return keys

    @property
    def rate_limit_max(self) -> int:
        if self.is_production:
            return self.rate_limit_max_requests_production
        return self.rate_limit_max_requests

    def validate_auth_config(self) -> List[str]:
        """Validate token configuration, return list of warnings"""
        warnings = []

        if self.jwt_secret_key == DEFAULT_JWT_SECRET and self.is_production:
            warnings.append("JWT_SECRET_KEY is the development default in production")

        if len(self.verification_keys) > 1:
            warnings.append(
                f"{len(self.verification_keys) - 1} fallback signing key(s) configured; "
                "remove JWT_FALLBACK_SECRET_KEYS once all tokens are reissued"
            )

        if not self.jwt_secret_key.strip():
            warnings.append("JWT_SECRET_KEY is empty; no token can be verified")

        return warnings


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()
