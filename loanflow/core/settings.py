from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    environment: str = Field(default="development", alias="ENVIRONMENT")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    redis_url: str = Field(default="redis://localhost:6379/0", alias="REDIS_URL")

    secret_key: str = Field(default="change-me", alias="SECRET_KEY")
    jwt_algorithm: str = Field(default="HS256", alias="JWT_ALGORITHM")
    jwt_private_key: str | None = Field(default=None, alias="JWT_PRIVATE_KEY")
    jwt_public_key: str | None = Field(default=None, alias="JWT_PUBLIC_KEY")
    jwt_private_key_path: str | None = Field(default=None, alias="JWT_PRIVATE_KEY_PATH")
    jwt_public_key_path: str | None = Field(default=None, alias="JWT_PUBLIC_KEY_PATH")
    access_token_expire_minutes: int = Field(default=60, alias="ACCESS_TOKEN_EXPIRE_MINUTES")

    rate_limit_per_minute: int = Field(default=60, alias="RATE_LIMIT_PER_MINUTE")
    login_attempt_limit: int = Field(default=5, alias="LOGIN_ATTEMPT_LIMIT")
    login_lockout_minutes: int = Field(default=15, alias="LOGIN_LOCKOUT_MINUTES")

    allowed_origins: list[str] = Field(default_factory=lambda: ["http://localhost:3000"], alias="ALLOWED_ORIGINS")
    proxies_count: int = Field(default=1, alias="PROXIES_COUNT")
    enable_hsts: bool = Field(default=False, alias="ENABLE_HSTS")
    content_security_policy: str | None = Field(default=None, alias="CONTENT_SECURITY_POLICY")
    content_security_policy_report_only: bool = Field(default=False, alias="CSP_REPORT_ONLY")

    record_store_base_url: str = Field(default="http://localhost:5678/webhook", alias="RECORD_STORE_BASE_URL")
    record_store_api_key: str | None = Field(default=None, alias="RECORD_STORE_API_KEY")
    record_store_timeout_seconds: float = Field(default=5.0, alias="RECORD_STORE_TIMEOUT_SECONDS")
    record_store_max_retries: int = Field(default=3, alias="RECORD_STORE_MAX_RETRIES")
    record_store_backoff_seconds: float = Field(default=0.5, alias="RECORD_STORE_BACKOFF_SECONDS")

    user_account_cache_ttl_seconds: int = Field(default=300, alias="USER_ACCOUNT_CACHE_TTL_SECONDS")
    query_edit_window_minutes: int = Field(default=15, alias="QUERY_EDIT_WINDOW_MINUTES")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
