from __future__ import annotations

import ipaddress
import json
import os
from pathlib import Path
from typing import Any, List, Optional

from pydantic import AnyHttpUrl, Field, ValidationInfo, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from sqlalchemy.engine.url import make_url

DEV_DEFAULT_JWT_SECRET = "dev_secret_DO_NOT_USE_IN_PRODUCTION_generate_real_secret_with_secrets_module"
DEFAULT_DB_PASSWORDS = frozenset(
    {"", "postgres", "password", "changeme", "localdev_password_change_in_production"}
)
ENVIRONMENTS = ("development", "test", "staging", "production")

# Each may instead be supplied as a file path in {NAME}_FILE (Docker/K8s secrets).
FILE_BACKED_SECRETS = ("JWT_SECRET", "GATEWAY_TOKEN", "DATABASE_URL", "REDIS_URL")


def _secrets_from_files() -> dict[str, str]:
    found: dict[str, str] = {}
    for name in FILE_BACKED_SECRETS:
        path = os.getenv(f"{name}_FILE")
        if not path:
            continue
        try:
            found[name] = Path(path).read_text().strip()
        except FileNotFoundError as exc:
            raise ValueError(f"{name}_FILE points to missing file: {path}") from exc
    return found


def _split_list(value: Any) -> Any:
    """A JSON array, a comma-separated string, or an already-parsed list."""
    if value is None:
        return []
    if not isinstance(value, str):
        return value
    try:
        parsed = json.loads(value)
    except json.JSONDecodeError:
        parsed = value.split(",")
    if isinstance(parsed, str):
        parsed = [parsed]
    if not isinstance(parsed, list):
        return []
    return [str(item).strip() for item in parsed if str(item).strip()]


class Settings(BaseSettings):
    """Process configuration, read once at import from the environment and .env."""

    model_config = SettingsConfigDict(
        env_file=".env" if (os.getenv("ENVIRONMENT") or "development").lower() != "production" else None,
        case_sensitive=False,
        extra="ignore",
    )

    ENVIRONMENT: str = "development"
    STRICT_MODE: bool = True

    # Storage
    DATABASE_URL: str = "sqlite:///./dashchat.db"
    REDIS_URL: Optional[str] = None
    REQUIRE_REDIS_IN_PRODUCTION: bool = True

    # Bearer tokens are minted by the dashboard; this service verifies them.
    JWT_SECRET: str = DEV_DEFAULT_JWT_SECRET
    JWT_ISSUER: str = "dashchat"
    JWT_AUDIENCE: str = "dashchat-users"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 15

    # HTTP surface
    REQUIRE_CSRF_HEADER: bool = True
    CORS_ORIGINS: List[AnyHttpUrl] = Field(default_factory=list)
    CORS_ALLOW_CREDENTIALS: bool = True
    CORS_ALLOW_METHODS: List[str] = ["GET", "POST", "PUT", "DELETE", "OPTIONS"]
    CORS_ALLOW_HEADERS: List[str] = ["Authorization", "Content-Type", "X-Requested-With", "X-Request-ID"]
    TRUSTED_PROXY_IPS: List[str] = []
    RATE_LIMIT_PER_MINUTE: int = 120
    CHAT_RATE_LIMIT_PER_MINUTE: int = 10
    METRICS_ALLOW_ALL: bool = False
    MAX_JSON_MB: int = 10

    # Upstream completion gateway
    GATEWAY_BASE_URL: str = "http://localhost:18789"
    GATEWAY_TOKEN: Optional[str] = None
    GATEWAY_MODEL: str = "clawdbot"
    GATEWAY_CONNECT_TIMEOUT_S: float = 10.0
    GATEWAY_READ_TIMEOUT_S: float = 120.0

    # Chat exchanges
    CHAT_EXCHANGE_TIMEOUT_S: float = 300.0
    CHAT_CONTEXT_TURNS: int = 20
    CHAT_HISTORY_MAX_LIMIT: int = 200
    MAX_MESSAGE_LENGTH: int = 32_000
    MAX_IMAGE_DATA_URL_MB: int = 8

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: Any,
        env_settings: Any,
        dotenv_settings: Any,
        file_secret_settings: Any,
    ) -> tuple[Any, ...]:
        # *_FILE secrets sit between explicit kwargs and plain env vars.
        return (init_settings, _secrets_from_files, env_settings, dotenv_settings, file_secret_settings)

    @field_validator("ENVIRONMENT")
    @classmethod
    def normalize_environment(cls, value: str) -> str:
        value = value.strip().lower()
        if value not in ENVIRONMENTS:
            raise ValueError(f"ENVIRONMENT must be one of: {', '.join(ENVIRONMENTS)}")
        return value

    @field_validator("JWT_SECRET")
    @classmethod
    def validate_jwt_secret(cls, value: str) -> str:
        if not value:
            raise ValueError("JWT_SECRET must be set")
        if len(value) < 32:
            raise ValueError("JWT_SECRET must be at least 32 characters long")
        return value

    @field_validator("GATEWAY_BASE_URL")
    @classmethod
    def validate_gateway_base_url(cls, value: str) -> str:
        value = (value or "").strip().rstrip("/")
        if not value.startswith(("http://", "https://")):
            raise ValueError("GATEWAY_BASE_URL must be an http(s) URL")
        return value

    @field_validator("GATEWAY_TOKEN")
    @classmethod
    def normalize_gateway_token(cls, value: Optional[str]) -> Optional[str]:
        # Blank means "no credential header".
        return (value or "").strip() or None

    @field_validator("CHAT_EXCHANGE_TIMEOUT_S", "GATEWAY_CONNECT_TIMEOUT_S", "GATEWAY_READ_TIMEOUT_S")
    @classmethod
    def validate_positive_timeout(cls, value: float, info: ValidationInfo) -> float:
        if value <= 0:
            raise ValueError(f"{info.field_name} must be > 0")
        return value

    @field_validator("CHAT_CONTEXT_TURNS")
    @classmethod
    def validate_context_turns(cls, value: int) -> int:
        if value < 0:
            raise ValueError("CHAT_CONTEXT_TURNS must be >= 0")
        return value

    @field_validator("CORS_ORIGINS", "TRUSTED_PROXY_IPS", mode="before")
    @classmethod
    def parse_list_settings(cls, value: Any) -> Any:
        return _split_list(value)

    @field_validator("TRUSTED_PROXY_IPS")
    @classmethod
    def validate_trusted_proxies(cls, value: List[str]) -> List[str]:
        networks = []
        for entry in value:
            try:
                networks.append(str(ipaddress.ip_network(entry, strict=False)))
            except ValueError as exc:
                raise ValueError(f"Invalid TRUSTED_PROXY_IPS entry '{entry}': {exc}") from exc
        return networks

    @field_validator("CORS_ALLOW_CREDENTIALS")
    @classmethod
    def validate_cors_credentials(cls, value: bool, info: ValidationInfo) -> bool:
        origins = info.data.get("CORS_ORIGINS") or []
        if value and any(str(o).strip() == "*" for o in origins):
            raise ValueError("CORS_ORIGINS cannot include '*' when CORS_ALLOW_CREDENTIALS=true")
        return value

    @model_validator(mode="after")
    def validate_production_safety(self) -> "Settings":
        """Refuse to build production settings that would run insecurely."""
        if self.ENVIRONMENT != "production":
            return self

        if self.DATABASE_URL.startswith("sqlite:"):
            raise ValueError(
                "SQLite (DATABASE_URL starting with 'sqlite:') is not allowed in production; use PostgreSQL instead."
            )
        if (make_url(self.DATABASE_URL).password or "") in DEFAULT_DB_PASSWORDS:
            raise ValueError(
                "Default/blank database password is not allowed in production. Set a strong password in DATABASE_URL."
            )
        if self.JWT_SECRET == DEV_DEFAULT_JWT_SECRET:
            raise ValueError("Default JWT_SECRET is not allowed in production")
        if self.REQUIRE_REDIS_IN_PRODUCTION and not self.REDIS_URL:
            raise ValueError("REDIS_URL is required in production when REQUIRE_REDIS_IN_PRODUCTION=true")
        if not self.REQUIRE_CSRF_HEADER:
            raise ValueError("REQUIRE_CSRF_HEADER must be true in production")
        return self


settings = Settings()
