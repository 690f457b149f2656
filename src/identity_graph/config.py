"""
Runtime configuration

All settings come from the environment through Settings.from_env().
Components receive a Settings instance; nothing reads os.environ later,
so tests can construct Settings(...) directly.

Environment variables:
- APP_ENV: "development" relaxes the EVENTS_API_KEY requirement
- EVENTS_API_KEY: shared secret expected in the x-events-api-key header
- CLICKHOUSE_HOST / _PORT / _USER / _PASSWORD / _DATABASE
- REDIS_URL: enables the identity profile cache
- PROFILE_CACHE_TTL_SECONDS, CLOSURE_TIMEOUT_MS, CLOSURE_MAX_ITERATIONS
- MAX_EVENT_BATCH_SIZE, LOG_LEVEL
"""

import os
import re
from typing import Optional

from pydantic import BaseModel, Field, field_validator

DEVELOPMENT = "development"

_DATABASE_NAME = re.compile(r"^[A-Za-z0-9_]+$")


def _env(name: str) -> Optional[str]:
    value = os.getenv(name, "").strip()
    return value or None


class Settings(BaseModel):
    """Typed settings container"""

    environment: str = "production"
    events_api_key: Optional[str] = None

    clickhouse_host: Optional[str] = None
    clickhouse_port: int = 9000
    clickhouse_user: str = "default"
    clickhouse_password: str = ""
    clickhouse_database: str = "analytics"

    redis_url: Optional[str] = None
    profile_cache_ttl_seconds: int = Field(300, ge=1)

    closure_timeout_ms: float = Field(5000.0, gt=0)
    closure_max_iterations: Optional[int] = Field(None, ge=1)

    max_batch_size: int = Field(1000, ge=1)
    log_level: str = "INFO"

    @field_validator("clickhouse_database")
    @classmethod
    def _check_database(cls, value: str) -> str:
        value = value.strip()
        if not _DATABASE_NAME.match(value):
            raise ValueError("CLICKHOUSE_DATABASE must match [A-Za-z0-9_]+")
        return value

    @property
    def is_development(self) -> bool:
        return self.environment == DEVELOPMENT

    @property
    def clickhouse_configured(self) -> bool:
        return bool(self.clickhouse_host)

    @classmethod
    def from_env(cls) -> "Settings":
        max_iterations = _env("CLOSURE_MAX_ITERATIONS")
        return cls(
            environment=(_env("APP_ENV") or "production").lower(),
            events_api_key=_env("EVENTS_API_KEY"),
            clickhouse_host=_env("CLICKHOUSE_HOST"),
            clickhouse_port=int(_env("CLICKHOUSE_PORT") or 9000),
            clickhouse_user=_env("CLICKHOUSE_USER") or "default",
            clickhouse_password=_env("CLICKHOUSE_PASSWORD") or "",
            clickhouse_database=_env("CLICKHOUSE_DATABASE") or "analytics",
            redis_url=_env("REDIS_URL"),
            profile_cache_ttl_seconds=int(_env("PROFILE_CACHE_TTL_SECONDS") or 300),
            closure_timeout_ms=float(_env("CLOSURE_TIMEOUT_MS") or 5000),
            closure_max_iterations=int(max_iterations) if max_iterations else None,
            max_batch_size=int(_env("MAX_EVENT_BATCH_SIZE") or 1000),
            log_level=(_env("LOG_LEVEL") or "INFO").upper(),
        )
