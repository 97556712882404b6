"""Service configuration read from the environment."""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import List, Optional

from askmandi.services.errors import ConfigError


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes", "on"}


def _env_origins() -> List[str]:
    raw = os.getenv("ALLOWED_ORIGINS", "")
    origins = [o.strip() for o in raw.split(",") if o.strip()]
    return origins or ["http://localhost:3000", "http://127.0.0.1:3000"]


@dataclass
class ServiceConfig:
    database_url: str = ""
    openai_api_key: str = ""
    openai_base_url: Optional[str] = None
    sql_model: str = "gpt-5.1"
    sql_reasoning_effort: Optional[str] = "low"
    summary_model: str = "gpt-4.1-nano"

    sql_max_output_tokens: int = 250
    summary_max_output_tokens: int = 300
    clarify_max_output_tokens: int = 200
    location_max_output_tokens: int = 200

    max_question_chars: int = 200
    location_confidence_threshold: float = 0.5
    reference_cache_ttl_seconds: float = 1800.0
    enable_location_resolver: bool = True

    rate_limit_requests: int = 20
    rate_limit_window_seconds: int = 86400

    data_refresh_hour: int = 6
    data_refresh_timezone: str = "Asia/Kolkata"

    db_query_timeout_seconds: int = 30
    db_max_rows: int = 500

    allowed_origins: List[str] = field(default_factory=list)

    @classmethod
    def from_env(cls) -> "ServiceConfig":
        return cls(
            database_url=os.getenv("DATABASE_URL", "").strip(),
            openai_api_key=os.getenv("OPENAI_API_KEY", "").strip(),
            openai_base_url=os.getenv("OPENAI_BASE_URL") or None,
            sql_model=os.getenv("OPENAI_SQL_MODEL", "gpt-5.1"),
            sql_reasoning_effort=os.getenv("OPENAI_SQL_REASONING_EFFORT", "low") or None,
            summary_model=os.getenv("OPENAI_SUMMARY_MODEL", "gpt-4.1-nano"),
            sql_max_output_tokens=max(50, int(os.getenv("SQL_MAX_OUTPUT_TOKENS", "250"))),
            summary_max_output_tokens=max(50, int(os.getenv("SUMMARY_MAX_OUTPUT_TOKENS", "300"))),
            clarify_max_output_tokens=max(50, int(os.getenv("CLARIFY_MAX_OUTPUT_TOKENS", "200"))),
            location_max_output_tokens=max(50, int(os.getenv("LOCATION_MAX_OUTPUT_TOKENS", "200"))),
            max_question_chars=max(1, int(os.getenv("MAX_QUESTION_CHARS", "200"))),
            location_confidence_threshold=float(os.getenv("LOCATION_CONFIDENCE_THRESHOLD", "0.5")),
            reference_cache_ttl_seconds=max(1.0, float(os.getenv("REFERENCE_CACHE_TTL_SECONDS", "1800"))),
            enable_location_resolver=_env_bool("ENABLE_LOCATION_RESOLVER", "true"),
            rate_limit_requests=max(1, int(os.getenv("RATE_LIMIT_REQUESTS", "20"))),
            rate_limit_window_seconds=max(1, int(os.getenv("RATE_LIMIT_WINDOW_SECONDS", "86400"))),
            data_refresh_hour=min(23, max(0, int(os.getenv("DATA_REFRESH_HOUR", "6")))),
            data_refresh_timezone=os.getenv("DATA_REFRESH_TIMEZONE", "Asia/Kolkata"),
            db_query_timeout_seconds=max(1, int(os.getenv("DB_QUERY_TIMEOUT_SECONDS", "30"))),
            db_max_rows=max(1, int(os.getenv("DB_MAX_ROWS", "500"))),
            allowed_origins=_env_origins(),
        )

    def validate(self) -> None:
        if not self.database_url:
            raise ConfigError("DATABASE_URL is not configured")
        if not self.openai_api_key:
            raise ConfigError("OPENAI_API_KEY is not configured")
