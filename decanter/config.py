from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import List, Optional

_TRUTHY = {"1", "true", "yes", "on"}


def _env_str(name: str, default: str = "") -> str:
    return os.getenv(name, default).strip()


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return value if value > 0 else default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_flag(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in _TRUTHY


@dataclass(frozen=True)
class Settings:
    gemini_api_key: str = ""
    gemini_model: str = "gemini-2.5-flash"
    gemini_endpoint_base: str = "https://generativelanguage.googleapis.com/v1beta/models"
    temperature: float = 0.7
    llm_timeout_secs: float = 30.0
    stream_idle_timeout_secs: float = 20.0
    stream_total_timeout_secs: float = 120.0

    rate_window_seconds: int = 60
    rate_max_requests: int = 10
    rate_limit_disabled: bool = False
    redis_url: str = ""

    max_body_bytes: int = 100 * 1024
    code_min_chars: int = 10
    code_max_chars: int = 50_000
    prompt_code_max_chars: int = 48_000
    output_max_chars_review: int = 24_000
    output_max_chars_narrate: int = 8_000

    trust_forwarded_headers: bool = True
    allow_origins: List[str] = field(default_factory=lambda: ["*"])
    environment: str = "production"

    @property
    def is_development(self) -> bool:
        return self.environment.lower() in {"dev", "development", "local"}


def load_settings() -> Settings:
    """Read settings from the process environment."""
    origins = [o.strip() for o in os.getenv("ALLOW_ORIGINS", "*").split(",") if o.strip()]
    return Settings(
        gemini_api_key=_env_str("GEMINI_API_KEY") or _env_str("API_KEY"),
        gemini_model=_env_str("GEMINI_MODEL", "gemini-2.5-flash") or "gemini-2.5-flash",
        gemini_endpoint_base=(
            _env_str("GEMINI_ENDPOINT_BASE", "https://generativelanguage.googleapis.com/v1beta/models").rstrip("/")
        ),
        temperature=_env_float("TEMPERATURE", 0.7),
        llm_timeout_secs=_env_float("LLM_TIMEOUT_SECS", 30.0),
        stream_idle_timeout_secs=_env_float("STREAM_IDLE_TIMEOUT_SECS", 20.0),
        stream_total_timeout_secs=_env_float("STREAM_TOTAL_TIMEOUT_SECS", 120.0),
        rate_window_seconds=_env_int("RATE_WINDOW_SECONDS", 60),
        rate_max_requests=_env_int("RATE_MAX_REQUESTS", 10),
        rate_limit_disabled=_env_flag("RATE_LIMIT_DISABLED"),
        redis_url=_env_str("REDIS_URL"),
        max_body_bytes=_env_int("MAX_BODY_BYTES", 100 * 1024),
        code_min_chars=_env_int("CODE_MIN_CHARS", 10),
        code_max_chars=_env_int("CODE_MAX_CHARS", 50_000),
        prompt_code_max_chars=_env_int("PROMPT_CODE_MAX_CHARS", 48_000),
        output_max_chars_review=_env_int("OUTPUT_MAX_CHARS_REVIEW", 24_000),
        output_max_chars_narrate=_env_int("OUTPUT_MAX_CHARS_NARRATE", 8_000),
        trust_forwarded_headers=_env_flag("TRUST_FORWARDED_HEADERS", True),
        allow_origins=origins or ["*"],
        environment=_env_str("DECANTER_ENV", "production") or "production",
    )


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def reset_settings(settings: Optional[Settings] = None) -> None:
    """Replace the cached settings (tests) or force a reload on next access."""
    global _settings
    _settings = settings
