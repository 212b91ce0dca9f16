"""Settings loaded from environment variables (+ optional .env).

All variables use the ``TIMETABLE_`` prefix. Nothing here requires secrets at
import time: a missing JWT secret is replaced by a random one per process,
which invalidates issued tokens on restart.
"""

from __future__ import annotations

import logging
import os
import secrets
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

ENV_PREFIX = "TIMETABLE"

_TRUE = frozenset({"1", "true", "yes", "on"})
_FALSE = frozenset({"0", "false", "no", "off"})


def _get(name: str) -> Optional[str]:
    """``TIMETABLE_<name>`` stripped, or None when unset or blank."""
    raw = os.environ.get(f"{ENV_PREFIX}_{name}", "").strip()
    return raw or None


def _number(name: str, default, cast=int):
    raw = _get(name)
    if raw is None:
        return default
    try:
        return cast(raw)
    except ValueError:
        logger.warning("Ignoring %s_%s=%r: not a number", ENV_PREFIX, name, raw)
        return default


def _flag(name: str, default: bool) -> bool:
    raw = _get(name)
    if raw is None:
        return default
    if raw.lower() in _TRUE:
        return True
    if raw.lower() in _FALSE:
        return False
    logger.warning("Ignoring %s_%s=%r: expected a yes/no value", ENV_PREFIX, name, raw)
    return default


def _csv(name: str, default: List[str]) -> List[str]:
    raw = _get(name) or ""
    parts = [part.strip() for part in raw.split(",") if part.strip()]
    return parts or list(default)


@dataclass(frozen=True)
class Settings:
    # ---- App / logging ----
    app_name: str = "Timetable Scheduler"
    log_level: str = "INFO"
    log_dir: Optional[Path] = None

    # ---- Server ----
    host: str = "0.0.0.0"
    port: int = 5000
    allowed_hosts: List[str] = field(default_factory=lambda: ["*"])
    cors_origins: List[str] = field(default_factory=lambda: ["*"])

    # ---- Persistence ----
    database_url: str = "sqlite:///./data/timetable.db"
    flush_interval_seconds: float = 5.0
    reminder_interval_seconds: float = 0.0

    # ---- Auth ----
    jwt_secret: str = field(default_factory=lambda: secrets.token_urlsafe(32))
    jwt_algorithm: str = "HS256"
    access_token_expire_days: int = 7
    bcrypt_rounds: int = 10

    # ---- Rate limiting ----
    rate_limit_enabled: bool = True

    # ---- Plan generation ----
    plan_strategy: str = "template"
    llm_api_key: Optional[str] = None
    llm_base_url: str = "https://api.openai.com/v1"
    llm_model: str = "gpt-4o-mini"
    llm_timeout_seconds: float = 30.0


def load_settings() -> Settings:
    """Build Settings from the process environment."""
    load_dotenv(override=False)

    jwt_secret = _get("JWT_SECRET")
    if jwt_secret is None:
        logger.warning("%s_JWT_SECRET is not set; using a random secret for this process", ENV_PREFIX)
        jwt_secret = secrets.token_urlsafe(32)

    log_dir = _get("LOG_DIR")
    defaults = Settings(jwt_secret=jwt_secret)

    return Settings(
        app_name=_get("APP_NAME") or defaults.app_name,
        log_level=(_get("LOG_LEVEL") or defaults.log_level).upper(),
        log_dir=Path(log_dir).expanduser() if log_dir else None,
        host=_get("HOST") or defaults.host,
        port=_number("PORT", defaults.port),
        allowed_hosts=_csv("ALLOWED_HOSTS", defaults.allowed_hosts),
        cors_origins=_csv("CORS_ORIGINS", defaults.cors_origins),
        database_url=_get("DATABASE_URL") or defaults.database_url,
        flush_interval_seconds=_number("FLUSH_INTERVAL_SECONDS", defaults.flush_interval_seconds, float),
        reminder_interval_seconds=_number("REMINDER_INTERVAL_SECONDS", defaults.reminder_interval_seconds, float),
        jwt_secret=jwt_secret,
        jwt_algorithm=_get("JWT_ALGORITHM") or defaults.jwt_algorithm,
        access_token_expire_days=_number("ACCESS_TOKEN_EXPIRE_DAYS", defaults.access_token_expire_days),
        bcrypt_rounds=_number("BCRYPT_ROUNDS", defaults.bcrypt_rounds),
        rate_limit_enabled=_flag("RATE_LIMIT_ENABLED", defaults.rate_limit_enabled),
        plan_strategy=(_get("PLAN_STRATEGY") or defaults.plan_strategy).lower(),
        llm_api_key=_get("LLM_API_KEY"),
        llm_base_url=_get("LLM_BASE_URL") or defaults.llm_base_url,
        llm_model=_get("LLM_MODEL") or defaults.llm_model,
        llm_timeout_seconds=_number("LLM_TIMEOUT_SECONDS", defaults.llm_timeout_seconds, float),
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return load_settings()
