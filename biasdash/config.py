"""
biasdash.config — Environment configuration.

All environment variables are read exactly once, by load_settings(),
into an immutable Settings object that is passed to create_app().
Nothing else in the package calls os.getenv.

Environment variables:
    SCORING_API_URL             — Upstream scorer base URL (required)
    DATABASE_URL                — SQLAlchemy URL (default: sqlite:///./biasdash.db)
    SESSION_SECRET              — Cookie signing secret (default: random per process)
    PORT                        — Listen port for the dev entry point (default: 5000)
    ENV                         — "dev" or "prod" (default: "prod")
    ALLOWED_ORIGINS             — Comma-separated extra CORS origins
    DATA_DIR                    — Fixture directory (default: bundled biasdash/data)
    FRONTEND_BUILD_DIR          — SPA build directory (default: ./build)
    BATCH_CONCURRENCY           — In-flight scorer calls per batch, 0 = unbounded (default: 5)
    KEEPALIVE_INTERVAL_SECONDS  — Upstream keep-alive ping period, 0 = off (default: 0)
    BOOTSTRAP_ADMIN_USERNAME    — Seed admin account (optional)
    BOOTSTRAP_ADMIN_PASSWORD    — Seed admin password (optional)
"""

from __future__ import annotations

import json
import logging
import os
import secrets
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from biasdash.constants import DEFAULT_BATCH_CONCURRENCY

logger = logging.getLogger("biasdash.config")

DEFAULT_DATA_DIR: Path = Path(__file__).resolve().parent / "data"
DEFAULT_DATABASE_URL: str = "sqlite:///./biasdash.db"

DEV_ORIGINS: list[str] = [
    "http://localhost:3000",
    "http://localhost:5173",
]


class ConfigError(Exception):
    """Raised when the environment cannot produce a usable Settings."""


@dataclass(frozen=True, slots=True)
class Settings:
    """Resolved service configuration."""

    scoring_api_url: str
    database_url: str = DEFAULT_DATABASE_URL
    session_secret: str = ""
    port: int = 5000
    env: str = "prod"
    allowed_origins: tuple[str, ...] = ()
    data_dir: Path = DEFAULT_DATA_DIR
    frontend_build_dir: Path = Path("build")
    batch_concurrency: int = DEFAULT_BATCH_CONCURRENCY
    keepalive_interval: float = 0.0
    bootstrap_admin_username: str | None = None
    bootstrap_admin_password: str | None = None

    @property
    def is_dev(self) -> bool:
        return self.env == "dev"

    @property
    def cors_origins(self) -> list[str]:
        origins = list(DEV_ORIGINS)
        for origin in self.allowed_origins:
            if origin not in origins:
                origins.append(origin)
        return origins


def _int_var(environ: Mapping[str, str], name: str, default: int) -> int:
    raw = environ.get(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}.")
    if value < 0:
        raise ConfigError(f"{name} must not be negative, got {value}.")
    return value


def _float_var(environ: Mapping[str, str], name: str, default: float) -> float:
    raw = environ.get(name, "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}.")
    if value < 0:
        raise ConfigError(f"{name} must not be negative, got {value}.")
    return value


def load_settings(environ: Mapping[str, str] | None = None) -> Settings:
    """Build Settings from the process environment (or a supplied mapping).

    Raises ConfigError if SCORING_API_URL is missing or a numeric
    variable is malformed.
    """
    env_map: Mapping[str, str] = os.environ if environ is None else environ

    scoring_api_url = env_map.get("SCORING_API_URL", "").strip().rstrip("/")
    if not scoring_api_url:
        raise ConfigError("SCORING_API_URL is not set.")

    session_secret = env_map.get("SESSION_SECRET", "").strip()
    if not session_secret:
        session_secret = secrets.token_hex(32)
        logger.warning(json.dumps({
            "event": "session_secret_generated",
            "reason": "SESSION_SECRET not set; sessions will not survive a restart",
        }))

    origins = tuple(
        o.strip() for o in env_map.get("ALLOWED_ORIGINS", "").split(",") if o.strip()
    )

    data_dir_raw = env_map.get("DATA_DIR", "").strip()
    build_dir_raw = env_map.get("FRONTEND_BUILD_DIR", "").strip()

    return Settings(
        scoring_api_url=scoring_api_url,
        database_url=env_map.get("DATABASE_URL", "").strip() or DEFAULT_DATABASE_URL,
        session_secret=session_secret,
        port=_int_var(env_map, "PORT", 5000),
        env=env_map.get("ENV", "prod").strip().lower() or "prod",
        allowed_origins=origins,
        data_dir=Path(data_dir_raw) if data_dir_raw else DEFAULT_DATA_DIR,
        frontend_build_dir=Path(build_dir_raw) if build_dir_raw else Path("build"),
        batch_concurrency=_int_var(env_map, "BATCH_CONCURRENCY", DEFAULT_BATCH_CONCURRENCY),
        keepalive_interval=_float_var(env_map, "KEEPALIVE_INTERVAL_SECONDS", 0.0),
        bootstrap_admin_username=env_map.get("BOOTSTRAP_ADMIN_USERNAME", "").strip() or None,
        bootstrap_admin_password=env_map.get("BOOTSTRAP_ADMIN_PASSWORD") or None,
    )
