from __future__ import annotations

import os
from dataclasses import dataclass


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_list(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = os.getenv(name)
    if not raw:
        return default
    return tuple(x.strip() for x in raw.split(",") if x.strip())


@dataclass(frozen=True)
class Settings:
    # Core
    db_path: str = os.getenv("TSR_DB_PATH", "tsr.db")
    stack_root: str = os.getenv("TSR_STACK_ROOT", ".")
    compose_binary: str = os.getenv("TSR_COMPOSE_BINARY", "docker compose")
    # Ordered project registry; a project's position is its port block index.
    projects: tuple[str, ...] = _env_list("TSR_PROJECTS", ("official", "demo", "sandbox", "training"))

    # Readiness polling
    ready_max_attempts: int = _env_int("TSR_READY_MAX_ATTEMPTS", 30)
    ready_interval_s: float = _env_float("TSR_READY_INTERVAL_S", 5.0)
    http_timeout_s: float = _env_float("TSR_HTTP_TIMEOUT_S", 5.0)

    # Reverse proxy control API (Nginx Proxy Manager)
    proxy_url: str | None = os.getenv("TSR_PROXY_URL")
    proxy_identity: str = os.getenv("TSR_PROXY_IDENTITY", "admin@example.com")
    proxy_secret: str = os.getenv("TSR_PROXY_SECRET", "changeme")
    proxy_auth_attempts: int = _env_int("TSR_PROXY_AUTH_ATTEMPTS", 5)
    proxy_auth_backoff_s: float = _env_float("TSR_PROXY_AUTH_BACKOFF_S", 2.0)
    cert_path: str | None = os.getenv("TSR_CERT_PATH")
    cert_key_path: str | None = os.getenv("TSR_CERT_KEY_PATH")

    # Safety knobs
    # Refuse to propagate a token that only the fallback heuristic found.
    strict_credentials: bool = _env_bool("TSR_STRICT_CREDENTIALS", False)
    # One MariaDB per namespace on the project's shared network, used by every unit.
    shared_db: bool = _env_bool("TSR_SHARED_DB", False)


settings = Settings()
