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


@dataclass(frozen=True)
class Settings:
    # Core
    db_path: str = os.getenv("CDA_DB_PATH", "cda.db")
    poll_interval_s: int = _env_int("CDA_POLL_INTERVAL_S", 5)
    max_queue: int = _env_int("CDA_MAX_QUEUE", 50)
    max_parallel: int = _env_int("CDA_MAX_PARALLEL", 4)

    # Container runtime
    docker_network: str = os.getenv("CDA_DOCKER_NETWORK", "cda")
    restart_policy: str = os.getenv("CDA_RESTART_POLICY", "unless-stopped")
    runtime_timeout_s: int = _env_int("CDA_RUNTIME_TIMEOUT_S", 60)
    stop_timeout_s: int = _env_int("CDA_STOP_TIMEOUT_S", 10)
    default_container_port: int = _env_int("CDA_DEFAULT_CONTAINER_PORT", 8080)
    pull_retries: int = _env_int("CDA_PULL_RETRIES", 3)
    pull_backoff_s: float = _env_float("CDA_PULL_BACKOFF_S", 2.0)

    # Reverse proxy
    proxy_dir: str = os.getenv("CDA_PROXY_DIR", "proxy")
    proxy_live_file: str | None = os.getenv("CDA_PROXY_LIVE_FILE")
    proxy_reload_cmd: str = os.getenv("CDA_PROXY_RELOAD_CMD", "")
    proxy_test_cmd: str = os.getenv("CDA_PROXY_TEST_CMD", "")
    proxy_listen: int = _env_int("CDA_PROXY_LISTEN", 80)
    proxy_retain: int = _env_int("CDA_PROXY_RETAIN", 5)
    proxy_cmd_timeout_s: int = _env_int("CDA_PROXY_CMD_TIMEOUT_S", 15)

    # Health probing
    health_timeout_s: float = _env_float("CDA_HEALTH_TIMEOUT_S", 60.0)
    health_base_s: float = _env_float("CDA_HEALTH_BASE_S", 0.5)
    health_factor: float = _env_float("CDA_HEALTH_FACTOR", 2.0)
    health_cap_s: float = _env_float("CDA_HEALTH_CAP_S", 8.0)
    health_request_timeout_s: float = _env_float("CDA_HEALTH_REQUEST_TIMEOUT_S", 2.0)

    # API (basic auth on mutating routes when both are set)
    api_user: str | None = os.getenv("CDA_API_USER")
    api_password: str | None = os.getenv("CDA_API_PASSWORD")

    # Email alerting (optional)
    enable_email: bool = _env_bool("CDA_ENABLE_EMAIL", False)
    smtp_host: str = os.getenv("CDA_SMTP_HOST", "smtp.gmail.com")
    smtp_port: int = _env_int("CDA_SMTP_PORT", 587)
    smtp_user: str | None = os.getenv("CDA_SMTP_USER")
    smtp_password: str | None = os.getenv("CDA_SMTP_PASSWORD")
    email_from: str | None = os.getenv("CDA_EMAIL_FROM")
    email_to: str | None = os.getenv("CDA_EMAIL_TO")


settings = Settings()
