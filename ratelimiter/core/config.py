from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Literal

AppEnv = Literal["dev", "test", "prod"]
LogLevel = Literal["debug", "info", "warning", "error"]
Algorithm = Literal[
    "fixed-window",
    "sliding-log",
    "sliding-window",
    "leaky-bucket",
    "token-bucket",
]

ALGORITHMS: tuple[str, ...] = (
    "fixed-window",
    "sliding-log",
    "sliding-window",
    "leaky-bucket",
    "token-bucket",
)


def _getenv(name: str, default: str) -> str:
    # Centralize env access so it’s easy to extend later (type casting, required vars)
    return os.environ.get(name, default).strip()


def _positive_int(name: str, raw: str) -> int:
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer (got {raw!r})") from None
    if value <= 0:
        raise ValueError(f"{name} must be > 0 (got {value})")
    return value


@dataclass(frozen=True)
class Settings:
    app_env: AppEnv
    log_level: LogLevel
    log_json: bool
    port: int
    redis_url: str | None
    redis_socket_timeout: float
    rate_limit_max_requests: int
    rate_limit_window_ms: int
    rate_limit_algorithm: Algorithm

    @property
    def is_dev(self) -> bool:
        return self.app_env == "dev"

    @property
    def is_test(self) -> bool:
        return self.app_env == "test"

    @property
    def is_prod(self) -> bool:
        return self.app_env == "prod"


def load_settings() -> Settings:
    app_env_raw = _getenv("APP_ENV", "dev").lower()
    log_level_raw = _getenv("LOG_LEVEL", "info").lower()
    log_json_raw = _getenv("LOG_JSON", "false").lower()
    port_raw = _getenv("PORT", "3000")
    timeout_raw = _getenv("REDIS_SOCKET_TIMEOUT", "1.0")
    algorithm_raw = _getenv("RATE_LIMIT_ALGORITHM", "sliding-window").lower()

    if app_env_raw not in ("dev", "test", "prod"):
        raise ValueError(f"APP_ENV must be dev|test|prod (got {app_env_raw!r})")

    if log_level_raw not in ("debug", "info", "warning", "error"):
        raise ValueError(
            f"LOG_LEVEL must be debug|info|warning|error (got {log_level_raw!r})"
        )

    if algorithm_raw not in ALGORITHMS:
        raise ValueError(
            f"RATE_LIMIT_ALGORITHM must be one of {'|'.join(ALGORITHMS)} "
            f"(got {algorithm_raw!r})"
        )

    try:
        port = int(port_raw)
    except ValueError:
        raise ValueError(f"PORT must be an integer (got {port_raw!r})") from None

    try:
        redis_socket_timeout = float(timeout_raw)
    except ValueError:
        raise ValueError(
            f"REDIS_SOCKET_TIMEOUT must be a number (got {timeout_raw!r})"
        ) from None

    max_requests = _positive_int(
        "RATE_LIMIT_MAX_REQUESTS", _getenv("RATE_LIMIT_MAX_REQUESTS", "5")
    )
    window_ms = _positive_int(
        "RATE_LIMIT_WINDOW_MS", _getenv("RATE_LIMIT_WINDOW_MS", "10000")
    )

    redis_url = _getenv("REDIS_URL", "") or None

    return Settings(  # type: ignore[arg-type]
        app_env=app_env_raw,
        log_level=log_level_raw,
        log_json=log_json_raw in ("1", "true", "yes"),
        port=port,
        redis_url=redis_url,
        redis_socket_timeout=redis_socket_timeout,
        rate_limit_max_requests=max_requests,
        rate_limit_window_ms=window_ms,
        rate_limit_algorithm=algorithm_raw,
    )


# Optional: module-level singleton so imports are cheap
SETTINGS = load_settings()
