from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

ENV_PREFIX = "PI_REMOTE_"

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


def _env(name: str, default: str) -> str:
    return os.environ.get(ENV_PREFIX + name, default)


def _env_int(name: str, default: int) -> int:
    raw = _env(name, str(default))
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{ENV_PREFIX}{name} must be an integer, got {raw!r}") from None


def _env_float(name: str, default: float) -> float:
    raw = _env(name, str(default))
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{ENV_PREFIX}{name} must be a number, got {raw!r}") from None


def _env_bool(name: str, default: bool) -> bool:
    raw = _env(name, "true" if default else "false").strip().lower()
    if raw in _TRUE:
        return True
    if raw in _FALSE:
        return False
    raise ValueError(f"{ENV_PREFIX}{name} must be a boolean, got {raw!r}")


@dataclass
class ClientConfig:
    host: str = "127.0.0.1"
    port: int = 9999
    request_timeout: float = 30.0
    idle_timeout: float = 60.0
    # Seconds between renders while streaming
    render_throttle: float = 0.05
    liveness_interval: float = 2.0
    liveness_delay: float = 1.0
    fetch_history: bool = True
    web_port: int = 7778
    log_file: str = "/tmp/pi-remote.log"
    wire_log_dir: Path | None = None

    @classmethod
    def from_env(cls, env_file: str | Path | None = None) -> ClientConfig:
        load_dotenv(env_file)
        wire_log_dir = _env("WIRE_LOG_DIR", "")
        return cls(
            host=_env("HOST", "127.0.0.1"),
            port=_env_int("PORT", 9999),
            request_timeout=_env_float("REQUEST_TIMEOUT", 30.0),
            idle_timeout=_env_float("IDLE_TIMEOUT", 60.0),
            render_throttle=_env_int("THROTTLE_MS", 50) / 1000,
            liveness_interval=_env_float("LIVENESS_INTERVAL", 2.0),
            liveness_delay=_env_float("LIVENESS_DELAY", 1.0),
            fetch_history=_env_bool("FETCH_HISTORY", True),
            web_port=_env_int("WEB_PORT", 7778),
            log_file=_env("LOG_FILE", "/tmp/pi-remote.log"),
            wire_log_dir=Path(wire_log_dir) if wire_log_dir else None,
        )
