from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from .constants import DEFAULT_BRIDGE_URL, DEFAULT_BROWSER, DEFAULT_REPLY_MODEL, OPENROUTER_URL

_TRUTHY = {"1", "true", "yes", "y", "on"}


def get_str_env(name: str, default: str = "") -> str:
    value = os.getenv(name)
    return default if value is None else value.strip()


def get_bool_env(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return value.strip().lower() in _TRUTHY


def get_float_env(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value)
    except ValueError:
        return default


def get_int_env(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError:
        return default


@dataclass(slots=True)
class ReconnectPolicy:
    base_delay_s: float = 5.0
    max_delay_s: float = 30.0
    max_attempts: int = 10
    # Pause between a forced reset and the fresh start() of a manual reconnect.
    settle_delay_s: float = 1.0

    def delay_for(self, attempt: int) -> float:
        """Delay before retry number `attempt` (1-based): `min(base * attempt, cap)`."""

        return min(self.base_delay_s * max(attempt, 1), self.max_delay_s)


@dataclass(slots=True)
class BridgeConfig:
    url: str = DEFAULT_BRIDGE_URL
    connect_timeout_s: float = 20.0
    ack_timeout_s: float = 15.0
    browser: tuple[str, str, str] = DEFAULT_BROWSER
    headers: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class ReplyConfig:
    api_key: str = ""
    model: str = DEFAULT_REPLY_MODEL
    url: str = OPENROUTER_URL
    timeout_s: float = 30.0
    # Fixed pause before an auto-reply goes out.
    delay_s: float = 1.0


@dataclass(slots=True)
class DashboardConfig:
    auth_dir: Path = Path("./auth_info")
    # None selects the in-memory store.
    db_path: Path | None = Path("./wadash.db")
    host: str = "127.0.0.1"
    port: int = 5000
    allowed_origins: list[str] = field(default_factory=lambda: ["*"])
    log_level: str = "INFO"
    autostart: bool = True

    bridge: BridgeConfig = field(default_factory=BridgeConfig)
    reconnect: ReconnectPolicy = field(default_factory=ReconnectPolicy)
    reply: ReplyConfig = field(default_factory=ReplyConfig)

    @classmethod
    def from_env(cls) -> DashboardConfig:
        db = get_str_env("WADASH_DB_PATH", "./wadash.db")
        origins = get_str_env("WADASH_ALLOWED_ORIGINS", "*")
        return cls(
            auth_dir=Path(get_str_env("WADASH_AUTH_DIR", "./auth_info")).expanduser(),
            db_path=Path(db).expanduser() if db else None,
            host=get_str_env("WADASH_HOST", "127.0.0.1"),
            port=get_int_env("WADASH_PORT", 5000),
            allowed_origins=[o.strip() for o in origins.split(",") if o.strip()],
            log_level=get_str_env("WADASH_LOG_LEVEL", "INFO").upper(),
            autostart=get_bool_env("WADASH_AUTOSTART", True),
            bridge=BridgeConfig(
                url=get_str_env("WADASH_BRIDGE_URL", DEFAULT_BRIDGE_URL),
                connect_timeout_s=get_float_env("WADASH_BRIDGE_CONNECT_TIMEOUT", 20.0),
                ack_timeout_s=get_float_env("WADASH_BRIDGE_ACK_TIMEOUT", 15.0),
            ),
            reconnect=ReconnectPolicy(
                base_delay_s=get_float_env("WADASH_RECONNECT_BASE_DELAY", 5.0),
                max_delay_s=get_float_env("WADASH_RECONNECT_MAX_DELAY", 30.0),
                max_attempts=get_int_env("WADASH_RECONNECT_MAX_ATTEMPTS", 10),
            ),
            reply=ReplyConfig(
                api_key=get_str_env("OPENROUTER_API_KEY"),
                model=get_str_env("WADASH_REPLY_MODEL", DEFAULT_REPLY_MODEL),
                url=get_str_env("WADASH_REPLY_URL", OPENROUTER_URL),
                timeout_s=get_float_env("WADASH_REPLY_TIMEOUT", 30.0),
            ),
        )
