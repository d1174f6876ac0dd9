"""Process configuration, read once from ``ZKNON_*`` environment variables."""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Optional

ENV_PREFIX = "ZKNON_"

DEFAULT_ORIGINS = [
    "https://tnemyap.app",
    "https://zknon.com",
    "http://localhost:3000",
    "http://localhost:5173",
]


def _env(name: str, default: Optional[str] = None) -> Optional[str]:
    value = os.getenv(ENV_PREFIX + name)
    if value is None or not value.strip():
        return default
    return value.strip()


def _env_float(name: str, default: float) -> float:
    raw = _env(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{ENV_PREFIX}{name} must be a number, got {raw!r}") from None


def _env_int(name: str, default: int) -> int:
    raw = _env(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{ENV_PREFIX}{name} must be an integer, got {raw!r}") from None


@dataclass
class Settings:
    rpc_endpoint: str = "https://api.mainnet-beta.solana.com"
    rpc_api_key: Optional[str] = None
    pool_secret_key: Optional[str] = field(default=None, repr=False)
    pool_pubkey: Optional[str] = None
    database_url: Optional[str] = None
    allowed_origins: list[str] = field(default_factory=lambda: list(DEFAULT_ORIGINS))
    settlement_timeout: float = 90.0
    confirm_timeout: float = 60.0
    drain_timeout: float = 30.0
    history_limit: int = 200
    log_level: str = "INFO"
    port: int = 3000
    settle_inline: bool = False

    @classmethod
    def from_env(cls) -> "Settings":
        origins = _env("ALLOWED_ORIGINS")
        return cls(
            rpc_endpoint=_env("RPC_ENDPOINT", cls.rpc_endpoint),
            rpc_api_key=_env("RPC_API_KEY"),
            pool_secret_key=_env("POOL_SECRET_KEY_BASE58"),
            pool_pubkey=_env("POOL_PUBKEY"),
            database_url=_env("DATABASE_URL"),
            allowed_origins=(
                [o.strip() for o in origins.split(",") if o.strip()] if origins else list(DEFAULT_ORIGINS)
            ),
            settlement_timeout=_env_float("SETTLEMENT_TIMEOUT", cls.settlement_timeout),
            confirm_timeout=_env_float("CONFIRM_TIMEOUT", cls.confirm_timeout),
            drain_timeout=_env_float("DRAIN_TIMEOUT", cls.drain_timeout),
            history_limit=_env_int("HISTORY_LIMIT", cls.history_limit),
            log_level=_env("LOG_LEVEL", cls.log_level).upper(),
            port=_env_int("PORT", cls.port),
            settle_inline=_env("SETTLE_INLINE", "false").lower() in ("1", "true", "yes"),
        )

    @property
    def settlement_enabled(self) -> bool:
        return self.pool_secret_key is not None


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
