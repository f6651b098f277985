"""Engine configuration objects and helpers."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
import logging
import os
from pathlib import Path
from typing import Any

import yaml


@dataclass(slots=True)
class RetryPolicy:
    max_attempts: int = 4
    base_delay_seconds: float = 0.3
    max_delay_seconds: float = 8.0
    backoff_multiplier: float = 2.0
    jitter_seconds: float = 0.1
    retriable_status_codes: tuple[int, ...] = (408, 425, 429, 500, 502, 503, 504)

    def delay_for(self, attempt: int) -> float:
        return min(
            self.base_delay_seconds * (self.backoff_multiplier ** (attempt - 1)),
            self.max_delay_seconds,
        )


@dataclass(slots=True)
class FetchConfig:
    timeout_seconds: float = 8.0
    retry: RetryPolicy = field(default_factory=RetryPolicy)


@dataclass(slots=True)
class PersistenceConfig:
    backend: str = "memory"  # memory / sqlite
    sqlite_path: str = "outputs/journal.db"
    max_conflict_retries: int = 2


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"
    alert_log_path: str | None = None


@dataclass(slots=True)
class EngineConfig:
    timezone: str = "Asia/Kolkata"
    trade_key_prefix: str = "TRADE_"
    trade_key_width: int = 3
    carry_open_positions: bool = True
    price_decimals: int = 2
    fetch: FetchConfig = field(default_factory=FetchConfig)
    persistence: PersistenceConfig = field(default_factory=PersistenceConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    status_overrides: dict[str, dict[str, str]] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        out = asdict(self)
        out["fetch"]["retry"]["retriable_status_codes"] = list(self.fetch.retry.retriable_status_codes)
        return out

    @staticmethod
    def from_dict(payload: dict[str, Any]) -> "EngineConfig":
        fetch_raw = dict(payload.get("fetch", {}))
        retry_raw = dict(fetch_raw.pop("retry", {}))
        if "retriable_status_codes" in retry_raw:
            retry_raw["retriable_status_codes"] = tuple(int(c) for c in retry_raw["retriable_status_codes"])
        return EngineConfig(
            timezone=payload.get("timezone", "Asia/Kolkata"),
            trade_key_prefix=payload.get("trade_key_prefix", "TRADE_"),
            trade_key_width=int(payload.get("trade_key_width", 3)),
            carry_open_positions=bool(payload.get("carry_open_positions", True)),
            price_decimals=int(payload.get("price_decimals", 2)),
            fetch=FetchConfig(retry=RetryPolicy(**retry_raw), **fetch_raw),
            persistence=PersistenceConfig(**payload.get("persistence", {})),
            logging=LoggingConfig(**payload.get("logging", {})),
            status_overrides={
                str(source): {str(k): str(v) for k, v in table.items()}
                for source, table in (payload.get("status_overrides") or {}).items()
            },
        )


def load_config(path: str | Path) -> EngineConfig:
    """Load engine configuration from YAML."""
    file_path = Path(path)
    with file_path.open("r", encoding="utf-8") as handle:
        payload = yaml.safe_load(handle) or {}
    return EngineConfig.from_dict(payload)


def save_config(config: EngineConfig, path: str | Path) -> None:
    """Persist engine configuration to YAML."""
    file_path = Path(path)
    file_path.parent.mkdir(parents=True, exist_ok=True)
    with file_path.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(config.to_dict(), handle, sort_keys=False)


def configure_logging(config: LoggingConfig | None = None) -> None:
    """Configure root logging; LOG_LEVEL env var overrides the config level."""
    cfg = config or LoggingConfig()
    level_name = os.getenv("LOG_LEVEL", cfg.level).upper()
    level = getattr(logging, level_name, logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logging.getLogger("urllib3").setLevel(logging.WARNING)
