# aggregator/config/settings.py
from __future__ import annotations

import os
import re
from dataclasses import dataclass
from typing import List, Optional


_DURATION_UNITS = {"s": 1, "m": 60, "h": 3600}


def parse_csv(value: str | None, default: List[str]) -> List[str]:
    if not value:
        return default
    items = [x.strip() for x in value.split(",")]
    return [x for x in items if x]


def parse_symbols(value: str | None, default: List[str]) -> List[str]:
    return [s.upper() for s in parse_csv(value, default)]


def parse_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "y", "on"}


def parse_int(value: str | None, default: int) -> int:
    if value is None or value.strip() == "":
        return default
    return int(value)


def parse_float(value: str | None, default: float) -> float:
    if value is None or value.strip() == "":
        return default
    return float(value)


def parse_schedule(value: str | None, default: int) -> int:
    """
    Returns a cadence in seconds.

    Supports:
      - plain seconds: "300"
      - durations: "5s", "5m", "1h"
      - step cron: "*/5 * * * *" (minutes) or "*/5 * * * * *" (seconds)
    """
    if value is None or value.strip() == "":
        return default

    v = value.strip()
    if v.isdigit():
        seconds = int(v)
    elif re.fullmatch(r"\d+[smh]", v):
        seconds = int(v[:-1]) * _DURATION_UNITS[v[-1]]
    else:
        fields = v.split()
        if len(fields) not in (5, 6) or any(f != "*" for f in fields[1:]):
            raise ValueError(f"Unsupported schedule expression: {value}")
        m = re.fullmatch(r"\*/(\d+)", fields[0])
        if not m:
            raise ValueError(f"Unsupported schedule expression: {value}")
        step = int(m.group(1))
        # six fields -> leading seconds column
        seconds = step if len(fields) == 6 else step * 60

    if seconds <= 0:
        raise ValueError(f"Schedule must be positive: {value}")
    return seconds


@dataclass(frozen=True)
class Settings:
    REDIS_URL: str
    SCHEDULER_ENABLED: bool
    AGGREGATION_SCHEDULE_SECONDS: int
    TICKER_SCHEDULE_SECONDS: int
    TRACKED_TOKENS: List[str]
    TICKER_TOKENS: List[str]
    TICKER_THRESHOLD: float
    CACHE_TTL_SECONDS: int
    TICKER_TTL_SECONDS: int
    CATALOG_TTL_SECONDS: int
    FETCH_RETRIES: int
    FETCH_BACKOFF_BASE_SECONDS: float
    FETCH_JITTER_SECONDS: float
    FETCH_TIMEOUT_SECONDS: float
    GECKOTERMINAL_API_KEY: Optional[str]
    PORT: int
    LOG_LEVEL: str

    @staticmethod
    def from_env() -> "Settings":
        return Settings(
            REDIS_URL=os.getenv("REDIS_URL", "redis://localhost:6379/0"),
            SCHEDULER_ENABLED=parse_bool(os.getenv("SCHEDULER_ENABLED"), True),
            AGGREGATION_SCHEDULE_SECONDS=parse_schedule(os.getenv("AGGREGATION_SCHEDULE"), 300),
            TICKER_SCHEDULE_SECONDS=parse_schedule(os.getenv("TICKER_SCHEDULE"), 5),
            TRACKED_TOKENS=parse_symbols(os.getenv("TRACKED_TOKENS"), ["SOL", "JUP", "BONK", "WEN"]),
            TICKER_TOKENS=parse_symbols(os.getenv("TICKER_TOKENS"), ["SOL"]),
            TICKER_THRESHOLD=parse_float(os.getenv("TICKER_THRESHOLD"), 0.0005),
            CACHE_TTL_SECONDS=parse_int(os.getenv("CACHE_TTL_SECONDS"), 30),
            TICKER_TTL_SECONDS=parse_int(os.getenv("TICKER_TTL_SECONDS"), 60),
            CATALOG_TTL_SECONDS=parse_int(os.getenv("CATALOG_TTL_SECONDS"), 86400),
            FETCH_RETRIES=parse_int(os.getenv("FETCH_RETRIES"), 3),
            FETCH_BACKOFF_BASE_SECONDS=parse_float(os.getenv("FETCH_BACKOFF_BASE_SECONDS"), 1.0),
            FETCH_JITTER_SECONDS=parse_float(os.getenv("FETCH_JITTER_SECONDS"), 0.5),
            FETCH_TIMEOUT_SECONDS=parse_float(os.getenv("FETCH_TIMEOUT_SECONDS"), 10.0),
            GECKOTERMINAL_API_KEY=os.getenv("GECKOTERMINAL_API_KEY") or None,
            PORT=parse_int(os.getenv("PORT"), 5000),
            LOG_LEVEL=os.getenv("LOG_LEVEL", "INFO").upper(),
        )


_settings: Settings | None = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings.from_env()
    return _settings
