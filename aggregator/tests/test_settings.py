from __future__ import annotations

import pytest

from aggregator.config.settings import Settings, parse_schedule, parse_symbols


@pytest.mark.parametrize(
    "value,expected",
    [
        (None, 42),
        ("", 42),
        ("300", 300),
        ("5s", 5),
        ("5m", 300),
        ("1h", 3600),
        ("*/5 * * * *", 300),
        ("*/5 * * * * *", 5),
    ],
)
def test_parse_schedule(value, expected):
    assert parse_schedule(value, 42) == expected


@pytest.mark.parametrize("value", ["0", "0 9 * * *", "*/5 * * * 1-5", "every minute", "*/0 * * * *"])
def test_parse_schedule_rejects_unsupported(value):
    with pytest.raises(ValueError):
        parse_schedule(value, 42)


def test_parse_symbols_upper_cases():
    assert parse_symbols(" sol, jup ,,bonk", []) == ["SOL", "JUP", "BONK"]
    assert parse_symbols(None, ["SOL"]) == ["SOL"]


def test_from_env_defaults(monkeypatch):
    for key in ("AGGREGATION_SCHEDULE", "TICKER_SCHEDULE", "TRACKED_TOKENS", "TICKER_TOKENS", "TICKER_THRESHOLD"):
        monkeypatch.delenv(key, raising=False)

    s = Settings.from_env()

    assert s.AGGREGATION_SCHEDULE_SECONDS == 300
    assert s.TICKER_SCHEDULE_SECONDS == 5
    assert s.TRACKED_TOKENS == ["SOL", "JUP", "BONK", "WEN"]
    assert s.TICKER_TOKENS == ["SOL"]
    assert s.TICKER_THRESHOLD == 0.0005


def test_from_env_overrides(monkeypatch):
    monkeypatch.setenv("AGGREGATION_SCHEDULE", "*/10 * * * *")
    monkeypatch.setenv("TICKER_TOKENS", "sol,jup")
    monkeypatch.setenv("SCHEDULER_ENABLED", "false")
    monkeypatch.setenv("GECKOTERMINAL_API_KEY", "")

    s = Settings.from_env()

    assert s.AGGREGATION_SCHEDULE_SECONDS == 600
    assert s.TICKER_TOKENS == ["SOL", "JUP"]
    assert s.SCHEDULER_ENABLED is False
    assert s.GECKOTERMINAL_API_KEY is None
