"""Pytest configuration for folio-enrich tests."""

import logging
import os
import sys
from pathlib import Path
from unittest.mock import patch

import pytest
import structlog

# Make the package importable without an editable install
sys.path.insert(0, str(Path(__file__).parent.parent))


@pytest.fixture(scope="session", autouse=True)
def setup_test_env(tmp_path_factory):
    """
    Set up test environment variables.
    Dummy API keys keep Settings() and startup validation happy; no test
    touches the network.
    """
    test_env = {
        "ENVIRONMENT": "test",
        "LOG_LEVEL": "ERROR",
        "DATA_CACHE_DIR": str(tmp_path_factory.mktemp("data_cache")),
        "TRADING212_API_KEY": "test-key",
        "ALPHAVANTAGE_API_KEY": "test-key",
        "TIINGO_API_KEY": "test-key",
    }
    with patch.dict(os.environ, test_env, clear=False):
        yield


@pytest.fixture(autouse=True)
def configure_structlog_for_tests():
    """Configure structlog for test environment."""
    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    logging.root.setLevel(logging.WARNING)
    yield


class FakeClock:
    """Manually advanced epoch clock."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def ledger(clock):
    from folio_enrich.ledger import Provider, ProviderQuota, UsageLedger

    return UsageLedger(
        [
            Provider(
                "alphavantage",
                "Alpha Vantage",
                ProviderQuota(per_minute=5, per_day=25),
            ),
            Provider("tiingo", "Tiingo", ProviderQuota(per_hour=50, per_day=1000)),
            Provider("trading212", "Trading212"),
        ],
        clock=clock,
        primary="alphavantage",
        secondary="tiingo",
    )


@pytest.fixture
def sample_positions():
    """Trading212 /equity/portfolio records."""
    return [
        {
            "ticker": "AAPL_US_EQ",
            "quantity": 10,
            "averagePrice": 150.0,
            "currentPrice": 190.0,
            "ppl": 400.0,
        },
        {
            "ticker": "FEVRl",
            "quantity": 100,
            "averagePrice": 12.5,
            "currentPrice": 11.0,
            "ppl": -150.0,
        },
        {
            "ticker": "TSLA_US_EQ",
            "quantity": 5,
            "averagePrice": 200.0,
            "currentPrice": 250.0,
            "ppl": 250.0,
        },
    ]
