"""
Pytest configuration and shared fixtures.
"""

from datetime import datetime, timedelta, timezone

import pytest

from athwatch.database.connection import Database
from athwatch.database.store import KeyValueStore


class FakeClock:
    """Controllable time source, usable as a float clock or a datetime clock."""

    def __init__(self, start: datetime = datetime(2024, 3, 14, 12, 0, tzinfo=timezone.utc)):
        self.current = start

    def now(self) -> datetime:
        return self.current

    def time(self) -> float:
        return self.current.timestamp()

    def advance(self, seconds: float = 0, minutes: float = 0) -> None:
        self.current += timedelta(seconds=seconds, minutes=minutes)

    def sleep(self, seconds: float) -> None:
        self.advance(seconds=seconds)


@pytest.fixture
def clock():
    """Fake clock starting at a fixed UTC instant."""
    return FakeClock()


@pytest.fixture
def db():
    """Initialized in-memory database."""
    database = Database(":memory:")
    database.initialize()
    yield database
    database.close()


@pytest.fixture
def store(db, clock):
    """Key-value store driven by the fake clock."""
    return KeyValueStore(db, clock=clock.time)


def market_entry(
    coin_id: str = "bitcoin",
    symbol: str = "btc",
    name: str = "Bitcoin",
    current_price: float = 50_000.0,
    ath: float = 69_000.0,
    ath_date: str = "2021-11-10T14:24:11.849Z",
    rank: int = 1,
) -> dict:
    """One /coins/markets item as CoinGecko returns it."""
    return {
        "id": coin_id,
        "symbol": symbol,
        "name": name,
        "image": f"https://assets.coingecko.com/coins/images/1/large/{coin_id}.png",
        "current_price": current_price,
        "market_cap": 980_000_000_000,
        "market_cap_rank": rank,
        "total_volume": 25_000_000_000,
        "high_24h": current_price * 1.01,
        "low_24h": current_price * 0.98,
        "price_change_percentage_24h": 1.25,
        "ath": ath,
        "ath_change_percentage": (current_price - ath) / ath * 100,
        "ath_date": ath_date,
        "last_updated": "2024-03-14T11:59:30.000Z",
    }


@pytest.fixture
def make_entry():
    """Factory for /coins/markets items."""
    return market_entry


@pytest.fixture
def sample_markets_payload():
    """Sample CoinGecko /coins/markets response."""
    return [
        market_entry(),
        market_entry(
            coin_id="ethereum", symbol="eth", name="Ethereum",
            current_price=3_500.0, ath=4_878.26,
            ath_date="2021-11-10T14:24:19.604Z", rank=2,
        ),
    ]


@pytest.fixture
def sample_smtp_config():
    """Sample SMTP configuration for testing."""
    return {
        "smtp_host": "smtp.gmail.com",
        "smtp_port": 587,
        "smtp_user": "test@gmail.com",
        "smtp_password": "test-app-password",
        "from_address": "alerts@athwatch.app",
    }
