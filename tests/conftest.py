"""Shared fixtures: a fresh SQLite file database per test and a fake price feed."""

import os

# Must be set before backend.config is imported anywhere
os.environ.setdefault("DS_DATABASE_URL", "sqlite://")
os.environ.setdefault("DS_TELEGRAM_BOT_TOKEN", "")

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
from sqlmodel import Session

from backend.database import create_db_and_tables, make_engine
from backend.engine.position_store import PositionStore
from backend.engine.rating import RatingEngine
from backend.engine.settlement_executor import SettlementExecutor
from backend.exceptions import PriceFeedUnavailable
from backend.models.user import User
from backend.services.price_feed import PriceTick


class FakePriceFeed:
    """In-memory stand-in for BinancePriceFeed."""

    def __init__(self, prices: dict | None = None, supported: list[str] | None = None):
        self.prices = {k: Decimal(str(v)) for k, v in (prices or {}).items()}
        self.supported_symbols = supported or ["BTCUSDT", "ETHUSDT", "SOLUSDT"]
        self.unavailable: set[str] = set()
        self.calls: list[str] = []
        self.connected = False

    def is_supported(self, symbol: str) -> bool:
        return symbol.upper() in self.supported_symbols

    async def get_current_price(self, symbol: str) -> PriceTick:
        symbol = symbol.upper()
        self.calls.append(symbol)
        if symbol in self.unavailable or symbol not in self.prices:
            raise PriceFeedUnavailable(symbol)
        return PriceTick(symbol=symbol, price=self.prices[symbol], timestamp=datetime.now(timezone.utc))

    async def get_24h_stats(self, symbol: str) -> dict:
        tick = await self.get_current_price(symbol)
        return {"symbol": tick.symbol, "last_price": tick.price}


def tick(symbol: str, price, age_seconds: float = 0.0) -> PriceTick:
    return PriceTick(
        symbol=symbol,
        price=Decimal(str(price)),
        timestamp=datetime.now(timezone.utc) - timedelta(seconds=age_seconds),
    )


@pytest.fixture
def db_engine(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'deals.db'}")
    create_db_and_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def store(db_engine):
    return PositionStore(db_engine)


@pytest.fixture
def rating(db_engine):
    return RatingEngine(db_engine)


@pytest.fixture
def feed():
    return FakePriceFeed({"BTCUSDT": "50000", "ETHUSDT": "3000", "SOLUSDT": "100"})


@pytest.fixture
def notifier():
    return AsyncMock()


@pytest.fixture
def executor(store, rating, feed, notifier):
    return SettlementExecutor(store=store, rating=rating, price_feed=feed, notifier=notifier)


@pytest.fixture
def make_user(db_engine):
    counter = {"n": 0}

    def _make(balance="10000.00", username=None, is_admin=False, **fields) -> User:
        counter["n"] += 1
        user = User(
            username=username or f"trader{counter['n']}",
            balance=Decimal(balance),
            is_admin=is_admin,
            **fields,
        )
        with Session(db_engine) as session:
            session.add(user)
            session.commit()
            session.refresh(user)
            return user

    return _make


@pytest.fixture
def make_position(store):
    def _make(
        owner_id: int,
        symbol="BTCUSDT",
        direction="long",
        amount="100",
        multiplier=10,
        open_price="50000",
        take_profit=None,
        stop_loss=None,
        age_hours: float | None = None,
    ):
        opened_at = None
        if age_hours is not None:
            opened_at = datetime.now(timezone.utc) - timedelta(hours=age_hours)
        return store.create_position(
            owner_id=owner_id,
            symbol=symbol,
            direction=direction,
            amount=Decimal(amount),
            multiplier=multiplier,
            open_price=Decimal(open_price),
            take_profit=Decimal(take_profit) if take_profit is not None else None,
            stop_loss=Decimal(stop_loss) if stop_loss is not None else None,
            opened_at=opened_at,
        )

    return _make


def load_user(db_engine, user_id: int) -> User:
    with Session(db_engine) as session:
        return session.get(User, user_id)
