import random
from decimal import Decimal
from pathlib import Path

import pytest

from guided_trading.candles import Candle
from guided_trading.exchange import InMemoryExchange
from guided_trading.lifecycle import GuidedTradingManager
from guided_trading.persistence_sqlite import SQLiteTradeStore

BAR_SECONDS = 1800


def trend_candles(count=80, start=Decimal('100'), step=Decimal('0.005'), band=Decimal('0.003')):
    """Geometric trend: every close moves ``step`` from the previous one; high/low are close +/- band."""
    candles = []
    close = start
    for i in range(count):
        candles.append(Candle(
            timestamp=i * BAR_SECONDS,
            open=close,
            high=close * (1 + band),
            low=close * (1 - band),
            close=close,
            volume=Decimal('1'),
        ))
        close = close * (1 + step)
    return candles


def candles_from_closes(closes, band=Decimal('0.002')):
    return [
        Candle(
            timestamp=i * BAR_SECONDS,
            open=Decimal(c),
            high=Decimal(c) * (1 + band),
            low=Decimal(c) * (1 - band),
            close=Decimal(c),
            volume=Decimal('1'),
        )
        for i, c in enumerate(closes)
    ]


def random_walk_candles(seed, count=120, start=Decimal('100')):
    rng = random.Random(seed)
    candles = []
    price = start
    for i in range(count):
        move = Decimal(str(round(rng.uniform(-0.02, 0.02), 5)))
        close = (price * (1 + move)).quantize(Decimal('0.0001'))
        high = (max(price, close) * Decimal('1.004')).quantize(Decimal('0.0001'))
        low = (min(price, close) * Decimal('0.996')).quantize(Decimal('0.0001'))
        candles.append(Candle(timestamp=i * BAR_SECONDS, open=price, high=high, low=low, close=close, volume=Decimal('1')))
        price = close
    return candles


@pytest.fixture
def exchange():
    ex = InMemoryExchange()
    ex.set_price("KRW-BTC", Decimal('100'))
    ex.set_balance("KRW", Decimal('10000000'))
    return ex


@pytest.fixture
def store(tmp_path: Path):
    s = SQLiteTradeStore(tmp_path / "guided.db")
    yield s
    s.close()


@pytest.fixture
def manager(store, exchange):
    return GuidedTradingManager(store, exchange, exchange)
