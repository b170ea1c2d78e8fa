from decimal import Decimal
from pathlib import Path

from guided_trading.candles import Candle, atr, atr_series, load_candles_from_csv, normalize_candles, sma

from conftest import candles_from_closes


def test_normalize_sorts_and_drops_duplicates():
    a = Candle(60, Decimal('1'), Decimal('1'), Decimal('1'), Decimal('1'), Decimal('1'))
    b = Candle(0, Decimal('2'), Decimal('2'), Decimal('2'), Decimal('2'), Decimal('1'))
    a2 = Candle(60, Decimal('3'), Decimal('3'), Decimal('3'), Decimal('3'), Decimal('1'))
    assert normalize_candles([a, b, a2]) == [b, a2]


def test_atr_series_alignment():
    candles = candles_from_closes([Decimal('100')] * 20, band=Decimal('0.01'))
    series = atr_series(candles, period=14)
    assert len(series) == 20
    assert all(v is None for v in series[:14])
    # flat closes with +/-1% bars: every true range is 2
    assert series[14] == Decimal('2')
    assert series[-1] == Decimal('2')
    assert atr(candles, 14) == Decimal('2')


def test_sma():
    values = [Decimal(v) for v in (1, 2, 3, 4)]
    assert sma(values, 2) == Decimal('3.5')
    assert sma(values, 5) is None


def test_load_candles_from_csv(tmp_path: Path):
    path = tmp_path / "candles.csv"
    path.write_text(
        "timestamp,open,high,low,close,volume\n"
        "1800,101,102,100,101.5,3\n"
        "0,100,101,99,100.5,2\n"
    )
    candles = load_candles_from_csv(str(path))
    assert [c.timestamp for c in candles] == [0, 1800]
    assert candles[1].close == Decimal('101.5')
