"""OHLCV candles and the indicator helpers shared by the regime detector and
the win-rate simulator.

All arithmetic stays in Decimal; callers pass candles already normalised by
:func:`normalize_candles`.
"""
import csv
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, List, Optional, Sequence

ZERO = Decimal("0")


@dataclass(frozen=True)
class Candle:
    """Open-High-Low-Close-Volume candle data."""

    timestamp: int  # Unix seconds, candle open time
    open: Decimal
    high: Decimal
    low: Decimal
    close: Decimal
    volume: Decimal


def normalize_candles(candles: Iterable[Candle]) -> List[Candle]:
    """Sort candles ascending by timestamp and drop duplicate timestamps.

    Upstream sources occasionally return newest-first pages or overlapping
    pages; the later occurrence of a duplicated timestamp wins.
    """
    by_ts = {}
    for candle in candles:
        by_ts[candle.timestamp] = candle
    return [by_ts[ts] for ts in sorted(by_ts)]


def true_ranges(candles: Sequence[Candle]) -> List[Decimal]:
    """True range of every candle after the first."""
    out = []
    for prev, cur in zip(candles, candles[1:]):
        out.append(max(
            cur.high - cur.low,
            abs(cur.high - prev.close),
            abs(cur.low - prev.close),
        ))
    return out


def wilder_smooth(values: Sequence[Decimal], period: int) -> Decimal:
    """Wilder's smoothing: simple mean seed, then (prev*(n-1) + x) / n."""
    if not values:
        return ZERO
    if len(values) < period:
        return sum(values, ZERO) / len(values)
    smoothed = sum(values[:period], ZERO) / period
    for value in values[period:]:
        smoothed = (smoothed * (period - 1) + value) / period
    return smoothed


def atr(candles: Sequence[Candle], period: int = 14) -> Decimal:
    """Average True Range using Wilder smoothing."""
    return wilder_smooth(true_ranges(candles), period)


def atr_series(candles: Sequence[Candle], period: int = 14) -> List[Optional[Decimal]]:
    """Wilder ATR as of every candle, None until ``period`` true ranges exist.

    ``result[i]`` only uses candles up to and including ``i``.
    """
    out: List[Optional[Decimal]] = [None] * len(candles)
    trs = true_ranges(candles)
    smoothed = None
    for i, tr in enumerate(trs, start=1):
        if i < period:
            continue
        if smoothed is None:
            smoothed = sum(trs[:period], ZERO) / period
        else:
            smoothed = (smoothed * (period - 1) + tr) / period
        out[i] = smoothed
    return out


def sma(values: Sequence[Decimal], period: int) -> Optional[Decimal]:
    """Simple moving average of the last ``period`` values (None if too short)."""
    if period <= 0 or len(values) < period:
        return None
    return sum(values[-period:], ZERO) / period


def closes(candles: Sequence[Candle]) -> List[Decimal]:
    return [c.close for c in candles]


def load_candles_from_csv(filename: str) -> List[Candle]:
    """Load OHLCV candles from CSV file.

    CSV format should have columns:
    timestamp, open, high, low, close, volume

    Args:
        filename: Path to CSV file

    Returns:
        Normalised list of candles
    """
    candles = []
    with open(filename, newline="") as f:
        reader = csv.DictReader(f)
        for row in reader:
            candles.append(
                Candle(
                    timestamp=int(float(row["timestamp"])),
                    open=Decimal(row["open"]),
                    high=Decimal(row["high"]),
                    low=Decimal(row["low"]),
                    close=Decimal(row["close"]),
                    volume=Decimal(row["volume"]),
                )
            )
    return normalize_candles(candles)
