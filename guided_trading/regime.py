"""
Market regime classification from OHLCV history.

The detector reduces a trailing candle window to three measurements:

- ``atr_percent``: Wilder ATR as a percent of the latest close
- efficiency ratio: ``|net close move| / sum(|close deltas|)``, which is 1.0
  for a perfectly one-directional walk and close to 0 for chop
- sign-change ratio: how often consecutive close deltas flip direction

Classification priority:

1. High ATR% together with whipsaw (frequent sign reversal) is
   ``HIGH_VOLATILITY``; reversals invalidate any trend read.
2. A consistent drift (efficiency above the dead-band, slope agreeing) is
   ``BULL_TREND`` or ``BEAR_TREND`` regardless of how small the absolute move is.
3. Everything else is ``SIDEWAYS``.

Examples:
    >>> detector = RegimeDetector()
    >>> analysis = detector.detect(candles)
    >>> analysis.regime, analysis.trend_direction
    (<MarketRegime.BEAR_TREND: 'BEAR_TREND'>, -1)
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional, Sequence

from .candles import ZERO, Candle, atr, normalize_candles
from .config import RegimeConfig
from .errors import InsufficientDataError

FOUR_PLACES = Decimal("0.0001")


class MarketRegime(str, Enum):
    BULL_TREND = "BULL_TREND"
    BEAR_TREND = "BEAR_TREND"
    SIDEWAYS = "SIDEWAYS"
    HIGH_VOLATILITY = "HIGH_VOLATILITY"


@dataclass(frozen=True)
class RegimeAnalysis:
    """Classification result; derived per request, never persisted.

    Attributes:
        regime: Discrete market state
        atr_percent: ATR as percent of last close
        trend_direction: 1 up, -1 down, 0 inside the dead-band
        efficiency: Net move divided by total path length (0..1)
        sign_change_ratio: Share of consecutive close deltas that flip sign
        computed_at: UTC time of the computation
    """

    regime: MarketRegime
    atr_percent: Decimal
    trend_direction: int
    efficiency: Decimal = ZERO
    sign_change_ratio: Decimal = ZERO
    computed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


def _slope(values: Sequence[Decimal]) -> Decimal:
    """Least-squares slope of values against their index."""
    n = len(values)
    if n < 2:
        return ZERO
    x_mean = Decimal(n - 1) / 2
    y_mean = sum(values, ZERO) / n
    num = ZERO
    den = ZERO
    for i, y in enumerate(values):
        dx = Decimal(i) - x_mean
        num += dx * (y - y_mean)
        den += dx * dx
    return num / den if den else ZERO


def _sign_change_ratio(deltas: Sequence[Decimal]) -> Decimal:
    signs = [1 if d > 0 else -1 for d in deltas if d != 0]
    if len(signs) < 2:
        return ZERO
    flips = sum(1 for a, b in zip(signs, signs[1:]) if a != b)
    return Decimal(flips) / Decimal(len(signs) - 1)


class RegimeDetector:
    """Classify a candle sequence into a :class:`MarketRegime`."""

    def __init__(self, config: Optional[RegimeConfig] = None):
        self.config = config or RegimeConfig()

    def detect(self, candles: Sequence[Candle], window: Optional[int] = None) -> RegimeAnalysis:
        """Classify the trailing ``window`` candles.

        Raises:
            InsufficientDataError: Fewer than ``config.min_candles`` candles
        """
        cfg = self.config
        window = window or cfg.window
        ordered = normalize_candles(candles)
        if len(ordered) < cfg.min_candles:
            raise InsufficientDataError(required=cfg.min_candles, actual=len(ordered))

        recent = ordered[-window:]
        last_close = recent[-1].close
        atr_value = atr(recent, cfg.atr_period)
        atr_percent = (atr_value / last_close * 100) if last_close > 0 else ZERO

        close_values = [c.close for c in recent]
        deltas = [b - a for a, b in zip(close_values, close_values[1:])]
        path = sum((abs(d) for d in deltas), ZERO)
        net = close_values[-1] - close_values[0]
        efficiency = abs(net) / path if path > 0 else ZERO
        flips = _sign_change_ratio(deltas)

        trend_direction = 0
        if efficiency >= cfg.trend_efficiency_threshold:
            slope = _slope(close_values)
            if net > 0 and slope > 0:
                trend_direction = 1
            elif net < 0 and slope < 0:
                trend_direction = -1

        whipsaw = flips >= cfg.whipsaw_sign_change_ratio
        if atr_percent >= cfg.high_volatility_atr_percent and whipsaw:
            regime = MarketRegime.HIGH_VOLATILITY
        elif trend_direction == 1:
            regime = MarketRegime.BULL_TREND
        elif trend_direction == -1:
            regime = MarketRegime.BEAR_TREND
        else:
            regime = MarketRegime.SIDEWAYS

        return RegimeAnalysis(
            regime=regime,
            atr_percent=atr_percent.quantize(FOUR_PLACES),
            trend_direction=trend_direction,
            efficiency=efficiency.quantize(FOUR_PLACES),
            sign_change_ratio=flips.quantize(FOUR_PLACES),
        )
