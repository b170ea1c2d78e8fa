"""Win-rate simulation used by the market board ranking pass.

Replays a fixed candle window through the same stop/target geometry a live
guided trade would get, and reports how often an entry would have won.

This is a bounded heuristic, not a general backtest engine: one long entry
per triggering bar, one exit rule, no capital or fee model.

Usage:

    from guided_trading.backtest import GuidedWinRateSimulator
    from guided_trading.trade import TradingMode

    simulator = GuidedWinRateSimulator()
    result = simulator.run(candles, TradingMode.SWING)

    print(f"Recommended entry: {result.recommended_entry_win_rate}%")
    print(f"Market entry: {result.market_entry_win_rate}%")
"""

from dataclasses import dataclass
from decimal import ROUND_DOWN, ROUND_HALF_UP, ROUND_UP, Decimal
from typing import Callable, List, Optional, Sequence, Tuple

from .candles import Candle, atr_series, normalize_candles, sma
from .errors import InsufficientDataError
from .trade import HUNDRED, ONE, PRICE_PLACES, ZERO, TradingMode

WIN_RATE_PLACES = Decimal("0.01")


@dataclass(frozen=True)
class SimulatedTrade:
    """One simulated entry and how it resolved."""

    entry_index: int
    entry_price: Decimal
    stop_price: Decimal
    target_price: Decimal
    exit_price: Decimal
    bars_held: int
    win: bool


@dataclass(frozen=True)
class WinRateResult:
    """Win rates for one market/mode; None when no entry was counted."""

    recommended_entry_win_rate: Optional[Decimal]
    market_entry_win_rate: Optional[Decimal]
    recommended_trades: int = 0
    market_trades: int = 0


def exit_levels(entry: Decimal, atr_value: Optional[Decimal], mode: TradingMode) -> Tuple[Decimal, Decimal]:
    """Stop and target for a long entry.

    stop = entry - max(entry * sl, ATR * multiplier)
    target = min(entry + risk * rr, entry * (1 + tp cap))

    Both are rounded to 8 dp (stop down, target up).
    """
    risk = entry * mode.sl_fraction
    if atr_value is not None:
        risk = max(risk, atr_value * mode.atr_multiplier)
    stop = max(entry - risk, ZERO).quantize(PRICE_PLACES, rounding=ROUND_DOWN)
    target = min(entry + risk * mode.rr_ratio, entry * (ONE + mode.tp_cap_fraction))
    return stop, target.quantize(PRICE_PLACES, rounding=ROUND_UP)


def win_rate(trades: Sequence[SimulatedTrade]) -> Optional[Decimal]:
    """Percent of winning trades, quantized to 0.01; None for no trades."""
    if not trades:
        return None
    wins = sum(1 for t in trades if t.win)
    return (Decimal(wins) / Decimal(len(trades)) * HUNDRED).quantize(WIN_RATE_PLACES, rounding=ROUND_HALF_UP)


class GuidedWinRateSimulator:
    """Simulate guided entries over a candle window.

    Features:
    - Stop/target per entry from the trading mode and ATR at entry
    - Forward walk bounded by the mode's holding horizon
    - Two entry policies: the pullback trigger and a naive every-bar baseline
    """

    def __init__(self, warmup_bars: int = 20, atr_period: int = 14, support_lookback: int = 20):
        """Initialize simulator.

        Args:
            warmup_bars: Bars skipped before the first simulated entry
            atr_period: Wilder ATR period for the stop distance
            support_lookback: Bars used for the SMA and the support low
        """
        self.warmup_bars = warmup_bars
        self.atr_period = atr_period
        self.support_lookback = support_lookback

    def is_recommended_entry(self, candles: Sequence[Candle], index: int) -> bool:
        """Pullback trigger: close at or below SMA, above the support low, on a down bar."""
        lookback = self.support_lookback
        if index < lookback:
            return False
        candle = candles[index]
        average = sma([c.close for c in candles[index - lookback + 1:index + 1]], lookback)
        if average is None or candle.close > average:
            return False
        support = min(c.low for c in candles[index - lookback:index])
        if candle.close <= support:
            return False
        return candle.close < candles[index - 1].close

    def simulate_entry(
        self,
        candles: Sequence[Candle],
        index: int,
        mode: TradingMode,
        atr_value: Optional[Decimal],
    ) -> Optional[SimulatedTrade]:
        """Walk forward from an entry at ``candles[index].close``.

        The stop is checked before the target on every bar. Without either
        being touched, the close at the horizon decides; entries whose horizon
        runs past the data are not counted.
        """
        entry = candles[index].close
        if entry <= 0:
            return None
        stop, target = exit_levels(entry, atr_value, mode)
        last = len(candles) - 1
        end = min(index + mode.horizon_bars, last)

        for j in range(index + 1, end + 1):
            bar = candles[j]
            if bar.low <= stop:
                return SimulatedTrade(index, entry, stop, target, stop, j - index, False)
            if bar.high >= target:
                return SimulatedTrade(index, entry, stop, target, target, j - index, True)

        if index + mode.horizon_bars > last:
            return None
        exit_price = candles[end].close
        return SimulatedTrade(index, entry, stop, target, exit_price, end - index, exit_price > entry)

    def simulate(
        self,
        candles: Sequence[Candle],
        mode: TradingMode,
        trigger: Callable[[Sequence[Candle], int], bool],
    ) -> List[SimulatedTrade]:
        atrs = atr_series(candles, self.atr_period)
        trades = []
        for index in range(self.warmup_bars, len(candles) - 1):
            if not trigger(candles, index):
                continue
            trade = self.simulate_entry(candles, index, mode, atrs[index])
            if trade is not None:
                trades.append(trade)
        return trades

    def run(self, candles: Sequence[Candle], mode: TradingMode) -> WinRateResult:
        """Compute both win rates for one candle window.

        Raises:
            InsufficientDataError: Not enough candles to get past the warm-up
        """
        ordered = normalize_candles(candles)
        required = self.warmup_bars + 2
        if len(ordered) < required:
            raise InsufficientDataError(required=required, actual=len(ordered))

        recommended = self.simulate(ordered, mode, self.is_recommended_entry)
        baseline = self.simulate(ordered, mode, lambda _candles, _index: True)
        return WinRateResult(
            recommended_entry_win_rate=win_rate(recommended),
            market_entry_win_rate=win_rate(baseline),
            recommended_trades=len(recommended),
            market_trades=len(baseline),
        )
