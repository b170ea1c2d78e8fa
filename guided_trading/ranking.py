"""Market board ranking by simulated win rate.

Only the most liquid markets are simulated: the top ``sample_market_limit``
by 24h turnover get a candle fetch and two simulation passes, everyone else
keeps null win rates. A sort on a plain ticker field skips the candle source
entirely.

Null win rates always sort after computed ones, in both directions.
"""

import concurrent.futures
import functools
from dataclasses import dataclass, replace
from decimal import ROUND_DOWN, ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple

from .backtest import GuidedWinRateSimulator, WinRateResult, exit_levels
from .cache import TtlCache
from .candles import ZERO, atr_series, normalize_candles, sma
from .config import RankingConfig
from .errors import InsufficientDataError, InvalidArgument, UpstreamUnavailable
from .exchange import MarketDataSource
from .logging_setup import logger
from .regime import MarketRegime, RegimeDetector
from .trade import PRICE_PLACES, TradingMode


class SortBy(str, Enum):
    TURNOVER = "TURNOVER"
    CHANGE_RATE = "CHANGE_RATE"
    VOLUME = "VOLUME"
    RECOMMENDED_ENTRY_WIN_RATE = "RECOMMENDED_ENTRY_WIN_RATE"
    MARKET_ENTRY_WIN_RATE = "MARKET_ENTRY_WIN_RATE"

    @property
    def is_win_rate(self) -> bool:
        return self in (SortBy.RECOMMENDED_ENTRY_WIN_RATE, SortBy.MARKET_ENTRY_WIN_RATE)

    @classmethod
    def parse(cls, value) -> "SortBy":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().upper())
        except ValueError:
            raise InvalidArgument(f"unknown sortBy {value!r}", field="sortBy")


class SortDirection(str, Enum):
    ASC = "ASC"
    DESC = "DESC"

    @classmethod
    def parse(cls, value) -> "SortDirection":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().upper())
        except ValueError:
            raise InvalidArgument(f"unknown sortDirection {value!r}", field="sortDirection")


class MarketStage(str, Enum):
    COMPUTED = "COMPUTED"
    NOT_REQUESTED = "NOT_REQUESTED"
    OUTSIDE_LIQUIDITY_RANK = "OUTSIDE_LIQUIDITY_RANK"
    UNCOMPUTED = "UNCOMPUTED"


@dataclass(frozen=True)
class MarketSnapshot:
    """Ticker view of one market, as supplied by the caller."""

    market: str
    korean_name: str
    turnover: Decimal = ZERO
    trade_price: Decimal = ZERO
    change_rate: Decimal = ZERO
    volume: Decimal = ZERO


@dataclass(frozen=True)
class MarketBoardEntry:
    """One row of the market board.

    Win rates are None whenever ``stage`` is not COMPUTED (and may be None
    for a computed market whose window never fired the trigger).
    """

    market: str
    korean_name: str
    turnover: Decimal
    trade_price: Decimal
    change_rate: Decimal
    volume: Decimal
    stage: MarketStage
    recommended_entry_win_rate: Optional[Decimal] = None
    market_entry_win_rate: Optional[Decimal] = None
    regime: Optional[MarketRegime] = None
    reason: Optional[str] = None

    @classmethod
    def from_snapshot(cls, snapshot: MarketSnapshot, stage: MarketStage, reason: Optional[str] = None):
        return cls(
            market=snapshot.market,
            korean_name=snapshot.korean_name,
            turnover=snapshot.turnover,
            trade_price=snapshot.trade_price,
            change_rate=snapshot.change_rate,
            volume=snapshot.volume,
            stage=stage,
            reason=reason,
        )


SMA_ENTRY_DISCOUNT = Decimal("0.998")
CLOSE_ENTRY_DISCOUNT = Decimal("0.997")
SUPPORT_ENTRY_PREMIUM = Decimal("1.001")
# entry within this fraction of the last close is taken at market
MARKET_ORDER_GAP = Decimal("0.0005")
RATIO_PLACES = Decimal("0.01")


@dataclass(frozen=True)
class Recommendation:
    """Entry plan for one market: pullback entry, stop/target and both win rates."""

    market: str
    interval: str
    mode: TradingMode
    current_price: Decimal
    recommended_entry_price: Decimal
    stop_loss_price: Decimal
    take_profit_price: Decimal
    risk_reward_ratio: Decimal
    suggested_order_type: str
    recommended_entry_win_rate: Optional[Decimal]
    market_entry_win_rate: Optional[Decimal]
    regime: MarketRegime


_METRIC_FIELDS = {
    SortBy.TURNOVER: "turnover",
    SortBy.CHANGE_RATE: "change_rate",
    SortBy.VOLUME: "volume",
    SortBy.RECOMMENDED_ENTRY_WIN_RATE: "recommended_entry_win_rate",
    SortBy.MARKET_ENTRY_WIN_RATE: "market_entry_win_rate",
}


def _cmp(a, b) -> int:
    return (a > b) - (a < b)


def compare_entries(a: MarketBoardEntry, b: MarketBoardEntry, sort_by: SortBy, direction: SortDirection) -> int:
    """Board ordering.

    1. Null metric values go last, whatever the direction.
    2. Non-null values follow ``direction``.
    3. Win-rate ties fall back to turnover (desc), then market code (asc);
       ticker-field ties fall back to market code (asc).
    """
    field_name = _METRIC_FIELDS[sort_by]
    va = getattr(a, field_name)
    vb = getattr(b, field_name)

    if va is None and vb is not None:
        return 1
    if vb is None and va is not None:
        return -1
    if va is not None and vb is not None:
        result = _cmp(va, vb)
        if result:
            return result if direction == SortDirection.ASC else -result

    if sort_by.is_win_rate:
        result = -_cmp(a.turnover, b.turnover)
        if result:
            return result
    return _cmp(a.market, b.market)


class WinRateRanker:
    """Build the sorted market board.

    APIs:
    - `rank_markets(markets, sort_by, sort_direction, interval, mode)`
    - `select_candidates(markets)`: the liquidity-ranked sample
    - `recommend(market, interval, mode)`: entry plan for one market

    Candle fetches run on a bounded thread pool; a failure, timeout or short
    window for one market marks that market UNCOMPUTED and never aborts the
    pass.
    """

    def __init__(
        self,
        candle_source: MarketDataSource,
        config: Optional[RankingConfig] = None,
        cache: Optional[TtlCache] = None,
        simulator: Optional[GuidedWinRateSimulator] = None,
        regime_detector: Optional[RegimeDetector] = None,
    ):
        self.candle_source = candle_source
        self.config = config or RankingConfig()
        self.cache = cache
        self.simulator = simulator or GuidedWinRateSimulator(warmup_bars=self.config.warmup_bars)
        self.regime_detector = regime_detector or RegimeDetector()

    def select_candidates(self, markets: Sequence[MarketSnapshot]) -> List[MarketSnapshot]:
        """Top markets by turnover (ties by market code), capped at the sample limit."""
        ranked = sorted(markets, key=lambda m: (-m.turnover, m.market))
        return ranked[: self.config.sample_market_limit]

    def rank_markets(
        self,
        markets: Sequence[MarketSnapshot],
        sort_by=SortBy.TURNOVER,
        sort_direction=SortDirection.DESC,
        interval: str = "minute30",
        mode=TradingMode.SWING,
    ) -> List[MarketBoardEntry]:
        sort_by = SortBy.parse(sort_by)
        sort_direction = SortDirection.parse(sort_direction)
        if not isinstance(mode, TradingMode):
            mode = TradingMode.from_string(mode)

        if sort_by.is_win_rate:
            entries = self._with_win_rates(markets, interval, mode)
        else:
            entries = [MarketBoardEntry.from_snapshot(m, MarketStage.NOT_REQUESTED) for m in markets]

        key = functools.cmp_to_key(lambda a, b: compare_entries(a, b, sort_by, sort_direction))
        return sorted(entries, key=key)

    def _with_win_rates(
        self, markets: Sequence[MarketSnapshot], interval: str, mode: TradingMode
    ) -> List[MarketBoardEntry]:
        candidates = self.select_candidates(markets)
        candidate_codes = {m.market for m in candidates}
        computed = self._compute_all(candidates, interval, mode)

        entries = []
        for snapshot in markets:
            if snapshot.market in candidate_codes:
                entries.append(computed[snapshot.market])
            else:
                entries.append(
                    MarketBoardEntry.from_snapshot(
                        snapshot,
                        MarketStage.OUTSIDE_LIQUIDITY_RANK,
                        reason=f"outside top {self.config.sample_market_limit} by turnover",
                    )
                )
        return entries

    def _compute_all(
        self, candidates: Sequence[MarketSnapshot], interval: str, mode: TradingMode
    ) -> Dict[str, MarketBoardEntry]:
        results: Dict[str, MarketBoardEntry] = {}
        if not candidates:
            return results

        timeout = self.config.per_market_timeout_seconds
        executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=max(1, self.config.concurrency), thread_name_prefix="win-rate"
        )
        try:
            futures = {
                snapshot.market: (snapshot, executor.submit(self._compute_market, snapshot, interval, mode))
                for snapshot in candidates
            }
            for market, (snapshot, future) in futures.items():
                try:
                    results[market] = future.result(timeout=timeout)
                except concurrent.futures.TimeoutError:
                    future.cancel()
                    logger.warning(f"Win-rate timed out | market={market} timeout={timeout}s")
                    results[market] = MarketBoardEntry.from_snapshot(
                        snapshot, MarketStage.UNCOMPUTED, reason=f"timed out after {timeout}s"
                    )
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        computed = sum(1 for e in results.values() if e.stage == MarketStage.COMPUTED)
        logger.info(
            f"Win-rate pass done | interval={interval} mode={mode.name} "
            f"candidates={len(candidates)} computed={computed}"
        )
        return results

    def _compute_market(self, snapshot: MarketSnapshot, interval: str, mode: TradingMode) -> MarketBoardEntry:
        """Fetch, classify and simulate one market; never raises."""
        market = snapshot.market
        try:
            rates, regime = self._load_rates(market, interval, mode)
        except InsufficientDataError as e:
            logger.warning(f"Win-rate skipped | market={market} reason={e.message}")
            return MarketBoardEntry.from_snapshot(snapshot, MarketStage.UNCOMPUTED, reason=e.message)
        except Exception as e:
            logger.warning(f"Win-rate failed | market={market} error={e!r}")
            return MarketBoardEntry.from_snapshot(snapshot, MarketStage.UNCOMPUTED, reason=f"candle fetch failed: {e}")

        if rates is None:
            logger.warning(f"Win-rate skipped | market={market} reason=no candles")
            return MarketBoardEntry.from_snapshot(snapshot, MarketStage.UNCOMPUTED, reason="no candles")

        entry = MarketBoardEntry.from_snapshot(snapshot, MarketStage.COMPUTED)
        return replace(
            entry,
            recommended_entry_win_rate=rates.recommended_entry_win_rate,
            market_entry_win_rate=rates.market_entry_win_rate,
            regime=regime,
        )

    def _load_rates(
        self, market: str, interval: str, mode: TradingMode
    ) -> Tuple[Optional[WinRateResult], Optional[MarketRegime]]:
        key = (market, interval, mode.name)

        def load():
            candles = self.candle_source.get_candles(market, interval, self.config.candle_count)
            if not candles:
                return None
            rates = self.simulator.run(candles, mode)
            regime = self.regime_detector.detect(candles).regime
            return rates, regime

        if self.cache is None:
            loaded = load()
        else:
            loaded = self.cache.get_or_load(key, load)
        if loaded is None:
            return None, None
        return loaded

    def recommend(self, market: str, interval: str = "minute30", mode=TradingMode.SWING) -> Recommendation:
        """Single-market counterpart of the board.

        The entry sits just under the SMA when price trades above it, just
        under the last close otherwise, and never below the support low.
        Stop and target use the simulation's exit geometry. The order type
        is MARKET when the entry is within 0.05% of the last close.

        Raises:
            InsufficientDataError: Too few candles for the simulation warm-up
            UpstreamUnavailable: The candle fetch failed
        """
        if not isinstance(mode, TradingMode):
            mode = TradingMode.from_string(mode)
        try:
            candles = self.candle_source.get_candles(market, interval, self.config.candle_count)
        except Exception as e:
            raise UpstreamUnavailable(f"candle fetch failed: {e}", market=market) from e

        ordered = normalize_candles(candles or [])
        rates = self.simulator.run(ordered, mode)
        regime = self.regime_detector.detect(ordered).regime

        current = ordered[-1].close
        if current <= 0:
            raise UpstreamUnavailable(f"non-positive last close {current}", market=market)
        lookback = self.simulator.support_lookback
        average = sma([c.close for c in ordered], lookback)
        support = min(c.low for c in ordered[-lookback:])
        candidate = average * SMA_ENTRY_DISCOUNT if current > average else current * CLOSE_ENTRY_DISCOUNT
        entry = max(candidate, support * SUPPORT_ENTRY_PREMIUM).quantize(PRICE_PLACES, rounding=ROUND_DOWN)

        stop, target = exit_levels(entry, atr_series(ordered, self.simulator.atr_period)[-1], mode)
        risk = entry - stop
        risk_reward = ((target - entry) / risk).quantize(RATIO_PLACES, rounding=ROUND_HALF_UP) if risk > 0 else ZERO
        order_type = "MARKET" if abs(current - entry) / current < MARKET_ORDER_GAP else "LIMIT"

        logger.info(
            f"Recommendation | market={market} interval={interval} mode={mode.name} entry={entry} "
            f"stop={stop} target={target} order={order_type} regime={regime.value}"
        )
        return Recommendation(
            market=market,
            interval=interval,
            mode=mode,
            current_price=current,
            recommended_entry_price=entry,
            stop_loss_price=stop,
            take_profit_price=target,
            risk_reward_ratio=risk_reward,
            suggested_order_type=order_type,
            recommended_entry_win_rate=rates.recommended_entry_win_rate,
            market_entry_win_rate=rates.market_entry_win_rate,
            regime=regime,
        )
