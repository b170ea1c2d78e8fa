"""Request/response shapes for callers of the guided trading engine.

Field names on the wire are camelCase; Python attributes stay snake_case.
``model_dump(by_alias=True)`` (or :meth:`ApiModel.to_response`) renders the
client-facing body.
"""
from datetime import datetime
from decimal import Decimal
from typing import Annotated, Any, Dict, List, Optional, Sequence, Type, TypeVar

from pydantic import BaseModel, BeforeValidator, ConfigDict, ValidationError
from pydantic.alias_generators import to_camel

from .errors import InvalidArgument
from .ranking import (
    MarketBoardEntry,
    MarketSnapshot,
    MarketStage,
    Recommendation,
    SortBy,
    SortDirection,
    WinRateRanker,
)
from .trade import GuidedTrade, PnlConfidence, TradeStatus

M = TypeVar("M", bound="ApiModel")


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_response(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


def parse_request(model_cls: Type[M], payload: Any) -> M:
    """Validate a request body, translating failures into InvalidArgument.

    Raises:
        InvalidArgument: With ``field`` set to the first offending field
    """
    if isinstance(payload, model_cls):
        return payload
    try:
        return model_cls.model_validate(payload)
    except ValidationError as e:
        first = e.errors()[0]
        field = ".".join(str(p) for p in first.get("loc", ())) or None
        raise InvalidArgument(f"{field}: {first.get('msg')}", field=field) from e


def _upper_or_none(value):
    if isinstance(value, str):
        value = value.strip().upper()
        return value or None
    return value


MarketCode = Annotated[str, BeforeValidator(_upper_or_none)]
UpperName = Annotated[Optional[str], BeforeValidator(_upper_or_none)]


# --- Requests ---
class StartRequest(ApiModel):
    market: MarketCode
    amount_krw: Decimal
    mode: UpperName = None
    interval: Optional[str] = None
    stop_loss_price: Optional[Decimal] = None
    take_profit_price: Optional[Decimal] = None
    trailing_trigger_percent: Optional[Decimal] = None
    trailing_offset_percent: Optional[Decimal] = None
    dca_step_percent: Optional[Decimal] = None
    half_take_profit_ratio: Optional[Decimal] = None
    entry_source: UpperName = None


class AdoptRequest(ApiModel):
    market: MarketCode
    mode: UpperName = None
    interval: Optional[str] = None
    entry_source: UpperName = None
    notes: Optional[str] = None


class PartialExitRequest(ApiModel):
    market: MarketCode
    ratio: Optional[Decimal] = None


class MarketBoardQuery(ApiModel):
    sort_by: Annotated[SortBy, BeforeValidator(_upper_or_none)] = SortBy.TURNOVER
    sort_direction: Annotated[SortDirection, BeforeValidator(_upper_or_none)] = SortDirection.DESC
    interval: str = "minute30"
    mode: Annotated[str, BeforeValidator(_upper_or_none)] = "SWING"


class RecommendationQuery(ApiModel):
    market: MarketCode
    interval: str = "minute30"
    mode: Annotated[str, BeforeValidator(_upper_or_none)] = "SWING"


class ReconcileRequest(ApiModel):
    window_days: int = 30
    dry_run: bool = True


# --- Responses ---
class StartResponse(ApiModel):
    trade_id: int
    status: TradeStatus


class AdoptResponse(ApiModel):
    adopted: bool
    position_id: int
    quantity: Optional[Decimal] = None
    average_entry_price: Optional[Decimal] = None


class TradeSummary(ApiModel):
    trade_id: int
    market: str
    status: TradeStatus
    average_entry_price: Decimal
    entry_quantity: Decimal
    remaining_quantity: Decimal
    stop_loss_price: Decimal
    take_profit_price: Decimal
    trailing_active: bool
    trailing_peak_price: Optional[Decimal] = None
    trailing_stop_price: Optional[Decimal] = None
    half_take_profit_done: bool
    cumulative_exit_quantity: Decimal
    average_exit_price: Decimal
    realized_pnl: Decimal
    realized_pnl_percent: Decimal
    pnl_confidence: PnlConfidence
    mode: str
    entry_source: str
    exit_reason: Optional[str] = None
    last_action: Optional[str] = None
    created_at: datetime
    closed_at: Optional[datetime] = None

    @classmethod
    def from_trade(cls, trade: GuidedTrade) -> "TradeSummary":
        return cls(
            trade_id=trade.id,
            market=trade.market,
            status=trade.status,
            average_entry_price=trade.average_entry_price,
            entry_quantity=trade.entry_quantity,
            remaining_quantity=trade.remaining_quantity,
            stop_loss_price=trade.stop_loss_price,
            take_profit_price=trade.take_profit_price,
            trailing_active=trade.trailing_active,
            trailing_peak_price=trade.trailing_peak_price,
            trailing_stop_price=trade.trailing_stop_price,
            half_take_profit_done=trade.half_take_profit_done,
            cumulative_exit_quantity=trade.cumulative_exit_quantity,
            average_exit_price=trade.average_exit_price,
            realized_pnl=trade.realized_pnl,
            realized_pnl_percent=trade.realized_pnl_percent,
            pnl_confidence=trade.pnl_confidence,
            mode=trade.mode,
            entry_source=trade.entry_source,
            exit_reason=trade.exit_reason,
            last_action=trade.last_action,
            created_at=trade.created_at,
            closed_at=trade.closed_at,
        )


class MarketBoardItem(ApiModel):
    market: str
    korean_name: str
    trade_price: Decimal
    change_rate: Decimal
    turnover: Decimal
    volume: Decimal
    recommended_entry_win_rate: Optional[Decimal] = None
    market_entry_win_rate: Optional[Decimal] = None
    stage: MarketStage
    regime: Optional[str] = None
    reason: Optional[str] = None

    @classmethod
    def from_entry(cls, entry: MarketBoardEntry) -> "MarketBoardItem":
        return cls(
            market=entry.market,
            korean_name=entry.korean_name,
            trade_price=entry.trade_price,
            change_rate=entry.change_rate,
            turnover=entry.turnover,
            volume=entry.volume,
            recommended_entry_win_rate=entry.recommended_entry_win_rate,
            market_entry_win_rate=entry.market_entry_win_rate,
            stage=entry.stage,
            regime=entry.regime.value if entry.regime is not None else None,
            reason=entry.reason,
        )


class ReconcileItem(ApiModel):
    trade_id: int
    market: str
    confidence: PnlConfidence
    reason: str
    recalculated: bool
    changed: bool
    realized_pnl: Decimal
    realized_pnl_percent: Decimal


class ReconcileResponse(ApiModel):
    window_days: int
    dry_run: bool
    scanned_trades: int = 0
    updated_trades: int = 0
    unchanged_trades: int = 0
    high_confidence_trades: int = 0
    low_confidence_trades: int = 0
    failed_trades: int = 0
    sample: List[ReconcileItem] = []


class DailyStats(ApiModel):
    total_trades: int
    wins: int
    losses: int
    total_pnl_krw: Decimal
    avg_pnl_percent: Decimal
    win_rate: Decimal
    open_position_count: int
    total_invested_krw: Decimal
    trades: List[TradeSummary] = []


class RecommendationResponse(ApiModel):
    market: str
    interval: str
    mode: str
    current_price: Decimal
    recommended_entry_price: Decimal
    stop_loss_price: Decimal
    take_profit_price: Decimal
    risk_reward_ratio: Decimal
    suggested_order_type: str
    recommended_entry_win_rate: Optional[Decimal] = None
    market_entry_win_rate: Optional[Decimal] = None
    regime: str

    @classmethod
    def from_recommendation(cls, rec: Recommendation) -> "RecommendationResponse":
        return cls(
            market=rec.market,
            interval=rec.interval,
            mode=rec.mode.name,
            current_price=rec.current_price,
            recommended_entry_price=rec.recommended_entry_price,
            stop_loss_price=rec.stop_loss_price,
            take_profit_price=rec.take_profit_price,
            risk_reward_ratio=rec.risk_reward_ratio,
            suggested_order_type=rec.suggested_order_type,
            recommended_entry_win_rate=rec.recommended_entry_win_rate,
            market_entry_win_rate=rec.market_entry_win_rate,
            regime=rec.regime.value,
        )


# --- Entry points ---
def market_board(ranker: WinRateRanker, markets: Sequence[MarketSnapshot], query: Any = None) -> List[MarketBoardItem]:
    """Validate a board query, rank the markets and render the wire rows."""
    query = parse_request(MarketBoardQuery, query if query is not None else {})
    entries = ranker.rank_markets(markets, query.sort_by, query.sort_direction, query.interval, query.mode)
    return [MarketBoardItem.from_entry(e) for e in entries]


def market_recommendation(ranker: WinRateRanker, query: Any) -> RecommendationResponse:
    """Validate a recommendation query and render the ranker's entry plan.

    Raises:
        InvalidArgument: Malformed query
        InsufficientDataError: Too few candles for the market
        UpstreamUnavailable: The candle fetch failed
    """
    query = parse_request(RecommendationQuery, query)
    rec = ranker.recommend(query.market, query.interval, query.mode)
    return RecommendationResponse.from_recommendation(rec)
