from datetime import datetime, timezone
from decimal import Decimal

import pytest

from guided_trading.api import (
    MarketBoardItem,
    MarketBoardQuery,
    PartialExitRequest,
    ReconcileRequest,
    StartRequest,
    TradeSummary,
    market_board,
    market_recommendation,
    parse_request,
)
from guided_trading.errors import InvalidArgument, PositionAlreadyOpen
from guided_trading.exchange import InMemoryExchange
from guided_trading.ranking import MarketBoardEntry, MarketSnapshot, MarketStage, SortBy, SortDirection, WinRateRanker
from guided_trading.regime import MarketRegime
from guided_trading.trade import GuidedTrade

from conftest import candles_from_closes, random_walk_candles


class TestRequests:
    """Request parsing and normalization."""

    def test_camel_case_body(self):
        req = parse_request(StartRequest, {
            "market": " krw-btc ",
            "amountKrw": "10000",
            "mode": "position",
            "trailingOffsetPercent": 1.5,
        })
        assert req.market == "KRW-BTC"
        assert req.amount_krw == Decimal('10000')
        assert req.mode == "POSITION"
        assert req.trailing_offset_percent == Decimal('1.5')
        assert req.entry_source is None

    def test_snake_case_accepted(self):
        req = parse_request(StartRequest, {"market": "KRW-BTC", "amount_krw": 5000})
        assert req.amount_krw == Decimal('5000')

    def test_validation_error_names_field(self):
        with pytest.raises(InvalidArgument) as exc:
            parse_request(StartRequest, {"market": "KRW-BTC", "amountKrw": "lots"})
        assert "amount" in exc.value.field
        assert exc.value.to_dict()["error"] == "INVALID_ARGUMENT"

    def test_board_query_normalizes_enums(self):
        query = parse_request(MarketBoardQuery, {"sortBy": "market_entry_win_rate", "sortDirection": "asc"})
        assert query.sort_by == SortBy.MARKET_ENTRY_WIN_RATE
        assert query.sort_direction == SortDirection.ASC
        assert query.mode == "SWING"

    def test_board_query_rejects_unknown_sort(self):
        with pytest.raises(InvalidArgument) as exc:
            parse_request(MarketBoardQuery, {"sortBy": "price"})
        assert exc.value.field == "sortBy"

    def test_reconcile_defaults(self):
        req = parse_request(ReconcileRequest, {})
        assert req.window_days == 30
        assert req.dry_run is True


class TestResponses:
    """Wire rendering of responses."""

    def test_trade_summary_uses_camel_case(self):
        trade = GuidedTrade(
            id=7,
            market="KRW-BTC",
            average_entry_price=Decimal('100'),
            entry_quantity=Decimal('2'),
            remaining_quantity=Decimal('2'),
            stop_loss_price=Decimal('99.3'),
            take_profit_price=Decimal('101.05'),
            created_at=datetime(2026, 1, 1, tzinfo=timezone.utc),
        )
        body = TradeSummary.from_trade(trade).to_response()
        assert body["tradeId"] == 7
        assert body["status"] == "OPEN"
        assert body["stopLossPrice"] == "99.3"
        assert body["trailingActive"] is False
        assert body["pnlConfidence"] == "LEGACY"
        assert "stop_loss_price" not in body

    def test_board_item_from_entry(self):
        entry = MarketBoardEntry(
            market="KRW-ETH",
            korean_name="Ethereum",
            turnover=Decimal('1000'),
            trade_price=Decimal('10'),
            change_rate=Decimal('0.01'),
            volume=Decimal('100'),
            stage=MarketStage.COMPUTED,
            recommended_entry_win_rate=Decimal('55.50'),
            regime=MarketRegime.SIDEWAYS,
        )
        body = MarketBoardItem.from_entry(entry).to_response()
        assert body["koreanName"] == "Ethereum"
        assert body["recommendedEntryWinRate"] == "55.50"
        assert body["marketEntryWinRate"] is None
        assert body["stage"] == "COMPUTED"
        assert body["regime"] == "SIDEWAYS"


def test_error_bodies():
    body = PositionAlreadyOpen("KRW-BTC", 3).to_dict()
    assert body == {
        "error": "POSITION_ALREADY_OPEN",
        "message": "open position already exists for KRW-BTC (trade #3)",
        "field": "market",
        "currentState": "OPEN",
        "tradeId": 3,
    }


def test_partial_exit_request_rejects_non_numeric_ratio():
    with pytest.raises(InvalidArgument) as exc:
        parse_request(PartialExitRequest, {"market": "KRW-BTC", "ratio": "half"})
    assert exc.value.field == "ratio"


class TestEntryPoints:
    """Board and recommendation rendering through the request models."""

    @pytest.fixture
    def ranker(self):
        exchange = InMemoryExchange()
        for i in range(3):
            exchange.set_candles(f"KRW-C{i}", random_walk_candles(seed=i))
        exchange.set_candles("KRW-FLAT", candles_from_closes(['100'] * 60, band=Decimal('0.0008')))
        return WinRateRanker(exchange)

    def test_market_board_renders_items(self, ranker):
        markets = [
            MarketSnapshot(market=f"KRW-C{i}", korean_name=f"coin {i}", turnover=Decimal(100 - i), volume=Decimal(i))
            for i in range(3)
        ]
        items = market_board(ranker, markets, {"sortBy": "volume", "sortDirection": "asc"})
        assert [item.market for item in items] == ["KRW-C0", "KRW-C1", "KRW-C2"]
        body = items[0].to_response()
        assert body["stage"] == "NOT_REQUESTED"
        assert body["recommendedEntryWinRate"] is None

        computed = market_board(ranker, markets, {"sortBy": "MARKET_ENTRY_WIN_RATE"})
        assert all(item.stage == MarketStage.COMPUTED for item in computed)

    def test_market_board_rejects_bad_query(self, ranker):
        with pytest.raises(InvalidArgument) as exc:
            market_board(ranker, [], {"sortDirection": "sideways"})
        assert exc.value.field == "sortDirection"

    def test_market_recommendation_body(self, ranker):
        body = market_recommendation(ranker, {"market": " krw-flat "}).to_response()
        assert body["market"] == "KRW-FLAT"
        assert body["mode"] == "SWING"
        assert Decimal(body["recommendedEntryPrice"]) == Decimal('100.01992')
        assert body["suggestedOrderType"] == "MARKET"
        assert body["regime"] == "SIDEWAYS"
        assert "riskRewardRatio" in body
