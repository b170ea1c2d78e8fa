import concurrent.futures
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from guided_trading.errors import InvalidArgument, OrderRejected, PositionAlreadyOpen, PositionNotFound
from guided_trading.trade import EventType, PnlConfidence, TradeStatus

T0 = datetime(2026, 1, 1, tzinfo=timezone.utc)


def start(manager, amount='100000', **extra):
    payload = {"market": "KRW-BTC", "amountKrw": amount}
    payload.update(extra)
    return manager.start_auto_trading(payload)


def tick(manager, exchange, price, seconds):
    exchange.set_price("KRW-BTC", Decimal(price))
    return manager.on_price_tick("KRW-BTC", Decimal(price), observed_at=T0 + timedelta(seconds=seconds))


def event_types(manager, trade_id):
    return [e.event_type for e in manager.list_events(trade_id)]


def test_start_opens_trade(manager, exchange):
    resp = start(manager)
    assert resp.status == TradeStatus.OPEN

    trade = manager.get_active_trade("krw-btc")
    assert trade.id == resp.trade_id
    assert trade.entry_quantity == Decimal('1000')
    assert trade.remaining_quantity == Decimal('1000')
    assert trade.average_entry_price == Decimal('100')
    assert trade.stop_loss_price == Decimal('99.3')
    assert trade.take_profit_price == Decimal('101.05')
    assert trade.trailing_stop_price is None
    trade.check_invariants()

    events = manager.list_events(trade.id)
    assert [e.event_type for e in events] == [EventType.ENTRY]
    assert events[0].order_id == exchange.orders[0].order_id


def test_second_start_rejected_before_ordering(manager, exchange):
    start(manager)
    with pytest.raises(PositionAlreadyOpen):
        start(manager)
    assert len(exchange.orders) == 1


@pytest.mark.parametrize("payload,field", [
    ({"market": "BTC", "amountKrw": "10000"}, "market"),
    ({"market": "KRW-BTC", "amountKrw": "abc"}, "amount"),
    ({"market": "KRW-BTC", "amountKrw": "-1"}, "amount"),
    ({"market": "KRW-BTC"}, "amount"),
])
def test_start_validation(manager, exchange, payload, field):
    with pytest.raises(InvalidArgument) as exc:
        manager.start_auto_trading(payload)
    assert field in exc.value.field
    assert exchange.orders == []


def test_unknown_market_rejected(manager, exchange):
    with pytest.raises(InvalidArgument):
        manager.start_auto_trading({"market": "KRW-NOPE", "amountKrw": "10000"})
    assert exchange.orders == []


def test_small_amount_clamped_to_minimum_order(manager, exchange):
    start(manager, amount='1000')
    assert exchange.orders[0].executed_quantity == Decimal('51')
    assert manager.get_active_trade("KRW-BTC").entry_quantity == Decimal('51')


def test_tunables_are_clamped(manager):
    start(manager, trailingTriggerPercent='50', trailingOffsetPercent='0.01', halfTakeProfitRatio='0.9')
    trade = manager.get_active_trade("KRW-BTC")
    assert trade.trailing_trigger_percent == Decimal('20')
    assert trade.trailing_offset_percent == Decimal('0.2')
    assert trade.half_take_profit_ratio == Decimal('0.8')


def test_stop_loss_closes(manager, exchange):
    trade_id = start(manager).trade_id
    outcome = tick(manager, exchange, '99', 1)
    assert outcome.closed
    assert outcome.exit_reason == "STOP_LOSS"

    trade = manager.store.get_trade(trade_id)
    assert trade.status == TradeStatus.CLOSED
    assert trade.remaining_quantity == Decimal('0')
    assert trade.realized_pnl == Decimal('-1000.00')
    assert trade.average_exit_price == Decimal('99')
    trade.check_invariants()
    assert event_types(manager, trade_id) == [EventType.ENTRY, EventType.CLOSE]
    assert manager.get_active_trade("KRW-BTC") is None


def test_take_profit_closes_whole_position(manager, exchange):
    trade_id = start(manager).trade_id
    outcome = tick(manager, exchange, '101.5', 1)
    assert outcome.action == "CLOSED"
    assert outcome.exit_reason == "TAKE_PROFIT"
    trade = manager.store.get_trade(trade_id)
    assert trade.realized_pnl == Decimal('1500.00')
    assert trade.cumulative_exit_quantity == Decimal('1000')


def test_trailing_stop_ratchets_and_closes(manager, exchange):
    trade_id = start(manager, takeProfitPrice='200').trade_id

    outcome = tick(manager, exchange, '103', 1)
    assert outcome.action == "TRAILING_UPDATED"
    assert outcome.trailing_stop_price == Decimal('101.97')

    outcome = tick(manager, exchange, '105', 2)
    assert outcome.trailing_stop_price == Decimal('103.95')

    outcome = tick(manager, exchange, '104', 3)
    assert outcome.action == "HOLD"
    assert outcome.trailing_stop_price == Decimal('103.95')

    outcome = tick(manager, exchange, '103.9', 4)
    assert outcome.closed
    assert outcome.exit_reason == "TRAILING_STOP"

    trade = manager.store.get_trade(trade_id)
    assert trade.realized_pnl == Decimal('3900.00')
    assert event_types(manager, trade_id).count(EventType.TRAILING_UPDATE) == 2


def test_stale_tick_ignored(manager, exchange):
    start(manager, takeProfitPrice='200')
    tick(manager, exchange, '103', 10)

    for seconds in (5, 10):
        outcome = tick(manager, exchange, '110', seconds)
        assert outcome.action == "STALE"
    trade = manager.get_active_trade("KRW-BTC")
    assert trade.trailing_stop_price == Decimal('101.97')
    assert trade.last_price_at == T0 + timedelta(seconds=10)


def test_partial_take_profit_moves_stop_to_break_even(manager):
    trade_id = start(manager).trade_id
    summary = manager.partial_take_profit("KRW-BTC", Decimal('0.5'))

    assert summary.status == TradeStatus.OPEN
    assert summary.remaining_quantity == Decimal('500')
    assert summary.half_take_profit_done is True
    assert summary.stop_loss_price == Decimal('100')
    assert event_types(manager, trade_id) == [EventType.ENTRY, EventType.PARTIAL_EXIT]
    manager.get_active_trade("KRW-BTC").check_invariants()


@pytest.mark.parametrize("ratio", ['0', '1.5', '-0.1'])
def test_partial_ratio_out_of_range(manager, exchange, ratio):
    start(manager)
    with pytest.raises(InvalidArgument) as exc:
        manager.partial_take_profit("KRW-BTC", Decimal(ratio))
    assert exc.value.field == "ratio"
    assert manager.get_active_trade("KRW-BTC").remaining_quantity == Decimal('1000')
    assert len(exchange.orders) == 1


@pytest.mark.parametrize("ratio", ['abc', 'NaN', 'Infinity'])
def test_partial_ratio_not_a_number(manager, exchange, ratio):
    start(manager)
    with pytest.raises(InvalidArgument) as exc:
        manager.partial_take_profit("KRW-BTC", ratio)
    assert exc.value.field == "ratio"
    assert manager.get_active_trade("KRW-BTC").remaining_quantity == Decimal('1000')
    assert len(exchange.orders) == 1


def test_partial_accepts_request_body(manager):
    start(manager)
    summary = manager.partial_take_profit({"market": "krw-btc", "ratio": "0.25"})
    assert summary.remaining_quantity == Decimal('750')


def test_partial_full_ratio_closes(manager):
    trade_id = start(manager).trade_id
    summary = manager.partial_take_profit("KRW-BTC", 1)
    assert summary.status == TradeStatus.CLOSED
    events = manager.list_events(trade_id)
    assert [e.event_type for e in events] == [EventType.ENTRY, EventType.PARTIAL_EXIT, EventType.CLOSE]
    assert events[-1].quantity is None


def test_partial_below_minimum_order(manager):
    start(manager, amount='6000')
    with pytest.raises(InvalidArgument) as exc:
        manager.partial_take_profit("KRW-BTC", Decimal('0.5'))
    assert exc.value.current_state == "BELOW_MIN_ORDER"


def test_partial_without_position(manager):
    with pytest.raises(PositionNotFound):
        manager.partial_take_profit("KRW-BTC", Decimal('0.5'))


def test_rejected_exit_keeps_trade_open(manager, exchange):
    trade_id = start(manager).trade_id
    exchange.rejecting_markets.add("KRW-BTC")

    outcome = tick(manager, exchange, '99', 1)
    assert outcome.action == "CLOSE_FAILED"
    trade = manager.store.get_trade(trade_id)
    assert trade.status == TradeStatus.OPEN
    assert trade.remaining_quantity == Decimal('1000')
    assert trade.last_action == "SELL_FAILED:STOP_LOSS"

    with pytest.raises(OrderRejected):
        manager.stop_auto_trading("KRW-BTC")
    trade = manager.store.get_trade(trade_id)
    assert trade.status == TradeStatus.OPEN
    assert trade.last_action == "SELL_FAILED:MANUAL_STOP"

    # the next tick retries once the exchange accepts orders again
    exchange.rejecting_markets.clear()
    assert tick(manager, exchange, '99', 2).closed


def test_stop_auto_trading(manager, exchange):
    start(manager)
    exchange.set_price("KRW-BTC", Decimal('102'))
    summary = manager.stop_auto_trading("KRW-BTC")
    assert summary.status == TradeStatus.CLOSED
    assert summary.exit_reason == "MANUAL_STOP"
    assert summary.realized_pnl == Decimal('2000.00')

    with pytest.raises(PositionNotFound):
        manager.stop_auto_trading("KRW-BTC")


def test_duplicate_exit_fill_ignored(manager):
    trade_id = start(manager).trade_id
    summary = manager.record_exit_fill("KRW-BTC", "ext-1", Decimal('200'), Decimal('101'))
    assert summary.remaining_quantity == Decimal('800')
    assert summary.stop_loss_price == Decimal('100')

    assert manager.record_exit_fill("KRW-BTC", "ext-1", Decimal('200'), Decimal('101')) is None
    assert manager.get_active_trade("KRW-BTC").remaining_quantity == Decimal('800')
    assert len(manager.list_events(trade_id)) == 2


def test_limit_order_fill_reported_back(manager, exchange):
    trade_id = start(manager).trade_id
    order = exchange.place_limit_order("KRW-BTC", "ask", Decimal('1000'), Decimal('102'))
    assert order.executed_quantity is None

    summary = manager.record_exit_fill("KRW-BTC", order.order_id, Decimal('1000'), Decimal('102'), "LIMIT_TP")
    assert summary.status == TradeStatus.CLOSED
    assert summary.realized_pnl == Decimal('2000')
    assert manager.list_events(trade_id)[1].order_id == order.order_id


def test_naive_tick_timestamp_treated_as_utc(manager, exchange):
    start(manager)
    tick(manager, exchange, '100.5', 10)

    naive_earlier = (T0 + timedelta(seconds=5)).replace(tzinfo=None)
    assert manager.on_price_tick("KRW-BTC", Decimal('100.6'), observed_at=naive_earlier).action == "STALE"

    naive_later = (T0 + timedelta(seconds=20)).replace(tzinfo=None)
    assert manager.on_price_tick("KRW-BTC", Decimal('100.6'), observed_at=naive_later).action != "STALE"
    assert manager.get_active_trade("KRW-BTC").last_price_at == T0 + timedelta(seconds=20)


def test_adopt_is_idempotent(manager, exchange):
    exchange.set_balance("BTC", Decimal('100'))
    first = manager.adopt_external_position({"market": "KRW-BTC", "notes": "bought on mobile"})
    assert first.adopted is True
    assert first.quantity == Decimal('100')
    assert first.average_entry_price == Decimal('100')

    second = manager.adopt_external_position({"market": "KRW-BTC"})
    assert second.adopted is False
    assert second.position_id == first.position_id
    assert event_types(manager, first.position_id) == [EventType.ADOPT]
    assert "notes=bought on mobile" in manager.get_active_trade("KRW-BTC").notes


def test_concurrent_adopt_creates_one_trade(manager, exchange):
    exchange.set_balance("BTC", Decimal('100'))
    with concurrent.futures.ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(
            lambda _: manager.adopt_external_position({"market": "KRW-BTC"}), range(8)
        ))
    assert sum(1 for r in results if r.adopted) == 1
    assert len({r.position_id for r in results}) == 1
    assert len(manager.list_open_trades()) == 1


def test_adopt_dust_rejected(manager, exchange):
    exchange.set_price("KRW-ETH", Decimal('100'))
    exchange.set_balance("ETH", Decimal('10'))
    with pytest.raises(InvalidArgument) as exc:
        manager.adopt_external_position({"market": "KRW-ETH"})
    assert exc.value.current_state == "NO_BALANCE"
    assert manager.list_open_trades() == []


def test_monitor_closes_trade_without_balance(manager, exchange):
    trade_id = start(manager).trade_id
    exchange.set_balance("BTC", Decimal('0'))

    outcomes = manager.monitor_open_trades(prices={"KRW-BTC": Decimal('100')})
    assert [o.action for o in outcomes] == ["CLOSED"]
    trade = manager.store.get_trade(trade_id)
    assert trade.exit_reason == "NO_EFFECTIVE_BALANCE"
    assert trade.pnl_confidence == PnlConfidence.LOW
    assert manager.list_events(trade_id)[-1].quantity is None
    trade.check_invariants()


def test_monitor_isolates_missing_prices(manager, exchange):
    start(manager)
    assert [o.action for o in manager.monitor_open_trades(prices={})] == ["NO_PRICE"]
    assert [o.action for o in manager.monitor_open_trades()] == ["HOLD"]


def test_monitor_survives_balance_failure(manager, exchange):
    start(manager)

    def boom():
        raise ConnectionError("balances down")

    exchange.on_get_balances = boom
    outcomes = manager.monitor_open_trades(prices={"KRW-BTC": Decimal('99')})
    assert [o.action for o in outcomes] == ["CLOSED"]


def test_today_stats(manager, exchange):
    start(manager)
    tick(manager, exchange, '99', 1)
    exchange.set_price("KRW-BTC", Decimal('100'))
    start(manager)

    stats = manager.get_today_stats()
    assert stats.total_trades == 1
    assert stats.wins == 0
    assert stats.losses == 1
    assert stats.total_pnl_krw == Decimal('-1000.00')
    assert stats.win_rate == Decimal('0')
    assert stats.open_position_count == 1
    assert stats.total_invested_krw == Decimal('100000.00')
    assert len(stats.trades) == 1


def test_partial_dust_remainder_closes(manager):
    trade_id = start(manager).trade_id
    summary = manager.partial_take_profit("KRW-BTC", Decimal('0.99'))
    assert summary.status == TradeStatus.CLOSED
    assert summary.remaining_quantity == Decimal('0')
    assert summary.pnl_confidence == PnlConfidence.LOW
    events = manager.list_events(trade_id)
    assert [e.event_type for e in events] == [EventType.ENTRY, EventType.PARTIAL_EXIT, EventType.CLOSE]
    assert events[1].quantity == Decimal('990')
    assert events[2].quantity is None
