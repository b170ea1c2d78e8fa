"""
Guided Spot Trading Engine.

A guided trading system for KRW spot markets featuring:
- Market board ranking by simulated win rate over the most liquid markets
- Guided entries with ATR-aware stop loss and capped take profit
- Ratchet-only trailing stop, partial take-profit and break-even stop
- Adoption of positions opened outside the engine
- Event ledger as source of truth with P&L reconciliation
- Atomic persistence with SQLite (one open trade per market)
- Structured logging via loguru
- Configuration-driven (YAML)

Core Modules:
    trade: Guided trade state, events and trailing ratchet logic
    lifecycle: Start/adopt/partial/stop operations and price ticks
    ranking: Market board ranking by win rate
    backtest: Win-rate simulation over a candle window
    regime: Market regime classification
    pnl: Ledger replay and P&L reconciliation
    persistence_sqlite: Atomic persistence of trades and events
    api: Request/response models
    config: Configuration loading and validation

Example:
    >>> from guided_trading.exchange import InMemoryExchange
    >>> from guided_trading.lifecycle import GuidedTradingManager
    >>> from guided_trading.persistence_sqlite import SQLiteTradeStore
    >>>
    >>> exchange = InMemoryExchange()
    >>> store = SQLiteTradeStore("guided.db")
    >>> manager = GuidedTradingManager(store, exchange, exchange)
"""

__version__ = "0.1.0"
__all__ = [
    "trade",
    "lifecycle",
    "ranking",
    "backtest",
    "regime",
    "candles",
    "cache",
    "pnl",
    "persistence_sqlite",
    "db_migrations",
    "exchange",
    "api",
    "config",
    "errors",
    "logging_setup",
]
