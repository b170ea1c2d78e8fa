"""
Collaborator interfaces consumed by the engine.

Exchange clients live outside this package; the engine only talks to the
abstract MarketDataSource and AccountGateway below. All price/qty values use
Decimal for precision and consistency.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Dict, List, Optional, Sequence, Set

from .candles import Candle
from .errors import OrderRejected

SIDE_BUY = "bid"
SIDE_SELL = "ask"


@dataclass(frozen=True)
class Balance:
    """Holding of one currency on the exchange."""

    currency: str
    available: Decimal
    locked: Decimal = Decimal("0")

    @property
    def total(self) -> Decimal:
        return self.available + self.locked


@dataclass(frozen=True)
class OrderResult:
    """Exchange acknowledgement of an order.

    executed_quantity/average_price are None when the exchange did not report
    a fill synchronously.
    """

    order_id: str
    market: str
    side: str
    executed_quantity: Optional[Decimal] = None
    average_price: Optional[Decimal] = None


class MarketDataSource(ABC):
    """Public market data: candles and last trade price."""

    @abstractmethod
    def get_candles(
        self, market: str, interval: str, count: int, before: Optional[int] = None
    ) -> List[Candle]:
        """Return up to ``count`` candles ending before ``before`` (ascending).

        Transient failures return an empty list; callers treat empty as
        "skip, not abort".
        """

    @abstractmethod
    def get_current_price(self, market: str) -> Optional[Decimal]:
        """Return the last trade price, or None for an unknown market."""


class AccountGateway(ABC):
    """Private account access: balances and order placement."""

    @abstractmethod
    def get_balances(self) -> List[Balance]:
        """Return every currency balance of the account."""

    @abstractmethod
    def place_market_order(self, market: str, side: str, amount: Decimal) -> OrderResult:
        """Place a market order.

        ``amount`` is quote currency (KRW) for buys and base quantity for sells.

        Raises:
            OrderRejected: The exchange refused the order
        """

    @abstractmethod
    def place_limit_order(self, market: str, side: str, quantity: Decimal, price: Decimal) -> OrderResult:
        """Place a limit order.

        The lifecycle manager never places limit orders itself; a caller that
        does reports the resulting sell fills through
        ``GuidedTradingManager.record_exit_fill``.

        Raises:
            OrderRejected: The exchange refused the order
        """


class InMemoryExchange(MarketDataSource, AccountGateway):
    """A simple exchange used for tests that records calls and lets tests drive prices.

    Market orders fill immediately at the current price and move balances.
    Markets listed in ``failing_markets`` raise from get_candles; markets in
    ``rejecting_markets`` reject orders.
    """

    def __init__(self):
        self.prices: Dict[str, Decimal] = {}
        self.candles: Dict[str, List[Candle]] = {}
        self.balances: Dict[str, Balance] = {}
        self.orders: List[OrderResult] = []
        self.candle_calls: List[str] = []
        self.failing_markets: Set[str] = set()
        self.rejecting_markets: Set[str] = set()
        self.on_get_balances: Optional[Callable[[], None]] = None
        self.next_id = 1

    def _gen_id(self) -> str:
        oid = f"m{self.next_id}"
        self.next_id += 1
        return oid

    def set_price(self, market: str, price: Decimal) -> None:
        self.prices[market] = price

    def set_candles(self, market: str, candles: Sequence[Candle]) -> None:
        self.candles[market] = list(candles)

    def set_balance(self, currency: str, available: Decimal, locked: Decimal = Decimal("0")) -> None:
        self.balances[currency.upper()] = Balance(currency=currency.upper(), available=available, locked=locked)

    def get_candles(self, market, interval, count, before=None):
        self.candle_calls.append(market)
        if market in self.failing_markets:
            raise ConnectionError(f"candle fetch failed for {market}")
        candles = self.candles.get(market, [])
        if before is not None:
            candles = [c for c in candles if c.timestamp < before]
        return candles[-count:]

    def get_current_price(self, market):
        return self.prices.get(market)

    def get_balances(self):
        if self.on_get_balances is not None:
            self.on_get_balances()
        return list(self.balances.values())

    def _shift_balance(self, currency: str, delta: Decimal) -> None:
        current = self.balances.get(currency)
        available = (current.available if current else Decimal("0")) + delta
        self.set_balance(currency, max(available, Decimal("0")))

    def place_market_order(self, market, side, amount):
        if market in self.rejecting_markets:
            raise OrderRejected("market rejected by test exchange", market=market)
        price = self.prices.get(market)
        if price is None or price <= 0:
            raise OrderRejected("no price", market=market)
        currency = market.split("-", 1)[1]
        if side == SIDE_BUY:
            qty = (amount / price).quantize(Decimal("0.00000001"))
            self._shift_balance(currency, qty)
        else:
            qty = amount
            self._shift_balance(currency, -qty)
        result = OrderResult(
            order_id=self._gen_id(), market=market, side=side, executed_quantity=qty, average_price=price
        )
        self.orders.append(result)
        return result

    def place_limit_order(self, market, side, quantity, price):
        if market in self.rejecting_markets:
            raise OrderRejected("market rejected by test exchange", market=market)
        result = OrderResult(order_id=self._gen_id(), market=market, side=side)
        self.orders.append(result)
        return result
