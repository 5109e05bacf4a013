"""Unit tests for the execution engine and ccxt exchange connector."""

import pytest
from unittest.mock import AsyncMock, MagicMock

import ccxt.async_support as ccxt

from arb_engine.core.enums import ExitReason, OrderStatus, OrderType, Side
from arb_engine.core.errors import ExecutionError
from arb_engine.core.models import BookTicker, Order
from arb_engine.execution.engine import (
    CCXTExchangeConnector,
    ExchangeConnector,
    ExecutionEngine,
    trailing_stop_for,
)


class MockExchange(ExchangeConnector):
    """
    Market orders fill instantly at ``mark``; limit orders rest until
    ``fill_limit_after`` status polls. Tickers are served in order, the
    last one repeating.

    ``entry_fill_ratio`` leaves the entry order pending with that share
    filled, ``limit_fill_ratio`` partially fills the resting limit on its
    first poll, and ``fill_limit_on_cancel`` fills the limit while it is
    being cancelled.
    """

    def __init__(self, tickers=None, mark=50_000.0, fill_limit_after=None,
                 reject=(), market_fills=True, ticker_error=None,
                 entry_fill_ratio=None, limit_fill_ratio=None, fill_limit_on_cancel=False):
        self.tickers = list(tickers or [(49_999.0, 50_001.0)])
        self.mark = mark
        self.fill_limit_after = fill_limit_after
        self.reject = set(reject)
        self.market_fills = market_fills
        self.ticker_error = ticker_error
        self.entry_fill_ratio = entry_fill_ratio
        self.limit_fill_ratio = limit_fill_ratio
        self.fill_limit_on_cancel = fill_limit_on_cancel

        self.orders = {}
        self.placed = []
        self.cancelled = []
        self.limit_polls = 0

    async def place_order(self, symbol, order_type, side, amount, price=None):
        if order_type in self.reject:
            return None
        order_id = f"o{len(self.placed) + 1}"
        order = Order(id=order_id, symbol=symbol, side=side, order_type=order_type,
                      quantity=amount, price=price)
        if order_type == OrderType.MARKET and not self.placed and self.entry_fill_ratio is not None:
            order.filled_quantity = amount * self.entry_fill_ratio
            order.average_fill_price = self.mark
        elif order_type == OrderType.MARKET and self.market_fills:
            order.status = OrderStatus.FILLED
            order.filled_quantity = amount
            order.average_fill_price = self.mark
        self.orders[order_id] = order
        self.placed.append(order)
        return order

    async def get_order_status(self, order_id, symbol):
        order = self.orders[order_id]
        if order.order_type == OrderType.LIMIT and order.status == OrderStatus.PENDING:
            self.limit_polls += 1
            if self.fill_limit_after is not None and self.limit_polls >= self.fill_limit_after:
                order.status = OrderStatus.FILLED
                order.filled_quantity = order.quantity
                order.average_fill_price = order.price
            elif self.limit_fill_ratio is not None:
                order.filled_quantity = order.quantity * self.limit_fill_ratio
                order.average_fill_price = order.price
        return order

    async def cancel_order(self, order_id, symbol):
        self.cancelled.append(order_id)
        order = self.orders[order_id]
        if order.order_type == OrderType.LIMIT and self.fill_limit_on_cancel:
            order.status = OrderStatus.FILLED
            order.filled_quantity = order.quantity
            order.average_fill_price = order.price
            return False
        order.status = OrderStatus.CANCELLED
        return True

    async def get_book_ticker(self, symbol):
        if self.ticker_error:
            raise self.ticker_error
        bid, ask = self.tickers.pop(0) if len(self.tickers) > 1 else self.tickers[0]
        return BookTicker(symbol=symbol, bid=bid, ask=ask)

    async def get_balance(self, currency="USDT"):
        return 1000.0


def _make_engine(exchange, clock, fake_sleep, **config):
    params = {"fee_rate": 0.001}
    params.update(config)
    return ExecutionEngine(exchange, config=params, clock=clock, sleep=fake_sleep)


class TestTrailingStop:

    def test_long_and_short(self):
        assert trailing_stop_for(Side.LONG, 50_000.0) == pytest.approx(49_900.0)
        assert trailing_stop_for(Side.SHORT, 50_000.0) == pytest.approx(50_100.0)


class TestExecutionEngine:

    @pytest.mark.asyncio
    async def test_take_profit_fill(self, clock, fake_sleep, make_opportunity):
        exchange = MockExchange(fill_limit_after=1)
        engine = _make_engine(exchange, clock, fake_sleep)

        outcome = await engine.execute(make_opportunity())

        assert outcome.exit_reason == ExitReason.TAKE_PROFIT
        assert outcome.quantity == pytest.approx(0.005)
        assert outcome.entry_price == 50_000.0
        assert outcome.exit_price == pytest.approx(50_300.0)
        assert outcome.fees == pytest.approx(0.5015)
        assert outcome.net_profit == pytest.approx(0.9985)
        assert outcome.profit_locked is False
        limit = exchange.placed[1]
        assert limit.order_type == OrderType.LIMIT
        assert limit.side == Side.SHORT
        assert exchange.cancelled == []

    @pytest.mark.asyncio
    async def test_short_take_profit(self, clock, fake_sleep, make_opportunity):
        exchange = MockExchange(fill_limit_after=1)
        engine = _make_engine(exchange, clock, fake_sleep)
        opportunity = make_opportunity(
            side=Side.SHORT, projected_exit_price=49_700.0, stop_loss_price=50_250.0,
        )

        outcome = await engine.execute(opportunity)

        assert exchange.placed[0].side == Side.SHORT
        assert exchange.placed[1].side == Side.LONG
        assert outcome.exit_price == pytest.approx(49_700.0)
        assert outcome.net_profit == pytest.approx(1.0015)

    @pytest.mark.asyncio
    async def test_stop_loss_preempts_limit(self, clock, fake_sleep, make_opportunity):
        exchange = MockExchange(tickers=[(49_700.0, 49_702.0)])
        engine = _make_engine(exchange, clock, fake_sleep)

        outcome = await engine.execute(make_opportunity())

        assert outcome.exit_reason == ExitReason.STOP_LOSS
        assert outcome.exit_price == 49_700.0
        assert outcome.net_profit == pytest.approx(-1.9985)
        assert exchange.cancelled == ["o2"]
        close = exchange.placed[-1]
        assert close.order_type == OrderType.MARKET
        assert close.side == Side.SHORT

    @pytest.mark.asyncio
    async def test_timeout_closes_at_market(self, clock, fake_sleep, make_opportunity):
        exchange = MockExchange(tickers=[(50_010.0, 50_012.0)])
        engine = _make_engine(exchange, clock, fake_sleep)
        start = clock()

        outcome = await engine.execute(make_opportunity())

        assert outcome.exit_reason == ExitReason.TIMEOUT
        assert outcome.exit_price == 50_010.0
        assert outcome.net_profit == pytest.approx(-0.45, abs=1e-3)
        assert (clock() - start).total_seconds() == 30.0
        assert exchange.cancelled == ["o2"]
        assert len(exchange.placed) == 3

    @pytest.mark.asyncio
    async def test_trailing_stop_ratchets_and_exits(self, clock, fake_sleep, make_opportunity):
        exchange = MockExchange(tickers=[
            (50_200.0, 50_202.0),
            (50_250.0, 50_252.0),
            (50_100.0, 50_102.0),
        ])
        engine = _make_engine(exchange, clock, fake_sleep)
        locks = []

        outcome = await engine.execute(make_opportunity(), locks.append)

        assert locks == [pytest.approx(50_200.0 * 0.998)]
        assert outcome.exit_reason == ExitReason.TRAILING_STOP
        assert outcome.exit_price == 50_100.0
        assert outcome.profit_locked is True

    @pytest.mark.asyncio
    async def test_profit_lock_can_be_disabled(self, clock, fake_sleep, make_opportunity):
        exchange = MockExchange(tickers=[(50_200.0, 50_202.0)])
        engine = _make_engine(exchange, clock, fake_sleep, profit_lock_enabled=False)
        locks = []

        outcome = await engine.execute(make_opportunity(), locks.append)

        assert locks == []
        assert outcome.exit_reason == ExitReason.TIMEOUT

    @pytest.mark.asyncio
    async def test_rejected_entry_raises(self, clock, fake_sleep, make_opportunity):
        exchange = MockExchange(reject={OrderType.MARKET})
        engine = _make_engine(exchange, clock, fake_sleep)

        with pytest.raises(ExecutionError):
            await engine.execute(make_opportunity())

    @pytest.mark.asyncio
    async def test_unfilled_entry_cancelled(self, clock, fake_sleep, make_opportunity):
        exchange = MockExchange(market_fills=False)
        engine = _make_engine(exchange, clock, fake_sleep)

        with pytest.raises(ExecutionError):
            await engine.execute(make_opportunity())
        assert exchange.cancelled == ["o1"]

    @pytest.mark.asyncio
    async def test_rejected_take_profit_flattens(self, clock, fake_sleep, make_opportunity):
        exchange = MockExchange(reject={OrderType.LIMIT})
        engine = _make_engine(exchange, clock, fake_sleep)

        outcome = await engine.execute(make_opportunity())

        assert outcome.exit_reason == ExitReason.ERROR
        assert outcome.exit_price == 50_000.0
        assert outcome.net_profit == pytest.approx(-0.5)
        assert [o.order_type for o in exchange.placed] == [OrderType.MARKET, OrderType.MARKET]

    @pytest.mark.asyncio
    async def test_ticker_errors_still_bounded(self, clock, fake_sleep, make_opportunity):
        exchange = MockExchange(ticker_error=RuntimeError("rate limited"))
        engine = _make_engine(exchange, clock, fake_sleep)

        outcome = await engine.execute(make_opportunity())

        assert outcome.exit_reason == ExitReason.TIMEOUT
        assert outcome.exit_price == 50_000.0

    def test_fee_rate_falls_back_to_schedule(self, clock, fake_sleep):
        engine = ExecutionEngine(MockExchange(), clock=clock, sleep=fake_sleep)
        assert engine._fee_rate("kraken") == 0.0016


class TestFillRaces:

    @pytest.mark.asyncio
    async def test_limit_filled_while_cancelling_is_not_closed_again(
        self, clock, fake_sleep, make_opportunity,
    ):
        exchange = MockExchange(tickers=[(49_700.0, 49_702.0)], fill_limit_on_cancel=True)
        engine = _make_engine(exchange, clock, fake_sleep)

        outcome = await engine.execute(make_opportunity())

        assert outcome.exit_reason == ExitReason.TAKE_PROFIT
        assert outcome.exit_price == pytest.approx(50_300.0)
        assert outcome.net_profit == pytest.approx(0.9985)
        assert outcome.exit_order_id == "o2"
        exit_side = [o for o in exchange.placed if o.side == Side.SHORT]
        assert [o.order_type for o in exit_side] == [OrderType.LIMIT]

    @pytest.mark.asyncio
    async def test_partial_take_profit_closes_only_remainder(self, clock, fake_sleep, make_opportunity):
        exchange = MockExchange(tickers=[(50_010.0, 50_012.0)], limit_fill_ratio=0.5)
        engine = _make_engine(exchange, clock, fake_sleep)

        outcome = await engine.execute(make_opportunity())

        assert outcome.exit_reason == ExitReason.TIMEOUT
        close = exchange.placed[-1]
        assert close.order_type == OrderType.MARKET
        assert close.quantity == pytest.approx(0.0025)
        assert outcome.quantity == pytest.approx(0.005)
        # half at the take-profit, half at the bid
        assert outcome.exit_price == pytest.approx(50_155.0)
        assert outcome.fees == pytest.approx(0.25 + 0.12575 + 0.125025)
        assert outcome.net_profit == pytest.approx(0.2742, abs=1e-4)

    @pytest.mark.asyncio
    async def test_partial_entry_cancels_remainder(self, clock, fake_sleep, make_opportunity):
        exchange = MockExchange(entry_fill_ratio=0.5, fill_limit_after=1)
        engine = _make_engine(exchange, clock, fake_sleep)

        outcome = await engine.execute(make_opportunity())

        assert exchange.cancelled == ["o1"]
        assert exchange.orders["o1"].status == OrderStatus.CANCELLED
        assert outcome.quantity == pytest.approx(0.0025)
        assert exchange.placed[1].quantity == pytest.approx(0.0025)
        assert outcome.exit_reason == ExitReason.TAKE_PROFIT

    @pytest.mark.asyncio
    async def test_failed_cancel_still_reads_back_fills(self, clock, fake_sleep, make_opportunity):
        exchange = MockExchange(tickers=[(49_700.0, 49_702.0)])
        exchange.cancel_order = AsyncMock(side_effect=RuntimeError("network down"))
        engine = _make_engine(exchange, clock, fake_sleep)

        outcome = await engine.execute(make_opportunity())

        assert outcome.exit_reason == ExitReason.STOP_LOSS
        assert exchange.placed[-1].quantity == pytest.approx(0.005)


def _make_connector():
    connector = CCXTExchangeConnector("binance", {})
    exchange = MagicMock()
    exchange.markets = {"BTC/USDT": {"limits": {"amount": {"min": 0.001, "max": 10}}}}
    exchange.amount_to_precision = MagicMock(side_effect=lambda symbol, amount: f"{amount:.3f}")
    exchange.create_market_order = AsyncMock(return_value={
        "id": "123", "status": "closed", "filled": 0.005, "average": 50_000.0,
        "fee": {"cost": 0.25}, "timestamp": 1_704_110_400_000,
    })
    exchange.create_limit_order = AsyncMock(return_value={"id": "124", "status": "open"})
    exchange.fetch_order = AsyncMock()
    exchange.cancel_order = AsyncMock()
    exchange.fetch_ticker = AsyncMock(return_value={"bid": 49_999.0, "ask": 50_001.0, "last": 50_000.0})
    exchange.fetch_balance = AsyncMock(return_value={"total": {"USDT": 1234.5}})
    exchange.close = AsyncMock()
    connector.exchange = exchange
    return connector


class TestCCXTExchangeConnector:

    @pytest.mark.asyncio
    async def test_market_order_mapped(self):
        connector = _make_connector()

        order = await connector.place_order("BTC/USDT", OrderType.MARKET, Side.LONG, 0.005)

        connector.exchange.create_market_order.assert_awaited_once_with("BTC/USDT", "buy", 0.005)
        assert order.id == "123"
        assert order.status == OrderStatus.FILLED
        assert order.average_fill_price == 50_000.0
        assert order.commission == 0.25

    @pytest.mark.asyncio
    async def test_limit_order_mapped(self):
        connector = _make_connector()

        order = await connector.place_order("BTC/USDT", OrderType.LIMIT, Side.SHORT, 0.005, price=50_300.0)

        connector.exchange.create_limit_order.assert_awaited_once_with("BTC/USDT", "sell", 0.005, 50_300.0)
        assert order.status == OrderStatus.PENDING

    @pytest.mark.asyncio
    async def test_amount_clamped_to_max(self):
        connector = _make_connector()
        await connector.place_order("BTC/USDT", OrderType.MARKET, Side.LONG, 25.0)
        connector.exchange.create_market_order.assert_awaited_once_with("BTC/USDT", "buy", 10.0)

    @pytest.mark.asyncio
    async def test_amount_below_min_raises(self):
        connector = _make_connector()
        with pytest.raises(ExecutionError):
            await connector.place_order("BTC/USDT", OrderType.MARKET, Side.LONG, 0.0001)

    @pytest.mark.asyncio
    async def test_insufficient_funds_returns_none(self):
        connector = _make_connector()
        connector.exchange.create_market_order.side_effect = ccxt.InsufficientFunds("no money")

        assert await connector.place_order("BTC/USDT", OrderType.MARKET, Side.LONG, 0.005) is None

    @pytest.mark.asyncio
    async def test_operational_code_returns_none(self):
        connector = _make_connector()
        connector.exchange.create_market_order.side_effect = Exception('{"code":-2019,"msg":"Margin"}')

        assert await connector.place_order("BTC/USDT", OrderType.MARKET, Side.LONG, 0.005) is None

    @pytest.mark.asyncio
    async def test_unexpected_error_raises(self):
        connector = _make_connector()
        connector.exchange.create_market_order.side_effect = Exception("boom")

        with pytest.raises(ExecutionError):
            await connector.place_order("BTC/USDT", OrderType.MARKET, Side.LONG, 0.005)

    @pytest.mark.asyncio
    async def test_order_status_not_found_returns_none(self):
        connector = _make_connector()
        connector.exchange.fetch_order.side_effect = Exception("Order does not exist")

        assert await connector.get_order_status("x", "BTC/USDT") is None

    @pytest.mark.asyncio
    async def test_order_status_mapped(self):
        connector = _make_connector()
        connector.exchange.fetch_order.return_value = {
            "id": "124", "side": "sell", "type": "limit", "status": "closed",
            "amount": 0.005, "price": 50_300.0, "filled": 0.005, "average": 50_300.0,
        }

        order = await connector.get_order_status("124", "BTC/USDT")

        assert order.side == Side.SHORT
        assert order.order_type == OrderType.LIMIT
        assert order.status == OrderStatus.FILLED

    @pytest.mark.asyncio
    async def test_cancel_failure_returns_false(self):
        connector = _make_connector()
        connector.exchange.cancel_order.side_effect = Exception("unknown order")
        assert await connector.cancel_order("x", "BTC/USDT") is False

    @pytest.mark.asyncio
    async def test_book_ticker_and_balance(self):
        connector = _make_connector()

        ticker = await connector.get_book_ticker("BTC/USDT")
        balance = await connector.get_balance("USDT")

        assert (ticker.bid, ticker.ask) == (49_999.0, 50_001.0)
        assert ticker.mid == 50_000.0
        assert balance == 1234.5

    @pytest.mark.asyncio
    async def test_close(self):
        connector = _make_connector()
        await connector.close()
        connector.exchange.close.assert_awaited_once()
