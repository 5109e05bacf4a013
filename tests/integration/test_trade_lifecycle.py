"""Integration tests for the complete scan -> trade -> record lifecycle."""

import pytest

from arb_engine.capital.manager import CapitalManager
from arb_engine.core.enums import ExitReason, OrderStatus, OrderType, RejectionCategory, TradingState
from arb_engine.core.models import BookTicker, Order, Position
from arb_engine.data.connector import PriceFeed
from arb_engine.execution.engine import ExchangeConnector, ExecutionEngine
from arb_engine.lifecycle.lanes import TradingLane
from arb_engine.scanner.market_scanner import OpportunityScanner
from arb_engine.storage.journal import TradeJournal


class MockPriceFeed(PriceFeed):
    """Feed returning fixed observations."""

    def __init__(self, observations):
        self.observations = observations

    async def get_observation(self, symbol):
        return self.observations[symbol]


class MockExchange(ExchangeConnector):
    """Mock exchange for integration testing."""

    def __init__(self, bid=49_999.0, fill_take_profit=False):
        self.bid = bid
        self.fill_take_profit = fill_take_profit
        self.orders = {}
        self._order_counter = 0

    async def place_order(self, symbol, order_type, side, amount, price=None):
        self._order_counter += 1
        order = Order(
            id=f"test-{self._order_counter}",
            symbol=symbol,
            side=side,
            order_type=order_type,
            quantity=amount,
            price=price,
        )
        # Market orders fill immediately with 0.1% commission
        if order_type == OrderType.MARKET:
            order.status = OrderStatus.FILLED
            order.filled_quantity = amount
            order.average_fill_price = 50_000.0
            order.commission = amount * 50_000.0 * 0.001
        self.orders[order.id] = order
        return order

    async def get_order_status(self, order_id, symbol):
        order = self.orders.get(order_id)
        if order and order.order_type == OrderType.LIMIT and self.fill_take_profit:
            order.status = OrderStatus.FILLED
            order.filled_quantity = order.quantity
            order.average_fill_price = order.price
            order.commission = order.quantity * order.price * 0.001
        return order

    async def cancel_order(self, order_id, symbol):
        if order_id in self.orders:
            self.orders[order_id].status = OrderStatus.CANCELLED
            return True
        return False

    async def get_book_ticker(self, symbol):
        return BookTicker(symbol=symbol, bid=self.bid, ask=self.bid + 2)

    async def get_balance(self, currency="USDT"):
        return 10_000.0


@pytest.fixture
def journal(tmp_path):
    return TradeJournal(str(tmp_path / "journal.db"))


def _build_stack(clock, fake_sleep, journal, observation, exchange):
    capital = CapitalManager(clock=clock)
    capital.update_balance("binance", 10_000.0)
    scanner = OpportunityScanner(
        MockPriceFeed({observation.symbol: observation}),
        capital=capital,
        config={"symbols": [observation.symbol]},
        record_store=journal,
        clock=clock,
    )
    capital.opportunity_source = scanner
    engine = ExecutionEngine(exchange, clock=clock, sleep=fake_sleep)
    lane = TradingLane(
        "lane-binance", "binance", scanner, engine,
        capital=capital, record_store=journal, clock=clock,
    )
    return capital, scanner, lane


class TestTradeLifecycle:

    @pytest.mark.asyncio
    async def test_take_profit_cycle(self, clock, fake_sleep, journal, make_observation):
        exchange = MockExchange(fill_take_profit=True)
        capital, scanner, lane = _build_stack(clock, fake_sleep, journal, make_observation(), exchange)

        emitted = await scanner.scan_once()
        assert len(emitted) == 1
        result = await lane.run_cycle()

        assert result.exit_reason == ExitReason.TAKE_PROFIT
        assert result.success is True
        assert result.actual_net_profit == pytest.approx(0.998, abs=1e-3)
        assert lane.state == TradingState.IDLE
        assert scanner.get_all_opportunities() == []

        # ledger balanced with profit folded in
        assert capital.check_invariants() == []
        assert capital.get_exchange_capital("binance").deployed == 0.0
        assert capital.get_balance("binance") == pytest.approx(10_000.0 + result.actual_net_profit)

        # journal has the cycle and the full transition trail
        stats = journal.get_performance_stats("lane-binance")
        assert stats["total_trades"] == 1
        assert stats["successful_trades"] == 1
        states = [t["to_state"] for t in reversed(journal.get_transitions("lane-binance"))]
        assert states[0] == "Qualified"
        assert states[-1] == "Idle"
        assert "Exit" in states

    @pytest.mark.asyncio
    async def test_capital_abort_places_no_orders(self, clock, fake_sleep, journal, make_observation):
        exchange = MockExchange()
        capital, scanner, lane = _build_stack(clock, fake_sleep, journal, make_observation(), exchange)
        await scanner.scan_once()

        # another process commits the capital after qualification
        capital.track_position("binance", Position(
            id="external", exchange="binance", symbol="ETH/USDT", entry_price=3000.0, size=9_900.0,
        ))
        result = await lane.run_cycle()

        assert result is None
        assert exchange.orders == {}
        assert lane.state == TradingState.IDLE
        assert lane.state_machine.capital_aborts == 1
        assert capital.get_idle("binance") == 100.0
        assert journal.get_performance_stats()["total_trades"] == 0

    @pytest.mark.asyncio
    async def test_timeout_bounds_exposure(self, clock, fake_sleep, journal, make_observation):
        exchange = MockExchange(bid=50_010.0)
        capital, scanner, lane = _build_stack(clock, fake_sleep, journal, make_observation(), exchange)
        await scanner.scan_once()
        start = clock()

        result = await lane.run_cycle()

        assert result.exit_reason == ExitReason.TIMEOUT
        assert result.success is False
        assert (clock() - start).total_seconds() == 30.0
        limit = next(o for o in exchange.orders.values() if o.order_type == OrderType.LIMIT)
        assert limit.status == OrderStatus.CANCELLED
        assert capital.get_exchange_capital("binance").deployed == 0.0
        assert capital.check_invariants() == []

    @pytest.mark.asyncio
    async def test_stop_loss_preempts_take_profit(self, clock, fake_sleep, journal, make_observation):
        exchange = MockExchange(bid=49_700.0)
        capital, scanner, lane = _build_stack(clock, fake_sleep, journal, make_observation(), exchange)
        await scanner.scan_once()

        result = await lane.run_cycle()

        assert result.exit_reason == ExitReason.STOP_LOSS
        assert result.actual_net_profit < 0
        assert capital.get_balance("binance") < 10_000.0
        assert capital.check_invariants() == []
        assert journal.get_performance_stats()["exit_reasons"] == {"STOP_LOSS": 1}

    @pytest.mark.asyncio
    async def test_rejections_reach_journal(self, clock, fake_sleep, journal, make_observation):
        exchange = MockExchange()
        _, scanner, _ = _build_stack(
            clock, fake_sleep, journal, make_observation(volume_24h=10_000), exchange,
        )

        assert await scanner.scan_once() == []

        assert journal.get_rejection_counts() == {RejectionCategory.VOLUME.value: 1}
