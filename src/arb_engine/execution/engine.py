"""Order execution: exchange connectors and the bounded exit monitor."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Optional
import asyncio
import logging
from datetime import datetime, timedelta

import ccxt.async_support as ccxt

from ..core.enums import ExitReason, OrderStatus, OrderType, Side
from ..core.errors import ExecutionError
from ..core.models import BookTicker, Opportunity, Order
from ..data.connector import apply_sandbox_mode, build_ccxt_exchange
from ..sizing.fees import get_fee_rate

logger = logging.getLogger(__name__)

OPERATIONAL_ERRORS = ('-2019', 'insufficient', '-1121', '-2010', '-4131')
PROFIT_LOCK_TRAIL = 0.002


def trailing_stop_for(side: Side, price: float) -> float:
    """Trailing stop 0.2% behind *price* on the losing side of the position."""
    if side == Side.LONG:
        return price * (1 - PROFIT_LOCK_TRAIL)
    return price * (1 + PROFIT_LOCK_TRAIL)


class ExchangeConnector(ABC):
    """Order execution collaborator."""

    @abstractmethod
    async def place_order(
        self,
        symbol: str,
        order_type: OrderType,
        side: Side,
        amount: float,
        price: Optional[float] = None,
    ) -> Optional[Order]:
        """Place an order. Returns None when the exchange refuses it for operational reasons."""
        pass

    @abstractmethod
    async def get_order_status(self, order_id: str, symbol: str) -> Optional[Order]:
        """Get order status."""
        pass

    @abstractmethod
    async def cancel_order(self, order_id: str, symbol: str) -> bool:
        """Cancel an order."""
        pass

    @abstractmethod
    async def get_book_ticker(self, symbol: str) -> BookTicker:
        """Get best bid/ask."""
        pass

    @abstractmethod
    async def get_balance(self, currency: str = "USDT") -> float:
        """Get total balance of *currency*."""
        pass

    async def close(self):
        """Close connection."""
        pass


class CCXTExchangeConnector(ExchangeConnector):
    """CCXT-based exchange connector."""

    def __init__(self, exchange_name: str, config: Optional[Dict] = None):
        self.exchange_name = exchange_name
        self.config = config or {}
        self.exchange = build_ccxt_exchange(exchange_name, self.config)
        if self.config.get('sandbox', False):
            apply_sandbox_mode(self.exchange, exchange_name)

        logger.info(
            f"Initialized CCXT exchange connector for {exchange_name} "
            f"(sandbox={self.config.get('sandbox', False)})"
        )

    async def place_order(
        self,
        symbol: str,
        order_type: OrderType,
        side: Side,
        amount: float,
        price: Optional[float] = None,
    ) -> Optional[Order]:
        ccxt_side = self._map_side(side)
        try:
            amount = await self._clamp_amount(symbol, amount)
            if amount <= 0:
                raise ExecutionError(f"Order amount for {symbol} is zero after applying exchange limits")

            if order_type == OrderType.MARKET:
                result = await self.exchange.create_market_order(symbol, ccxt_side, amount)
            elif order_type == OrderType.LIMIT:
                result = await self.exchange.create_limit_order(symbol, ccxt_side, amount, price)
            else:
                raise ValueError(f"Unsupported order type: {order_type}")

            order = self._to_order(result, symbol, side, order_type, amount, price)
            logger.info(f"Created order: {order.id} {order.side.value} {order.quantity} {symbol}")
            return order

        except ExecutionError:
            raise
        except ccxt.InsufficientFunds as e:
            logger.warning(f"Insufficient funds to create order for {symbol}: {e}")
            return None
        except Exception as e:
            error_str = str(e)
            if any(code in error_str or code in error_str.lower() for code in OPERATIONAL_ERRORS):
                logger.warning(f"Order rejected for {symbol}: {e}")
                return None
            logger.error(f"Error creating order for {symbol}: {e}")
            raise ExecutionError(f"Order placement failed for {symbol}: {e}") from e

    async def get_order_status(self, order_id: str, symbol: str) -> Optional[Order]:
        try:
            result = await self.exchange.fetch_order(order_id, symbol)
        except Exception as e:
            error_str = str(e)
            if any(phrase in error_str for phrase in ['does not exist', 'not found', '-2013']):
                logger.debug(f"Order {order_id} not found on exchange: {e}")
            else:
                logger.error(f"Error fetching order {order_id}: {e}")
            return None

        side = Side.LONG if (result.get('side') or 'buy').lower() == 'buy' else Side.SHORT
        try:
            order_type = OrderType((result.get('type') or 'market').lower())
        except ValueError:
            order_type = OrderType.MARKET
        return self._to_order(
            result, symbol, side, order_type, result.get('amount') or 0, result.get('price')
        )

    async def cancel_order(self, order_id: str, symbol: str) -> bool:
        try:
            await self.exchange.cancel_order(order_id, symbol)
            logger.info(f"Cancelled order: {order_id}")
            return True
        except Exception as e:
            logger.error(f"Error cancelling order {order_id}: {e}")
            return False

    async def get_book_ticker(self, symbol: str) -> BookTicker:
        ticker = await self.exchange.fetch_ticker(symbol)
        last = ticker.get('last') or 0.0
        timestamp = ticker.get('timestamp')
        return BookTicker(
            symbol=symbol,
            bid=ticker.get('bid') or last,
            ask=ticker.get('ask') or last,
            timestamp=datetime.fromtimestamp(timestamp / 1000) if timestamp else datetime.now(),
        )

    async def get_balance(self, currency: str = "USDT") -> float:
        """Total balance (free + used) of *currency*."""
        balance = await self.exchange.fetch_balance()
        total = balance.get('total', {}).get(currency)
        if total is None:
            total = balance.get('free', {}).get(currency)
        return float(total or 0.0)

    async def _clamp_amount(self, symbol: str, amount: float) -> float:
        """Clamp order amount to exchange min/max and precision."""
        try:
            if not self.exchange.markets:
                await self.exchange.load_markets()
            market = self.exchange.markets.get(symbol)
            if not market:
                return amount

            limits = market.get('limits', {}).get('amount', {})
            max_qty = limits.get('max')
            min_qty = limits.get('min')
            if max_qty and amount > max_qty:
                logger.warning(f"{symbol}: clamping amount {amount} -> {max_qty} (exchange max)")
                amount = max_qty
            if min_qty and amount < min_qty:
                logger.warning(f"{symbol}: amount {amount} below exchange min {min_qty}")
                return 0
            return float(self.exchange.amount_to_precision(symbol, amount))
        except Exception as e:
            logger.warning(f"Could not clamp amount for {symbol}: {e}")
            return amount

    def _to_order(
        self,
        result: Dict,
        symbol: str,
        side: Side,
        order_type: OrderType,
        amount: float,
        price: Optional[float],
    ) -> Order:
        fee = result.get('fee') or {}
        return Order(
            id=result.get('id', ''),
            symbol=symbol,
            side=side,
            order_type=order_type,
            quantity=amount,
            price=price,
            status=self._map_order_status(result.get('status')),
            created_at=datetime.fromtimestamp(result['timestamp'] / 1000) if result.get('timestamp') else datetime.now(),
            filled_quantity=result.get('filled') or 0,
            average_fill_price=result.get('average'),
            commission=float(fee.get('cost') or 0),
        )

    @staticmethod
    def _map_side(side: Side) -> str:
        return 'buy' if side == Side.LONG else 'sell'

    @staticmethod
    def _map_order_status(ccxt_status: Optional[str]) -> OrderStatus:
        mapping = {
            'open': OrderStatus.PENDING,
            'closed': OrderStatus.FILLED,
            'canceled': OrderStatus.CANCELLED,
            'cancelled': OrderStatus.CANCELLED,
            'rejected': OrderStatus.REJECTED,
            'expired': OrderStatus.CANCELLED,
        }
        if not ccxt_status:
            return OrderStatus.PENDING
        return mapping.get(ccxt_status.lower(), OrderStatus.PENDING)

    async def close(self):
        await self.exchange.close()
        logger.info(f"Closed connection to {self.exchange_name}")


@dataclass
class ExecutionOutcome:
    """What happened to one executed opportunity."""

    exit_price: float
    net_profit: float
    exit_reason: ExitReason
    entry_price: float
    quantity: float
    fees: float
    profit_locked: bool = False
    entry_order_id: Optional[str] = None
    exit_order_id: Optional[str] = None


ProfitLockCallback = Callable[[float], bool]


class ExecutionEngine:
    """
    Executes an opportunity end to end on one exchange.

    Entry is a market order. The exit is a take-profit limit order watched
    for at most ``exit_timeout_seconds``; every poll also checks the book so
    a stop-loss or armed trailing-stop breach preempts the limit order. On
    timeout the limit is cancelled and the position closed at market, so
    exposure never outlives the bound.
    """

    def __init__(
        self,
        connector: ExchangeConnector,
        config: Optional[Dict] = None,
        clock: Callable[[], datetime] = datetime.now,
        sleep: Callable[[float], Awaitable] = asyncio.sleep,
    ):
        defaults = self._default_config()
        if config:
            defaults.update(config)
        self.config = defaults
        self.connector = connector
        self._clock = clock
        self._sleep = sleep
        logger.info("Execution engine initialized")

    @staticmethod
    def _default_config() -> Dict:
        return {
            "poll_interval_seconds": 2.0,
            "exit_timeout_seconds": 30.0,
            "entry_fill_timeout_seconds": 10.0,
            "fee_rate": None,
            "profit_lock_enabled": True,
        }

    def _fee_rate(self, exchange: str) -> float:
        rate = self.config["fee_rate"]
        return rate if rate is not None else get_fee_rate(exchange)

    async def execute(
        self,
        opportunity: Opportunity,
        on_profit_lock: Optional[ProfitLockCallback] = None,
    ) -> ExecutionOutcome:
        symbol = opportunity.symbol
        side = opportunity.side
        exit_side = Side.SHORT if side == Side.LONG else Side.LONG
        fee_rate = self._fee_rate(opportunity.exchange)

        quantity = opportunity.position_size / opportunity.entry_price
        entry_order = await self.connector.place_order(symbol, OrderType.MARKET, side, quantity)
        if entry_order is None:
            raise ExecutionError(f"Entry order for {symbol} was rejected")

        filled = await self._wait_for_fill(entry_order, self.config["entry_fill_timeout_seconds"])
        if filled is None or filled.status != OrderStatus.FILLED:
            # The unfilled remainder must not rest on the book untracked
            filled = await self._cancel_and_refresh(entry_order, filled)
        if filled is None or filled.filled_quantity <= 0:
            raise ExecutionError(f"Entry order {entry_order.id} for {symbol} did not fill")
        if filled.filled_quantity < quantity:
            logger.warning(
                f"Entry {entry_order.id} for {symbol} partially filled: "
                f"{filled.filled_quantity} of {quantity}, trading the filled part"
            )

        fill_price = filled.average_fill_price or opportunity.entry_price
        quantity = filled.filled_quantity
        entry_fee = filled.commission or fill_price * quantity * fee_rate
        logger.info(f"Entered {side.value} {quantity} {symbol} @ {fill_price}")

        direction = 1 if side == Side.LONG else -1
        take_profit = fill_price * (1 + direction * opportunity.take_profit_percent / 100)
        stop_loss = opportunity.stop_loss_price

        exit_order = await self.connector.place_order(
            symbol, OrderType.LIMIT, exit_side, quantity, price=take_profit
        )
        if exit_order is None:
            logger.error(f"Take-profit order for {symbol} rejected, closing at market")
            return await self._close_at_market(
                opportunity, entry_order, quantity, fill_price, entry_fee, fill_price, ExitReason.ERROR
            )

        last_price = fill_price
        status: Optional[Order] = None
        trailing_stop: Optional[float] = None
        deadline = self._clock() + timedelta(seconds=self.config["exit_timeout_seconds"])

        while True:
            try:
                status = await self.connector.get_order_status(exit_order.id, symbol)
                if status is not None and status.status == OrderStatus.FILLED:
                    exit_price = status.average_fill_price or take_profit
                    exit_fee = status.commission or exit_price * quantity * fee_rate
                    return self._outcome(
                        fill_price, exit_price, quantity, side, entry_fee + exit_fee,
                        ExitReason.TAKE_PROFIT, trailing_stop is not None, entry_order, status.id,
                    )

                ticker = await self.connector.get_book_ticker(symbol)
                # price the position could be closed at
                last_price = ticker.bid if side == Side.LONG else ticker.ask

                if direction * (last_price - stop_loss) <= 0:
                    logger.warning(f"{symbol} stop-loss breached at {last_price} (stop {stop_loss})")
                    return await self._cancel_exit_and_close(
                        opportunity, entry_order, exit_order, status, quantity, fill_price,
                        entry_fee, last_price, ExitReason.STOP_LOSS, trailing_stop is not None,
                    )

                if trailing_stop is not None:
                    if direction * (last_price - trailing_stop) <= 0:
                        logger.info(f"{symbol} trailing stop hit at {last_price}")
                        return await self._cancel_exit_and_close(
                            opportunity, entry_order, exit_order, status, quantity, fill_price,
                            entry_fee, last_price, ExitReason.TRAILING_STOP, True,
                        )
                    ratcheted = trailing_stop_for(side, last_price)
                    if direction * (ratcheted - trailing_stop) > 0:
                        trailing_stop = ratcheted
                elif self.config["profit_lock_enabled"]:
                    unrealised = direction * (last_price - fill_price) * quantity
                    if unrealised > opportunity.fees + opportunity.slippage_budget:
                        trailing_stop = trailing_stop_for(side, last_price)
                        logger.info(f"{symbol} profit lock armed, trailing stop {trailing_stop}")
                        if on_profit_lock is not None:
                            on_profit_lock(trailing_stop)

            except Exception as e:
                logger.error(f"Error monitoring exit for {symbol}: {e}")

            if self._clock() >= deadline:
                logger.warning(f"Exit order {exit_order.id} for {symbol} timed out")
                return await self._cancel_exit_and_close(
                    opportunity, entry_order, exit_order, status, quantity, fill_price,
                    entry_fee, last_price, ExitReason.TIMEOUT, trailing_stop is not None,
                )

            await self._sleep(self.config["poll_interval_seconds"])

    async def _wait_for_fill(self, order: Order, timeout: float) -> Optional[Order]:
        """Poll until *order* fills, is cancelled/rejected, or *timeout* elapses."""
        if order.status == OrderStatus.FILLED:
            return order
        deadline = self._clock() + timedelta(seconds=timeout)
        latest = None
        while True:
            try:
                latest = await self.connector.get_order_status(order.id, order.symbol)
                if latest is not None and latest.status == OrderStatus.FILLED:
                    return latest
                if latest is not None and latest.status in (OrderStatus.CANCELLED, OrderStatus.REJECTED):
                    logger.warning(f"Order {order.id} {latest.status.value}")
                    return latest
            except Exception as e:
                logger.error(f"Error checking order status: {e}")
            if self._clock() >= deadline:
                logger.warning(f"Order {order.id} not filled within {timeout}s")
                return latest
            await self._sleep(self.config["poll_interval_seconds"])

    async def _cancel_and_refresh(self, order: Order, last_known: Optional[Order] = None) -> Optional[Order]:
        """Cancel *order* and return its status as read back after the cancel."""
        symbol = order.symbol
        try:
            if not await self.connector.cancel_order(order.id, symbol):
                logger.warning(f"Cancel of order {order.id} for {symbol} not confirmed")
        except Exception as e:
            logger.error(f"Error cancelling order {order.id} for {symbol}: {e}")
        try:
            refreshed = await self.connector.get_order_status(order.id, symbol)
        except Exception as e:
            logger.error(f"Error re-reading order {order.id} after cancel: {e}")
            refreshed = None
        return refreshed if refreshed is not None else last_known

    async def _cancel_exit_and_close(
        self,
        opportunity: Opportunity,
        entry_order: Order,
        exit_order: Order,
        last_status: Optional[Order],
        quantity: float,
        fill_price: float,
        entry_fee: float,
        reference_price: float,
        reason: ExitReason,
        profit_locked: bool,
    ) -> ExecutionOutcome:
        """
        Pull the take-profit order and flatten whatever it did not close.

        The limit can fill between the last poll and the cancel, so its
        fills are read back first. A complete fill is reported as a take
        profit; a partial fill shrinks the market close to the remainder.
        """
        fee_rate = self._fee_rate(opportunity.exchange)
        status = await self._cancel_and_refresh(exit_order, last_status)
        closed = min(status.filled_quantity, quantity) if status is not None else 0.0
        closed_price = (status.average_fill_price if status is not None else None) or exit_order.price
        closed_fee = 0.0
        if closed > 0:
            closed_fee = status.commission or closed_price * closed * fee_rate

        if status is not None and (status.status == OrderStatus.FILLED or closed >= quantity):
            logger.info(f"Take-profit {exit_order.id} for {opportunity.symbol} filled before the cancel")
            return self._outcome(
                fill_price, closed_price, quantity, opportunity.side, entry_fee + closed_fee,
                ExitReason.TAKE_PROFIT, profit_locked, entry_order, exit_order.id,
            )

        if closed > 0:
            logger.info(
                f"Take-profit {exit_order.id} for {opportunity.symbol} partially filled: "
                f"{closed} of {quantity} @ {closed_price}"
            )
        return await self._close_at_market(
            opportunity, entry_order, quantity, fill_price, entry_fee, reference_price,
            reason, profit_locked, closed, closed_price or 0.0, closed_fee,
        )

    async def _close_at_market(
        self,
        opportunity: Opportunity,
        entry_order: Order,
        quantity: float,
        fill_price: float,
        entry_fee: float,
        reference_price: float,
        reason: ExitReason,
        profit_locked: bool = False,
        closed_quantity: float = 0.0,
        closed_price: float = 0.0,
        closed_fee: float = 0.0,
    ) -> ExecutionOutcome:
        """
        Flatten the position and report the exit at *reference_price*.

        *closed_quantity* already left the position at *closed_price*; only
        the remainder is sent to market and the reported exit price blends
        both legs.
        """
        side = opportunity.side
        exit_side = Side.SHORT if side == Side.LONG else Side.LONG
        fee_rate = self._fee_rate(opportunity.exchange)
        remaining = quantity - closed_quantity

        close_order = None
        try:
            close_order = await self.connector.place_order(
                opportunity.symbol, OrderType.MARKET, exit_side, remaining
            )
        except Exception as e:
            logger.error(f"Market close for {opportunity.symbol} failed: {e}")
        if close_order is None:
            logger.error(f"{opportunity.symbol} position may still be open on {opportunity.exchange}")

        market_fee = (close_order.commission if close_order else 0) or reference_price * remaining * fee_rate
        exit_price = reference_price
        if closed_quantity > 0:
            exit_price = (closed_quantity * closed_price + remaining * reference_price) / quantity
        return self._outcome(
            fill_price, exit_price, quantity, side, entry_fee + closed_fee + market_fee, reason,
            profit_locked, entry_order, close_order.id if close_order else None,
        )

    @staticmethod
    def _outcome(
        entry_price: float,
        exit_price: float,
        quantity: float,
        side: Side,
        fees: float,
        reason: ExitReason,
        profit_locked: bool,
        entry_order: Order,
        exit_order_id: Optional[str],
    ) -> ExecutionOutcome:
        direction = 1 if side == Side.LONG else -1
        gross = direction * (exit_price - entry_price) * quantity
        net = round(gross - fees, 4)
        logger.info(f"Exit {reason.value} @ {exit_price}: gross {gross:.4f}, fees {fees:.4f}, net {net:.4f}")
        return ExecutionOutcome(
            exit_price=exit_price,
            net_profit=net,
            exit_reason=reason,
            entry_price=entry_price,
            quantity=quantity,
            fees=round(fees, 4),
            profit_locked=profit_locked,
            entry_order_id=entry_order.id,
            exit_order_id=exit_order_id,
        )
