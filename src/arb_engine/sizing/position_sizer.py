"""Fee-aware position sizing.

Sizes a position so that capturing the minimum edge pays the round-trip
fees and still leaves the target net profit:

    position = target_net_profit / (min_edge - 2 * fee_rate)

The result always carries the exact price move needed to realise the target
at the size actually chosen. Downstream components use that figure, not the
raw edge, as their take-profit target, since clamping to the allocation cap
or raising to the exchange minimum changes it.
"""

import logging
from typing import Dict, List, Mapping, Optional

from ..core.enums import SizingRejection
from ..core.models import PositionSizeResult
from .fees import get_fee_rate, get_min_notional

logger = logging.getLogger(__name__)


def _rejected(reason: str, code: SizingRejection) -> PositionSizeResult:
    return PositionSizeResult(
        recommended_amount=0.0,
        take_profit_percent=0.0,
        is_viable=False,
        fee_impact=0.0,
        net_profit_at_target=0.0,
        required_move_percent=0.0,
        reason=reason,
        rejection_code=code,
    )


def calculate_position_size(
    target_net_profit: float,
    fee_rate: float,
    min_edge_percent: float,
    portfolio_balance: float,
    max_allocation_percent: float = 0.5,
    exchange_min_notional: float = 5.0,
) -> PositionSizeResult:
    """Size a position for a target net profit after fees.

    Args:
        target_net_profit: Desired profit after entry and exit fees, in quote currency.
        fee_rate: Fee per leg as a fraction (0.001 = 0.1%).
        min_edge_percent: Expected edge in percent (0.6 = 0.6%).
        portfolio_balance: Capital available to size against.
        max_allocation_percent: Largest fraction of the balance one position may take.
        exchange_min_notional: Smallest order the exchange accepts.

    Returns:
        PositionSizeResult. Non-viable results carry ``reason`` and ``rejection_code``.
    """
    if target_net_profit <= 0:
        raise ValueError(f"Target net profit must be positive, got {target_net_profit}")
    if fee_rate < 0:
        raise ValueError(f"Fee rate must be non-negative, got {fee_rate}")
    if not 0 < max_allocation_percent <= 1:
        raise ValueError(f"Max allocation must be in (0, 1], got {max_allocation_percent}")
    if portfolio_balance < 0:
        raise ValueError(f"Portfolio balance must be non-negative, got {portfolio_balance}")

    round_trip_fees = fee_rate * 2
    edge = min_edge_percent / 100

    if edge <= round_trip_fees:
        return _rejected(
            f"Fee rate {round_trip_fees * 100:.2f}% exceeds edge {min_edge_percent:.2f}%",
            SizingRejection.EDGE_BELOW_FEES,
        )

    net_edge = edge - round_trip_fees
    required_size = target_net_profit / net_edge

    max_from_portfolio = portfolio_balance * max_allocation_percent
    amount = min(required_size, max_from_portfolio)

    if amount < exchange_min_notional:
        if exchange_min_notional > max_from_portfolio:
            return _rejected(
                f"Min notional ${exchange_min_notional} exceeds "
                f"{max_allocation_percent * 100:.0f}% of portfolio (${max_from_portfolio:.2f})",
                SizingRejection.MIN_NOTIONAL_EXCEEDS_CAP,
            )
        amount = exchange_min_notional

    if amount <= 0:
        return _rejected(
            f"No capital to allocate (balance ${portfolio_balance:.2f})",
            SizingRejection.NO_CAPITAL,
        )

    fee_impact = amount * round_trip_fees
    net_profit_at_target = amount * edge - fee_impact
    required_move_percent = (target_net_profit + fee_impact) / amount * 100

    return PositionSizeResult(
        recommended_amount=round(amount, 2),
        take_profit_percent=required_move_percent,
        is_viable=True,
        fee_impact=round(fee_impact, 2),
        net_profit_at_target=round(net_profit_at_target, 2),
        required_move_percent=round(required_move_percent, 3),
    )


def size_for_one_dollar_profit(
    fee_rate: float,
    portfolio_balance: float,
    exchange: str = "binance",
    min_edge_percent: float = 0.6,
) -> PositionSizeResult:
    """Convenience sizing for a $1.00 net target."""
    return calculate_position_size(
        target_net_profit=1.00,
        fee_rate=fee_rate,
        min_edge_percent=min_edge_percent,
        portfolio_balance=portfolio_balance,
        max_allocation_percent=0.5,
        exchange_min_notional=get_min_notional(exchange),
    )


def size_across_exchanges(
    portfolio_balance: float,
    fee_rates: Mapping[str, float],
    min_edge_percent: float = 0.6,
) -> List[Dict]:
    """Size a $1 target on every exchange; viable first, smallest position first."""
    results = []
    for exchange, fee_rate in fee_rates.items():
        sizing = size_for_one_dollar_profit(fee_rate, portfolio_balance, exchange, min_edge_percent)
        results.append({
            "exchange": exchange,
            "effective_fee_rate": fee_rate,
            "position_needed": sizing.recommended_amount,
            "required_move": sizing.required_move_percent,
            "is_viable": sizing.is_viable,
            "reason": sizing.reason,
        })

    results.sort(key=lambda r: (not r["is_viable"], r["position_needed"]))
    return results


class PositionSizer:
    """Binds the sizing function to configured targets and exchange fee tables."""

    def __init__(self, config: Optional[Dict] = None):
        defaults = self._default_config()
        if config:
            defaults.update(config)
        self.config = defaults

    @staticmethod
    def _default_config() -> Dict:
        return {
            "target_net_profit": 1.00,
            "min_edge_percent": 0.6,
            "max_allocation_percent": 0.5,
            "fee_rates": {},
            "min_notionals": {},
        }

    def fee_rate(self, exchange: str) -> float:
        return get_fee_rate(exchange, self.config["fee_rates"])

    def min_notional(self, exchange: str) -> float:
        return get_min_notional(exchange, self.config["min_notionals"])

    def size(self, exchange: str, portfolio_balance: float) -> PositionSizeResult:
        """Size a position on *exchange* against *portfolio_balance*."""
        result = calculate_position_size(
            target_net_profit=self.config["target_net_profit"],
            fee_rate=self.fee_rate(exchange),
            min_edge_percent=self.config["min_edge_percent"],
            portfolio_balance=portfolio_balance,
            max_allocation_percent=self.config["max_allocation_percent"],
            exchange_min_notional=self.min_notional(exchange),
        )
        if not result.is_viable:
            logger.debug(f"Sizing on {exchange} not viable: {result.reason}")
        return result
