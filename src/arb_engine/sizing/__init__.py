"""Fee-aware position sizing."""

from .position_sizer import (
    PositionSizer,
    calculate_position_size,
    size_for_one_dollar_profit,
    size_across_exchanges,
)
from .fees import (
    DEFAULT_EXCHANGE_FEES,
    EXCHANGE_MIN_NOTIONAL,
    get_fee_rate,
    get_min_notional,
    get_vip_tier_fees,
    get_available_tiers,
    effective_fee_rate,
)

__all__ = [
    "PositionSizer",
    "calculate_position_size",
    "size_for_one_dollar_profit",
    "size_across_exchanges",
    "DEFAULT_EXCHANGE_FEES",
    "EXCHANGE_MIN_NOTIONAL",
    "get_fee_rate",
    "get_min_notional",
    "get_vip_tier_fees",
    "get_available_tiers",
    "effective_fee_rate",
]
