"""Exchange fee schedules and minimum order notionals."""

from typing import Dict, List, Mapping, Optional


BINANCE_VIP_TIERS: Dict[str, Dict[str, float]] = {
    "standard": {"maker": 0.001, "taker": 0.001},
    "vip1": {"maker": 0.0009, "taker": 0.001},
    "vip2": {"maker": 0.0008, "taker": 0.001},
    "vip3": {"maker": 0.0007, "taker": 0.0009},
    "vip4": {"maker": 0.0006, "taker": 0.0008},
    "vip5": {"maker": 0.0005, "taker": 0.0007},
}

OKX_VIP_TIERS: Dict[str, Dict[str, float]] = {
    "standard": {"maker": 0.0008, "taker": 0.001},
    "vip1": {"maker": 0.0006, "taker": 0.0009},
    "vip2": {"maker": 0.0005, "taker": 0.0008},
    "vip3": {"maker": 0.00035, "taker": 0.0006},
}

BYBIT_VIP_TIERS: Dict[str, Dict[str, float]] = {
    "standard": {"maker": 0.001, "taker": 0.001},
    "vip1": {"maker": 0.0008, "taker": 0.001},
    "vip2": {"maker": 0.0006, "taker": 0.0009},
    "vip3": {"maker": 0.0004, "taker": 0.0007},
}

VIP_TIERS: Dict[str, Dict[str, Dict[str, float]]] = {
    "binance": BINANCE_VIP_TIERS,
    "okx": OKX_VIP_TIERS,
    "bybit": BYBIT_VIP_TIERS,
}

DEFAULT_EXCHANGE_FEES: Dict[str, float] = {
    "binance": 0.001,
    "okx": 0.0008,
    "bybit": 0.001,
    "kraken": 0.0016,
    "nexo": 0.002,
    "kucoin": 0.001,
    "hyperliquid": 0.0002,
}

EXCHANGE_MIN_NOTIONAL: Dict[str, float] = {
    "binance": 5.0,
    "okx": 5.0,
    "bybit": 5.0,
    "kraken": 10.0,
    "nexo": 10.0,
    "kucoin": 5.0,
    "hyperliquid": 1.0,
}

DEFAULT_FEE_RATE = 0.001
DEFAULT_MIN_NOTIONAL = 5.0
BNB_DISCOUNT = 0.75


def get_fee_rate(exchange: str, overrides: Optional[Mapping[str, float]] = None) -> float:
    """Taker fee for *exchange*; configured overrides win over the default table."""
    name = exchange.lower()
    if overrides and name in overrides:
        return float(overrides[name])
    return DEFAULT_EXCHANGE_FEES.get(name, DEFAULT_FEE_RATE)


def get_min_notional(exchange: str, overrides: Optional[Mapping[str, float]] = None) -> float:
    """Minimum order notional for *exchange*."""
    name = exchange.lower()
    if overrides and name in overrides:
        return float(overrides[name])
    return EXCHANGE_MIN_NOTIONAL.get(name, DEFAULT_MIN_NOTIONAL)


def get_vip_tier_fees(exchange: str, tier: str, has_bnb_discount: bool = False) -> Dict[str, float]:
    """Maker/taker fees for a VIP tier. Unknown tiers fall back to ``standard``."""
    name = exchange.lower()
    tiers = VIP_TIERS.get(name)
    if tiers is None:
        fee = DEFAULT_EXCHANGE_FEES.get(name, DEFAULT_FEE_RATE)
        return {"maker": fee, "taker": fee}

    tier_data = tiers.get(tier.lower(), tiers["standard"])
    if name == "binance" and has_bnb_discount:
        return {
            "maker": tier_data["maker"] * BNB_DISCOUNT,
            "taker": tier_data["taker"] * BNB_DISCOUNT,
        }
    return dict(tier_data)


def get_available_tiers(exchange: str) -> List[str]:
    tiers = VIP_TIERS.get(exchange.lower())
    return list(tiers.keys()) if tiers else ["standard"]


def effective_fee_rate(
    exchange: str,
    taker_fee: Optional[float] = None,
    tier: Optional[str] = None,
    bnb_discount: bool = False,
) -> float:
    """Resolve the taker fee a user actually pays.

    An explicit ``taker_fee`` wins over the tier table; the BNB discount only
    applies on binance.
    """
    name = exchange.lower()
    if taker_fee is None:
        if tier:
            return get_vip_tier_fees(name, tier, has_bnb_discount=bnb_discount)["taker"]
        taker_fee = get_fee_rate(name)

    if name == "binance" and bnb_discount:
        taker_fee *= BNB_DISCOUNT
    return taker_fee
