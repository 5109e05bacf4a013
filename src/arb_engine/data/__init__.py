"""Market data module."""

from .connector import PriceFeed, CCXTPriceFeed, apply_sandbox_mode, build_ccxt_exchange

__all__ = ["PriceFeed", "CCXTPriceFeed", "apply_sandbox_mode", "build_ccxt_exchange"]
