"""Core module for the arbitrage engine."""

from .models import (
    PriceObservation, BookTicker, PositionSizeResult, Opportunity,
    StateTransition, TradeCycleResult, Position, ExchangeCapital,
    CapitalSummary, Order
)
from .enums import (
    Side, TradingState, ExitReason, RejectionCategory, ScannerStatus,
    OrderType, OrderStatus, SpeedMode, SizingRejection
)
from .errors import (
    ArbEngineError, InvalidTransitionError, LedgerError, ExecutionError,
    PriceFeedError, StaleDataError
)

__all__ = [
    "PriceObservation",
    "BookTicker",
    "PositionSizeResult",
    "Opportunity",
    "StateTransition",
    "TradeCycleResult",
    "Position",
    "ExchangeCapital",
    "CapitalSummary",
    "Order",
    "Side",
    "TradingState",
    "ExitReason",
    "RejectionCategory",
    "ScannerStatus",
    "OrderType",
    "OrderStatus",
    "SpeedMode",
    "SizingRejection",
    "ArbEngineError",
    "InvalidTransitionError",
    "LedgerError",
    "ExecutionError",
    "PriceFeedError",
    "StaleDataError",
]
