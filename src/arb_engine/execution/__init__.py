"""Execution module for order placement and exit monitoring."""

from .engine import (
    ExchangeConnector,
    CCXTExchangeConnector,
    ExecutionEngine,
    ExecutionOutcome,
    trailing_stop_for,
)

__all__ = [
    "ExchangeConnector",
    "CCXTExchangeConnector",
    "ExecutionEngine",
    "ExecutionOutcome",
    "trailing_stop_for",
]
