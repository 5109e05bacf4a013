"""Exceptions raised by the arbitrage engine."""


class ArbEngineError(Exception):
    """Base class for engine errors."""
    pass


class InvalidTransitionError(ArbEngineError):
    """Raised when a lifecycle transition is required but not allowed."""

    def __init__(self, from_state, to_state):
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(f"Invalid transition: {from_state.value} -> {to_state.value}")


class LedgerError(ArbEngineError):
    """Raised when the capital ledger is asked to do something inconsistent."""
    pass


class ExecutionError(ArbEngineError):
    """Raised when the exchange refuses or fails an order."""
    pass


class PriceFeedError(ArbEngineError):
    """Raised when a price observation cannot be fetched."""
    pass


class StaleDataError(PriceFeedError):
    """Raised when a price observation is older than the freshness window."""
    pass
