"""
Trade Opportunity Qualification and Execution-Lifecycle Engine

Scans a symbol universe for fee-viable opportunities, sizes them so every
trade can clear a minimum net profit, and runs each through a bounded,
single-position lifecycle per exchange lane.
"""

__version__ = "0.1.0"
__author__ = "Arb Engine Team"

from .core.models import Opportunity, PositionSizeResult, TradeCycleResult
from .core.enums import ExitReason, Side, TradingState
from .sizing.position_sizer import PositionSizer, calculate_position_size
from .scanner.market_scanner import OpportunityScanner
from .capital.manager import CapitalManager
from .lifecycle.state_machine import TradingStateMachine
from .lifecycle.lanes import LaneManager, TradingLane

__all__ = [
    "Opportunity",
    "PositionSizeResult",
    "TradeCycleResult",
    "ExitReason",
    "Side",
    "TradingState",
    "PositionSizer",
    "calculate_position_size",
    "OpportunityScanner",
    "CapitalManager",
    "TradingStateMachine",
    "LaneManager",
    "TradingLane",
]
