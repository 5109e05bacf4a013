"""Trade lifecycle module."""

from .state_machine import TradingStateMachine, VALID_TRANSITIONS
from .speed import SpeedController, SpeedModeChange, COOLDOWNS, mode_for_hit_rate
from .audit import AuditReport, AuditReporter, InvariantCheck, build_dashboard_snapshot
from .lanes import LaneManager, TradingLane

__all__ = [
    "TradingStateMachine",
    "VALID_TRANSITIONS",
    "SpeedController",
    "SpeedModeChange",
    "COOLDOWNS",
    "mode_for_hit_rate",
    "AuditReport",
    "AuditReporter",
    "InvariantCheck",
    "build_dashboard_snapshot",
    "LaneManager",
    "TradingLane",
]
