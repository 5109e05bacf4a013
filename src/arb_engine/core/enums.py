"""Core enumerations for the arbitrage engine."""

from enum import Enum


class Side(str, Enum):
    """Position sides."""
    LONG = "long"
    SHORT = "short"


class TradingState(str, Enum):
    """Lifecycle states of a trading lane."""
    IDLE = "Idle"
    QUALIFIED = "Qualified"
    ENTERED = "Entered"
    PROFIT_LOCK = "ProfitLock"
    EXIT = "Exit"
    SPEED_ADJUST = "SpeedAdjust"
    AI_ANALYSIS = "AIAnalysis"
    SELF_AUDIT = "SelfAudit"
    DASHBOARD = "Dashboard"


class ExitReason(str, Enum):
    """Why a position was closed."""
    TAKE_PROFIT = "TAKE_PROFIT"
    STOP_LOSS = "STOP_LOSS"
    TRAILING_STOP = "TRAILING_STOP"
    TIMEOUT = "TIMEOUT"
    MANUAL = "MANUAL"
    ERROR = "ERROR"


class RejectionCategory(str, Enum):
    """Categories used to bucket scanner rejections."""
    VOLUME = "volume"
    VOLATILITY = "volatility"
    MOMENTUM = "momentum"
    SPREAD = "spread"
    TIMING = "timing"
    DURATION = "duration"
    FEES = "fees"
    CAPITAL = "capital"
    OTHER = "other"


class ScannerStatus(str, Enum):
    """Scanner health."""
    STOPPED = "stopped"
    RUNNING = "running"
    DEGRADED = "degraded"


class OrderType(str, Enum):
    """Order types."""
    MARKET = "market"
    LIMIT = "limit"


class OrderStatus(str, Enum):
    """Order statuses."""
    PENDING = "pending"
    FILLED = "filled"
    CANCELLED = "cancelled"
    REJECTED = "rejected"


class SpeedMode(str, Enum):
    """Trade cadence modes picked from the rolling hit rate."""
    SLOW = "slow"
    NORMAL = "normal"
    FAST = "fast"


class SizingRejection(str, Enum):
    """Machine-readable reasons a position size is not viable."""
    EDGE_BELOW_FEES = "EDGE_BELOW_FEES"
    MIN_NOTIONAL_EXCEEDS_CAP = "MIN_NOTIONAL_EXCEEDS_CAP"
    NO_CAPITAL = "NO_CAPITAL"
