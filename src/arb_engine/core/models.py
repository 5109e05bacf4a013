"""Core data models for the arbitrage engine."""

import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .enums import (
    Side, TradingState, ExitReason, OrderType, OrderStatus, SizingRejection
)


class PriceObservation(BaseModel):
    """Snapshot of a symbol supplied by the price feed each scan tick."""

    symbol: str = Field(description="Trading symbol")
    price: float = Field(gt=0, description="Last traded price")
    change_24h: float = Field(default=0.0, description="24h price change in %")
    volume_24h: float = Field(default=0.0, ge=0, description="24h quote volume")
    bid: Optional[float] = Field(default=None, description="Best bid")
    ask: Optional[float] = Field(default=None, description="Best ask")
    last_updated: datetime = Field(default_factory=datetime.now, description="Observation time")

    @property
    def spread(self) -> Optional[float]:
        """Relative bid/ask spread, or None when the book is unknown."""
        if not self.bid or not self.ask:
            return None
        return (self.ask - self.bid) / self.price

    def age_seconds(self, now: datetime) -> float:
        return (now - self.last_updated).total_seconds()


class BookTicker(BaseModel):
    """Top of book for a symbol."""

    symbol: str = Field(description="Trading symbol")
    bid: float = Field(description="Best bid")
    ask: float = Field(description="Best ask")
    timestamp: datetime = Field(default_factory=datetime.now, description="Ticker time")

    @property
    def mid(self) -> float:
        return (self.bid + self.ask) / 2


class PositionSizeResult(BaseModel):
    """Output of the fee-aware position sizer."""

    model_config = ConfigDict(frozen=True)

    recommended_amount: float = Field(description="Notional to deploy")
    take_profit_percent: float = Field(description="Price move in % to target, at the chosen size")
    is_viable: bool = Field(description="Whether the trade can pay its fees")
    fee_impact: float = Field(description="Round-trip fees at the chosen size")
    net_profit_at_target: float = Field(description="Net profit if the edge is captured")
    required_move_percent: float = Field(description="Rounded copy of take_profit_percent")
    reason: Optional[str] = Field(default=None, description="Human readable rejection reason")
    rejection_code: Optional[SizingRejection] = Field(default=None, description="Rejection code")


class Opportunity(BaseModel):
    """A qualified, sized and expiring trade candidate."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), description="Opportunity ID")
    symbol: str = Field(description="Trading symbol")
    exchange: str = Field(description="Exchange the trade is sized for")
    side: Side = Field(description="Trade direction")
    entry_price: float = Field(gt=0, description="Expected entry price")
    projected_exit_price: float = Field(gt=0, description="Take-profit price")
    stop_loss_price: float = Field(gt=0, description="Stop-loss price")
    take_profit_percent: float = Field(description="Required move in % at the sized notional")
    projected_net_profit: float = Field(description="Net profit after fees and slippage budget")
    fees: float = Field(ge=0, description="Projected round-trip fees")
    slippage_budget: float = Field(ge=0, description="Slippage allowance in quote currency")
    position_size: float = Field(gt=0, description="Notional size")
    score: float = Field(default=0.0, description="Composite opportunity score (0-100)")
    confidence: float = Field(default=0.0, ge=0, le=100, description="Confidence (0-100)")
    created_at: datetime = Field(default_factory=datetime.now, description="Creation time")
    expires_at: datetime = Field(description="Discard after this time")
    consumed: bool = Field(default=False, description="Set once a lane has taken it")

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at


class StateTransition(BaseModel):
    """Append-only lifecycle log entry."""

    model_config = ConfigDict(frozen=True)

    lane_id: str = Field(description="Lane that transitioned")
    from_state: TradingState = Field(description="Previous state")
    to_state: TradingState = Field(description="New state")
    timestamp: datetime = Field(default_factory=datetime.now, description="Transition time")
    reason: str = Field(description="Why the transition happened")
    payload: Optional[Dict[str, Any]] = Field(default=None, description="Extra context")
    forced: bool = Field(default=False, description="Recovery transition outside the table")


class TradeCycleResult(BaseModel):
    """Terminal outcome of one lifecycle cycle."""

    model_config = ConfigDict(frozen=True)

    lane_id: str = Field(description="Lane that ran the cycle")
    trade_number: int = Field(description="Completed trade count for the lane")
    opportunity: Opportunity = Field(description="Opportunity that was traded")
    success: bool = Field(description="Net profit reached the minimum threshold")
    actual_net_profit: float = Field(description="Realised net profit")
    exit_price: float = Field(description="Exit price")
    exit_reason: ExitReason = Field(description="Why the position closed")
    duration: timedelta = Field(description="Qualification to exit")
    completed_at: datetime = Field(default_factory=datetime.now, description="Exit time")


class Position(BaseModel):
    """Capital-ledger view of an open position."""

    id: str = Field(description="Position ID")
    exchange: str = Field(description="Exchange")
    symbol: str = Field(description="Trading symbol")
    side: Side = Field(default=Side.LONG, description="Position side")
    entry_price: float = Field(gt=0, description="Entry price")
    size: float = Field(gt=0, description="Notional committed")
    opened_at: datetime = Field(default_factory=datetime.now, description="Open time")
    confidence: float = Field(default=0.0, description="Confidence at entry (0-100)")


class ExchangeCapital(BaseModel):
    """Capital status for one exchange account."""

    name: str = Field(description="Exchange name")
    total: float = Field(default=0.0, description="Total balance")
    deployed: float = Field(default=0.0, ge=0, description="Notional committed to positions")
    idle: float = Field(default=0.0, description="total - deployed")
    utilization_percent: float = Field(default=0.0, description="deployed / total in %")
    position_count: int = Field(default=0, description="Open positions")
    last_updated: Optional[datetime] = Field(default=None, description="Last ledger change")


class CapitalSummary(BaseModel):
    """Per-exchange capital with aggregate roll-ups."""

    exchanges: List[ExchangeCapital] = Field(default_factory=list, description="Per exchange")
    total: float = Field(default=0.0, description="Sum of totals")
    deployed: float = Field(default=0.0, description="Sum of deployed")
    idle: float = Field(default=0.0, description="Sum of idle")
    utilization_percent: float = Field(default=0.0, description="Aggregate utilization %")


class Order(BaseModel):
    """Order model."""

    id: str = Field(description="Order ID")
    symbol: str = Field(description="Trading symbol")
    side: Side = Field(description="Order side")
    order_type: OrderType = Field(description="Order type")
    quantity: float = Field(description="Order quantity in base units")
    price: Optional[float] = Field(default=None, description="Limit price")

    status: OrderStatus = Field(default=OrderStatus.PENDING, description="Order status")
    created_at: datetime = Field(default_factory=datetime.now, description="Creation time")

    filled_quantity: float = Field(default=0.0, description="Filled quantity")
    average_fill_price: Optional[float] = Field(default=None, description="Average fill price")
    commission: float = Field(default=0.0, description="Commission paid in quote currency")

    @field_validator('quantity')
    @classmethod
    def validate_quantity(cls, v):
        if v < 0:
            raise ValueError("Quantity must be non-negative")
        return v
