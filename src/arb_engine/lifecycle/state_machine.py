"""Trade lifecycle state machine.

One instance drives one lane through a bounded cycle:

    Idle -> Qualified -> Entered -> [ProfitLock] -> Exit -> SpeedAdjust
         -> AIAnalysis -> [SelfAudit -> Dashboard] -> Idle

Transitions outside ``VALID_TRANSITIONS`` are refused and leave the state
untouched. ``force_transition`` exists only for fault recovery and is
always logged as an anomaly.
"""

import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from ..core.enums import ExitReason, Side, TradingState
from ..core.errors import InvalidTransitionError
from ..core.models import Opportunity, Position, StateTransition, TradeCycleResult

logger = logging.getLogger(__name__)


VALID_TRANSITIONS: Dict[TradingState, Tuple[TradingState, ...]] = {
    TradingState.IDLE: (TradingState.QUALIFIED,),
    TradingState.QUALIFIED: (TradingState.ENTERED, TradingState.IDLE),
    TradingState.ENTERED: (TradingState.PROFIT_LOCK, TradingState.EXIT),
    TradingState.PROFIT_LOCK: (TradingState.EXIT,),
    TradingState.EXIT: (TradingState.SPEED_ADJUST,),
    TradingState.SPEED_ADJUST: (TradingState.AI_ANALYSIS,),
    TradingState.AI_ANALYSIS: (TradingState.SELF_AUDIT, TradingState.IDLE),
    TradingState.SELF_AUDIT: (TradingState.DASHBOARD,),
    TradingState.DASHBOARD: (TradingState.IDLE,),
}


class TradingStateMachine:
    """
    Single-position lifecycle for one lane.

    When a capital manager is supplied, ``enter_position`` reserves the
    opportunity's notional inline and ``exit_position`` releases it, so the
    ledger can never lag the lifecycle.
    """

    def __init__(
        self,
        lane_id: str = "default",
        capital=None,
        record_store=None,
        config: Optional[Dict] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        defaults = self._default_config()
        if config:
            defaults.update(config)
        self.config = defaults

        self.lane_id = lane_id
        self.capital = capital
        self.record_store = record_store
        self._clock = clock

        self._state = TradingState.IDLE
        self._transitions: List[StateTransition] = []
        self.current_opportunity: Optional[Opportunity] = None
        self.trailing_stop_price: Optional[float] = None
        self.entry_price: Optional[float] = None
        self._position_id: Optional[str] = None
        self._cycle_start: Optional[datetime] = None

        self.trade_count = 0
        self.anomaly_count = 0
        self.capital_aborts = 0
        self.results: List[TradeCycleResult] = []
        self.last_cooldown_seconds: Optional[float] = None
        self.last_adjustments: List[str] = []

    @staticmethod
    def _default_config() -> Dict:
        return {
            "min_net_profit": 0.50,
            "audit_interval": 20,
        }

    @property
    def state(self) -> TradingState:
        return self._state

    # ------------------------------------------------------------------
    # Transition primitives
    # ------------------------------------------------------------------

    def can_transition(self, to: TradingState) -> bool:
        return to in VALID_TRANSITIONS.get(self._state, ())

    def transition(self, to: TradingState, reason: str, payload: Optional[Dict[str, Any]] = None) -> bool:
        """Apply a legal transition. Illegal ones return False and change nothing."""
        if not self.can_transition(to):
            self.anomaly_count += 1
            logger.warning(
                f"[{self.lane_id}] Invalid transition: {self._state.value} -> {to.value} ({reason})"
            )
            return False

        self._append(StateTransition(
            lane_id=self.lane_id,
            from_state=self._state,
            to_state=to,
            timestamp=self._clock(),
            reason=reason,
            payload=payload,
        ))
        logger.info(f"[{self.lane_id}] {self._state.value} -> {to.value}: {reason}")
        self._state = to
        return True

    def require_transition(self, to: TradingState, reason: str, payload: Optional[Dict[str, Any]] = None):
        """Like ``transition`` but raises InvalidTransitionError instead of returning False."""
        if not self.transition(to, reason, payload):
            raise InvalidTransitionError(self._state, to)

    def force_transition(self, to: TradingState, reason: str):
        """Recovery-only transition that bypasses the adjacency table."""
        self.anomaly_count += 1
        self._append(StateTransition(
            lane_id=self.lane_id,
            from_state=self._state,
            to_state=to,
            timestamp=self._clock(),
            reason=f"FORCED: {reason}",
            forced=True,
        ))
        logger.warning(f"[{self.lane_id}] FORCED: {self._state.value} -> {to.value}: {reason}")
        self._state = to

    def _append(self, transition: StateTransition):
        self._transitions.append(transition)
        if self.record_store is not None:
            try:
                self.record_store.record_transition(transition)
            except Exception as e:
                logger.error(f"[{self.lane_id}] Failed to store transition: {e}")

    # ------------------------------------------------------------------
    # Lifecycle steps
    # ------------------------------------------------------------------

    def start_qualification(self, opportunity: Opportunity) -> bool:
        if self._state != TradingState.IDLE:
            logger.warning(
                f"[{self.lane_id}] Cannot qualify: not Idle (current: {self._state.value})"
            )
            return False

        now = self._clock()
        if opportunity.is_expired(now):
            logger.warning(
                f"[{self.lane_id}] Rejecting expired opportunity {opportunity.symbol} "
                f"(expired {opportunity.expires_at.isoformat()})"
            )
            return False
        if opportunity.consumed:
            logger.warning(f"[{self.lane_id}] Opportunity {opportunity.id} already consumed")
            return False

        opportunity.consumed = True
        self.current_opportunity = opportunity
        self.trailing_stop_price = None
        self.entry_price = None
        self._cycle_start = now

        return self.transition(
            TradingState.QUALIFIED,
            f"Opportunity: {opportunity.symbol} {opportunity.side.value}",
            {
                "opportunity_id": opportunity.id,
                "symbol": opportunity.symbol,
                "side": opportunity.side.value,
                "projected_net_profit": opportunity.projected_net_profit,
            },
        )

    def enter_position(self, entry_price: Optional[float] = None) -> bool:
        """
        Enter the qualified opportunity.

        Capital is reserved first; if the exchange lacks idle notional the
        cycle returns to Idle and False is returned.
        """
        opportunity = self.current_opportunity
        if opportunity is None or not self.can_transition(TradingState.ENTERED):
            logger.warning(f"[{self.lane_id}] Cannot enter from {self._state.value}")
            return False

        price = entry_price or opportunity.entry_price
        if self.capital is not None:
            position = Position(
                id=opportunity.id,
                exchange=opportunity.exchange,
                symbol=opportunity.symbol,
                side=opportunity.side,
                entry_price=price,
                size=opportunity.position_size,
                opened_at=self._clock(),
                confidence=opportunity.confidence,
            )
            if not self.capital.reserve(opportunity.exchange, position):
                self.capital_aborts += 1
                self.transition(
                    TradingState.IDLE,
                    f"Insufficient idle capital on {opportunity.exchange} "
                    f"for ${opportunity.position_size:.2f}",
                )
                self.current_opportunity = None
                return False
            self._position_id = position.id

        self.entry_price = price
        return self.transition(
            TradingState.ENTERED,
            f"Entry at {price}",
            {"entry_price": price, "position_size": opportunity.position_size},
        )

    def activate_profit_lock(self, trailing_stop_price: float) -> bool:
        if self.current_opportunity is None:
            return False
        if not self.transition(
            TradingState.PROFIT_LOCK,
            f"Trailing stop at {trailing_stop_price}",
            {
                "trailing_stop_price": trailing_stop_price,
                "take_profit_price": self.current_opportunity.projected_exit_price,
            },
        ):
            return False
        self.trailing_stop_price = trailing_stop_price
        return True

    def exit_position(
        self,
        exit_price: float,
        exit_reason: ExitReason,
        actual_net_profit: float,
    ) -> Optional[TradeCycleResult]:
        """Close the position and produce the cycle's terminal result."""
        opportunity = self.current_opportunity
        if opportunity is None or not self.can_transition(TradingState.EXIT):
            logger.warning(f"[{self.lane_id}] Cannot exit from {self._state.value}")
            return None

        now = self._clock()
        self.trade_count += 1
        result = TradeCycleResult(
            lane_id=self.lane_id,
            trade_number=self.trade_count,
            opportunity=opportunity.model_copy(),
            success=actual_net_profit >= self.config["min_net_profit"],
            actual_net_profit=actual_net_profit,
            exit_price=exit_price,
            exit_reason=exit_reason,
            duration=now - (self._cycle_start or now),
            completed_at=now,
        )

        if self.capital is not None and self._position_id is not None:
            self.capital.on_position_exit(
                opportunity.exchange, self._position_id, exit_price, actual_net_profit
            )
            self._position_id = None

        self.transition(
            TradingState.EXIT,
            f"Exited at {exit_price}, net: ${actual_net_profit:.2f}",
            {
                "exit_price": exit_price,
                "actual_net_profit": actual_net_profit,
                "exit_reason": exit_reason.value,
            },
        )

        self.results.append(result)
        if self.record_store is not None:
            try:
                self.record_store.record_cycle_result(result)
            except Exception as e:
                logger.error(f"[{self.lane_id}] Failed to store cycle result: {e}")
        return result

    def adjust_speed(self, cooldown_seconds: Optional[float], reason: str) -> bool:
        """Record the next cooldown. None keeps the last known cooldown."""
        if cooldown_seconds is None:
            cooldown_seconds = self.last_cooldown_seconds
        if not self.transition(TradingState.SPEED_ADJUST, reason, {"cooldown_seconds": cooldown_seconds}):
            return False
        self.last_cooldown_seconds = cooldown_seconds
        return True

    def run_ai_analysis(self, adjustments: List[str]) -> bool:
        if not self.transition(
            TradingState.AI_ANALYSIS, "Analysing trade outcomes", {"adjustments": list(adjustments)}
        ):
            return False
        self.last_adjustments = list(adjustments)
        return True

    def should_audit(self) -> bool:
        return self.trade_count > 0 and self.trade_count % self.config["audit_interval"] == 0

    def generate_audit(self) -> bool:
        if not self.should_audit():
            return self.transition(TradingState.IDLE, "No audit needed, returning to Idle")
        return self.transition(
            TradingState.SELF_AUDIT, f"Generating audit report (trade #{self.trade_count})"
        )

    def generate_dashboard(self) -> bool:
        return self.transition(TradingState.DASHBOARD, "Updating dashboard snapshot")

    def return_to_idle(self) -> bool:
        """Always ends in Idle, forcing the transition if the table refuses it."""
        self.current_opportunity = None
        self.trailing_stop_price = None
        if self._state == TradingState.IDLE:
            return True
        if self.can_transition(TradingState.IDLE):
            return self.transition(TradingState.IDLE, "Ready for next opportunity")
        self.force_transition(TradingState.IDLE, f"Return to Idle from {self._state.value}")
        return True

    # ------------------------------------------------------------------
    # Full cycle
    # ------------------------------------------------------------------

    async def execute_trade_cycle(
        self,
        opportunity: Opportunity,
        execute: Callable[[Callable[[float], bool]], Awaitable],
        speed_adjust: Callable[[TradeCycleResult], Tuple[Optional[float], str]],
        ai_analysis: Callable[[TradeCycleResult], Awaitable[List[str]]],
        on_audit: Optional[Callable[[TradeCycleResult], None]] = None,
        on_dashboard: Optional[Callable[[TradeCycleResult], None]] = None,
    ) -> Optional[TradeCycleResult]:
        """
        Drive *opportunity* through one full cycle.

        *execute* receives a profit-lock callback and returns an object with
        ``exit_price``, ``net_profit`` and ``exit_reason``. Returns None when
        the opportunity was refused or entry aborted, otherwise the result.
        """
        if not self.start_qualification(opportunity):
            return None

        if not self.enter_position():
            if self._state != TradingState.IDLE:
                self.force_transition(TradingState.IDLE, "Failed to enter position")
            self.current_opportunity = None
            return None

        try:
            outcome = await execute(self.activate_profit_lock)
            exit_price = outcome.exit_price
            net_profit = outcome.net_profit
            exit_reason = outcome.exit_reason
        except Exception as e:
            logger.error(f"[{self.lane_id}] Execution failed for {opportunity.symbol}: {e}")
            exit_price = self.entry_price or opportunity.entry_price
            net_profit = 0.0
            exit_reason = ExitReason.ERROR

        result = self.exit_position(exit_price, exit_reason, net_profit)
        if result is None:
            self.return_to_idle()
            return None

        try:
            cooldown, reason = speed_adjust(result)
        except Exception as e:
            logger.error(f"[{self.lane_id}] Speed adjustment failed: {e}")
            cooldown, reason = None, "Speed adjustment unavailable, keeping last cooldown"
        self.adjust_speed(cooldown, reason)

        try:
            adjustments = await ai_analysis(result)
        except Exception as e:
            logger.warning(f"[{self.lane_id}] Analysis step failed: {e}")
            adjustments = []
        self.run_ai_analysis(adjustments)

        if self.should_audit():
            self.generate_audit()
            if on_audit is not None:
                self._run_hook(on_audit, result, "audit")
            self.generate_dashboard()
            if on_dashboard is not None:
                self._run_hook(on_dashboard, result, "dashboard")

        self.return_to_idle()
        return result

    def _run_hook(self, hook: Callable[[TradeCycleResult], None], result: TradeCycleResult, name: str):
        try:
            hook(result)
        except Exception as e:
            logger.error(f"[{self.lane_id}] {name} step failed: {e}")

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def get_transition_history(self) -> List[StateTransition]:
        return list(self._transitions)

    def get_recent_transitions(self, count: int = 10) -> List[StateTransition]:
        return self._transitions[-count:]

    def get_exit_transitions(self) -> List[StateTransition]:
        return [t for t in self._transitions if t.to_state == TradingState.EXIT]

    def reset(self):
        self._state = TradingState.IDLE
        self._transitions = []
        self.current_opportunity = None
        self.trailing_stop_price = None
        self.entry_price = None
        self._position_id = None
        self._cycle_start = None
        self.trade_count = 0
        self.anomaly_count = 0
        self.capital_aborts = 0
        self.results = []

    def get_status(self) -> Dict:
        return {
            "lane_id": self.lane_id,
            "state": self._state.value,
            "trade_count": self.trade_count,
            "anomaly_count": self.anomaly_count,
            "capital_aborts": self.capital_aborts,
            "current_symbol": self.current_opportunity.symbol if self.current_opportunity else None,
            "last_cooldown_seconds": self.last_cooldown_seconds,
        }
