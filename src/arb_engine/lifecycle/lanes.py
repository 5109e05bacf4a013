"""Trading lanes.

A lane is one independent single-position runner, usually one per
exchange. Each lane owns its state machine, speed controller and audit
reporter; lanes never share them.
"""

import asyncio
import logging
from datetime import datetime
from typing import Callable, Dict, List, Optional

from ..advisory.advisor import AdvisoryService, PARAMETER_BOUNDS, TradeAnalysisSummary
from ..core.enums import TradingState
from ..core.models import Opportunity, Position, TradeCycleResult
from .audit import AuditReporter, build_dashboard_snapshot
from .speed import SpeedController
from .state_machine import TradingStateMachine

logger = logging.getLogger(__name__)

DashboardCallback = Callable[[Dict], None]


class TradingLane:
    """
    Drives full trade cycles for one exchange on its own timer.

    Each tick waits out the speed cooldown, takes the best live opportunity
    for the lane's exchange from the scanner and runs it through the state
    machine with the execution engine. A capital release or an auto-deploy
    decision on the lane's exchange wakes the lane early.
    """

    def __init__(
        self,
        lane_id: str,
        exchange: str,
        scanner,
        execution_engine,
        capital=None,
        advisory: Optional[AdvisoryService] = None,
        record_store=None,
        config: Optional[Dict] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        defaults = self._default_config()
        if config:
            defaults.update(config)
        self.config = defaults

        self.lane_id = lane_id
        self.exchange = exchange
        self.scanner = scanner
        self.execution_engine = execution_engine
        self.capital = capital
        self.advisory = advisory or AdvisoryService()
        self.record_store = record_store
        self._clock = clock

        self.state_machine = TradingStateMachine(
            lane_id=lane_id,
            capital=capital,
            record_store=record_store,
            config={
                "min_net_profit": self.config["min_net_profit"],
                "audit_interval": self.config["audit_interval"],
            },
            clock=clock,
        )
        self.speed = SpeedController(
            window_size=self.config["speed_window_size"],
            window_hours=self.config["speed_window_hours"],
            min_trades=self.config["speed_min_trades"],
            clock=clock,
        )
        self.audit = AuditReporter(
            lane_id,
            min_net_profit=self.config["min_net_profit"],
            audit_interval=self.config["audit_interval"],
            clock=clock,
        )

        self._dashboard_callbacks: List[DashboardCallback] = []
        self.last_dashboard: Optional[Dict] = None
        self._unsubscribes: List[Callable[[], None]] = []
        self._wake_event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._running = False
        self.cycles_started = 0

        if capital is not None:
            self._unsubscribes.append(capital.add_exit_listener(self._on_capital_freed))
            self._unsubscribes.append(capital.on_idle_alert(self._on_idle_alert))

    @staticmethod
    def _default_config() -> Dict:
        return {
            "tick_interval_seconds": 1.0,
            "min_net_profit": 0.50,
            "audit_interval": 20,
            "speed_window_size": 50,
            "speed_window_hours": 24.0,
            "speed_min_trades": 10,
            "stop_timeout_seconds": 60.0,
        }

    @property
    def state(self) -> TradingState:
        return self.state_machine.state

    # ------------------------------------------------------------------
    # Timer
    # ------------------------------------------------------------------

    async def start(self):
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info(f"[{self.lane_id}] Lane started on {self.exchange}")

    async def stop(self):
        """Stop ticking. An in-flight cycle gets ``stop_timeout_seconds`` to finish."""
        self._running = False
        self._wake_event.set()
        if self._task:
            try:
                await asyncio.wait_for(self._task, timeout=self.config["stop_timeout_seconds"])
            except asyncio.TimeoutError:
                logger.error(f"[{self.lane_id}] Cycle did not finish in time, cancelled")
            except asyncio.CancelledError:
                pass
            self._task = None
        for unsubscribe in self._unsubscribes:
            unsubscribe()
        self._unsubscribes = []
        logger.info(f"[{self.lane_id}] Lane stopped")

    def wake(self):
        """Run the next tick now instead of waiting for the timer."""
        self._wake_event.set()

    async def _run_loop(self):
        while self._running:
            try:
                await self.run_cycle()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"[{self.lane_id}] Lane tick failed: {e}")
                self.state_machine.return_to_idle()

            if not self._running:
                break
            try:
                await asyncio.wait_for(
                    self._wake_event.wait(), timeout=self.config["tick_interval_seconds"]
                )
            except asyncio.TimeoutError:
                pass
            self._wake_event.clear()

    def _on_capital_freed(self, exchange: str, position: Position, freed: float, profit: float):
        if exchange == self.exchange:
            logger.debug(f"[{self.lane_id}] ${freed:.2f} freed on {exchange}, waking lane")
            self.wake()

    def _on_idle_alert(self, alert):
        if alert.exchange == self.exchange and alert.is_deploy_decision:
            self.wake()

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    async def run_cycle(self) -> Optional[TradeCycleResult]:
        """One tick: take an opportunity if the lane may trade, and run it to completion."""
        if self.state_machine.state != TradingState.IDLE:
            logger.warning(f"[{self.lane_id}] Tick while {self.state_machine.state.value}, skipping")
            return None

        wait = self.speed.time_until_next_trade(self._clock())
        if wait > 0:
            logger.debug(f"[{self.lane_id}] Cooling down, {wait:.0f}s left")
            return None

        opportunity = self.scanner.take_opportunity(self.exchange)
        if opportunity is None:
            return None

        self.cycles_started += 1
        return await self.state_machine.execute_trade_cycle(
            opportunity,
            execute=self._executor(opportunity),
            speed_adjust=self._speed_adjust,
            ai_analysis=self._analyse,
            on_audit=self._on_audit,
            on_dashboard=self._on_dashboard,
        )

    def _executor(self, opportunity: Opportunity):
        async def execute(on_profit_lock):
            return await self.execution_engine.execute(opportunity, on_profit_lock)
        return execute

    def _speed_adjust(self, result: TradeCycleResult):
        self.audit.record_result(result)
        return self.speed.record_result(result)

    def tunable_params(self) -> Dict[str, float]:
        params = {}
        for key in PARAMETER_BOUNDS:
            if key in self.scanner.config:
                params[key] = self.scanner.config[key]
            elif key in self.scanner.sizer.config:
                params[key] = self.scanner.sizer.config[key]
        return params

    async def _analyse(self, result: TradeCycleResult) -> List[str]:
        summary = TradeAnalysisSummary.from_results(
            self.speed.trades or [result],
            speed_mode=self.speed.mode,
            current_params=self.tunable_params(),
        )
        outcome = await self.advisory.recommend(summary)
        applied = self.scanner.apply_adjustments(outcome.adjustments) if outcome.adjustments else {}

        notes = []
        for key, value in applied.items():
            note = f"{outcome.source}: {key} -> {value}"
            self.audit.record_adjustment(note)
            notes.append(note)
        return notes

    def _on_audit(self, result: TradeCycleResult):
        report = self.audit.generate(self.state_machine.trade_count, self.speed, self.capital)
        if self.record_store is not None:
            try:
                self.record_store.record_audit(report)
            except Exception as e:
                logger.error(f"[{self.lane_id}] Failed to store audit report: {e}")

    def _on_dashboard(self, result: TradeCycleResult):
        snapshot = build_dashboard_snapshot(
            lane_status=self.get_status(),
            last_audit=self.audit.last_report,
            capital_summary=self.capital.get_capital_status() if self.capital is not None else None,
            scanner_stats=self.scanner.get_stats(),
            now=self._clock(),
        )
        self.last_dashboard = snapshot
        for callback in list(self._dashboard_callbacks):
            try:
                callback(snapshot)
            except Exception as e:
                logger.error(f"[{self.lane_id}] Dashboard callback failed: {e}")

    def on_dashboard(self, callback: DashboardCallback) -> Callable[[], None]:
        self._dashboard_callbacks.append(callback)

        def unsubscribe():
            if callback in self._dashboard_callbacks:
                self._dashboard_callbacks.remove(callback)

        return unsubscribe

    def get_status(self) -> Dict:
        return {
            **self.state_machine.get_status(),
            "exchange": self.exchange,
            "running": self._running,
            "cycles_started": self.cycles_started,
            "speed": self.speed.get_stats(),
            "next_trade_in_seconds": self.speed.time_until_next_trade(self._clock()),
            "advisory_fallbacks": self.advisory.fallback_count,
        }


class LaneManager:
    """Independent lanes keyed by lane id."""

    def __init__(self):
        self._lanes: Dict[str, TradingLane] = {}

    def add_lane(self, lane: TradingLane) -> TradingLane:
        if lane.lane_id in self._lanes:
            raise ValueError(f"Lane {lane.lane_id} already exists")
        self._lanes[lane.lane_id] = lane
        logger.info(f"Lane {lane.lane_id} added for {lane.exchange}")
        return lane

    def get_lane(self, lane_id: str) -> Optional[TradingLane]:
        return self._lanes.get(lane_id)

    @property
    def lanes(self) -> List[TradingLane]:
        return list(self._lanes.values())

    async def start_all(self):
        for lane in self._lanes.values():
            await lane.start()

    async def stop_all(self):
        await asyncio.gather(*(lane.stop() for lane in self._lanes.values()))

    def get_status(self) -> Dict[str, Dict]:
        return {lane_id: lane.get_status() for lane_id, lane in self._lanes.items()}
