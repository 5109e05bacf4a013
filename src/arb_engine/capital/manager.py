"""Capital deployment manager.

Ledger of truth for idle versus committed capital on every exchange
account. The ledger is maintained from position events and periodic
balance refreshes, independently of what the lifecycle lanes believe, so
a lost lifecycle event cannot make deployed capital disappear.

Invariant kept after every mutation: ``deployed + idle == total`` and
``deployed >= 0``. Idle may go negative when a balance refresh reports
less than is currently committed; that is logged, not clamped.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional

from ..core.errors import LedgerError
from ..core.models import CapitalSummary, ExchangeCapital, Opportunity, Position

logger = logging.getLogger(__name__)

INVARIANT_TOLERANCE = 1e-6


@dataclass
class IdleCapitalAlert:
    """Capital sat idle on an exchange beyond the configured duration."""

    exchange: str
    idle: float
    idle_seconds: float
    timestamp: datetime = field(default_factory=datetime.now)
    opportunity: Optional[Opportunity] = None
    deploy_size: Optional[float] = None

    @property
    def is_deploy_decision(self) -> bool:
        return self.opportunity is not None and self.deploy_size is not None


AlertCallback = Callable[[IdleCapitalAlert], None]
ExitListener = Callable[[str, Position, float, float], None]


class CapitalManager:
    """
    Tracks per-exchange balances, open positions and idle funds.

    *connectors* maps exchange name to an object exposing an async
    ``get_balance()``; *opportunity_source* exposes
    ``get_all_opportunities()`` (the scanner) and is only consulted for
    auto-deploy decisions.
    """

    def __init__(
        self,
        connectors: Optional[Dict] = None,
        opportunity_source=None,
        config: Optional[Dict] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        defaults = self._default_config()
        if config:
            defaults.update(config)
        self.config = defaults

        self.connectors = connectors or {}
        self.opportunity_source = opportunity_source
        self._clock = clock

        self._capital: Dict[str, ExchangeCapital] = {}
        self._positions: Dict[str, List[Position]] = {}
        self._idle_since: Dict[str, datetime] = {}
        self._last_deploy_at: Optional[datetime] = None

        self._alert_callbacks: List[AlertCallback] = []
        self._exit_listeners: List[ExitListener] = []
        self._task: Optional[asyncio.Task] = None
        self._running = False

        logger.info(
            f"Capital manager initialized (idle threshold ${self.config['min_idle_threshold']}, "
            f"auto-deploy={'on' if self.config['auto_deploy_enabled'] else 'off'})"
        )

    @staticmethod
    def _default_config() -> Dict:
        return {
            "min_idle_threshold": 50.0,
            "refresh_interval_seconds": 2.0,
            "idle_alert_after_seconds": 60.0,
            "auto_deploy_enabled": False,
            "deploy_cooldown_seconds": 5.0,
            "min_deploy_confidence": 70.0,
            "min_deploy_size": 50.0,
            "max_deploy_size": 500.0,
            "deploy_fraction": 0.8,
            "balance_currency": "USDT",
        }

    # ------------------------------------------------------------------
    # Ledger mutations
    # ------------------------------------------------------------------

    def update_balance(self, exchange: str, total: float):
        """Refresh the external truth for *exchange*'s total balance."""
        capital = self._capital.get(exchange)
        if capital is None:
            capital = ExchangeCapital(name=exchange)
            self._capital[exchange] = capital
            self._positions.setdefault(exchange, [])

        capital.total = total
        self._recalculate(exchange)
        if capital.idle < 0:
            logger.warning(
                f"{exchange}: balance ${total:.2f} below deployed ${capital.deployed:.2f}"
            )

    def track_position(self, exchange: str, position: Position):
        """Record an opened position and commit its notional."""
        if exchange not in self._capital:
            raise LedgerError(f"Unknown exchange: {exchange}")
        positions = self._positions[exchange]
        if any(p.id == position.id for p in positions):
            raise LedgerError(f"Position {position.id} already tracked on {exchange}")

        positions.append(position)
        self._recalculate(exchange)
        logger.info(
            f"Tracked position: {position.symbol} on {exchange} (${position.size:.2f})"
        )

    def reserve(self, exchange: str, position: Position) -> bool:
        """Track *position* only if *exchange* has enough idle capital right now."""
        capital = self._capital.get(exchange)
        if capital is None:
            logger.warning(f"Cannot reserve on unknown exchange {exchange}")
            return False
        if capital.idle + INVARIANT_TOLERANCE < position.size:
            logger.warning(
                f"Insufficient idle capital on {exchange}: "
                f"need ${position.size:.2f}, idle ${capital.idle:.2f}"
            )
            return False
        self.track_position(exchange, position)
        return True

    def remove_position(self, exchange: str, position_id: str) -> Optional[Position]:
        """Drop a position without touching the total. Returns it, or None if unknown."""
        positions = self._positions.get(exchange, [])
        for index, position in enumerate(positions):
            if position.id == position_id:
                del positions[index]
                self._recalculate(exchange)
                logger.info(f"Removed position: {position.symbol} on {exchange}")
                return position
        return None

    def on_position_exit(
        self,
        exchange: str,
        position_id: str,
        exit_price: float,
        profit: float,
    ) -> Optional[float]:
        """
        Release a closed position and fold its realised P&L into the total.

        Returns the freed capital (entry notional plus profit), or None if
        the position was not tracked.
        """
        position = self.remove_position(exchange, position_id)
        if position is None:
            logger.warning(f"Exit for untracked position {position_id} on {exchange}")
            return None

        capital = self._capital[exchange]
        capital.total += profit
        self._recalculate(exchange)

        freed = position.size + profit
        held_seconds = (self._clock() - position.opened_at).total_seconds()
        logger.info(
            f"Position exit: {position.symbol} on {exchange} at {exit_price}, "
            f"profit ${profit:.2f}, freed ${freed:.2f} after {held_seconds:.0f}s"
        )

        for listener in list(self._exit_listeners):
            try:
                listener(exchange, position, freed, profit)
            except Exception as e:
                logger.error(f"Exit listener failed: {e}")
        return freed

    def sync_open_positions(self, positions: Iterable[Position]) -> int:
        """Adopt open positions the ledger does not know about. Returns how many were added."""
        added = 0
        for position in positions:
            if position.exchange not in self._capital:
                logger.warning(
                    f"Skipping open position {position.id}: exchange {position.exchange} has no balance"
                )
                continue
            if any(p.id == position.id for p in self._positions[position.exchange]):
                continue
            self.track_position(position.exchange, position)
            added += 1
        if added:
            logger.info(f"Synced {added} open positions into the capital ledger")
        return added

    def _recalculate(self, exchange: str):
        capital = self._capital[exchange]
        positions = self._positions.get(exchange, [])
        capital.deployed = max(0.0, sum(p.size for p in positions))
        capital.idle = capital.total - capital.deployed
        capital.position_count = len(positions)
        capital.utilization_percent = (
            capital.deployed / capital.total * 100 if capital.total > 0 else 0.0
        )
        capital.last_updated = self._clock()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_exchange_capital(self, exchange: str) -> Optional[ExchangeCapital]:
        capital = self._capital.get(exchange)
        return capital.model_copy() if capital else None

    def get_balance(self, exchange: str) -> float:
        capital = self._capital.get(exchange)
        return capital.total if capital else 0.0

    def get_idle(self, exchange: str) -> float:
        capital = self._capital.get(exchange)
        return capital.idle if capital else 0.0

    def get_total_idle_capital(self) -> float:
        return sum(c.idle for c in self._capital.values())

    def get_positions(self, exchange: str, symbol: Optional[str] = None) -> List[Position]:
        positions = self._positions.get(exchange, [])
        if symbol:
            return [p for p in positions if p.symbol == symbol]
        return list(positions)

    def get_capital_status(self) -> CapitalSummary:
        """Per-exchange capital plus aggregate roll-ups."""
        exchanges = [c.model_copy() for c in self._capital.values()]
        total = sum(c.total for c in exchanges)
        deployed = sum(c.deployed for c in exchanges)
        return CapitalSummary(
            exchanges=exchanges,
            total=total,
            deployed=deployed,
            idle=sum(c.idle for c in exchanges),
            utilization_percent=(deployed / total * 100) if total > 0 else 0.0,
        )

    def check_invariants(self) -> List[str]:
        """Return a description of every ledger violation; empty when balanced."""
        violations = []
        for name, capital in self._capital.items():
            if abs(capital.deployed + capital.idle - capital.total) > INVARIANT_TOLERANCE:
                violations.append(
                    f"{name}: deployed {capital.deployed} + idle {capital.idle} != total {capital.total}"
                )
            if capital.deployed < 0:
                violations.append(f"{name}: negative deployed {capital.deployed}")
            tracked = sum(p.size for p in self._positions.get(name, []))
            if abs(tracked - capital.deployed) > INVARIANT_TOLERANCE:
                violations.append(
                    f"{name}: deployed {capital.deployed} != tracked positions {tracked}"
                )
        return violations

    # ------------------------------------------------------------------
    # Idle capital & auto-deploy
    # ------------------------------------------------------------------

    @staticmethod
    def _subscribe(registry: List, callback) -> Callable[[], None]:
        registry.append(callback)

        def unsubscribe():
            if callback in registry:
                registry.remove(callback)

        return unsubscribe

    def on_idle_alert(self, callback: AlertCallback) -> Callable[[], None]:
        return self._subscribe(self._alert_callbacks, callback)

    def add_exit_listener(self, listener: ExitListener) -> Callable[[], None]:
        """Called with (exchange, position, freed, profit) after every exit."""
        return self._subscribe(self._exit_listeners, listener)

    def get_best_qualified_opportunity(self, exchange: str) -> Optional[Opportunity]:
        if self.opportunity_source is None:
            return None
        now = self._clock()
        candidates = [
            o for o in self.opportunity_source.get_all_opportunities()
            if o.exchange == exchange
            and o.confidence >= self.config["min_deploy_confidence"]
            and not o.is_expired(now)
            and not o.consumed
        ]
        candidates.sort(key=lambda o: o.confidence, reverse=True)
        return candidates[0] if candidates else None

    def calculate_deploy_size(self, idle: float, confidence: float) -> float:
        """Confidence-scaled deploy size, bounded by the configured min and max."""
        cfg = self.config
        multiplier = 0.5 + 0.5 * (confidence / 100)
        base = min(idle * cfg["deploy_fraction"], cfg["max_deploy_size"])
        return max(cfg["min_deploy_size"], base * multiplier)

    def check_idle_capital(self, now: Optional[datetime] = None) -> List[IdleCapitalAlert]:
        """Emit alerts for exchanges whose idle capital outstayed the threshold."""
        now = now or self._clock()
        threshold = self.config["min_idle_threshold"]
        alert_after = timedelta(seconds=self.config["idle_alert_after_seconds"])
        alerts = []

        for name, capital in self._capital.items():
            if capital.idle <= threshold:
                self._idle_since.pop(name, None)
                continue

            since = self._idle_since.setdefault(name, now)
            if now - since < alert_after:
                continue

            alert = IdleCapitalAlert(
                exchange=name,
                idle=capital.idle,
                idle_seconds=(now - since).total_seconds(),
                timestamp=now,
            )
            if self.config["auto_deploy_enabled"] and self._deploy_allowed(now):
                opportunity = self.get_best_qualified_opportunity(name)
                if opportunity is not None:
                    alert.opportunity = opportunity
                    alert.deploy_size = self.calculate_deploy_size(capital.idle, opportunity.confidence)
                    self._last_deploy_at = now
                    logger.info(
                        f"{name}: ${capital.idle:.2f} idle -> deploying "
                        f"${alert.deploy_size:.2f} to {opportunity.symbol}"
                    )
            if not alert.is_deploy_decision:
                logger.warning(
                    f"{name}: ${capital.idle:.2f} idle for {alert.idle_seconds:.0f}s, waiting for opportunity"
                )

            self._idle_since[name] = now
            alerts.append(alert)
            for callback in list(self._alert_callbacks):
                try:
                    callback(alert)
                except Exception as e:
                    logger.error(f"Idle alert callback failed: {e}")

        return alerts

    def _deploy_allowed(self, now: datetime) -> bool:
        if self._last_deploy_at is None:
            return True
        cooldown = timedelta(seconds=self.config["deploy_cooldown_seconds"])
        return now - self._last_deploy_at >= cooldown

    # ------------------------------------------------------------------
    # Refresh loop
    # ------------------------------------------------------------------

    async def refresh_balances(self):
        """Pull balances from every connector; one failing exchange does not stop the rest."""
        for name, connector in self.connectors.items():
            try:
                total = await connector.get_balance(self.config["balance_currency"])
                self.update_balance(name, total)
            except Exception as e:
                logger.error(f"Balance refresh failed for {name}: {e}")

    async def start(self):
        if self._running:
            return
        self._running = True
        await self.refresh_balances()
        self._task = asyncio.create_task(self._monitor_loop())
        logger.info("Capital monitor started")

    async def stop(self):
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Capital monitor stopped")

    async def _monitor_loop(self):
        while self._running:
            try:
                await self.refresh_balances()
                self.check_idle_capital()
                for violation in self.check_invariants():
                    logger.error(f"Capital ledger violation: {violation}")
                await asyncio.sleep(self.config["refresh_interval_seconds"])
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Capital monitor error: {e}")
                await asyncio.sleep(1)

    def get_status(self) -> Dict:
        summary = self.get_capital_status()
        return {
            "total": summary.total,
            "deployed": summary.deployed,
            "idle": summary.idle,
            "utilization_percent": summary.utilization_percent,
            "exchanges": {c.name: c.model_dump() for c in summary.exchanges},
            "auto_deploy_enabled": self.config["auto_deploy_enabled"],
        }
