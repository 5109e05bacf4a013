"""Opportunity scanner: turns price observations into ranked, expiring opportunities."""

import asyncio
import logging
from collections import deque
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from ..core.enums import RejectionCategory, ScannerStatus, Side, SizingRejection
from ..core.errors import StaleDataError
from ..core.models import Opportunity, PriceObservation
from ..sizing.position_sizer import PositionSizer
from .models import RejectionRecord, ScanCandidate
from .rejections import RejectionTracker

logger = logging.getLogger(__name__)

OpportunityCallback = Callable[[Opportunity], None]

SECONDS_PER_DAY = 86_400

# Keys the advisory step may tune at runtime.
ADJUSTABLE_KEYS = {
    "min_score",
    "min_volume_24h",
    "max_spread",
    "stop_loss_percent",
    "max_expected_duration_seconds",
}
SIZER_ADJUSTABLE_KEYS = {"min_edge_percent"}


class OpportunityScanner:
    """
    Polls a price feed for a fixed symbol universe, scores each fresh
    observation, sizes the survivors and keeps the best as a small ranked
    window of expiring opportunities.

    Every candidate that does not become an opportunity is recorded with
    a categorised reason in ``rejections``.
    """

    def __init__(
        self,
        price_feed,
        sizer: Optional[PositionSizer] = None,
        capital=None,
        config: Optional[Dict] = None,
        record_store=None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        defaults = self._default_config()
        if config:
            defaults.update(config)
        self.config = defaults

        self.price_feed = price_feed
        self.sizer = sizer or PositionSizer()
        self.capital = capital
        self.record_store = record_store
        self._clock = clock

        self.rejections = RejectionTracker(
            max_records=self.config["rejection_buffer_size"],
            clear_interval_seconds=self.config["rejection_clear_interval_seconds"],
            clock=clock,
        )

        self.status = ScannerStatus.STOPPED
        self._window: List[Opportunity] = []
        self._callbacks: List[OpportunityCallback] = []
        self._task: Optional[asyncio.Task] = None
        self._running = False

        self.tick_count = 0
        self.stale_skipped = 0
        self.fetch_failures = 0
        self.emitted_count = 0
        self._consecutive_failed_ticks = 0
        self.last_tick_at: Optional[datetime] = None

        # Rejections waiting to be written to the record store in one batch
        self._pending_rejections: deque = deque(maxlen=self.config["rejection_buffer_size"])
        self._last_rejection_flush: Optional[datetime] = None

    @staticmethod
    def _default_config() -> Dict:
        return {
            "symbols": [
                "BTC/USDT", "ETH/USDT", "SOL/USDT", "BNB/USDT", "XRP/USDT",
                "DOGE/USDT", "ADA/USDT", "AVAX/USDT", "DOT/USDT", "LINK/USDT",
            ],
            "exchanges": ["binance"],
            "scan_interval_seconds": 1.0,
            "max_observation_age_seconds": 5.0,
            "degraded_after_failed_ticks": 3,
            # scoring weights
            "weight_volatility": 0.30,
            "weight_volume": 0.30,
            "weight_spread": 0.20,
            "weight_momentum": 0.20,
            # normalisation caps
            "volatility_cap_percent": 5.0,
            "momentum_cap_percent": 2.0,
            "volume_cap": 50_000_000,
            "max_spread": 0.002,
            "default_spread": 0.0005,
            # qualification
            "min_score": 40.0,
            "min_volume_24h": 1_000_000,
            "min_net_profit": 0.50,
            "slippage_bps": 2.0,
            "stop_loss_percent": 0.5,
            "max_expected_duration_seconds": 21_600,
            "default_portfolio_balance": 10_000.0,
            # window
            "opportunity_ttl_seconds": 30.0,
            "window_size": 20,
            "rejection_buffer_size": 500,
            "rejection_clear_interval_seconds": 300.0,
            "rejection_flush_interval_seconds": 10.0,
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self):
        if self._running:
            return
        self._running = True
        self.status = ScannerStatus.RUNNING
        self._task = asyncio.create_task(self._scan_loop())
        logger.info(
            f"Scanner started: {len(self.config['symbols'])} symbols, "
            f"exchanges={self.config['exchanges']}"
        )

    async def stop(self):
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        await self.flush_rejections(force=True)
        self._window.clear()
        self.status = ScannerStatus.STOPPED
        logger.info("Scanner stopped")

    async def _scan_loop(self):
        while self._running:
            try:
                await self.scan_once()
                await asyncio.sleep(self.config["scan_interval_seconds"])
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error in scan loop: {e}")
                await asyncio.sleep(max(1.0, self.config["scan_interval_seconds"]))

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def on_opportunity(self, callback: OpportunityCallback) -> Callable[[], None]:
        """Register *callback* for every emitted opportunity. Returns an unsubscribe function."""
        self._callbacks.append(callback)

        def unsubscribe():
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return unsubscribe

    def _notify(self, opportunity: Opportunity):
        for callback in list(self._callbacks):
            try:
                callback(opportunity)
            except Exception as e:
                logger.error(f"Opportunity callback failed: {e}")

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------

    async def scan_once(self) -> List[Opportunity]:
        """Run a single scan tick. Returns the opportunities emitted this tick."""
        now = self._clock()
        self.tick_count += 1
        self.last_tick_at = now
        self.rejections.maybe_clear(now)
        self._prune(now)

        symbols = self.config["symbols"]
        results = await asyncio.gather(
            *(self.price_feed.get_observation(symbol) for symbol in symbols),
            return_exceptions=True,
        )

        observations: List[PriceObservation] = []
        failed = 0
        for symbol, result in zip(symbols, results):
            if isinstance(result, StaleDataError):
                self.stale_skipped += 1
                logger.debug(f"Skipping {symbol}: {result}")
            elif isinstance(result, Exception):
                failed += 1
                self.fetch_failures += 1
                logger.warning(f"Price fetch failed for {symbol}: {result}")
            elif result is None:
                self.stale_skipped += 1
            elif result.age_seconds(now) > self.config["max_observation_age_seconds"]:
                self.stale_skipped += 1
                logger.debug(f"Skipping {symbol}: observation {result.age_seconds(now):.1f}s old")
            else:
                observations.append(result)

        self._update_health(len(observations), failed, len(symbols))

        candidates = []
        for obs in observations:
            candidate = self._score(obs)
            if self._passes_filters(candidate):
                candidates.append(candidate)
        candidates.sort(reverse=True)

        emitted: List[Opportunity] = []
        for candidate in candidates:
            for exchange in self.config["exchanges"]:
                opportunity = self._qualify(candidate, exchange, now)
                if opportunity is not None:
                    emitted.append(opportunity)

        for opportunity in emitted:
            self._insert(opportunity)
            self.emitted_count += 1
            self._notify(opportunity)

        await self.flush_rejections()

        if emitted:
            logger.info(
                f"Scan tick {self.tick_count}: {len(emitted)} opportunities "
                f"from {len(observations)}/{len(symbols)} fresh symbols"
            )
        return emitted

    def _update_health(self, fresh: int, failed: int, total: int):
        """A tick without a single fresh observation counts as failed, stale or not."""
        if total and fresh == 0:
            self._consecutive_failed_ticks += 1
            if (
                self._consecutive_failed_ticks >= self.config["degraded_after_failed_ticks"]
                and self.status != ScannerStatus.DEGRADED
            ):
                self.status = ScannerStatus.DEGRADED
                logger.warning(
                    f"Scanner degraded: no fresh data for {total} symbols "
                    f"({failed} failed, {total - failed} stale) for "
                    f"{self._consecutive_failed_ticks} consecutive ticks"
                )
            return

        self._consecutive_failed_ticks = 0
        if self.status == ScannerStatus.DEGRADED:
            logger.info("Scanner recovered from degraded state")
        if self._running or self.status == ScannerStatus.DEGRADED:
            self.status = ScannerStatus.RUNNING

    # ------------------------------------------------------------------
    # Scoring
    # ------------------------------------------------------------------

    def _score(self, obs: PriceObservation) -> ScanCandidate:
        """Compute normalised sub-scores and the 0-100 composite."""
        cfg = self.config
        spread = obs.spread if obs.spread is not None else cfg["default_spread"]
        volatility = abs(obs.change_24h)

        volatility_score = min(volatility / cfg["volatility_cap_percent"], 1.0)
        momentum_score = min(abs(obs.change_24h) / cfg["momentum_cap_percent"], 1.0)
        volume_score = min(obs.volume_24h / cfg["volume_cap"], 1.0)
        spread_score = max(0.0, 1.0 - spread / cfg["max_spread"])

        composite = 100 * (
            cfg["weight_volatility"] * volatility_score
            + cfg["weight_volume"] * volume_score
            + cfg["weight_spread"] * spread_score
            + cfg["weight_momentum"] * momentum_score
        )

        sub_scores = [volatility_score, momentum_score, volume_score, spread_score]
        strong_share = sum(1 for s in sub_scores if s >= 0.5) / len(sub_scores)
        confidence = (composite / 100 + strong_share) / 2 * 100

        return ScanCandidate(
            symbol=obs.symbol,
            price=obs.price,
            change_24h=obs.change_24h,
            volume_24h=obs.volume_24h,
            spread=spread,
            volatility_score=volatility_score,
            momentum_score=momentum_score,
            spread_score=spread_score,
            volume_score=volume_score,
            score=composite,
            direction=Side.LONG if obs.change_24h > 0 else Side.SHORT,
            confidence=min(confidence, 100.0),
            bid=obs.bid,
            ask=obs.ask,
        )

    def _passes_filters(self, candidate: ScanCandidate) -> bool:
        cfg = self.config
        if candidate.volume_24h < cfg["min_volume_24h"]:
            self._reject(
                candidate, RejectionCategory.VOLUME,
                f"24h volume {candidate.volume_24h:,.0f} below {cfg['min_volume_24h']:,.0f}",
            )
            return False

        if candidate.spread > cfg["max_spread"]:
            self._reject(
                candidate, RejectionCategory.SPREAD,
                f"Spread {candidate.spread * 100:.3f}% above {cfg['max_spread'] * 100:.3f}%",
            )
            return False

        if candidate.score < cfg["min_score"]:
            weakest = candidate.weakest_category()
            self._reject(
                candidate, weakest,
                f"Score {candidate.score:.1f} below {cfg['min_score']:.1f} (weakest: {weakest.value})",
            )
            return False

        return True

    # ------------------------------------------------------------------
    # Qualification
    # ------------------------------------------------------------------

    def _qualify(self, candidate: ScanCandidate, exchange: str, now: datetime) -> Optional[Opportunity]:
        """Size *candidate* on *exchange* and build an opportunity, or record why not."""
        cfg = self.config

        if self._has_live_opportunity(candidate.symbol, exchange, now):
            self._reject(
                candidate, RejectionCategory.TIMING,
                f"Live opportunity already queued on {exchange}", exchange,
            )
            return None

        balance = self._portfolio_balance(exchange)
        sizing = self.sizer.size(exchange, balance)
        if not sizing.is_viable:
            category = (
                RejectionCategory.CAPITAL
                if sizing.rejection_code in (
                    SizingRejection.MIN_NOTIONAL_EXCEEDS_CAP, SizingRejection.NO_CAPITAL,
                )
                else RejectionCategory.FEES
            )
            self._reject(candidate, category, sizing.reason or "Sizing not viable", exchange)
            return None

        expected_seconds = self._expected_duration(sizing.take_profit_percent, candidate.volatility)
        if expected_seconds > cfg["max_expected_duration_seconds"]:
            self._reject(
                candidate, RejectionCategory.DURATION,
                f"Expected {expected_seconds:.0f}s to target, limit {cfg['max_expected_duration_seconds']}s",
                exchange,
            )
            return None

        amount = sizing.recommended_amount
        if self.capital is not None:
            idle = self.capital.get_idle(exchange)
            if amount > idle:
                self._reject(
                    candidate, RejectionCategory.CAPITAL,
                    f"Position ${amount:.2f} exceeds idle ${idle:.2f}", exchange,
                )
                return None

        slippage_budget = amount * cfg["slippage_bps"] / 10_000
        projected_net = round(
            amount * sizing.take_profit_percent / 100 - sizing.fee_impact - slippage_budget, 2
        )
        if projected_net < cfg["min_net_profit"]:
            self._reject(
                candidate, RejectionCategory.FEES,
                f"Projected net ${projected_net:.2f} below ${cfg['min_net_profit']:.2f}", exchange,
            )
            return None

        side = candidate.direction
        if side == Side.LONG:
            entry = candidate.ask or candidate.price
            exit_price = entry * (1 + sizing.take_profit_percent / 100)
            stop = entry * (1 - cfg["stop_loss_percent"] / 100)
        else:
            entry = candidate.bid or candidate.price
            exit_price = entry * (1 - sizing.take_profit_percent / 100)
            stop = entry * (1 + cfg["stop_loss_percent"] / 100)

        return Opportunity(
            symbol=candidate.symbol,
            exchange=exchange,
            side=side,
            entry_price=entry,
            projected_exit_price=exit_price,
            stop_loss_price=stop,
            take_profit_percent=sizing.take_profit_percent,
            projected_net_profit=projected_net,
            fees=sizing.fee_impact,
            slippage_budget=round(slippage_budget, 4),
            position_size=amount,
            score=round(candidate.score, 2),
            confidence=round(candidate.confidence, 2),
            created_at=now,
            expires_at=now + timedelta(seconds=cfg["opportunity_ttl_seconds"]),
        )

    def _portfolio_balance(self, exchange: str) -> float:
        if self.capital is None:
            return self.config["default_portfolio_balance"]
        return self.capital.get_balance(exchange)

    @staticmethod
    def _expected_duration(required_move_percent: float, daily_volatility_percent: float) -> float:
        if daily_volatility_percent <= 0:
            return float("inf")
        return required_move_percent / daily_volatility_percent * SECONDS_PER_DAY

    def _reject(
        self,
        candidate: ScanCandidate,
        category: RejectionCategory,
        reason: str,
        exchange: Optional[str] = None,
    ):
        record = RejectionRecord(
            symbol=candidate.symbol,
            category=category,
            reason=reason,
            exchange=exchange,
            score=round(candidate.score, 2),
            price=candidate.price,
            timestamp=self._clock(),
        )
        self.rejections.record(record)
        if self.record_store is not None:
            self._pending_rejections.append(record)

    async def flush_rejections(self, force: bool = False):
        """Write buffered rejections to the record store, at most once per flush interval."""
        if self.record_store is None or not self._pending_rejections:
            return
        now = self._clock()
        if (
            not force
            and self._last_rejection_flush is not None
            and (now - self._last_rejection_flush).total_seconds()
            < self.config["rejection_flush_interval_seconds"]
        ):
            return

        batch = list(self._pending_rejections)
        self._pending_rejections.clear()
        self._last_rejection_flush = now
        try:
            await asyncio.to_thread(self.record_store.record_rejections, batch)
        except Exception as e:
            logger.error(f"Failed to store {len(batch)} rejections: {e}")

    # ------------------------------------------------------------------
    # Ranked window
    # ------------------------------------------------------------------

    def _insert(self, opportunity: Opportunity):
        self._window.append(opportunity)
        self._window.sort(key=lambda o: o.score, reverse=True)
        del self._window[self.config["window_size"]:]

    def _prune(self, now: datetime):
        self._window = [o for o in self._window if not o.is_expired(now) and not o.consumed]

    def _has_live_opportunity(self, symbol: str, exchange: str, now: datetime) -> bool:
        return any(
            o.symbol == symbol and o.exchange == exchange
            and not o.is_expired(now) and not o.consumed
            for o in self._window
        )

    def get_all_opportunities(self) -> List[Opportunity]:
        """Live opportunities, best first."""
        self._prune(self._clock())
        return list(self._window)

    def get_best_opportunity(self, exchange: Optional[str] = None) -> Optional[Opportunity]:
        for opportunity in self.get_all_opportunities():
            if exchange is None or opportunity.exchange == exchange:
                return opportunity
        return None

    def take_opportunity(self, exchange: Optional[str] = None) -> Optional[Opportunity]:
        """Remove and return the best live opportunity so it is handed out only once."""
        opportunity = self.get_best_opportunity(exchange)
        if opportunity is not None:
            self._window.remove(opportunity)
        return opportunity

    # ------------------------------------------------------------------
    # Tuning & stats
    # ------------------------------------------------------------------

    def apply_adjustments(self, adjustments: Dict) -> Dict:
        """Apply allow-listed parameter changes. Returns what was applied."""
        applied = {}
        for key, value in (adjustments or {}).items():
            if key in ADJUSTABLE_KEYS:
                self.config[key] = value
                applied[key] = value
            elif key in SIZER_ADJUSTABLE_KEYS:
                self.sizer.config[key] = value
                applied[key] = value
            else:
                logger.debug(f"Ignoring unknown scanner adjustment: {key}")
        if applied:
            logger.info(f"Scanner adjustments applied: {applied}")
        return applied

    def clear_rejection_stats(self):
        self.rejections.clear()

    def get_stats(self) -> Dict:
        opportunities = self.get_all_opportunities()
        return {
            "status": self.status.value,
            "is_scanning": self._running,
            "tick_count": self.tick_count,
            "opportunity_count": len(opportunities),
            "emitted_count": self.emitted_count,
            "symbols_active": len(self.config["symbols"]),
            "stale_skipped": self.stale_skipped,
            "fetch_failures": self.fetch_failures,
            "rejection_count": self.rejections.total,
            "rejection_breakdown": self.rejections.breakdown(),
            "top_opportunities": [
                {
                    "symbol": o.symbol,
                    "exchange": o.exchange,
                    "side": o.side.value,
                    "score": o.score,
                    "confidence": o.confidence,
                    "projected_net_profit": o.projected_net_profit,
                }
                for o in opportunities[:5]
            ],
        }
