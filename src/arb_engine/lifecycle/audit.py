"""Self-audit reports and dashboard snapshots."""

import logging
from collections import Counter
from datetime import datetime
from typing import Callable, Dict, List, Optional

import numpy as np
from pydantic import BaseModel, Field

from ..core.enums import Side, SpeedMode
from ..core.models import TradeCycleResult
from .speed import SpeedController, mode_for_hit_rate

logger = logging.getLogger(__name__)

MAX_ADJUSTMENT_LOG = 50


class InvariantCheck(BaseModel):
    name: str = Field(description="Check name")
    passed: bool = Field(description="Whether the invariant held")
    details: str = Field(default="", description="What was checked")


class AuditReport(BaseModel):
    """Periodic self-audit of one lane."""

    report_id: str = Field(description="Unique report ID")
    report_number: int = Field(description="Sequence number for the lane")
    lane_id: str = Field(description="Audited lane")
    generated_at: datetime = Field(description="Generation time")
    trade_count: int = Field(description="Completed trades in the session")
    window_start: Optional[datetime] = Field(default=None, description="First trade in the rolling window")
    window_end: Optional[datetime] = Field(default=None, description="Last trade in the rolling window")

    rolling_hit_rate: float = Field(description="Hit rate over the speed window (%)")
    session_hit_rate: float = Field(description="Hit rate over the session (%)")
    long_trades: int = Field(default=0)
    short_trades: int = Field(default=0)
    long_wins: int = Field(default=0)
    short_wins: int = Field(default=0)
    avg_net_profit: float = Field(description="Average net profit per trade")
    total_net_profit: float = Field(description="Session net profit")
    exit_reasons: Dict[str, int] = Field(default_factory=dict, description="Exit reason counts")

    speed_mode: SpeedMode = Field(description="Active speed mode")
    cooldown_seconds: float = Field(description="Active cooldown")
    adjustments: List[str] = Field(default_factory=list, description="Advisory adjustments since last report")
    invariants: List[InvariantCheck] = Field(default_factory=list, description="Invariant results")
    summary: str = Field(default="", description="One-line summary")

    @property
    def all_passed(self) -> bool:
        return all(check.passed for check in self.invariants)


class AuditReporter:
    """Collects session results for a lane and builds an ``AuditReport`` on demand."""

    def __init__(
        self,
        lane_id: str,
        min_net_profit: float = 0.50,
        audit_interval: int = 20,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.lane_id = lane_id
        self.min_net_profit = min_net_profit
        self.audit_interval = audit_interval
        self._clock = clock

        self._session: List[TradeCycleResult] = []
        self._adjustments: List[str] = []
        self.reports: List[AuditReport] = []

    @property
    def last_report(self) -> Optional[AuditReport]:
        return self.reports[-1] if self.reports else None

    def record_result(self, result: TradeCycleResult):
        self._session.append(result)

    def record_adjustment(self, adjustment: str):
        self._adjustments.append(f"[{self._clock().isoformat()}] {adjustment}")
        del self._adjustments[:-MAX_ADJUSTMENT_LOG]

    def generate(self, trade_count: int, speed: SpeedController, capital=None) -> AuditReport:
        now = self._clock()
        number = len(self.reports) + 1
        session = self._session

        profits = [r.actual_net_profit for r in session]
        total_net = float(np.sum(profits)) if profits else 0.0
        avg_net = float(np.mean(profits)) if profits else 0.0
        session_hit_rate = (
            float(np.mean([r.success for r in session]) * 100) if session else 0.0
        )
        window = speed.trades
        longs = [r for r in session if r.opportunity.side == Side.LONG]
        shorts = [r for r in session if r.opportunity.side == Side.SHORT]

        invariants = self._run_checks(trade_count, speed, capital)
        report = AuditReport(
            report_id=f"AUDIT-{self.lane_id}-{number}-{int(now.timestamp())}",
            report_number=number,
            lane_id=self.lane_id,
            generated_at=now,
            trade_count=trade_count,
            window_start=window[0].completed_at if window else None,
            window_end=window[-1].completed_at if window else None,
            rolling_hit_rate=speed.hit_rate,
            session_hit_rate=session_hit_rate,
            long_trades=len(longs),
            short_trades=len(shorts),
            long_wins=sum(1 for r in longs if r.success),
            short_wins=sum(1 for r in shorts if r.success),
            avg_net_profit=avg_net,
            total_net_profit=total_net,
            exit_reasons=dict(Counter(r.exit_reason.value for r in session)),
            speed_mode=speed.mode,
            cooldown_seconds=speed.cooldown_seconds,
            adjustments=list(self._adjustments[-10:]),
            invariants=invariants,
        )
        report.summary = self._summarise(report)

        self.reports.append(report)
        self._adjustments = []

        failed = [c.name for c in invariants if not c.passed]
        if failed:
            logger.warning(f"[{self.lane_id}] Audit #{number} failed checks: {', '.join(failed)}")
        else:
            logger.info(f"[{self.lane_id}] Audit #{number}: {report.summary}")
        return report

    def _run_checks(self, trade_count: int, speed: SpeedController, capital) -> List[InvariantCheck]:
        checks = []

        mislabelled = [
            r.trade_number for r in self._session
            if r.success != (r.actual_net_profit >= self.min_net_profit)
        ]
        checks.append(InvariantCheck(
            name="min_profit_enforced",
            passed=not mislabelled,
            details=(
                f"All successes net >= ${self.min_net_profit:.2f}" if not mislabelled
                else f"Trades mislabelled: {mislabelled}"
            ),
        ))

        if capital is None:
            checks.append(InvariantCheck(name="ledger_balanced", passed=True, details="No capital ledger"))
            checks.append(InvariantCheck(name="no_untracked_exposure", passed=True, details="No capital ledger"))
        else:
            violations = capital.check_invariants()
            checks.append(InvariantCheck(
                name="ledger_balanced",
                passed=not violations,
                details="; ".join(violations) or "deployed + idle == total on every exchange",
            ))
            closed_ids = {r.opportunity.id for r in self._session}
            exchanges = {r.opportunity.exchange for r in self._session}
            lingering = [
                p.id for exchange in exchanges
                for p in capital.get_positions(exchange)
                if p.id in closed_ids
            ]
            checks.append(InvariantCheck(
                name="no_untracked_exposure",
                passed=not lingering,
                details=(
                    "Every closed cycle released its capital" if not lingering
                    else f"Positions still open after exit: {lingering}"
                ),
            ))

        if len(speed.trades) < speed.min_trades:
            checks.append(InvariantCheck(
                name="speed_mode_consistent", passed=True,
                details=f"Only {len(speed.trades)} trades in window",
            ))
        else:
            expected = mode_for_hit_rate(speed.hit_rate)
            checks.append(InvariantCheck(
                name="speed_mode_consistent",
                passed=speed.mode == expected,
                details=f"Hit rate {speed.hit_rate:.1f}% expects {expected.value}, active {speed.mode.value}",
            ))

        on_cadence = trade_count > 0 and trade_count % self.audit_interval == 0
        checks.append(InvariantCheck(
            name="audit_cadence",
            passed=on_cadence,
            details=f"Trade #{trade_count}, interval {self.audit_interval}",
        ))
        return checks

    @staticmethod
    def _summarise(report: AuditReport) -> str:
        passed = sum(1 for c in report.invariants if c.passed)
        return (
            f"{report.trade_count} trades, hit rate {report.rolling_hit_rate:.1f}% rolling / "
            f"{report.session_hit_rate:.1f}% session, avg net ${report.avg_net_profit:.2f}, "
            f"{report.speed_mode.value} mode, {passed}/{len(report.invariants)} checks passed"
        )


def build_dashboard_snapshot(
    lane_status: Dict,
    last_audit: Optional[AuditReport] = None,
    capital_summary=None,
    scanner_stats: Optional[Dict] = None,
    now: Optional[datetime] = None,
) -> Dict:
    """Plain-dict snapshot handed to dashboard subscribers."""
    return {
        "generated_at": (now or datetime.now()).isoformat(),
        "lane": lane_status,
        "last_audit": last_audit.model_dump(mode="json") if last_audit else None,
        "capital": capital_summary.model_dump(mode="json") if capital_summary is not None else None,
        "scanner": scanner_stats,
    }
