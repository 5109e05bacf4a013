"""Trade speed controller.

Picks the cooldown between trades from the rolling hit rate:

- hit rate < 95%: slow, 120 s
- 95% to 98%: normal, 60 s
- > 98%: fast, 15 s

No adjustment is made before ``min_trades`` results are in the window.
The window holds at most ``window_size`` results from the last 24 hours.
"""

import logging
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Deque, Dict, List, Optional, Tuple

import numpy as np

from ..core.enums import Side, SpeedMode
from ..core.models import TradeCycleResult

logger = logging.getLogger(__name__)


COOLDOWNS: Dict[SpeedMode, float] = {
    SpeedMode.SLOW: 120.0,
    SpeedMode.NORMAL: 60.0,
    SpeedMode.FAST: 15.0,
}


@dataclass
class SpeedModeChange:
    timestamp: datetime
    from_mode: SpeedMode
    to_mode: SpeedMode
    hit_rate: float
    reason: str


def mode_for_hit_rate(hit_rate: float) -> SpeedMode:
    if hit_rate < 95:
        return SpeedMode.SLOW
    if hit_rate <= 98:
        return SpeedMode.NORMAL
    return SpeedMode.FAST


class SpeedController:
    """Rolling-window cadence control for one lane."""

    def __init__(
        self,
        window_size: int = 50,
        window_hours: float = 24.0,
        min_trades: int = 10,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.window_size = window_size
        self.window = timedelta(hours=window_hours)
        self.min_trades = min_trades
        self._clock = clock

        self._results: Deque[TradeCycleResult] = deque(maxlen=window_size)
        self.mode = SpeedMode.NORMAL
        self.cooldown_seconds = COOLDOWNS[SpeedMode.NORMAL]
        self.history: List[SpeedModeChange] = []
        self.last_adjustment: Optional[datetime] = None
        self.last_trade_at: Optional[datetime] = None

    def record_result(self, result: TradeCycleResult) -> Tuple[float, str]:
        """Add a completed cycle and return the resulting (cooldown_seconds, reason)."""
        self._results.append(result)
        self.last_trade_at = result.completed_at
        self._prune(result.completed_at)
        return self._adjust(result.completed_at)

    def _prune(self, now: datetime):
        cutoff = now - self.window
        while self._results and self._results[0].completed_at <= cutoff:
            self._results.popleft()

    def _adjust(self, now: datetime) -> Tuple[float, str]:
        count = len(self._results)
        if count < self.min_trades:
            return self.cooldown_seconds, (
                f"{count}/{self.min_trades} trades in window, keeping {self.mode.value} mode"
            )

        hit_rate = self.hit_rate
        new_mode = mode_for_hit_rate(hit_rate)
        reason = f"Hit rate {hit_rate:.1f}% -> {new_mode.value} mode"
        if new_mode != self.mode:
            self.history.append(SpeedModeChange(
                timestamp=now,
                from_mode=self.mode,
                to_mode=new_mode,
                hit_rate=hit_rate,
                reason=f"Hit rate {hit_rate:.1f}% triggered {new_mode.value} mode",
            ))
            self.last_adjustment = now
            logger.info(f"Speed mode {self.mode.value} -> {new_mode.value} (hit rate {hit_rate:.1f}%)")

        self.mode = new_mode
        self.cooldown_seconds = COOLDOWNS[new_mode]
        return self.cooldown_seconds, reason

    @property
    def hit_rate(self) -> float:
        if not self._results:
            return 0.0
        return float(np.mean([r.success for r in self._results]) * 100)

    @property
    def trades(self) -> List[TradeCycleResult]:
        return list(self._results)

    def can_trade(self, now: Optional[datetime] = None) -> bool:
        return self.time_until_next_trade(now) <= 0

    def time_until_next_trade(self, now: Optional[datetime] = None) -> float:
        """Seconds until the cooldown since the last trade has elapsed."""
        if self.last_trade_at is None:
            return 0.0
        now = now or self._clock()
        elapsed = (now - self.last_trade_at).total_seconds()
        return max(0.0, self.cooldown_seconds - elapsed)

    def get_distribution(self) -> Dict[str, int]:
        longs = [r for r in self._results if r.opportunity.side == Side.LONG]
        shorts = [r for r in self._results if r.opportunity.side == Side.SHORT]
        return {
            "long": len(longs),
            "short": len(shorts),
            "long_wins": sum(1 for r in longs if r.success),
            "short_wins": sum(1 for r in shorts if r.success),
        }

    def average_net_profit(self) -> float:
        if not self._results:
            return 0.0
        return float(np.mean([r.actual_net_profit for r in self._results]))

    def get_stats(self) -> Dict:
        return {
            "window_trades": len(self._results),
            "hit_rate": self.hit_rate,
            "speed_mode": self.mode.value,
            "cooldown_seconds": self.cooldown_seconds,
            "last_adjustment": self.last_adjustment.isoformat() if self.last_adjustment else None,
            "average_net_profit": self.average_net_profit(),
            **self.get_distribution(),
        }

    def reset(self):
        self._results.clear()
        self.mode = SpeedMode.NORMAL
        self.cooldown_seconds = COOLDOWNS[SpeedMode.NORMAL]
        self.history = []
        self.last_adjustment = None
        self.last_trade_at = None
