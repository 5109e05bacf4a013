"""Bounded rejection telemetry for the scanner."""

import logging
from collections import Counter, deque
from datetime import datetime, timedelta
from typing import Callable, Deque, Dict, List, Optional

from ..core.enums import RejectionCategory
from .models import RejectionRecord

logger = logging.getLogger(__name__)


REJECTION_LABELS: Dict[RejectionCategory, str] = {
    RejectionCategory.VOLUME: "Low volume",
    RejectionCategory.VOLATILITY: "Weak volatility",
    RejectionCategory.MOMENTUM: "Low momentum",
    RejectionCategory.SPREAD: "Wide spread",
    RejectionCategory.TIMING: "Opportunity already live",
    RejectionCategory.DURATION: "Expected too slow",
    RejectionCategory.FEES: "Edge below fees",
    RejectionCategory.CAPITAL: "Insufficient capital",
    RejectionCategory.OTHER: "Other",
}


def format_rejection_reason(category: RejectionCategory) -> str:
    return REJECTION_LABELS.get(category, category.value)


class RejectionTracker:
    """
    Ring buffer of recent rejections plus per-category counters.

    Counters are cleared every ``clear_interval_seconds`` so memory and
    the breakdown both stay bounded under continuous scanning.
    """

    def __init__(
        self,
        max_records: int = 500,
        clear_interval_seconds: float = 300.0,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.clear_interval = timedelta(seconds=clear_interval_seconds)
        self._clock = clock
        self._records: Deque[RejectionRecord] = deque(maxlen=max_records)
        self._by_category: Counter = Counter()
        self._by_symbol: Counter = Counter()
        self._window_started = clock()

    @property
    def total(self) -> int:
        return sum(self._by_category.values())

    def record(self, rejection: RejectionRecord):
        self.maybe_clear()
        self._records.append(rejection)
        self._by_category[rejection.category] += 1
        self._by_symbol[rejection.symbol] += 1
        logger.debug(
            f"Rejected {rejection.symbol} ({rejection.category.value}): {rejection.reason}"
        )

    def maybe_clear(self, now: Optional[datetime] = None) -> bool:
        """Clear counters once the window has elapsed. Returns True if cleared."""
        now = now or self._clock()
        if now - self._window_started < self.clear_interval:
            return False
        self.clear(now)
        return True

    def clear(self, now: Optional[datetime] = None):
        self._records.clear()
        self._by_category.clear()
        self._by_symbol.clear()
        self._window_started = now or self._clock()

    def count(self, category: RejectionCategory) -> int:
        return self._by_category.get(category, 0)

    def counts(self) -> Dict[str, int]:
        return {category.value: count for category, count in self._by_category.items()}

    def counts_by_symbol(self) -> Dict[str, int]:
        return dict(self._by_symbol)

    def breakdown(self) -> List[Dict]:
        """Per-category counts with display label and share, largest first."""
        total = self.total
        rows = [
            {
                "category": category.value,
                "reason": format_rejection_reason(category),
                "count": count,
                "percentage": (count / total * 100) if total > 0 else 0.0,
            }
            for category, count in self._by_category.items()
        ]
        rows.sort(key=lambda r: r["count"], reverse=True)
        return rows

    def recent(self, n: int = 50) -> List[RejectionRecord]:
        """Most recent rejections, newest first."""
        return list(reversed(self._records))[:n]
