"""Models for the opportunity scanner."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Optional

from ..core.enums import RejectionCategory, Side


@dataclass
class ScanCandidate:
    """A scored symbol from one scan tick. Sub-scores are normalised to 0-1."""

    symbol: str
    price: float
    change_24h: float
    volume_24h: float
    spread: float
    volatility_score: float = 0.0
    momentum_score: float = 0.0
    spread_score: float = 0.0
    volume_score: float = 0.0
    score: float = 0.0
    direction: Side = Side.LONG
    confidence: float = 0.0
    bid: Optional[float] = None
    ask: Optional[float] = None

    @property
    def volatility(self) -> float:
        return abs(self.change_24h)

    @property
    def momentum(self) -> float:
        return self.change_24h

    def sub_scores(self) -> Dict[RejectionCategory, float]:
        return {
            RejectionCategory.VOLATILITY: self.volatility_score,
            RejectionCategory.VOLUME: self.volume_score,
            RejectionCategory.SPREAD: self.spread_score,
            RejectionCategory.MOMENTUM: self.momentum_score,
        }

    def weakest_category(self) -> RejectionCategory:
        """Category of the lowest sub-score, used to explain a low composite."""
        scores = self.sub_scores()
        return min(scores, key=scores.get)

    def __lt__(self, other: "ScanCandidate") -> bool:
        return self.score < other.score


@dataclass
class RejectionRecord:
    """Why a candidate did not become an opportunity."""

    symbol: str
    category: RejectionCategory
    reason: str
    exchange: Optional[str] = None
    score: Optional[float] = None
    price: Optional[float] = None
    timestamp: datetime = field(default_factory=datetime.now)
