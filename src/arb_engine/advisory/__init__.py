"""Advisory module."""

from .advisor import (
    AdvisoryOutcome,
    AdvisoryService,
    LLMAdvisor,
    RuleBasedAdvisor,
    TradeAnalysisSummary,
    PARAMETER_BOUNDS,
    clamp_adjustments,
)

__all__ = [
    "AdvisoryOutcome",
    "AdvisoryService",
    "LLMAdvisor",
    "RuleBasedAdvisor",
    "TradeAnalysisSummary",
    "PARAMETER_BOUNDS",
    "clamp_adjustments",
]
