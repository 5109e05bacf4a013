"""Advisory parameter tuning.

After each cycle the lane summarises recent outcomes and asks for a
partial config update. An LLM advisor may answer when configured; the
rule-based advisor always can, and is what the lane gets whenever the
LLM is absent, slow or wrong.

Advisors may only nudge qualification parameters. They may NOT:
- Set position size
- Change the minimum net profit
- Remove the stop-loss
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple

import aiohttp
from pydantic import BaseModel, Field

from ..core.enums import ExitReason, SpeedMode
from ..core.models import TradeCycleResult

logger = logging.getLogger(__name__)


# Tunable parameters and their hard bounds
PARAMETER_BOUNDS: Dict[str, Tuple[float, float]] = {
    "min_edge_percent": (0.3, 2.0),
    "min_score": (20.0, 90.0),
    "max_expected_duration_seconds": (600.0, 86_400.0),
    "stop_loss_percent": (0.2, 2.0),
}


def clamp_adjustments(raw: Dict[str, Any]) -> Dict[str, float]:
    """Keep allow-listed numeric keys only, clamped to their bounds."""
    result = {}
    for key, value in (raw or {}).items():
        bounds = PARAMETER_BOUNDS.get(key)
        if bounds is None:
            continue
        try:
            number = float(value)
        except (TypeError, ValueError):
            continue
        result[key] = max(bounds[0], min(bounds[1], number))
    return result


class TradeAnalysisSummary(BaseModel):
    """Recent outcomes of a lane, as handed to an advisor."""

    trade_count: int = Field(description="Trades summarised")
    hit_rate: float = Field(description="Share of successful trades (%)")
    avg_net_profit: float = Field(description="Average net profit per trade")
    timeout_count: int = Field(default=0)
    stop_loss_count: int = Field(default=0)
    trailing_stop_count: int = Field(default=0)
    error_count: int = Field(default=0)
    avg_duration_seconds: float = Field(default=0.0)
    speed_mode: SpeedMode = Field(default=SpeedMode.NORMAL)
    current_params: Dict[str, float] = Field(default_factory=dict, description="Current tunable values")

    @classmethod
    def from_results(
        cls,
        results: Iterable[TradeCycleResult],
        speed_mode: SpeedMode = SpeedMode.NORMAL,
        current_params: Optional[Dict[str, float]] = None,
    ) -> "TradeAnalysisSummary":
        results = list(results)
        count = len(results)

        def reason_count(reason: ExitReason) -> int:
            return sum(1 for r in results if r.exit_reason == reason)

        return cls(
            trade_count=count,
            hit_rate=(sum(1 for r in results if r.success) / count * 100) if count else 0.0,
            avg_net_profit=(sum(r.actual_net_profit for r in results) / count) if count else 0.0,
            timeout_count=reason_count(ExitReason.TIMEOUT),
            stop_loss_count=reason_count(ExitReason.STOP_LOSS),
            trailing_stop_count=reason_count(ExitReason.TRAILING_STOP),
            error_count=reason_count(ExitReason.ERROR),
            avg_duration_seconds=(
                sum(r.duration.total_seconds() for r in results) / count if count else 0.0
            ),
            speed_mode=speed_mode,
            current_params={
                k: v for k, v in (current_params or {}).items() if k in PARAMETER_BOUNDS
            },
        )


@dataclass
class AdvisoryOutcome:
    source: str
    adjustments: Dict[str, float] = field(default_factory=dict)
    notes: List[str] = field(default_factory=list)


class RuleBasedAdvisor:
    """Deterministic tuning from the lane's recent outcomes."""

    source = "rules"

    def __init__(self, min_trades: int = 5, weak_hit_rate: float = 80.0, strong_hit_rate: float = 98.0):
        self.min_trades = min_trades
        self.weak_hit_rate = weak_hit_rate
        self.strong_hit_rate = strong_hit_rate

    @property
    def available(self) -> bool:
        return True

    async def recommend(self, summary: TradeAnalysisSummary) -> AdvisoryOutcome:
        return self.evaluate(summary)

    def evaluate(self, summary: TradeAnalysisSummary) -> AdvisoryOutcome:
        if summary.trade_count < self.min_trades:
            return AdvisoryOutcome(
                source=self.source,
                notes=[f"Only {summary.trade_count} trades, no adjustment"],
            )

        params = summary.current_params
        count = summary.trade_count
        raw: Dict[str, float] = {}
        notes: List[str] = []

        if summary.hit_rate < self.weak_hit_rate:
            raw["min_edge_percent"] = params.get("min_edge_percent", 0.6) + 0.1
            raw["min_score"] = params.get("min_score", 40.0) + 5
            notes.append(f"Hit rate {summary.hit_rate:.1f}% weak: raising edge and score floors")
        elif summary.hit_rate >= self.strong_hit_rate and summary.timeout_count == 0:
            raw["min_score"] = params.get("min_score", 40.0) - 5
            notes.append(f"Hit rate {summary.hit_rate:.1f}%: relaxing score floor")

        if summary.timeout_count / count > 0.3:
            raw["max_expected_duration_seconds"] = (
                params.get("max_expected_duration_seconds", 21_600.0) * 0.75
            )
            notes.append(f"{summary.timeout_count}/{count} timeouts: preferring faster setups")

        if summary.stop_loss_count / count > 0.2:
            raw["stop_loss_percent"] = params.get("stop_loss_percent", 0.5) * 0.8
            notes.append(f"{summary.stop_loss_count}/{count} stop-outs: tightening stop-loss")

        adjustments = clamp_adjustments(raw)
        # drop no-op changes caused by clamping at a bound
        adjustments = {k: v for k, v in adjustments.items() if params.get(k) != v}
        if not notes:
            notes.append("Parameters unchanged")
        return AdvisoryOutcome(source=self.source, adjustments=adjustments, notes=notes)


class LLMAdvisor:
    """LLM-backed advisor over an OpenAI-compatible chat completions API."""

    source = "llm"

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        self.config = config or {}
        self.enabled = self.config.get('enabled', False)
        self.api_key = self.config.get('api_key', '')
        self.model = self.config.get('model', 'gpt-4o-mini')
        self.base_url = self.config.get('base_url', 'https://api.openai.com/v1')
        self.timeout = self.config.get('timeout', 10)
        self._session: Optional[aiohttp.ClientSession] = None
        logger.info(f"LLM advisor initialized (enabled: {self.available})")

    @property
    def available(self) -> bool:
        return bool(self.enabled and self.api_key)

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            )
        return self._session

    async def close(self):
        if self._session and not self._session.closed:
            await self._session.close()

    async def recommend(self, summary: TradeAnalysisSummary) -> AdvisoryOutcome:
        """Ask the LLM for adjustments. Raises on any transport or format error."""
        session = await self._get_session()
        payload = {
            "model": self.model,
            "messages": [
                {
                    "role": "system",
                    "content": (
                        "You tune a crypto trade qualification filter. Reply in JSON with "
                        "'adjustments' (object, keys limited to: "
                        f"{', '.join(sorted(PARAMETER_BOUNDS))}) and 'notes' (list of strings). "
                        "You must NOT suggest position sizes, profit thresholds or removing stop-losses."
                    ),
                },
                {"role": "user", "content": self._build_prompt(summary)},
            ],
            "temperature": 0.2,
            "max_tokens": 400,
            "response_format": {"type": "json_object"},
        }
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

        async with session.post(
            f"{self.base_url}/chat/completions",
            json=payload,
            headers=headers,
        ) as response:
            if response.status != 200:
                error_text = await response.text()
                raise RuntimeError(f"LLM API error {response.status}: {error_text}")
            data = await response.json()

        content = data["choices"][0]["message"]["content"]
        return self._sanitize_response(json.loads(content))

    @staticmethod
    def _build_prompt(summary: TradeAnalysisSummary) -> str:
        return (
            f"Recent trades: {summary.trade_count}\n"
            f"- Hit rate: {summary.hit_rate:.1f}%\n"
            f"- Average net profit: ${summary.avg_net_profit:.2f}\n"
            f"- Timeouts: {summary.timeout_count}\n"
            f"- Stop-losses: {summary.stop_loss_count}\n"
            f"- Trailing stops: {summary.trailing_stop_count}\n"
            f"- Average duration: {summary.avg_duration_seconds:.0f}s\n"
            f"- Speed mode: {summary.speed_mode.value}\n"
            f"- Current parameters: {json.dumps(summary.current_params)}\n\n"
            f"Provide your adjustments as JSON."
        )

    def _sanitize_response(self, raw: Dict[str, Any]) -> AdvisoryOutcome:
        """Strip disallowed keys and clamp values."""
        adjustments = raw.get("adjustments") if isinstance(raw, dict) else None
        notes = raw.get("notes", []) if isinstance(raw, dict) else []
        if isinstance(notes, str):
            notes = [notes]
        return AdvisoryOutcome(
            source=self.source,
            adjustments=clamp_adjustments(adjustments if isinstance(adjustments, dict) else {}),
            notes=[str(n) for n in notes][:10],
        )


class AdvisoryService:
    """
    Calls the optional primary advisor under a timeout and falls back to
    the rule-based advisor on absence, error or timeout.
    """

    def __init__(self, primary=None, fallback: Optional[RuleBasedAdvisor] = None, timeout: float = 10.0):
        self.primary = primary
        self.fallback = fallback or RuleBasedAdvisor()
        self.timeout = timeout
        self.fallback_count = 0
        self.last_outcome: Optional[AdvisoryOutcome] = None

    async def recommend(self, summary: TradeAnalysisSummary) -> AdvisoryOutcome:
        outcome = None
        if self.primary is not None and self.primary.available:
            try:
                outcome = await asyncio.wait_for(self.primary.recommend(summary), timeout=self.timeout)
            except asyncio.TimeoutError:
                logger.warning(f"Advisor timed out after {self.timeout}s, using rule-based fallback")
            except Exception as e:
                logger.warning(f"Advisor failed, using rule-based fallback: {e}")
            if outcome is None:
                self.fallback_count += 1

        if outcome is None:
            outcome = self.fallback.evaluate(summary)

        self.last_outcome = outcome
        return outcome

    async def close(self):
        if self.primary is not None and hasattr(self.primary, "close"):
            await self.primary.close()
