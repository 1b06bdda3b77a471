"""Advisory governance agent with a deterministic fallback."""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx
from pydantic import BaseModel, Field, ValidationError, field_validator

from .config import RigConfig, ThresholdConfig
from .state import AttackSignal

logger = logging.getLogger(__name__)

TRIGGER = "TRIGGER"
BYPASS = "BYPASS"

SYSTEM_PREAMBLE = (
    "You are Wan Wan Sentinel governance copilot. "
    "Return STRICT JSON only with keys: action, confidence, reason. "
    "action must be TRIGGER or BYPASS. "
    "If tier is severe and dimensions agree, choose TRIGGER."
)


class AdvisoryError(RuntimeError):
    """Raised when the advisory source cannot produce a usable decision."""


class AgentDecision(BaseModel):
    """Recommendation returned by the advisory agent (or its fallback)."""

    action: str
    confidence: float = Field(ge=0.0, le=1.0)
    reason: str = ""

    @field_validator("action")
    @classmethod
    def _normalize_action(cls, value: str) -> str:
        action = value.strip().upper()
        if action not in {TRIGGER, BYPASS}:
            raise ValueError(f"action must be {TRIGGER} or {BYPASS}, got {value!r}")
        return action

    def should_trigger(self) -> bool:
        return self.action == TRIGGER

    @classmethod
    def deterministic_trigger(cls, reason: str) -> "AgentDecision":
        return cls(action=TRIGGER, confidence=1.0, reason=reason)


def extract_json_range(text: str) -> Optional[tuple[int, int]]:
    start = text.find("{")
    end = text.rfind("}")
    if start < 0 or end <= start:
        return None
    return start, end


def parse_agent_decision(raw: str) -> AgentDecision:
    """Parse an advisory reply, tolerating prose around the JSON object."""

    try:
        return AgentDecision.model_validate_json(raw)
    except ValidationError:
        pass

    span = extract_json_range(raw)
    if span is None:
        raise AdvisoryError(f"advisory response is not valid JSON: {raw!r}")
    start, end = span
    try:
        return AgentDecision.model_validate_json(raw[start:end + 1])
    except ValidationError as exc:
        raise AdvisoryError(f"failed to parse embedded JSON decision: {exc}") from exc


def build_prompt(signal: AttackSignal, thresholds: ThresholdConfig) -> str:
    assessment = signal.assessment
    metrics = signal.metrics
    fuzz = assessment.fuzzy
    lines = [
        f"window_secs={thresholds.window_secs}",
        f"guest_dignity={thresholds.guest_dignity_score}",
        f"tier={assessment.tier.value}",
        f"probability={assessment.probability:.4f}",
        f"dim_a={assessment.dimension_a_score:.4f}",
        f"dim_b={assessment.dimension_b_score:.4f}",
        f"dim_c={assessment.dimension_c_score:.4f}",
        f"acceleration_rms={assessment.acceleration_rms:.4f}",
        f"scissor_gap={assessment.scissor_gap:.4f}",
        f"timestamp_entropy={assessment.timestamp_entropy:.4f}",
        f"guest_requests={metrics.guest_requests}",
        f"verified_requests={metrics.verified_requests}",
        f"guest_rate_per_sec={metrics.guest_rate_per_sec:.4f}",
        f"verified_rate_per_sec={metrics.verified_rate_per_sec:.4f}",
        f"fuzzy_guest_threshold={fuzz.guest_request_threshold:.2f}",
        f"fuzzy_accel_threshold={fuzz.acceleration_threshold:.4f}",
        f"fuzzy_gap_threshold={fuzz.scissor_gap_threshold:.4f}",
        f"fuzzy_entropy_threshold={fuzz.low_entropy_threshold:.4f}",
        "output JSON only.",
    ]
    return "\n".join(lines)


class DecisionAgent:
    """Obtains TRIGGER/BYPASS recommendations from a chat completions endpoint.

    When the integration is disabled every request is answered with a
    deterministic TRIGGER. When it is enabled, :meth:`decide` raises
    :class:`AdvisoryError` on any failure and :meth:`decide_with_fallback`
    converts that failure into a TRIGGER so a qualifying signal is never lost.
    """

    def __init__(self, config: RigConfig, *, client: Optional[httpx.AsyncClient] = None) -> None:
        self._config = config
        self._client = client
        self._owns_client = client is None

    @property
    def enabled(self) -> bool:
        return self._config.enabled

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def decide(self, signal: AttackSignal, thresholds: ThresholdConfig) -> AgentDecision:
        if not self._config.enabled:
            return AgentDecision.deterministic_trigger("rig disabled; deterministic judge triggered")

        client = self._ensure_client()
        payload = {
            "model": self._config.model,
            "temperature": 0,
            "messages": [
                {"role": "system", "content": SYSTEM_PREAMBLE},
                {"role": "user", "content": build_prompt(signal, thresholds)},
            ],
        }
        try:
            response = await client.post("/chat/completions", json=payload)
            response.raise_for_status()
            body = response.json()
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            raise AdvisoryError(f"advisory prompt failed: {exc}") from exc
        except ValueError as exc:
            # JSONDecodeError and UnicodeDecodeError both land here.
            raise AdvisoryError(f"advisory returned an undecodable body: {exc}") from exc

        return parse_agent_decision(_completion_text(body))

    async def decide_with_fallback(
        self,
        signal: AttackSignal,
        thresholds: ThresholdConfig,
    ) -> AgentDecision:
        try:
            return await self.decide(signal, thresholds)
        except Exception as exc:
            logger.warning("advisory decision failed, fallback to deterministic trigger error=%r", exc)
            return AgentDecision.deterministic_trigger("rig failure fallback")

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        api_key = self._config.resolved_api_key()
        if not api_key:
            raise AdvisoryError("rig enabled but no API key configured (missing OPENAI_API_KEY?)")
        options: Dict[str, Any] = {
            "base_url": self._config.base_url.rstrip("/"),
            "headers": {"Authorization": f"Bearer {api_key}"},
        }
        if self._config.timeout_secs is not None:
            options["timeout"] = self._config.timeout_secs
        try:
            self._client = httpx.AsyncClient(**options)
        except (httpx.InvalidURL, ValueError, TypeError) as exc:
            raise AdvisoryError(f"invalid advisory client settings: {exc}") from exc
        return self._client


def _completion_text(body: object) -> str:
    try:
        content = body["choices"][0]["message"]["content"]  # type: ignore[index]
    except (KeyError, IndexError, TypeError) as exc:
        raise AdvisoryError(f"unexpected advisory response shape: {body!r}") from exc
    if not isinstance(content, str):
        raise AdvisoryError(f"advisory response content is not text: {content!r}")
    return content


__all__ = [
    "AdvisoryError",
    "AgentDecision",
    "BYPASS",
    "DecisionAgent",
    "TRIGGER",
    "build_prompt",
    "extract_json_range",
    "parse_agent_decision",
]
