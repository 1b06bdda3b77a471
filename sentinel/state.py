"""Value types flowing through the sentinel detection pipeline."""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, assert_never


__all__ = [
    "UserMode",
    "ResponseTier",
    "PreviewPriceEvent",
    "EventEnvelope",
    "EventSample",
    "WindowMetrics",
    "FuzzyThresholdSnapshot",
    "AttackAssessment",
    "AttackSignal",
]


class UserMode(Enum):
    """Caller classification attached to every preview by the pricing program."""

    BOT_SUSPECTED = 0
    GUEST = 1
    VERIFIED = 2

    @classmethod
    def from_wire(cls, value: int) -> "UserMode | None":
        try:
            return cls(value)
        except ValueError:
            return None


class ResponseTier(Enum):
    """Discrete response level derived from an attack probability."""

    OBSERVE = "observe"
    MILD = "mild"
    SEVERE = "severe"

    def requires_action(self) -> bool:
        if self is ResponseTier.OBSERVE:
            return False
        if self is ResponseTier.MILD or self is ResponseTier.SEVERE:
            return True
        assert_never(self)


@dataclass(frozen=True)
class PreviewPriceEvent:
    """Decoded ``PreviewPriceEvent`` body emitted by the pricing program."""

    final_price: int
    is_infinite: bool
    blocked: bool
    effective_velocity_bps: int
    dignity_score: int
    adapter_mask: int
    dignity_bucket: int
    user_mode: int

    @property
    def mode(self) -> UserMode | None:
        return UserMode.from_wire(self.user_mode)

    def as_dict(self) -> Dict[str, object]:
        return {
            "final_price": self.final_price,
            "is_infinite": self.is_infinite,
            "blocked": self.blocked,
            "effective_velocity_bps": self.effective_velocity_bps,
            "dignity_score": self.dignity_score,
            "adapter_mask": self.adapter_mask,
            "dignity_bucket": self.dignity_bucket,
            "user_mode": self.user_mode,
        }


@dataclass(frozen=True)
class EventEnvelope:
    """Timestamped event forwarded from the subscription to the detection loop."""

    signature: str
    observed_at: float
    observed_unix_ms: int
    event: PreviewPriceEvent

    def to_sample(self) -> "EventSample":
        return EventSample(
            observed_at=self.observed_at,
            observed_unix_ms=self.observed_unix_ms,
            effective_velocity_bps=self.event.effective_velocity_bps,
            dignity_score=self.event.dignity_score,
            user_mode=self.event.user_mode,
        )


@dataclass(frozen=True)
class EventSample:
    """Window entry. ``observed_at`` is a monotonic instant in seconds."""

    observed_at: float
    observed_unix_ms: int
    effective_velocity_bps: int
    dignity_score: int
    user_mode: int


@dataclass(frozen=True)
class WindowMetrics:
    """Aggregates recomputed from the sliding window on every push."""

    total_requests: int
    guest_requests: int
    verified_requests: int
    guest_ratio: float
    verified_ratio: float
    guest_rate_per_sec: float
    verified_rate_per_sec: float
    velocity_growth_pct: float
    latest_velocity_bps: int
    observed_span_secs: float

    def as_dict(self) -> Dict[str, float | int]:
        return {
            "total_requests": self.total_requests,
            "guest_requests": self.guest_requests,
            "verified_requests": self.verified_requests,
            "guest_ratio": self.guest_ratio,
            "verified_ratio": self.verified_ratio,
            "guest_rate_per_sec": self.guest_rate_per_sec,
            "verified_rate_per_sec": self.verified_rate_per_sec,
            "velocity_growth_pct": self.velocity_growth_pct,
            "latest_velocity_bps": self.latest_velocity_bps,
            "observed_span_secs": self.observed_span_secs,
        }


@dataclass(frozen=True)
class FuzzyThresholdSnapshot:
    """Thresholds materialized for a single jitter epoch."""

    guest_request_threshold: float
    acceleration_threshold: float
    scissor_gap_threshold: float
    low_entropy_threshold: float
    verified_absence_rate_max: float

    def as_dict(self) -> Dict[str, float]:
        return {
            "guest_request_threshold": self.guest_request_threshold,
            "acceleration_threshold": self.acceleration_threshold,
            "scissor_gap_threshold": self.scissor_gap_threshold,
            "low_entropy_threshold": self.low_entropy_threshold,
            "verified_absence_rate_max": self.verified_absence_rate_max,
        }


@dataclass(frozen=True)
class AttackAssessment:
    """Scored view of the window across the three anomaly dimensions."""

    probability: float
    tier: ResponseTier
    dimension_a_score: float
    dimension_b_score: float
    dimension_c_score: float
    acceleration_rms: float
    scissor_gap: float
    timestamp_entropy: float
    fuzzy: FuzzyThresholdSnapshot

    def as_dict(self) -> Dict[str, object]:
        return {
            "probability": self.probability,
            "tier": self.tier.value,
            "dimension_a_score": self.dimension_a_score,
            "dimension_b_score": self.dimension_b_score,
            "dimension_c_score": self.dimension_c_score,
            "acceleration_rms": self.acceleration_rms,
            "scissor_gap": self.scissor_gap,
            "timestamp_entropy": self.timestamp_entropy,
            "fuzzy": self.fuzzy.as_dict(),
        }


@dataclass(frozen=True)
class AttackSignal:
    """Qualifying assessment handed to the advisory and governance stages."""

    metrics: WindowMetrics
    assessment: AttackAssessment
    triggered_at: float
