"""Three-dimension attack scoring for the sliding window."""
from __future__ import annotations

import math
from itertools import pairwise
from typing import Sequence

from .config import ResponseThresholds, ThresholdConfig
from .fuzzy import fuzzy_unit_noise, materialize_fuzzy_thresholds
from .state import AttackAssessment, EventSample, ResponseTier, WindowMetrics

ENTROPY_BINS = 12
ENTROPY_BUCKET_MS = 100
EDGE_NOISE_LABEL = "edge_noise"

VERIFIED_VANISH_FLOOR = 0.94
COMPOSITE_ACCELERATION_BONUS = 0.08
LOW_ENTROPY_BONUS = 0.1


class AttackScorer:
    """Combines window metrics and epoch thresholds into an :class:`AttackAssessment`."""

    def __init__(self, thresholds: ThresholdConfig) -> None:
        self._thresholds = thresholds

    def assess(
        self,
        samples: Sequence[EventSample],
        metrics: WindowMetrics,
        now_unix_secs: int,
    ) -> AttackAssessment:
        thresholds = self._thresholds
        fuzz = materialize_fuzzy_thresholds(thresholds.fuzzy, now_unix_secs)

        # Dimension A: acceleration anomaly, blended with guest pressure.
        acceleration_rms = compute_velocity_second_derivative_rms(samples)
        guest_pressure = membership_high(float(metrics.guest_requests), fuzz.guest_request_threshold)
        dimension_a = membership_high(acceleration_rms, fuzz.acceleration_threshold)
        dimension_a = _clamp_unit(0.75 * dimension_a + 0.25 * guest_pressure)

        # Dimension B: guest/verified scissor gap.
        scissor_gap = metrics.guest_rate_per_sec - metrics.verified_rate_per_sec
        dimension_b = membership_high(scissor_gap, fuzz.scissor_gap_threshold)
        verified_disappeared = metrics.verified_rate_per_sec <= fuzz.verified_absence_rate_max
        guest_spike = float(metrics.guest_requests) >= fuzz.guest_request_threshold
        composite = verified_disappeared and guest_spike
        if composite:
            dimension_b = max(dimension_b, VERIFIED_VANISH_FLOOR)

        # Dimension C: low timing entropy means machine-regular arrivals.
        timestamp_entropy = compute_timestamp_entropy(samples)
        dimension_c = membership_low(timestamp_entropy, fuzz.low_entropy_threshold)
        if timestamp_entropy < fuzz.low_entropy_threshold * 0.6:
            dimension_c = min(dimension_c + LOW_ENTROPY_BONUS, 1.0)

        voting = thresholds.voting
        weight_sum = max(
            voting.dimension_a_weight + voting.dimension_b_weight + voting.dimension_c_weight,
            1e-9,
        )
        probability = (
            dimension_a * voting.dimension_a_weight
            + dimension_b * voting.dimension_b_weight
            + dimension_c * voting.dimension_c_weight
        ) / weight_sum

        if composite and dimension_a > 0.7:
            probability = min(probability + COMPOSITE_ACCELERATION_BONUS, 1.0)

        edge_noise = fuzzy_unit_noise(
            now_unix_secs,
            thresholds.fuzzy.jitter_epoch_secs,
            EDGE_NOISE_LABEL,
        ) * (thresholds.fuzzy.edge_noise_bps / 10_000.0)
        probability = _clamp_unit(probability + edge_noise)

        tier = classify_tier(probability, thresholds.response)

        if composite and dimension_b > 0.9 and dimension_c > 0.8:
            tier = ResponseTier.SEVERE
            probability = max(probability, thresholds.response.severe_probability)

        return AttackAssessment(
            probability=probability,
            tier=tier,
            dimension_a_score=dimension_a,
            dimension_b_score=dimension_b,
            dimension_c_score=dimension_c,
            acceleration_rms=acceleration_rms,
            scissor_gap=scissor_gap,
            timestamp_entropy=timestamp_entropy,
            fuzzy=fuzz,
        )


def classify_tier(probability: float, response: ResponseThresholds) -> ResponseTier:
    if probability >= response.severe_probability:
        return ResponseTier.SEVERE
    if probability >= response.mild_probability:
        return ResponseTier.MILD
    return ResponseTier.OBSERVE


def sigmoid(x: float) -> float:
    # math.exp overflows below this point.
    if x < -700.0:
        return 0.0
    return 1.0 / (1.0 + math.exp(-x))


def membership_high(value: float, threshold: float) -> float:
    width = max(abs(threshold), 1.0) * 0.35
    return sigmoid((value - threshold) / width)


def membership_low(value: float, threshold: float) -> float:
    width = max(abs(threshold), 0.05) * 0.35
    return sigmoid((threshold - value) / width)


def compute_velocity_second_derivative_rms(samples: Sequence[EventSample]) -> float:
    """RMS of the discrete second derivative of velocity over wall-clock time."""

    if len(samples) < 3:
        return 0.0

    sum_sq = 0.0
    count = 0
    for i in range(2, len(samples)):
        s0, s1, s2 = samples[i - 2], samples[i - 1], samples[i]
        t0 = s0.observed_unix_ms / 1000.0
        t1 = s1.observed_unix_ms / 1000.0
        t2 = s2.observed_unix_ms / 1000.0

        dt1 = max(t1 - t0, 1e-3)
        dt2 = max(t2 - t1, 1e-3)

        slope1 = (s1.effective_velocity_bps - s0.effective_velocity_bps) / dt1
        slope2 = (s2.effective_velocity_bps - s1.effective_velocity_bps) / dt2
        second = (slope2 - slope1) / max((dt1 + dt2) * 0.5, 1e-3)

        sum_sq += second * second
        count += 1

    return math.sqrt(sum_sq / count) if count else 0.0


def compute_timestamp_entropy(samples: Sequence[EventSample]) -> float:
    """Normalized Shannon entropy of inter-arrival times in 100 ms buckets."""

    if len(samples) < 3:
        return 1.0

    counts = [0] * ENTROPY_BINS
    total = 0
    for previous, current in pairwise(samples):
        dt_ms = max(current.observed_unix_ms - previous.observed_unix_ms, 1)
        counts[min(dt_ms // ENTROPY_BUCKET_MS, ENTROPY_BINS - 1)] += 1
        total += 1

    if total == 0:
        return 1.0

    entropy = 0.0
    for count in counts:
        if count == 0:
            continue
        p = count / total
        entropy -= p * math.log(p)

    max_entropy = max(math.log(ENTROPY_BINS), 1e-9)
    return _clamp_unit(entropy / max_entropy)


def _clamp_unit(value: float) -> float:
    return max(0.0, min(1.0, value))


__all__ = [
    "AttackScorer",
    "classify_tier",
    "compute_timestamp_entropy",
    "compute_velocity_second_derivative_rms",
    "membership_high",
    "membership_low",
    "sigmoid",
]
