"""Epoch-keyed fuzzy thresholds.

Every threshold moves within its configured range once per jitter epoch. The
position is a SHA-256 digest of a domain tag, the threshold label and the epoch
number, so two processes looking at the same epoch agree bit for bit while an
observer without the ranges cannot predict the boundary.
"""
from __future__ import annotations

import hashlib
import sys

from .config import FuzzyConfig
from .state import FuzzyThresholdSnapshot

DOMAIN_TAG = b"wanwan-sentinel-v2"
_U64_MAX = (1 << 64) - 1


def epoch_for(now_unix_secs: int, jitter_epoch_secs: int) -> int:
    return now_unix_secs // max(jitter_epoch_secs, 1)


def hash_to_unit(epoch: int, label: str) -> float:
    """Map ``(epoch, label)`` to a float in ``[0, 1]``."""

    hasher = hashlib.sha256()
    hasher.update(DOMAIN_TAG)
    hasher.update(label.encode("utf-8"))
    hasher.update(epoch.to_bytes(8, "little", signed=False))
    value = int.from_bytes(hasher.digest()[:8], "little", signed=False)
    return value / _U64_MAX


def fuzzy_in_range(
    minimum: float,
    maximum: float,
    now_unix_secs: int,
    jitter_epoch_secs: int,
    label: str,
) -> float:
    if abs(maximum - minimum) < sys.float_info.epsilon:
        return minimum
    unit = hash_to_unit(epoch_for(now_unix_secs, jitter_epoch_secs), label)
    return min(maximum, minimum + (maximum - minimum) * unit)


def fuzzy_unit_noise(now_unix_secs: int, jitter_epoch_secs: int, label: str) -> float:
    """Deterministic noise in ``[-1, 1]`` for the current epoch."""

    return hash_to_unit(epoch_for(now_unix_secs, jitter_epoch_secs), label) * 2.0 - 1.0


def materialize_fuzzy_thresholds(fuzzy: FuzzyConfig, now_unix_secs: int) -> FuzzyThresholdSnapshot:
    epoch_secs = fuzzy.jitter_epoch_secs
    return FuzzyThresholdSnapshot(
        guest_request_threshold=fuzzy_in_range(
            float(fuzzy.guest_request_min),
            float(fuzzy.guest_request_max),
            now_unix_secs,
            epoch_secs,
            "guest_request",
        ),
        acceleration_threshold=fuzzy_in_range(
            fuzzy.acceleration_min,
            fuzzy.acceleration_max,
            now_unix_secs,
            epoch_secs,
            "acceleration",
        ),
        scissor_gap_threshold=fuzzy_in_range(
            fuzzy.scissor_gap_min,
            fuzzy.scissor_gap_max,
            now_unix_secs,
            epoch_secs,
            "scissor_gap",
        ),
        low_entropy_threshold=fuzzy_in_range(
            fuzzy.low_entropy_min,
            fuzzy.low_entropy_max,
            now_unix_secs,
            epoch_secs,
            "low_entropy",
        ),
        verified_absence_rate_max=fuzzy_in_range(
            fuzzy.verified_absence_rate_max_min,
            fuzzy.verified_absence_rate_max_max,
            now_unix_secs,
            epoch_secs,
            "verified_absence_rate",
        ),
    )


__all__ = [
    "DOMAIN_TAG",
    "epoch_for",
    "fuzzy_in_range",
    "fuzzy_unit_noise",
    "hash_to_unit",
    "materialize_fuzzy_thresholds",
]
