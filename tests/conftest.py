from __future__ import annotations

import sys
from copy import deepcopy
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from sentinel.state import (  # noqa: E402
    AttackAssessment,
    AttackSignal,
    FuzzyThresholdSnapshot,
    ResponseTier,
    WindowMetrics,
)

# Every fuzzy range is collapsed to a single point so scores do not depend on
# the current jitter epoch.
BASE_CONFIG = {
    "solana": {
        "ws_url": "ws://127.0.0.1:8900",
        "rpc_url": "http://127.0.0.1:8899",
        "program_id": "5VqDVHqeCJW1cWZgydjJLG68ShDGVZ45k6cE7hUY9uMW",
        "admin_config_pubkey": "11111111111111111111111111111111",
    },
    "thresholds": {
        "window_secs": 30,
        "guest_dignity_score": 0,
        "min_samples_for_growth": 3,
        "dedupe_ttl_secs": 120,
        "fuzzy": {
            "jitter_epoch_secs": 60,
            "guest_request_min": 4,
            "guest_request_max": 4,
            "acceleration_min": 50.0,
            "acceleration_max": 50.0,
            "scissor_gap_min": 1.0,
            "scissor_gap_max": 1.0,
            "low_entropy_min": 0.4,
            "low_entropy_max": 0.4,
            "verified_absence_rate_max_min": 0.1,
            "verified_absence_rate_max_max": 0.1,
            "edge_noise_bps": 0,
        },
        "response": {"mild_probability": 0.75, "severe_probability": 0.9},
    },
    "governance": {
        "authority_keypair_path": "/dev/null",
        "min_action_interval_secs": 600,
    },
}


@pytest.fixture
def config_data():
    return deepcopy(BASE_CONFIG)


def _make_signal(tier: ResponseTier = ResponseTier.SEVERE, probability: float = 0.95, triggered_at: float = 0.0):
    metrics = WindowMetrics(
        total_requests=10,
        guest_requests=10,
        verified_requests=0,
        guest_ratio=1.0,
        verified_ratio=0.0,
        guest_rate_per_sec=11.1,
        verified_rate_per_sec=0.0,
        velocity_growth_pct=0.0,
        latest_velocity_bps=120,
        observed_span_secs=0.9,
    )
    assessment = AttackAssessment(
        probability=probability,
        tier=tier,
        dimension_a_score=0.12,
        dimension_b_score=1.0,
        dimension_c_score=1.0,
        acceleration_rms=0.0,
        scissor_gap=11.1,
        timestamp_entropy=0.0,
        fuzzy=FuzzyThresholdSnapshot(
            guest_request_threshold=4.0,
            acceleration_threshold=50.0,
            scissor_gap_threshold=1.0,
            low_entropy_threshold=0.4,
            verified_absence_rate_max=0.1,
        ),
    )
    return AttackSignal(metrics=metrics, assessment=assessment, triggered_at=triggered_at)


@pytest.fixture
def make_signal():
    return _make_signal
