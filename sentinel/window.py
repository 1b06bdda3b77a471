"""Time-bounded detection state: signature dedupe and the sliding sample window."""
from __future__ import annotations

import time
from collections import deque
from typing import Callable, Deque, Iterator, Optional, Sequence, Set, Tuple

from .state import EventSample, WindowMetrics


class SignatureDeduplicator:
    """Remembers transaction signatures for ``ttl`` seconds.

    The set always mirrors the queue. Eviction runs lazily on every insert
    attempt, so memory is bounded by the arrival rate times the TTL.
    """

    def __init__(self, ttl: float, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._ttl = ttl
        self._clock = clock
        self._ordered: Deque[Tuple[float, str]] = deque()
        self._seen: Set[str] = set()

    def __len__(self) -> int:
        return len(self._ordered)

    def __contains__(self, signature: object) -> bool:
        return signature in self._seen

    def insert_if_new(self, signature: str) -> bool:
        now = self._clock()
        self._evict_expired(now)
        if signature in self._seen:
            return False
        self._seen.add(signature)
        self._ordered.append((now, signature))
        return True

    def _evict_expired(self, now: float) -> None:
        while self._ordered and now - self._ordered[0][0] > self._ttl:
            _, expired = self._ordered.popleft()
            self._seen.discard(expired)


class SlidingWindow:
    """Append-only, front-evicted window of recent samples, oldest first."""

    def __init__(self) -> None:
        self._samples: Deque[EventSample] = deque()

    def __len__(self) -> int:
        return len(self._samples)

    def __iter__(self) -> Iterator[EventSample]:
        return iter(self._samples)

    @property
    def samples(self) -> Tuple[EventSample, ...]:
        return tuple(self._samples)

    def push(self, sample: EventSample, window_secs: float) -> None:
        self._samples.append(sample)
        self._evict_expired(sample.observed_at, window_secs)

    def _evict_expired(self, now: float, window_secs: float) -> None:
        while self._samples and now - self._samples[0].observed_at > window_secs:
            self._samples.popleft()

    def metrics(self, guest_dignity: int, verified_user_mode: int) -> Optional[WindowMetrics]:
        total = len(self._samples)
        if total == 0:
            return None

        guest_requests = sum(1 for s in self._samples if s.dignity_score == guest_dignity)
        verified_requests = sum(1 for s in self._samples if s.user_mode == verified_user_mode)

        oldest_ms = self._samples[0].observed_unix_ms
        newest_ms = self._samples[-1].observed_unix_ms
        span_ms = max(newest_ms - oldest_ms, 1)
        observed_span_secs = span_ms / 1000.0

        return WindowMetrics(
            total_requests=total,
            guest_requests=guest_requests,
            verified_requests=verified_requests,
            guest_ratio=guest_requests / total,
            verified_ratio=verified_requests / total,
            guest_rate_per_sec=guest_requests / observed_span_secs,
            verified_rate_per_sec=verified_requests / observed_span_secs,
            velocity_growth_pct=compute_velocity_growth_pct(self._samples),
            latest_velocity_bps=self._samples[-1].effective_velocity_bps,
            observed_span_secs=observed_span_secs,
        )


def compute_velocity_growth_pct(samples: Sequence[EventSample]) -> float:
    """Growth of mean velocity between the two temporal halves of the window.

    The split is the midpoint of the wall-clock span, not the sample index. When
    either half is empty the first and last samples are compared instead.
    """

    if len(samples) < 2:
        return 0.0

    oldest = samples[0].observed_unix_ms / 1000.0
    newest = samples[-1].observed_unix_ms / 1000.0
    split = oldest + max(newest - oldest, 0.0) * 0.5

    previous = [s.effective_velocity_bps for s in samples if s.observed_unix_ms / 1000.0 < split]
    current = [s.effective_velocity_bps for s in samples if s.observed_unix_ms / 1000.0 >= split]

    if previous and current:
        baseline = sum(previous) / len(previous)
        latest = sum(current) / len(current)
    else:
        baseline = float(samples[0].effective_velocity_bps)
        latest = float(samples[-1].effective_velocity_bps)

    denominator = max(abs(baseline), 1.0)
    return ((latest - baseline) / denominator) * 100.0


__all__ = ["SignatureDeduplicator", "SlidingWindow", "compute_velocity_growth_pct"]
