"""Sentinel orchestration: subscription producer and sequential detection consumer."""
from __future__ import annotations

import asyncio
import logging
import time
from contextlib import aclosing
from dataclasses import dataclass
from typing import AsyncIterator, Callable, Dict, Generic, Optional, Protocol, Sequence, TypeVar

from .agent import AgentDecision, DecisionAgent
from .config import SentinelSettings
from .governance import GovernanceError, GovernanceExecutor, GovernanceOutcome
from .scoring import AttackScorer
from .state import AttackAssessment, AttackSignal, EventEnvelope, ResponseTier, WindowMetrics
from .window import SignatureDeduplicator, SlidingWindow
from .wire import decode_preview_event

logger = logging.getLogger(__name__)

T = TypeVar("T")

_END_OF_STREAM = object()


class ChannelClosed(RuntimeError):
    """Raised to the sender once the receiving side has closed the channel."""


class TransportError(RuntimeError):
    """Raised by a :class:`LogSource` when the subscription cannot be (re)established."""


class EventChannel(Generic[T]):
    """Bounded FIFO between the producer and the consumer.

    ``send`` suspends while the channel is full. Once the receiver calls
    :meth:`close`, pending and future sends raise :class:`ChannelClosed`.
    """

    def __init__(self, capacity: int) -> None:
        self._queue: asyncio.Queue[object] = asyncio.Queue(maxsize=max(capacity, 1))
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def qsize(self) -> int:
        return self._queue.qsize()

    async def send(self, item: T) -> None:
        if self._closed:
            raise ChannelClosed("receiver closed the channel")
        await self._queue.put(item)
        if self._closed:
            raise ChannelClosed("receiver closed the channel")

    async def finish(self) -> None:
        """Sender side: no more items will follow."""

        await self._queue.put(_END_OF_STREAM)

    async def recv(self) -> Optional[T]:
        if self._closed:
            return None
        item = await self._queue.get()
        if item is _END_OF_STREAM:
            return None
        return item  # type: ignore[return-value]

    def close(self) -> None:
        self._closed = True
        while True:
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break


@dataclass(frozen=True)
class LogBatch:
    """Log lines of one transaction that mentioned the pricing program."""

    signature: str
    logs: Sequence[str]
    failed: bool = False


class LogSource(Protocol):
    def stream(self) -> AsyncIterator[LogBatch]:
        ...


async def subscribe_preview_events(
    source: LogSource,
    channel: EventChannel[EventEnvelope],
    *,
    reconnect_backoff_ms: int,
    clock: Callable[[], float] = time.monotonic,
    wall_clock: Callable[[], float] = time.time,
) -> None:
    """Forward decoded preview events into ``channel`` until it is closed."""

    backoff = reconnect_backoff_ms / 1000.0
    while True:
        try:
            async with aclosing(source.stream()) as batches:
                async for batch in batches:
                    if batch.failed:
                        continue
                    event = decode_preview_event(batch.logs)
                    if event is None:
                        continue
                    logger.debug(
                        "preview event received tx_signature=%s price_lamports=%d blocked=%s "
                        "dignity_score=%d user_mode=%d effective_velocity_bps=%d",
                        batch.signature,
                        event.final_price,
                        event.blocked,
                        event.dignity_score,
                        event.user_mode,
                        event.effective_velocity_bps,
                    )
                    envelope = EventEnvelope(
                        signature=batch.signature,
                        observed_at=clock(),
                        observed_unix_ms=int(wall_clock() * 1000),
                        event=event,
                    )
                    try:
                        await channel.send(envelope)
                    except ChannelClosed:
                        logger.warning("consumer loop ended; stopping subscription")
                        return
            logger.warning("pubsub stream closed; reconnecting")
        except TransportError as exc:
            logger.warning("pubsub subscription failed; reconnecting error=%s", exc)
        except Exception as exc:
            logger.warning("pubsub stream raised unexpectedly; reconnecting error=%r", exc)
        if channel.closed:
            return
        await asyncio.sleep(backoff)


@dataclass(frozen=True)
class PipelineDecision:
    """Everything the consumer derived from one qualifying envelope."""

    envelope: EventEnvelope
    metrics: WindowMetrics
    assessment: AttackAssessment
    decision: Optional[AgentDecision] = None
    outcome: Optional[GovernanceOutcome] = None

    def as_dict(self) -> Dict[str, object]:
        payload: Dict[str, object] = {
            "signature": self.envelope.signature,
            "event": self.envelope.event.as_dict(),
            "metrics": self.metrics.as_dict(),
            "assessment": self.assessment.as_dict(),
        }
        if self.decision is not None:
            payload["decision"] = self.decision.model_dump()
        if self.outcome is not None:
            payload["outcome"] = self.outcome.as_dict()
        return payload


class SentinelEngine:
    """Sequential detection pipeline: dedupe, window, score, advise, govern.

    Only one envelope is processed at a time; the advisory call and the
    governance submission suspend this consumer but never the producer.
    """

    def __init__(
        self,
        settings: SentinelSettings,
        *,
        agent: DecisionAgent,
        governance: GovernanceExecutor,
        scorer: Optional[AttackScorer] = None,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
    ) -> None:
        thresholds = settings.thresholds
        self.settings = settings
        self.agent = agent
        self.governance = governance
        self.scorer = scorer or AttackScorer(thresholds)
        self.dedupe = SignatureDeduplicator(float(thresholds.dedupe_ttl_secs), clock=clock)
        self.window = SlidingWindow()
        self._window_secs = float(thresholds.window_secs)
        self._verified_mode = settings.verified_user_mode
        self._clock = clock
        self._wall_clock = wall_clock

    async def run(self, channel: EventChannel[EventEnvelope]) -> None:
        try:
            while True:
                envelope = await channel.recv()
                if envelope is None:
                    break
                await self.process(envelope)
        finally:
            channel.close()

    async def process(self, envelope: EventEnvelope) -> Optional[PipelineDecision]:
        thresholds = self.settings.thresholds
        if not self.dedupe.insert_if_new(envelope.signature):
            logger.debug("duplicate signature skipped tx_signature=%s", envelope.signature)
            return None

        self.window.push(envelope.to_sample(), self._window_secs)
        metrics = self.window.metrics(thresholds.guest_dignity_score, self._verified_mode)
        if metrics is None or metrics.total_requests < thresholds.min_samples_for_growth:
            return None

        assessment = self.scorer.assess(self.window.samples, metrics, int(self._wall_clock()))
        if assessment.tier is ResponseTier.OBSERVE:
            return PipelineDecision(envelope=envelope, metrics=metrics, assessment=assessment)

        signal = AttackSignal(metrics=metrics, assessment=assessment, triggered_at=self._clock())
        logger.warning(
            "attack assessment triggered tier=%s probability=%.4f dim_a=%.4f dim_b=%.4f dim_c=%.4f "
            "blocked=%s price_lamports=%d guest_requests=%d verified_requests=%d guest_ratio=%.4f "
            "verified_ratio=%.4f velocity_growth_pct=%.2f latest_velocity_bps=%d observed_span_secs=%.3f",
            assessment.tier.value,
            assessment.probability,
            assessment.dimension_a_score,
            assessment.dimension_b_score,
            assessment.dimension_c_score,
            envelope.event.blocked,
            envelope.event.final_price,
            metrics.guest_requests,
            metrics.verified_requests,
            metrics.guest_ratio,
            metrics.verified_ratio,
            metrics.velocity_growth_pct,
            metrics.latest_velocity_bps,
            metrics.observed_span_secs,
        )

        decision = await self.agent.decide_with_fallback(signal, thresholds)
        outcome: Optional[GovernanceOutcome] = None
        try:
            outcome = await self.governance.trigger_if_needed(signal, decision)
        except GovernanceError as exc:
            logger.error("governance action failed error=%s", exc)

        return PipelineDecision(
            envelope=envelope,
            metrics=metrics,
            assessment=assessment,
            decision=decision,
            outcome=outcome,
        )


async def run_pipeline(
    source: LogSource,
    engine: SentinelEngine,
    channel: EventChannel[EventEnvelope],
    *,
    reconnect_backoff_ms: int,
) -> bool:
    """Run producer and consumer together until either one stops.

    Returns ``False`` when the subscription task ended first, which leaves
    the detector without input.
    """

    producer = asyncio.create_task(
        subscribe_preview_events(source, channel, reconnect_backoff_ms=reconnect_backoff_ms),
        name="sentinel-subscription",
    )
    consumer = asyncio.create_task(engine.run(channel), name="sentinel-detector")
    try:
        done, _pending = await asyncio.wait({producer, consumer}, return_when=asyncio.FIRST_COMPLETED)
        if producer in done:
            if producer.cancelled():
                logger.error("subscription task was cancelled; stopping detector")
            elif producer.exception() is not None:
                logger.error("subscription task crashed; stopping detector", exc_info=producer.exception())
            else:
                logger.error("subscription task stopped; stopping detector")
            return False
        consumer.result()
        return True
    finally:
        producer.cancel()
        consumer.cancel()
        await asyncio.gather(producer, consumer, return_exceptions=True)


__all__ = [
    "ChannelClosed",
    "EventChannel",
    "LogBatch",
    "LogSource",
    "PipelineDecision",
    "SentinelEngine",
    "TransportError",
    "run_pipeline",
    "subscribe_preview_events",
]
