from __future__ import annotations

import asyncio
import sys
from pathlib import Path
from typing import List, Optional

import httpx
import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from sentinel.agent import DecisionAgent
from sentinel.config import RigConfig, settings_from_mapping
from sentinel.engine import (
    ChannelClosed,
    EventChannel,
    LogBatch,
    SentinelEngine,
    TransportError,
    run_pipeline,
    subscribe_preview_events,
)
from sentinel.governance import ChainError, GovernanceExecutor, GovernanceStatus
from sentinel.state import EventEnvelope, PreviewPriceEvent, ResponseTier
from sentinel.wire import encode_preview_event

BASE_UNIX_MS = 1_700_000_000_000


def _event(*, dignity: int = 0, mode: int = 1, velocity: int = 100) -> PreviewPriceEvent:
    return PreviewPriceEvent(
        final_price=1_000_000,
        is_infinite=False,
        blocked=False,
        effective_velocity_bps=velocity,
        dignity_score=dignity,
        adapter_mask=0,
        dignity_bucket=0,
        user_mode=mode,
    )


def _envelope(index: int, *, signature: Optional[str] = None, **event_fields) -> EventEnvelope:
    return EventEnvelope(
        signature=signature or f"sig-{index}",
        observed_at=index * 0.1,
        observed_unix_ms=BASE_UNIX_MS + index * 100,
        event=_event(**event_fields),
    )


def _batch(signature: str, *, failed: bool = False, logs: Optional[List[str]] = None) -> LogBatch:
    if logs is None:
        logs = ["Program log: Instruction: PreviewPrice", encode_preview_event(_event())]
    return LogBatch(signature=signature, logs=tuple(logs), failed=failed)


class ScriptedSource:
    """Each ``stream()`` call plays the next step: a list of batches or an exception."""

    def __init__(self, script) -> None:
        self.script = list(script)
        self.connections = 0

    async def stream(self):
        self.connections += 1
        if not self.script:
            raise TransportError("script exhausted")
        step = self.script.pop(0)
        if isinstance(step, Exception):
            raise step
        for batch in step:
            yield batch


class FakeGateway:
    admin_config = "AdminConfig1111111111111111111111111111111"

    def __init__(self, *, fail_submit: bool = False) -> None:
        self.fail_submit = fail_submit
        self.submissions: List[bytes] = []

    async def fetch_active_hash(self):
        return None

    async def submit_model_hash(self, model_hash: bytes) -> str:
        if self.fail_submit:
            raise ChainError("simulated send failure")
        self.submissions.append(model_hash)
        return f"tx-{len(self.submissions)}"


class ExplodingScorer:
    def assess(self, samples, metrics, now_unix_secs):
        raise AssertionError("scorer must not run below the sample floor")


def _engine(config_data, gateway=None, **kwargs) -> SentinelEngine:
    settings = settings_from_mapping(config_data)
    gateway = gateway or FakeGateway()
    governance = GovernanceExecutor(
        gateway,
        min_action_interval_secs=float(settings.governance.min_action_interval_secs),
    )
    return SentinelEngine(
        settings,
        agent=DecisionAgent(RigConfig(enabled=False)),
        governance=governance,
        wall_clock=lambda: BASE_UNIX_MS / 1000.0,
        **kwargs,
    )


def test_channel_is_fifo_and_finishes():
    async def scenario():
        channel = EventChannel(4)
        await channel.send(1)
        await channel.send(2)
        await channel.finish()
        return [await channel.recv(), await channel.recv(), await channel.recv()]

    assert asyncio.run(scenario()) == [1, 2, None]


def test_channel_applies_backpressure():
    async def scenario():
        channel = EventChannel(1)
        await channel.send("first")
        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(channel.send("second"), timeout=0.05)
        return channel.qsize()

    assert asyncio.run(scenario()) == 1


def test_closed_channel_rejects_sends():
    async def scenario():
        channel = EventChannel(2)
        await channel.send("queued")
        channel.close()
        with pytest.raises(ChannelClosed):
            await channel.send("late")
        return channel.qsize(), await channel.recv()

    assert asyncio.run(scenario()) == (0, None)


def test_producer_reconnects_and_filters_batches():
    source = ScriptedSource(
        [
            [
                _batch("failed-tx", failed=True),
                _batch("no-event", logs=["Program log: unrelated"]),
                _batch("sig-a"),
            ],
            TransportError("socket reset"),
            [_batch("sig-b"), _batch("sig-c")],
        ]
    )

    async def scenario():
        channel = EventChannel(8)
        producer = asyncio.create_task(
            subscribe_preview_events(
                source,
                channel,
                reconnect_backoff_ms=0,
                clock=lambda: 5.0,
                wall_clock=lambda: 1_700_000_000.25,
            )
        )
        received = [await channel.recv(), await channel.recv()]
        channel.close()
        await asyncio.wait_for(producer, timeout=2)
        return received

    received = asyncio.run(scenario())

    assert [envelope.signature for envelope in received] == ["sig-a", "sig-b"]
    assert received[0].observed_at == 5.0
    assert received[0].observed_unix_ms == 1_700_000_000_250
    assert received[0].event == _event()
    assert source.connections >= 3


def test_producer_stops_when_consumer_is_gone():
    source = ScriptedSource([[_batch("sig-a")], [_batch("sig-b")]])

    async def scenario():
        channel = EventChannel(8)
        channel.close()
        await asyncio.wait_for(
            subscribe_preview_events(source, channel, reconnect_backoff_ms=0),
            timeout=2,
        )

    asyncio.run(scenario())
    assert source.connections == 1


def test_duplicate_signatures_are_skipped(config_data):
    engine = _engine(config_data)

    async def scenario():
        await engine.process(_envelope(0, signature="dup"))
        return await engine.process(_envelope(1, signature="dup"))

    assert asyncio.run(scenario()) is None
    assert len(engine.window) == 1


def test_scorer_waits_for_minimum_samples(config_data):
    engine = _engine(config_data, scorer=ExplodingScorer())

    async def scenario():
        return [await engine.process(_envelope(i)) for i in range(2)]

    assert asyncio.run(scenario()) == [None, None]
    assert len(engine.window) == 2


def test_regular_guest_burst_triggers_one_hotfix(config_data):
    gateway = FakeGateway()
    engine = _engine(config_data, gateway)

    async def scenario():
        return [await engine.process(_envelope(i)) for i in range(10)]

    results = asyncio.run(scenario())

    assert results[0] is None and results[1] is None
    assert results[2].assessment.tier is ResponseTier.OBSERVE
    assert results[2].decision is None and results[2].outcome is None

    fired = results[3]
    assert fired.assessment.tier is ResponseTier.SEVERE
    assert fired.decision.should_trigger()
    assert fired.outcome.status is GovernanceStatus.SUBMITTED
    assert fired.as_dict()["outcome"]["tx_signature"] == "tx-1"

    assert all(r.outcome.status is GovernanceStatus.SKIPPED_COOLDOWN for r in results[4:])
    assert len(gateway.submissions) == 1


def test_severe_burst_submits_despite_advisory_bypass(config_data):
    config_data["thresholds"]["window_secs"] = 60
    config_data["thresholds"]["min_samples_for_growth"] = 5
    settings = settings_from_mapping(config_data)
    gateway = FakeGateway()

    def handler(request: httpx.Request) -> httpx.Response:
        content = '{"action": "BYPASS", "confidence": 0.8, "reason": "promo traffic"}'
        return httpx.Response(200, json={"choices": [{"message": {"content": content}}]})

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="https://rig.test/v1")
    engine = SentinelEngine(
        settings,
        agent=DecisionAgent(RigConfig(enabled=True, api_key="sk-test"), client=client),
        governance=GovernanceExecutor(gateway, min_action_interval_secs=600),
        wall_clock=lambda: BASE_UNIX_MS / 1000.0,
    )

    async def scenario():
        return [await engine.process(_envelope(i, velocity=100 + 25 * i)) for i in range(10)]

    results = asyncio.run(scenario())

    assert results[:4] == [None, None, None, None]
    fired = results[4]
    assert fired.assessment.tier is ResponseTier.SEVERE
    assert fired.assessment.dimension_b_score >= 0.94
    assert fired.decision.action == "BYPASS"
    assert fired.outcome.submitted
    assert fired.outcome.overridden
    assert len(gateway.submissions) == 1


def test_governance_failure_does_not_stop_pipeline(config_data):
    engine = _engine(config_data, FakeGateway(fail_submit=True))

    async def scenario():
        return [await engine.process(_envelope(i)) for i in range(5)]

    results = asyncio.run(scenario())

    assert results[3].assessment.tier is ResponseTier.SEVERE
    assert results[3].decision.should_trigger()
    assert results[3].outcome is None
    # the failed attempt did not start a cooldown
    assert results[4].outcome is None


def test_run_consumes_until_stream_finishes(config_data):
    gateway = FakeGateway()
    engine = _engine(config_data, gateway)

    async def scenario():
        channel = EventChannel(16)
        for i in range(6):
            await channel.send(_envelope(i))
        await channel.finish()
        await engine.run(channel)
        return channel

    channel = asyncio.run(scenario())

    assert channel.closed
    assert len(engine.window) == 6
    assert len(gateway.submissions) == 1


def test_producer_reconnects_after_socket_reset():
    source = ScriptedSource([ConnectionResetError("peer reset"), [_batch("sig-after-reset")]])

    async def scenario():
        channel = EventChannel(8)
        producer = asyncio.create_task(subscribe_preview_events(source, channel, reconnect_backoff_ms=0))
        envelope = await asyncio.wait_for(channel.recv(), timeout=2)
        channel.close()
        await asyncio.wait_for(producer, timeout=2)
        return envelope

    envelope = asyncio.run(scenario())

    assert envelope.signature == "sig-after-reset"
    assert source.connections >= 2


class IdleSource:
    async def stream(self):
        await asyncio.Event().wait()
        yield _batch("never")


class CancelledSource:
    async def stream(self):
        raise asyncio.CancelledError()
        yield _batch("never")


def test_pipeline_reports_dead_subscription(config_data):
    engine = _engine(config_data)

    async def scenario():
        channel = EventChannel(4)
        healthy = await asyncio.wait_for(
            run_pipeline(CancelledSource(), engine, channel, reconnect_backoff_ms=0),
            timeout=2,
        )
        return healthy, channel

    healthy, channel = asyncio.run(scenario())

    assert healthy is False
    assert channel.closed


def test_pipeline_ends_cleanly_when_stream_finishes(config_data):
    engine = _engine(config_data)

    async def scenario():
        channel = EventChannel(4)
        await channel.send(_envelope(0))
        await channel.finish()
        return await asyncio.wait_for(
            run_pipeline(IdleSource(), engine, channel, reconnect_backoff_ms=0),
            timeout=2,
        )

    assert asyncio.run(scenario()) is True
    assert len(engine.window) == 1
