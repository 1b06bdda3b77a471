"""Governance executor: at most one mitigation in flight, spaced by a cooldown."""
from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import asdict, dataclass, replace
from enum import Enum
from typing import Callable, Dict, Optional, Protocol, assert_never

import blake3

from .agent import AgentDecision
from .state import AttackSignal, ResponseTier
from .wire import PAYLOAD_V0_LEN

logger = logging.getLogger(__name__)

POLICY_TAG = "wanwan.sentinel.hotfix.v2"


class ChainError(RuntimeError):
    """Raised by a :class:`ChainGateway` when an RPC round trip fails."""


class GovernanceError(RuntimeError):
    """Raised when a mitigation instruction could not be submitted."""


class ChainGateway(Protocol):
    """On-chain operations needed by :class:`GovernanceExecutor`."""

    admin_config: str

    async def fetch_active_hash(self) -> Optional[bytes]:
        ...

    async def submit_model_hash(self, model_hash: bytes) -> str:
        ...


@dataclass(frozen=True)
class ScoringModelPatch:
    """Pricing-policy hotfix whose hash is committed on chain."""

    policy_tag: str
    payload_v0_len_bytes: int
    response_tier: str
    reason: str
    vrgda_k_multiplier: float
    guest_dignity_weight: float
    guest_heat_weight_multiplier: float
    guest_loyalty_discount_enabled: bool
    guest_trading_blocked: bool
    attack_probability: float
    dimension_a_score: float
    dimension_b_score: float
    dimension_c_score: float

    def to_json_bytes(self) -> bytes:
        return json.dumps(asdict(self), separators=(",", ":")).encode("utf-8")

    def model_hash(self) -> bytes:
        return blake3.blake3(self.to_json_bytes()).digest()


def build_scoring_patch(signal: AttackSignal, reason: str) -> ScoringModelPatch:
    tier = signal.assessment.tier
    if tier is ResponseTier.OBSERVE:
        policy = (1.0, 1.0, 1.0, True, False)
    elif tier is ResponseTier.MILD:
        # lift the VRGDA slope and guest heat, drop loyalty discount
        policy = (1.08, 1.0, 1.4, False, False)
    elif tier is ResponseTier.SEVERE:
        # zero guest dignity weight and block guest trades
        policy = (1.35, 0.0, 4.0, False, True)
    else:
        assert_never(tier)

    k_multiplier, dignity_weight, heat_multiplier, loyalty_enabled, trading_blocked = policy
    assessment = signal.assessment
    return ScoringModelPatch(
        policy_tag=POLICY_TAG,
        payload_v0_len_bytes=PAYLOAD_V0_LEN,
        response_tier=tier.value,
        reason=reason,
        vrgda_k_multiplier=k_multiplier,
        guest_dignity_weight=dignity_weight,
        guest_heat_weight_multiplier=heat_multiplier,
        guest_loyalty_discount_enabled=loyalty_enabled,
        guest_trading_blocked=trading_blocked,
        attack_probability=assessment.probability,
        dimension_a_score=assessment.dimension_a_score,
        dimension_b_score=assessment.dimension_b_score,
        dimension_c_score=assessment.dimension_c_score,
    )


@dataclass
class GovernanceState:
    action_in_flight: bool = False
    last_success_action_at: Optional[float] = None


class GovernanceStatus(Enum):
    IGNORED = "ignored"
    SKIPPED_IN_FLIGHT = "skipped_in_flight"
    SKIPPED_COOLDOWN = "skipped_cooldown"
    BYPASSED = "bypassed"
    SUBMITTED = "submitted"


@dataclass(frozen=True)
class GovernanceOutcome:
    """Result of one :meth:`GovernanceExecutor.trigger_if_needed` call."""

    status: GovernanceStatus
    tier: ResponseTier
    reason: str
    overridden: bool = False
    tx_signature: Optional[str] = None
    model_hash: Optional[bytes] = None
    hash_before: Optional[bytes] = None
    hash_after: Optional[bytes] = None

    @property
    def submitted(self) -> bool:
        return self.status is GovernanceStatus.SUBMITTED

    def as_dict(self) -> Dict[str, object]:
        return {
            "status": self.status.value,
            "tier": self.tier.value,
            "reason": self.reason,
            "overridden": self.overridden,
            "tx_signature": self.tx_signature,
            "model_hash": self.model_hash.hex() if self.model_hash else None,
            "hash_before": self.hash_before.hex() if self.hash_before else None,
            "hash_after": self.hash_after.hex() if self.hash_after else None,
        }


class GovernanceExecutor:
    """Submits scoring-model hotfixes for qualifying attack signals.

    ``_state`` is only touched while ``_lock`` is held. The lock covers the
    check-and-set before the network round trip and the flip back after it,
    never the round trip itself.
    """

    def __init__(
        self,
        gateway: ChainGateway,
        *,
        min_action_interval_secs: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._gateway = gateway
        self._min_action_interval = min_action_interval_secs
        self._clock = clock
        self._lock = asyncio.Lock()
        self._state = GovernanceState()

    async def snapshot(self) -> GovernanceState:
        async with self._lock:
            return GovernanceState(
                action_in_flight=self._state.action_in_flight,
                last_success_action_at=self._state.last_success_action_at,
            )

    async def trigger_if_needed(self, signal: AttackSignal, decision: AgentDecision) -> GovernanceOutcome:
        tier = signal.assessment.tier
        if not tier.requires_action():
            return GovernanceOutcome(GovernanceStatus.IGNORED, tier, decision.reason)

        async with self._lock:
            if self._state.action_in_flight:
                logger.debug("governance action skipped: another action in flight")
                return GovernanceOutcome(GovernanceStatus.SKIPPED_IN_FLIGHT, tier, decision.reason)
            last = self._state.last_success_action_at
            if last is not None and self._clock() - last < self._min_action_interval:
                logger.debug("governance action skipped: cooldown")
                return GovernanceOutcome(GovernanceStatus.SKIPPED_COOLDOWN, tier, decision.reason)
            self._state.action_in_flight = True

        try:
            outcome = await self._run(signal, decision)
        except BaseException:
            async with self._lock:
                self._state.action_in_flight = False
            raise

        async with self._lock:
            self._state.action_in_flight = False
            self._state.last_success_action_at = self._clock()
        return outcome

    async def _run(self, signal: AttackSignal, decision: AgentDecision) -> GovernanceOutcome:
        tier = signal.assessment.tier
        force_severe = tier is ResponseTier.SEVERE
        if decision.should_trigger():
            return await self.execute_action(signal, decision.reason)
        if force_severe:
            logger.warning(
                "override BYPASS because tier=severe confidence=%.4f reason=%s",
                decision.confidence,
                decision.reason,
            )
            outcome = await self.execute_action(signal, decision.reason)
            return replace(outcome, overridden=True)
        logger.info(
            "rig decided to bypass mild response confidence=%.4f reason=%s",
            decision.confidence,
            decision.reason,
        )
        return GovernanceOutcome(GovernanceStatus.BYPASSED, tier, decision.reason)

    async def execute_action(self, signal: AttackSignal, reason: str) -> GovernanceOutcome:
        assessment = signal.assessment
        patch = build_scoring_patch(signal, reason)
        model_hash = patch.model_hash()

        hash_before = await self._read_active_hash()
        try:
            tx_signature = await self._gateway.submit_model_hash(model_hash)
        except ChainError as exc:
            raise GovernanceError(f"set_scoring_model_hash tx failed: {exc}") from exc
        hash_after = await self._read_active_hash()

        latency_ms = int(max(self._clock() - signal.triggered_at, 0.0) * 1000)
        logger.info(
            "governance action submitted tx_signature=%s tier=%s probability=%.4f "
            "dim_a=%.4f dim_b=%.4f dim_c=%.4f decision_latency_ms=%d reason=%s",
            tx_signature,
            assessment.tier.value,
            assessment.probability,
            assessment.dimension_a_score,
            assessment.dimension_b_score,
            assessment.dimension_c_score,
            latency_ms,
            reason,
        )
        if hash_before is not None and hash_after is not None:
            logger.info(
                "admin_config active_scoring_model_hash verified admin_config=%s before=%s after=%s",
                self._gateway.admin_config,
                hash_before.hex(),
                hash_after.hex(),
            )
            if hash_after != model_hash:
                logger.warning(
                    "active_scoring_model_hash does not match submitted hash expected=%s observed=%s",
                    model_hash.hex(),
                    hash_after.hex(),
                )

        return GovernanceOutcome(
            status=GovernanceStatus.SUBMITTED,
            tier=assessment.tier,
            reason=reason,
            tx_signature=tx_signature,
            model_hash=model_hash,
            hash_before=hash_before,
            hash_after=hash_after,
        )

    async def _read_active_hash(self) -> Optional[bytes]:
        try:
            return await self._gateway.fetch_active_hash()
        except ChainError as exc:
            logger.debug("admin_config read failed error=%s", exc)
            return None


__all__ = [
    "ChainError",
    "ChainGateway",
    "GovernanceError",
    "GovernanceExecutor",
    "GovernanceOutcome",
    "GovernanceState",
    "GovernanceStatus",
    "POLICY_TAG",
    "ScoringModelPatch",
    "build_scoring_patch",
]
