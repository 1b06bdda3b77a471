"""Sentinel core exports."""

from .agent import AdvisoryError, AgentDecision, DecisionAgent
from .config import ConfigurationError, SentinelSettings, load_settings
from .engine import (
    ChannelClosed,
    EventChannel,
    LogBatch,
    PipelineDecision,
    SentinelEngine,
    TransportError,
    run_pipeline,
    subscribe_preview_events,
)
from .fuzzy import materialize_fuzzy_thresholds
from .governance import (
    ChainError,
    GovernanceError,
    GovernanceExecutor,
    GovernanceOutcome,
    GovernanceStatus,
    ScoringModelPatch,
)
from .scoring import AttackScorer, classify_tier
from .state import (
    AttackAssessment,
    AttackSignal,
    EventEnvelope,
    EventSample,
    FuzzyThresholdSnapshot,
    PreviewPriceEvent,
    ResponseTier,
    UserMode,
    WindowMetrics,
)
from .window import SignatureDeduplicator, SlidingWindow

__all__ = [
    "AdvisoryError",
    "AgentDecision",
    "AttackAssessment",
    "AttackScorer",
    "AttackSignal",
    "ChainError",
    "ChannelClosed",
    "ConfigurationError",
    "DecisionAgent",
    "EventChannel",
    "EventEnvelope",
    "EventSample",
    "FuzzyThresholdSnapshot",
    "GovernanceError",
    "GovernanceExecutor",
    "GovernanceOutcome",
    "GovernanceStatus",
    "LogBatch",
    "PipelineDecision",
    "PreviewPriceEvent",
    "ResponseTier",
    "ScoringModelPatch",
    "SentinelEngine",
    "SentinelSettings",
    "SignatureDeduplicator",
    "SlidingWindow",
    "TransportError",
    "UserMode",
    "WindowMetrics",
    "classify_tier",
    "load_settings",
    "materialize_fuzzy_thresholds",
    "run_pipeline",
    "subscribe_preview_events",
]
