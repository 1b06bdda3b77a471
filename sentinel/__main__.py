"""Process entry point: ``python -m sentinel [config.toml]``."""
from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from typing import Optional, Sequence

from solders.keypair import Keypair

from .agent import DecisionAgent
from .chain import (
    SolanaGateway,
    SolanaLogSource,
    StartupError,
    load_keypair,
    resolve_program_accounts,
)
from .config import ConfigurationError, SentinelSettings, default_config_path, load_settings
from .engine import EventChannel, SentinelEngine, run_pipeline
from .governance import GovernanceExecutor
from .state import EventEnvelope
from .wire import PAYLOAD_V0_LEN, PayloadSpecError, ensure_payload_spec

logger = logging.getLogger("sentinel")

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_STARTUP_FAILURE = EXIT_FAILURE


def configure_logging(level: Optional[str] = None) -> None:
    level_name = (level or os.environ.get("SENTINEL_LOG") or "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format="%(asctime)s %(levelname)s %(message)s",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sentinel",
        description="Watch pricing preview events and submit scoring-model hotfixes under attack.",
    )
    parser.add_argument(
        "config",
        nargs="?",
        default=None,
        help="path to the sentinel TOML configuration (default: %s)" % default_config_path(),
    )
    parser.add_argument("--log-level", default=None, help="override SENTINEL_LOG")
    return parser


async def run(settings: SentinelSettings, authority: Keypair) -> bool:
    gateway = SolanaGateway.from_settings(settings, authority=authority)
    source = SolanaLogSource.from_settings(settings)
    governance = GovernanceExecutor(
        gateway,
        min_action_interval_secs=float(settings.governance.min_action_interval_secs),
    )
    agent = DecisionAgent(settings.rig)
    engine = SentinelEngine(settings, agent=agent, governance=governance)
    channel: EventChannel[EventEnvelope] = EventChannel(settings.runtime.event_channel_capacity)

    try:
        return await run_pipeline(
            source,
            engine,
            channel,
            reconnect_backoff_ms=settings.runtime.reconnect_backoff_ms,
        )
    finally:
        await agent.aclose()
        await gateway.aclose()


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level)

    try:
        ensure_payload_spec()
        settings = load_settings(args.config)
        program_id, admin_config = resolve_program_accounts(settings)
        authority = load_keypair(settings.governance.authority_keypair_path)
    except (PayloadSpecError, ConfigurationError, StartupError) as exc:
        logger.error("sentinel refused to start: %s", exc)
        return EXIT_STARTUP_FAILURE

    logger.info("Wan Wan Sentinel v2 started")
    logger.info("payload spec aligned: PAYLOAD_V0 len=%d", PAYLOAD_V0_LEN)
    logger.info(
        "sentinel governance config loaded program_id=%s admin_pda=%s authority=%s",
        program_id,
        admin_config,
        authority.pubkey(),
    )

    try:
        healthy = asyncio.run(run(settings, authority))
    except KeyboardInterrupt:
        logger.info("sentinel interrupted; shutting down")
        return EXIT_OK
    return EXIT_OK if healthy else EXIT_FAILURE


if __name__ == "__main__":
    sys.exit(main())
