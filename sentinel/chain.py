"""
Solana adapters for the sentinel: RPC gateway, log subscription and startup checks.
"""
from __future__ import annotations

import asyncio
import json
import logging
from contextlib import AsyncExitStack
from pathlib import Path
from typing import AsyncIterator, Optional, Tuple

import httpx
from solana.exceptions import SolanaRpcException
from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Commitment, Confirmed, Finalized, Processed
from solana.rpc.core import RPCException, TransactionExpiredBlockheightExceededError, UnconfirmedTxError
from solana.rpc.types import TxOpts
from solana.rpc.websocket_api import connect
from solders.instruction import AccountMeta, Instruction
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.rpc.config import RpcTransactionLogsFilterMentions
from solders.rpc.responses import LogsNotification
from solders.transaction import Transaction
from websockets.exceptions import WebSocketException

from .config import SentinelSettings
from .engine import LogBatch, TransportError
from .governance import ChainError
from .wire import build_set_scoring_model_hash_data, parse_admin_active_hash

logger = logging.getLogger(__name__)

ADMIN_CONFIG_SEED = b"admin_config_v2"

_STREAM_ERRORS = (OSError, WebSocketException, asyncio.TimeoutError)

_RPC_ERRORS = (
    SolanaRpcException,
    RPCException,
    UnconfirmedTxError,
    TransactionExpiredBlockheightExceededError,
    httpx.HTTPError,
)


class StartupError(RuntimeError):
    """Raised when the detector must refuse to start."""


def parse_commitment(value: Optional[str]) -> Commitment:
    normalized = (value or "confirmed").strip().lower()
    if normalized == "processed":
        return Processed
    if normalized == "finalized":
        return Finalized
    return Confirmed


def parse_pubkey(value: str, *, field: str) -> Pubkey:
    try:
        return Pubkey.from_string(value)
    except ValueError as exc:
        raise StartupError(f"invalid {field}: {value!r}") from exc


def derive_admin_config(program_id: Pubkey) -> Pubkey:
    address, _bump = Pubkey.find_program_address([ADMIN_CONFIG_SEED], program_id)
    return address


def verify_admin_config(program_id: Pubkey, admin_config: Pubkey) -> Pubkey:
    expected = derive_admin_config(program_id)
    if admin_config != expected:
        raise StartupError(
            f"solana.admin_config_pubkey mismatch: expected {expected}, got {admin_config}"
        )
    return expected


def load_keypair(path: str | Path) -> Keypair:
    """Read a Solana CLI keypair file (a JSON array of 64 byte values)."""

    keypair_path = Path(path).expanduser()
    try:
        raw = json.loads(keypair_path.read_text(encoding="utf-8"))
        return Keypair.from_bytes(bytes(raw))
    except (OSError, ValueError, TypeError) as exc:
        raise StartupError(f"failed to read keypair at {keypair_path}: {exc}") from exc


def build_set_scoring_model_hash_ix(
    program_id: Pubkey,
    admin_config: Pubkey,
    authority: Pubkey,
    model_hash: bytes,
) -> Instruction:
    return Instruction(
        program_id,
        build_set_scoring_model_hash_data(model_hash),
        [
            AccountMeta(authority, is_signer=True, is_writable=False),
            AccountMeta(admin_config, is_signer=False, is_writable=True),
        ],
    )


class SolanaGateway:
    """:class:`~sentinel.governance.ChainGateway` backed by a Solana JSON-RPC node."""

    def __init__(
        self,
        client: AsyncClient,
        *,
        program_id: Pubkey,
        admin_config: Pubkey,
        authority: Keypair,
        commitment: Commitment = Confirmed,
    ) -> None:
        self._client = client
        self._program_id = program_id
        self._admin_config = admin_config
        self._authority = authority
        self._commitment = commitment

    @classmethod
    def from_settings(cls, settings: SentinelSettings, *, authority: Optional[Keypair] = None) -> "SolanaGateway":
        program_id, admin_config = resolve_program_accounts(settings)
        if authority is None:
            authority = load_keypair(settings.governance.authority_keypair_path)
        commitment = parse_commitment(settings.solana.commitment)
        client = AsyncClient(settings.solana.rpc_url, commitment=commitment)
        return cls(
            client,
            program_id=program_id,
            admin_config=admin_config,
            authority=authority,
            commitment=commitment,
        )

    @property
    def admin_config(self) -> str:
        return str(self._admin_config)

    @property
    def authority(self) -> str:
        return str(self._authority.pubkey())

    async def aclose(self) -> None:
        await self._client.close()

    async def fetch_active_hash(self) -> Optional[bytes]:
        try:
            response = await self._client.get_account_info(self._admin_config, commitment=self._commitment)
        except _RPC_ERRORS as exc:
            raise ChainError(f"get_account_info failed: {exc}") from exc
        account = response.value
        if account is None:
            return None
        return parse_admin_active_hash(bytes(account.data))

    async def submit_model_hash(self, model_hash: bytes) -> str:
        ix = build_set_scoring_model_hash_ix(
            self._program_id,
            self._admin_config,
            self._authority.pubkey(),
            model_hash,
        )
        try:
            latest = await self._client.get_latest_blockhash(self._commitment)
        except _RPC_ERRORS as exc:
            raise ChainError(f"failed to fetch latest blockhash: {exc}") from exc

        blockhash = latest.value.blockhash
        tx = Transaction.new_signed_with_payer([ix], self._authority.pubkey(), [self._authority], blockhash)
        opts = TxOpts(
            skip_confirmation=False,
            preflight_commitment=self._commitment,
            last_valid_block_height=latest.value.last_valid_block_height,
        )
        try:
            response = await self._client.send_transaction(tx, opts=opts)
        except _RPC_ERRORS as exc:
            raise ChainError(str(exc)) from exc
        return str(response.value)


class SolanaLogSource:
    """Streams transaction logs that mention the pricing program."""

    def __init__(self, ws_url: str, program_id: Pubkey, *, commitment: Commitment = Confirmed) -> None:
        self._ws_url = ws_url
        self._program_id = program_id
        self._commitment = commitment

    @classmethod
    def from_settings(cls, settings: SentinelSettings) -> "SolanaLogSource":
        program_id = parse_pubkey(settings.solana.program_id, field="solana.program_id")
        return cls(
            settings.solana.ws_url,
            program_id,
            commitment=parse_commitment(settings.solana.commitment),
        )

    async def stream(self) -> AsyncIterator[LogBatch]:
        async with AsyncExitStack() as stack:
            try:
                websocket = await stack.enter_async_context(connect(self._ws_url))
            except _STREAM_ERRORS as exc:
                raise TransportError(f"pubsub connect failed: {exc}") from exc

            try:
                await websocket.logs_subscribe(
                    RpcTransactionLogsFilterMentions(self._program_id),
                    commitment=self._commitment,
                )
                first = await websocket.recv()
                subscription_id = first[0].result
            except _STREAM_ERRORS + (IndexError, AttributeError) as exc:
                raise TransportError(f"logs_subscribe failed: {exc}") from exc

            logger.info("connected to Solana pubsub subscription=%s", subscription_id)
            try:
                async for messages in websocket:
                    for message in messages:
                        if not isinstance(message, LogsNotification):
                            continue
                        value = message.result.value
                        yield LogBatch(
                            signature=str(value.signature),
                            logs=tuple(value.logs),
                            failed=value.err is not None,
                        )
            except _STREAM_ERRORS as exc:
                raise TransportError(f"pubsub stream failed: {exc}") from exc


def resolve_program_accounts(settings: SentinelSettings) -> Tuple[Pubkey, Pubkey]:
    program_id = parse_pubkey(settings.solana.program_id, field="solana.program_id")
    admin_config = parse_pubkey(settings.solana.admin_config_pubkey, field="solana.admin_config_pubkey")
    verify_admin_config(program_id, admin_config)
    return program_id, admin_config


__all__ = [
    "ADMIN_CONFIG_SEED",
    "SolanaGateway",
    "SolanaLogSource",
    "StartupError",
    "build_set_scoring_model_hash_ix",
    "derive_admin_config",
    "load_keypair",
    "parse_commitment",
    "parse_pubkey",
    "resolve_program_accounts",
    "verify_admin_config",
]
