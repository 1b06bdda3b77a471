"""Wire formats shared with the on-chain pricing program.

The program is an Anchor program: events are emitted as base64 ``Program data``
log lines prefixed with an 8 byte discriminator, and instructions carry an 8
byte discriminator in front of their Borsh encoded arguments. Every decoder in
this module returns ``None`` for malformed input instead of raising, so a bad
record never interrupts the stream.
"""
from __future__ import annotations

import base64
import binascii
import hashlib
import struct
from typing import Iterable, Optional

from .state import PreviewPriceEvent

PAYLOAD_V0_LEN = 141
PREVIEW_EVENT_NAME = "PreviewPriceEvent"
SET_MODEL_HASH_IX_NAME = "set_scoring_model_hash"
LOG_PREFIX_PROGRAM_DATA = "Program data: "

PREVIEW_EVENT_BODY_LEN = 22
MODEL_HASH_LEN = 32

# 8 discriminator + authority(32) + oracle_pubkey(32) + active_hash(32) + bump(1)
_ADMIN_ACTIVE_HASH_OFFSET = 72
_ADMIN_CONFIG_MIN_LEN = 105

_PREVIEW_BODY = struct.Struct("<Q??qBBBB")


class PayloadSpecError(RuntimeError):
    """Raised when the compiled-in payload layout no longer matches the program."""


def anchor_discriminator(namespace: str, name: str) -> bytes:
    """Return the first 8 bytes of ``sha256("<namespace>:<name>")``."""

    return hashlib.sha256(f"{namespace}:{name}".encode("utf-8")).digest()[:8]


PREVIEW_EVENT_DISCRIMINATOR = anchor_discriminator("event", PREVIEW_EVENT_NAME)
SET_MODEL_HASH_DISCRIMINATOR = anchor_discriminator("global", SET_MODEL_HASH_IX_NAME)


def ensure_payload_spec(length: int = PAYLOAD_V0_LEN) -> None:
    if length != 141:
        raise PayloadSpecError(f"PAYLOAD_V0 spec mismatch: expected 141, got {length}")
    if _PREVIEW_BODY.size != PREVIEW_EVENT_BODY_LEN:
        raise PayloadSpecError(
            f"PreviewPriceEvent layout mismatch: expected {PREVIEW_EVENT_BODY_LEN}, got {_PREVIEW_BODY.size}"
        )


def decode_preview_event_body(body: bytes) -> Optional[PreviewPriceEvent]:
    if len(body) < PREVIEW_EVENT_BODY_LEN:
        return None
    (
        final_price,
        is_infinite,
        blocked,
        velocity,
        dignity_score,
        adapter_mask,
        dignity_bucket,
        user_mode,
    ) = _PREVIEW_BODY.unpack_from(body)
    return PreviewPriceEvent(
        final_price=final_price,
        is_infinite=is_infinite,
        blocked=blocked,
        effective_velocity_bps=velocity,
        dignity_score=dignity_score,
        adapter_mask=adapter_mask,
        dignity_bucket=dignity_bucket,
        user_mode=user_mode,
    )


def decode_program_data_line(line: str) -> Optional[PreviewPriceEvent]:
    if not line.startswith(LOG_PREFIX_PROGRAM_DATA):
        return None
    encoded = line[len(LOG_PREFIX_PROGRAM_DATA):].strip()
    try:
        raw = base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError):
        return None
    if len(raw) < 8 or raw[:8] != PREVIEW_EVENT_DISCRIMINATOR:
        return None
    return decode_preview_event_body(raw[8:])


def decode_preview_event(logs: Iterable[str]) -> Optional[PreviewPriceEvent]:
    """Return the first preview event found in a transaction's log lines."""

    for line in logs:
        event = decode_program_data_line(line)
        if event is not None:
            return event
    return None


def encode_preview_event(event: PreviewPriceEvent) -> str:
    """Render ``event`` as the ``Program data`` log line the program would emit."""

    body = _PREVIEW_BODY.pack(
        event.final_price,
        event.is_infinite,
        event.blocked,
        event.effective_velocity_bps,
        event.dignity_score,
        event.adapter_mask,
        event.dignity_bucket,
        event.user_mode,
    )
    encoded = base64.b64encode(PREVIEW_EVENT_DISCRIMINATOR + body).decode("ascii")
    return f"{LOG_PREFIX_PROGRAM_DATA}{encoded}"


def build_set_scoring_model_hash_data(model_hash: bytes) -> bytes:
    if len(model_hash) != MODEL_HASH_LEN:
        raise ValueError(f"model hash must be {MODEL_HASH_LEN} bytes, got {len(model_hash)}")
    return SET_MODEL_HASH_DISCRIMINATOR + bytes(model_hash)


def parse_admin_active_hash(data: bytes) -> Optional[bytes]:
    if len(data) < _ADMIN_CONFIG_MIN_LEN:
        return None
    return bytes(data[_ADMIN_ACTIVE_HASH_OFFSET:_ADMIN_ACTIVE_HASH_OFFSET + MODEL_HASH_LEN])


__all__ = [
    "LOG_PREFIX_PROGRAM_DATA",
    "PAYLOAD_V0_LEN",
    "PREVIEW_EVENT_DISCRIMINATOR",
    "PayloadSpecError",
    "SET_MODEL_HASH_DISCRIMINATOR",
    "anchor_discriminator",
    "build_set_scoring_model_hash_data",
    "decode_preview_event",
    "decode_preview_event_body",
    "decode_program_data_line",
    "encode_preview_event",
    "ensure_payload_spec",
    "parse_admin_active_hash",
]
