from __future__ import annotations

import base64
import hashlib
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from sentinel.state import PreviewPriceEvent, UserMode
from sentinel.wire import (
    PREVIEW_EVENT_DISCRIMINATOR,
    SET_MODEL_HASH_DISCRIMINATOR,
    PayloadSpecError,
    build_set_scoring_model_hash_data,
    decode_preview_event,
    decode_program_data_line,
    encode_preview_event,
    ensure_payload_spec,
    parse_admin_active_hash,
)


def _event(**overrides) -> PreviewPriceEvent:
    fields = {
        "final_price": 1_250_000,
        "is_infinite": False,
        "blocked": True,
        "effective_velocity_bps": -420,
        "dignity_score": 0,
        "adapter_mask": 5,
        "dignity_bucket": 3,
        "user_mode": 1,
    }
    fields.update(overrides)
    return PreviewPriceEvent(**fields)


def test_discriminators_follow_anchor_convention():
    assert PREVIEW_EVENT_DISCRIMINATOR == hashlib.sha256(b"event:PreviewPriceEvent").digest()[:8]
    assert SET_MODEL_HASH_DISCRIMINATOR == hashlib.sha256(b"global:set_scoring_model_hash").digest()[:8]


def test_program_data_line_decodes_every_field():
    event = _event()
    decoded = decode_program_data_line(encode_preview_event(event))

    assert decoded == event
    assert decoded.mode is UserMode.GUEST


def test_first_preview_event_wins():
    first = _event(final_price=1)
    second = _event(final_price=2)
    logs = [
        "Program 5VqDVHqeCJW1cWZgydjJLG68ShDGVZ45k6cE7hUY9uMW invoke [1]",
        "Program data: %%%not-base64%%%",
        encode_preview_event(first),
        encode_preview_event(second),
    ]
    assert decode_preview_event(logs) == first


def test_malformed_lines_are_skipped():
    body = encode_preview_event(_event())[len("Program data: "):]
    raw = base64.b64decode(body)

    wrong_discriminator = "Program data: " + base64.b64encode(b"\x00" * 8 + raw[8:]).decode()
    truncated = "Program data: " + base64.b64encode(raw[:8 + 10]).decode()
    too_short = "Program data: " + base64.b64encode(b"abc").decode()

    assert decode_program_data_line("Program log: Instruction: Preview") is None
    assert decode_program_data_line(wrong_discriminator) is None
    assert decode_program_data_line(truncated) is None
    assert decode_program_data_line(too_short) is None
    assert decode_preview_event([wrong_discriminator, truncated]) is None
    assert decode_preview_event([]) is None


def test_unknown_user_mode_has_no_enum():
    assert _event(user_mode=7).mode is None


def test_set_model_hash_instruction_data():
    model_hash = bytes(range(32))
    data = build_set_scoring_model_hash_data(model_hash)

    assert len(data) == 40
    assert data[:8] == SET_MODEL_HASH_DISCRIMINATOR
    assert data[8:] == model_hash

    with pytest.raises(ValueError):
        build_set_scoring_model_hash_data(b"\x01" * 31)


def test_admin_active_hash_offset():
    marker = b"\xab" * 32
    data = bytes(72) + marker + b"\x01"

    assert parse_admin_active_hash(data) == marker
    assert parse_admin_active_hash(data[:104]) is None


def test_payload_spec_guard():
    ensure_payload_spec()
    with pytest.raises(PayloadSpecError):
        ensure_payload_spec(140)
