"""
Task metadata decoding: plain payments, v1 yield directives, unknown versions.
"""
import json

import pytest

from autopay.domain.metadata import (
    PlainPayment,
    YieldDirective,
    decode_task_metadata,
    encode_yield_directive,
)
from autopay.exceptions import MetadataDecodeError


def _directive(**overrides):
    payload = {
        "version": 1,
        "autoAmm": True,
        "description": "rent",
        "token": "SUI",
        "amountMist": "1000000000",
        "targetDate": "2026-11-01T00:00:00Z",
        "recommendation": {"protocol": "navi", "apr": 5.5},
    }
    payload.update(overrides)
    return json.dumps(payload).encode()


@pytest.mark.parametrize("raw", [b"", None, "", b"   "])
def test_empty_is_plain(raw):
    assert decode_task_metadata(raw) == PlainPayment(description="")


@pytest.mark.parametrize("raw", [b"rent for march", b'{"memo": "rent"}', b"[1, 2]", b'{"autoAmm": false}'])
def test_anything_else_is_plain(raw):
    assert isinstance(decode_task_metadata(raw), PlainPayment)


def test_invalid_utf8_is_plain():
    assert decode_task_metadata(b"\xff\xfe") == PlainPayment(description="")


def test_v1_directive():
    payload = decode_task_metadata(_directive(reasoning="best APR", extra="ignored"))

    assert payload == YieldDirective(
        protocol="navi",
        apr=5.5,
        token="SUI",
        amount=1_000_000_000,
        target_date="2026-11-01T00:00:00Z",
        description="rent",
        reasoning="best APR",
    )


@pytest.mark.parametrize("version", [2, "1", True, None])
def test_unknown_version_is_ignored(version):
    payload = decode_task_metadata(_directive(version=version))
    assert isinstance(payload, PlainPayment)
    assert payload.description == "rent"
    assert payload.ignored_version == (2 if version == 2 else None)


@pytest.mark.parametrize("overrides", [
    {"token": "ETH"},
    {"amountMist": "-5"},
    {"amountMist": 1000},
    {"recommendation": {"protocol": "aave", "apr": 1.0}},
    {"recommendation": {"protocol": "navi"}},
    {"description": None},
])
def test_malformed_v1_is_rejected(overrides):
    with pytest.raises(MetadataDecodeError):
        decode_task_metadata(_directive(**overrides))


def test_encode_round_trips():
    raw = encode_yield_directive(
        description="tuition",
        protocol="suilend",
        apr=3.1,
        amount=42,
        target_date="2027-01-01T00:00:00+00:00",
    )
    payload = decode_task_metadata(raw)

    assert isinstance(payload, YieldDirective)
    assert (payload.protocol, payload.amount, payload.reasoning) == ("suilend", 42, None)
