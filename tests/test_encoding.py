import base64
import json

import pytest

from x402_query.common import canonical_json
from x402_query.encoding import (
    PAYMENT_REQUIRED_FALLBACK_HEADERS,
    PAYMENT_REQUIRED_HEADER,
    decode_payment_required_header,
    decode_payment_response_header,
    decode_payment_signature_header,
    encode_payment_required_header,
    encode_payment_response_header,
    find_header,
    safe_base64_decode,
    safe_base64_encode,
)
from x402_query.errors import DecodeError
from x402_query.types import SettleResponse, x402PaymentRequiredResponse


def test_safe_base64_encode():
    assert safe_base64_encode("hello") == "aGVsbG8="
    assert safe_base64_encode("") == ""
    assert safe_base64_encode("hello 世界") == "aGVsbG8g5LiW55WM"
    assert safe_base64_encode(b"\x00\x01\x02") == "AAEC"


def test_safe_base64_decode():
    assert safe_base64_decode("aGVsbG8=") == "hello"
    assert safe_base64_decode("aGVsbG8g5LiW55WM") == "hello 世界"

    with pytest.raises(Exception):
        safe_base64_decode("invalid base64!")

    with pytest.raises(UnicodeDecodeError):
        safe_base64_decode("//79")


@pytest.fixture
def challenge(payment_requirements):
    return x402PaymentRequiredResponse(
        x402_version=2, accepts=[payment_requirements], error="Payment required"
    )


def test_payment_required_header_is_canonical_json(challenge):
    header = encode_payment_required_header(challenge)
    raw = base64.b64decode(header)

    assert raw == canonical_json(challenge.model_dump(by_alias=True))
    # Canonical form: sorted keys, no insignificant whitespace
    assert b" " not in raw.replace(b"Payment required", b"")
    assert list(json.loads(raw)) == sorted(json.loads(raw))


def test_decode_payment_required_header(challenge):
    decoded = decode_payment_required_header(encode_payment_required_header(challenge))
    assert decoded == challenge
    assert decoded.accepts[0].amount == "10000"


def test_decode_payment_required_header_tolerates_whitespace(challenge):
    header = "  " + encode_payment_required_header(challenge) + "\n"
    assert decode_payment_required_header(header) == challenge


@pytest.mark.parametrize(
    "header",
    [
        "not base64!",
        safe_base64_encode("not json"),
        safe_base64_encode("[1, 2, 3]"),
        safe_base64_encode(json.dumps({"x402Version": 2})),
    ],
)
def test_decode_payment_required_header_malformed(header):
    with pytest.raises(DecodeError):
        decode_payment_required_header(header)


def test_decode_payment_signature_header_malformed():
    with pytest.raises(DecodeError):
        decode_payment_signature_header(safe_base64_encode(json.dumps({"payload": {}})))


def test_payment_response_header():
    settlement = SettleResponse(success=True, transaction="0xabc", network="eip155:84532")
    decoded = decode_payment_response_header(encode_payment_response_header(settlement))
    assert decoded == settlement


def test_find_header_prefers_canonical_name():
    headers = {PAYMENT_REQUIRED_HEADER: "canonical", "X-PAYMENT-REQUIRED": "legacy"}
    assert (
        find_header(headers.get, PAYMENT_REQUIRED_HEADER, PAYMENT_REQUIRED_FALLBACK_HEADERS)
        == "canonical"
    )


def test_find_header_falls_back_in_order():
    headers = {"X-402-PAYMENT-REQUIRED": "second", "X-PAYMENT-REQUIRED": "first"}
    assert (
        find_header(headers.get, PAYMENT_REQUIRED_HEADER, PAYMENT_REQUIRED_FALLBACK_HEADERS)
        == "first"
    )


def test_find_header_ignores_empty_values():
    headers = {PAYMENT_REQUIRED_HEADER: "", "X-402-PAYMENT-REQUIRED": "value"}
    assert (
        find_header(headers.get, PAYMENT_REQUIRED_HEADER, PAYMENT_REQUIRED_FALLBACK_HEADERS)
        == "value"
    )
    assert find_header({}.get, PAYMENT_REQUIRED_HEADER) is None
