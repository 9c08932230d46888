import base64
import binascii
import json
from typing import Callable, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from x402_query.common import canonical_json
from x402_query.errors import DecodeError
from x402_query.types import PaymentPayload, SettleResponse, x402PaymentRequiredResponse

PAYMENT_REQUIRED_HEADER = "PAYMENT-REQUIRED"
PAYMENT_SIGNATURE_HEADER = "PAYMENT-SIGNATURE"
PAYMENT_RESPONSE_HEADER = "PAYMENT-RESPONSE"

# Checked in order after the canonical name. Proxies are not guaranteed to
# preserve any single header name, so this list is a best effort.
PAYMENT_REQUIRED_FALLBACK_HEADERS = ("X-PAYMENT-REQUIRED", "X-402-PAYMENT-REQUIRED")
PAYMENT_SIGNATURE_FALLBACK_HEADERS = ("X-PAYMENT",)


def safe_base64_encode(data: Union[str, bytes]) -> str:
    """Safely encode string or bytes to base64 string.

    Args:
        data: String or bytes to encode

    Returns:
        Base64 encoded string
    """
    if isinstance(data, str):
        data = data.encode("utf-8")
    return base64.b64encode(data).decode("utf-8")


def safe_base64_decode(data: str) -> str:
    """Safely decode base64 string to bytes and then to utf-8 string.

    Args:
        data: Base64 encoded string

    Returns:
        Decoded utf-8 string
    """
    return base64.b64decode(data, validate=True).decode("utf-8")


def find_header(
    get_header: Callable[[str], Optional[str]],
    canonical: str,
    fallbacks: tuple[str, ...] = (),
) -> Optional[str]:
    """Return the first non-empty header value among the canonical name and its fallbacks."""
    for name in (canonical, *fallbacks):
        value = get_header(name)
        if value:
            return value
    return None


def _decode_json(header: str, what: str) -> dict:
    try:
        data = json.loads(safe_base64_decode(header.strip()))
    except (binascii.Error, UnicodeDecodeError, ValueError) as e:
        raise DecodeError(f"Malformed {what} header: {e}") from e
    if not isinstance(data, dict):
        raise DecodeError(f"Malformed {what} header: expected a JSON object")
    return data


def encode_payment_required_header(challenge: x402PaymentRequiredResponse) -> str:
    """Encode a payment challenge as canonical JSON, then base64."""
    return safe_base64_encode(canonical_json(challenge.model_dump(by_alias=True)))


def decode_payment_required_header(header: str) -> x402PaymentRequiredResponse:
    """Decode a base64 PAYMENT-REQUIRED header.

    Raises:
        DecodeError: If the header is not base64 JSON or not a valid challenge.
    """
    data = _decode_json(header, "payment required")
    try:
        return x402PaymentRequiredResponse.model_validate(data)
    except PydanticValidationError as e:
        raise DecodeError(f"Invalid payment challenge: {e}") from e


def encode_payment_signature_header(payment: PaymentPayload) -> str:
    """Encode an authorized request for the PAYMENT-SIGNATURE header."""
    return safe_base64_encode(canonical_json(payment.model_dump(by_alias=True)))


def decode_payment_signature_header(header: str) -> PaymentPayload:
    """Decode a base64 PAYMENT-SIGNATURE header.

    Raises:
        DecodeError: If the header is not base64 JSON or not a valid payment payload.
    """
    data = _decode_json(header, "payment signature")
    try:
        return PaymentPayload.model_validate(data)
    except PydanticValidationError as e:
        raise DecodeError(f"Invalid payment payload: {e}") from e


def encode_payment_response_header(settlement: SettleResponse) -> str:
    return safe_base64_encode(settlement.model_dump_json(by_alias=True))


def decode_payment_response_header(header: str) -> SettleResponse:
    """Decode the PAYMENT-RESPONSE header returned after settlement."""
    data = _decode_json(header, "payment response")
    try:
        return SettleResponse.model_validate(data)
    except PydanticValidationError as e:
        raise DecodeError(f"Invalid payment response: {e}") from e
