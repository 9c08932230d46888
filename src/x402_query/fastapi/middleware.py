import logging
from collections.abc import AsyncIterator
from typing import Any, Callable, Optional

from fastapi import Request
from fastapi.responses import JSONResponse

from x402_query.common import find_matching_payment_requirements
from x402_query.encoding import (
    PAYMENT_REQUIRED_HEADER,
    PAYMENT_RESPONSE_HEADER,
    PAYMENT_SIGNATURE_FALLBACK_HEADERS,
    PAYMENT_SIGNATURE_HEADER,
    decode_payment_signature_header,
    encode_payment_required_header,
    encode_payment_response_header,
    find_header,
)
from x402_query.errors import DecodeError, PaymentRejectedError, X402QueryError
from x402_query.facilitator import Facilitator
from x402_query.path import path_is_match
from x402_query.registry import PaymentRequirementRegistry
from x402_query.types import SettleResponse

logger = logging.getLogger(__name__)


def require_payment(
    registry: PaymentRequirementRegistry,
    facilitator: Facilitator,
    path: Optional[str | list[str]] = None,
):
    """Generate a FastAPI middleware that gates the registry's resources behind payment.

    Args:
        registry (PaymentRequirementRegistry): Source of the requirements and
            resource metadata for each protected path.
        facilitator (Facilitator): Verifies and settles authorized requests.
        path (str | list[str], optional): Paths to gate. Defaults to every
            path registered in ``registry``. Requests to gated paths with no
            registered resource pass through.

    Returns:
        Callable: FastAPI middleware function that checks for valid payment before processing requests
    """
    gated = path if path is not None else registry.paths

    async def middleware(request: Request, call_next: Callable):
        # Skip if the path is not the same as the path in the middleware
        if not path_is_match(gated, request.url.path):
            return await call_next(request)
        resource = registry.match(request.url.path)
        if resource is None:
            return await call_next(request)

        try:
            payment_requirements = registry.requirements_for(resource.path)
        except X402QueryError as e:
            logger.error("Cannot price %s: %s", resource.path, e)
            return JSONResponse(content=e.to_dict(), status_code=e.status_code)

        def x402_response(error: str):
            """Create a 402 response with payment requirements."""
            challenge = registry.challenge(resource.path, error=error, url=str(request.url))
            return JSONResponse(
                content=challenge.model_dump(by_alias=True),
                status_code=402,
                headers={PAYMENT_REQUIRED_HEADER: encode_payment_required_header(challenge)},
            )

        payment_header = find_header(
            request.headers.get, PAYMENT_SIGNATURE_HEADER, PAYMENT_SIGNATURE_FALLBACK_HEADERS
        )
        if not payment_header:
            logger.info("Payment required for %s", request.url.path)
            return x402_response(f"No {PAYMENT_SIGNATURE_HEADER} header provided")

        try:
            payment = decode_payment_signature_header(payment_header)
        except DecodeError as e:
            logger.warning(
                "Invalid payment header format from %s: %s",
                request.client.host if request.client else "unknown",
                e,
            )
            return x402_response("Invalid payment header format")

        selected_payment_requirements = find_matching_payment_requirements(
            payment_requirements, payment
        )
        if not selected_payment_requirements:
            logger.warning("Payment for %s matches no offered requirement", request.url.path)
            return x402_response("No matching payment requirements found")

        try:
            verify_response = await facilitator.verify(payment, selected_payment_requirements)
        except X402QueryError as e:
            logger.error("Payment verification unavailable: %s", e)
            return JSONResponse(content=e.to_dict(), status_code=e.status_code)

        if not verify_response.is_valid:
            error_reason = verify_response.invalid_reason or "Unknown error"
            if verify_response.error:
                error_reason += f" ({verify_response.error})"
            logger.warning("Payment rejected for %s: %s", request.url.path, error_reason)
            return x402_response(f"Invalid payment: {error_reason}")

        request.state.payment_details = selected_payment_requirements
        request.state.verify_response = verify_response
        request.state.payer = verify_response.payer or payment.payload.authorization.from_
        request.state.payment_nonce = payment.payload.authorization.nonce

        settlement: Optional[SettleResponse] = None

        async def settle_payment() -> SettleResponse:
            """Settle the verified payment once; later calls return the same result."""
            nonlocal settlement
            if settlement is not None:
                return settlement
            try:
                settle_response = await facilitator.settle(payment, selected_payment_requirements)
            except Exception as e:
                logger.exception("Settlement of payment from %s failed", request.state.payer)
                raise PaymentRejectedError("Settle failed") from e
            if not settle_response.success:
                logger.error(
                    "Settlement of payment from %s rejected: %s",
                    request.state.payer,
                    settle_response.error_reason,
                )
                raise PaymentRejectedError(
                    "Settle failed: " + (settle_response.error_reason or "Unknown error")
                )
            settlement = settle_response
            return settlement

        # Streaming handlers call this before their terminal event
        request.state.settle_payment = settle_payment

        response = await call_next(request)

        # Early return without settling if the response is not a 2xx
        if response.status_code < 200 or response.status_code >= 300:
            return response

        if response.headers.get("content-type", "").startswith("text/event-stream"):
            # Headers are already committed; the stream settles through settle_payment
            response.body_iterator = _report_unsettled(
                response.body_iterator, request.url.path, lambda: settlement is not None
            )
            return response

        try:
            settle_response = await settle_payment()
        except PaymentRejectedError as e:
            return x402_response(str(e))

        response.headers[PAYMENT_RESPONSE_HEADER] = encode_payment_response_header(
            settle_response
        )
        return response

    return middleware


async def _report_unsettled(
    body: AsyncIterator[Any], path: str, settled: Callable[[], bool]
) -> AsyncIterator[Any]:
    async for chunk in body:
        yield chunk
    if not settled():
        logger.info("Stream for %s ended without settlement; payment not collected", path)
