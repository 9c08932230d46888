"""Verifier/settler collaborators for the payment gate.

``FacilitatorClient`` delegates to a remote x402 facilitator over HTTP.
``LocalFacilitator`` verifies authorizations offline (signature, amounts,
validity window and nonce replay) and settles without moving funds.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, Optional, Protocol

import httpx

from x402_query.config import DEFAULT_FACILITATOR_URL
from x402_query.errors import MalformedRequirementError, TransportError
from x402_query.exact import recover_authorization_signer
from x402_query.types import (
    PaymentPayload,
    PaymentRequirements,
    SettleResponse,
    VerifyResponse,
)

logger = logging.getLogger(__name__)


class Facilitator(Protocol):
    """Verifies and settles authorized requests.

    Both methods report failure through ``is_valid``/``success`` rather than
    by raising.
    """

    async def verify(
        self, payment: PaymentPayload, requirements: PaymentRequirements
    ) -> VerifyResponse: ...

    async def settle(
        self, payment: PaymentPayload, requirements: PaymentRequirements
    ) -> SettleResponse: ...


class FacilitatorClient:
    """HTTP client for a remote x402 facilitator service."""

    def __init__(
        self,
        url: str = DEFAULT_FACILITATOR_URL,
        timeout: float = 30.0,
        http_client: Optional[httpx.AsyncClient] = None,
        create_headers: Optional[Callable[[], dict[str, dict[str, str]]]] = None,
    ):
        self.url = url.rstrip("/")
        self._timeout = timeout
        self._http_client = http_client
        self._create_headers = create_headers

    def _headers(self, endpoint: str) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._create_headers:
            headers.update(self._create_headers().get(endpoint, {}))
        return headers

    async def _post(
        self,
        endpoint: str,
        payment: PaymentPayload,
        requirements: PaymentRequirements,
    ) -> dict[str, Any]:
        body = {
            "x402Version": payment.x402_version,
            "paymentPayload": payment.model_dump(by_alias=True, exclude_none=True),
            "paymentRequirements": requirements.model_dump(by_alias=True, exclude_none=True),
        }
        url = f"{self.url}/{endpoint}"
        try:
            if self._http_client is not None:
                response = await self._http_client.post(
                    url, json=body, headers=self._headers(endpoint)
                )
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.post(
                        url, json=body, headers=self._headers(endpoint)
                    )
        except httpx.HTTPError as e:
            raise TransportError(f"Facilitator {endpoint} failed: {e}") from e

        if response.status_code != 200:
            raise TransportError(
                f"Facilitator {endpoint} failed ({response.status_code}): {response.text}",
                status=response.status_code,
                body=response.text,
            )
        return response.json()

    async def verify(
        self, payment: PaymentPayload, requirements: PaymentRequirements
    ) -> VerifyResponse:
        """Verify a payment with the facilitator.

        Raises:
            TransportError: If the facilitator is unreachable or answers non-200.
        """
        data = await self._post("verify", payment, requirements)
        return VerifyResponse.model_validate(data)

    async def settle(
        self, payment: PaymentPayload, requirements: PaymentRequirements
    ) -> SettleResponse:
        """Settle a payment with the facilitator.

        Raises:
            TransportError: If the facilitator is unreachable or answers non-200.
        """
        data = await self._post("settle", payment, requirements)
        return SettleResponse.model_validate(data)


class LocalFacilitator:
    """Offline verifier for ``exact`` EVM authorizations.

    Tracks every ``(from, asset, nonce)`` it has accepted so a signed
    authorization can be used at most once. Settlement only consumes the
    nonce; no funds move.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._seen: set[tuple[str, str, str]] = set()
        self._lock = asyncio.Lock()

    @staticmethod
    def _nonce_key(payment: PaymentPayload, requirements: PaymentRequirements):
        auth = payment.payload.authorization
        return (auth.from_.lower(), requirements.asset.lower(), auth.nonce.lower())

    def _invalid(self, reason: str, payer: Optional[str] = None) -> VerifyResponse:
        logger.warning("Payment verification failed: %s (payer %s)", reason, payer)
        return VerifyResponse(is_valid=False, invalid_reason=reason, payer=payer)

    def _check(
        self, payment: PaymentPayload, requirements: PaymentRequirements
    ) -> Optional[str]:
        """Return the reason the authorization is invalid, or None."""
        auth = payment.payload.authorization
        if requirements.scheme != "exact" or payment.accepted.scheme != "exact":
            return "unsupported_scheme"
        if payment.accepted.network != requirements.network:
            return "invalid_network"
        if payment.accepted.asset.lower() != requirements.asset.lower():
            return "invalid_asset"
        if auth.to.lower() != requirements.pay_to.lower():
            return "invalid_exact_evm_payload_recipient_mismatch"
        if int(auth.value) != int(requirements.amount):
            return "invalid_exact_evm_payload_authorization_value"

        now = int(self._clock())
        if int(auth.valid_after) >= now:
            return "invalid_exact_evm_payload_authorization_valid_after"
        if int(auth.valid_before) <= now:
            return "invalid_exact_evm_payload_authorization_valid_before"

        try:
            signer = recover_authorization_signer(requirements, payment.payload)
        except MalformedRequirementError as e:
            return f"invalid_requirements: {e}"
        except Exception as e:
            logger.debug("Signature recovery failed: %s", e)
            return "invalid_exact_evm_payload_signature"
        if signer.lower() != auth.from_.lower():
            return "invalid_exact_evm_payload_signature"
        return None

    async def verify(
        self, payment: PaymentPayload, requirements: PaymentRequirements
    ) -> VerifyResponse:
        payer = payment.payload.authorization.from_
        reason = self._check(payment, requirements)
        if reason:
            return self._invalid(reason, payer)
        async with self._lock:
            if self._nonce_key(payment, requirements) in self._seen:
                return self._invalid("nonce_already_used", payer)
        return VerifyResponse(is_valid=True, payer=payer)

    async def settle(
        self, payment: PaymentPayload, requirements: PaymentRequirements
    ) -> SettleResponse:
        payer = payment.payload.authorization.from_
        key = self._nonce_key(payment, requirements)
        async with self._lock:
            if key in self._seen:
                logger.warning("Refusing to settle reused nonce from %s", payer)
                return SettleResponse(
                    success=False,
                    error_reason="nonce_already_used",
                    network=requirements.network,
                    payer=payer,
                )
            self._seen.add(key)
        logger.info("Settled %s atomic units from %s", requirements.amount, payer)
        return SettleResponse(
            success=True,
            transaction=payment.payload.authorization.nonce,
            network=requirements.network,
            payer=payer,
        )
