"""Request orchestrator for the payment-gated query service.

One ``QueryClient`` drives one logical submission at a time through::

    Idle -> Sent -> Completed
                 -> ChallengeReceived -> Authorizing -> Resent -> Completed | Failed
    any unexpected status or network error -> Failed

A payment challenge is an expected branch: ``submit`` returns an
``AuthorizationRequired`` value instead of raising. ``authorize`` builds
exactly one authorization for it and resends the identical body; a second
402 is reported as ``PaymentRejectedError`` and never retried.
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, TypeVar, Union

import httpx
from eth_account import Account
from pydantic import ValidationError as PydanticValidationError

from x402_query.clients.base import x402Client
from x402_query.common import process_price_to_atomic_amount, x402_VERSION
from x402_query.config import DEFAULT_MAX_TIMEOUT_SECONDS, ClientSettings
from x402_query.encoding import (
    PAYMENT_REQUIRED_FALLBACK_HEADERS,
    PAYMENT_REQUIRED_HEADER,
    PAYMENT_RESPONSE_HEADER,
    PAYMENT_SIGNATURE_HEADER,
    decode_payment_required_header,
    decode_payment_response_header,
    find_header,
)
from x402_query.errors import (
    ConfigurationError,
    DecodeError,
    MalformedRequirementError,
    PaymentRejectedError,
    PaymentRequired,
    TransportError,
    ValidationError,
)
from x402_query.signers import EthAccountSigner, RpcBalanceReader
from x402_query.streaming import DONE_EVENT
from x402_query.types import (
    PaymentRequirements,
    ResourceInfo,
    SettleResponse,
    x402PaymentRequiredResponse,
)

logger = logging.getLogger(__name__)

DEFAULT_CHAT_PATH = "/api/chat"
DEFAULT_STREAM_PATH = "/api/chat/stream"
DONE_SENTINEL = DONE_EVENT.strip().removeprefix("data:").strip()

E = TypeVar("E", bound=Exception)


class RequestState(str, Enum):
    IDLE = "idle"
    SENT = "sent"
    CHALLENGE_RECEIVED = "challenge_received"
    AUTHORIZING = "authorizing"
    RESENT = "resent"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class PendingRequest:
    """The original request a challenge was issued for, kept for the resend."""

    url: str
    body: dict[str, Any]
    authorized: bool = False


@dataclass(frozen=True)
class QueryResult:
    content: str
    context_id: Optional[str]
    record_id: Optional[str]
    timestamp: Optional[str]
    settlement: Optional[SettleResponse] = None
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class AuthorizationRequired:
    """The service asked for payment before doing the work.

    ``from_fallback`` is set when neither the header nor the body carried a
    usable challenge and a locally configured one was substituted; its price
    has not been confirmed by the service.
    """

    challenge: x402PaymentRequiredResponse
    from_fallback: bool
    pending: PendingRequest

    @property
    def requirements(self) -> list[PaymentRequirements]:
        return self.challenge.accepts


SubmitOutcome = Union[QueryResult, AuthorizationRequired]


class QueryClient:
    """Submits queries and walks them through the payment handshake.

    Args:
        base_url: Service base URL.
        x402_client: Payment handling; required for ``authorize``.
        http_client: Shared ``httpx.AsyncClient``. One is created when omitted.
        fallback_requirements: Requirement to offer when the service's
            challenge cannot be decoded. Without it such challenges fail
            with DecodeError.
        fallback_description: Resource description used in a fallback challenge.
    """

    def __init__(
        self,
        base_url: str,
        x402_client: Optional[x402Client] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 120.0,
        chat_path: str = DEFAULT_CHAT_PATH,
        stream_path: str = DEFAULT_STREAM_PATH,
        fallback_requirements: Optional[PaymentRequirements] = None,
        fallback_description: str = "Private Medical AI Query",
    ):
        self.base_url = base_url.rstrip("/")
        self.x402_client = x402_client
        self._http_client = http_client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = http_client is None
        self.chat_path = chat_path
        self.stream_path = stream_path
        self.fallback_requirements = fallback_requirements
        self.fallback_description = fallback_description
        self._state = RequestState.IDLE
        self._from_fallback = False

    @classmethod
    def from_settings(
        cls,
        settings: ClientSettings,
        x402_client: Optional[x402Client] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> "QueryClient":
        """Build a client for ``settings.api_url``.

        Without an explicit ``x402_client`` one is made from
        ``settings.private_key`` (with an RPC balance pre-check when
        ``settings.rpc_url`` is set). A fallback requirement is configured
        when ``settings.fallback_pay_to`` is.

        Raises:
            ConfigurationError: If the fallback price cannot be converted.
        """
        if x402_client is None and settings.private_key:
            x402_client = x402Client(
                EthAccountSigner(Account.from_key(settings.private_key)),
                balance_reader=RpcBalanceReader(settings.rpc_url) if settings.rpc_url else None,
            )

        fallback = None
        if settings.fallback_pay_to:
            try:
                amount, asset, domain = process_price_to_atomic_amount(
                    settings.fallback_price, settings.fallback_network
                )
            except (ValueError, MalformedRequirementError) as e:
                raise ConfigurationError(
                    f"X402_FALLBACK_PRICE is invalid: {settings.fallback_price}. Error: {e}"
                ) from e
            fallback = PaymentRequirements(
                scheme="exact",
                network=settings.fallback_network,
                amount=amount,
                asset=asset,
                pay_to=settings.fallback_pay_to,
                max_timeout_seconds=DEFAULT_MAX_TIMEOUT_SECONDS,
                extra=domain,
            )

        return cls(
            settings.api_url,
            x402_client=x402_client,
            http_client=http_client,
            fallback_requirements=fallback,
        )

    @property
    def state(self) -> RequestState:
        return self._state

    @property
    def from_fallback(self) -> bool:
        """Whether the current request is being paid against the fallback challenge."""
        return self._from_fallback

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http_client.aclose()

    async def __aenter__(self) -> "QueryClient":
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.aclose()

    def _transition(self, state: RequestState) -> None:
        logger.debug("Request state %s -> %s", self._state.value, state.value)
        self._state = state

    def _fail(self, error: E) -> E:
        self._transition(RequestState.FAILED)
        return error

    @staticmethod
    def _body(content: str, context_id: Optional[str]) -> dict[str, Any]:
        if not isinstance(content, str) or not content.strip():
            raise ValidationError("Query content must be a non-empty string")
        body: dict[str, Any] = {"message": content}
        if context_id:
            body["sessionId"] = context_id
        return body

    async def _post(
        self, url: str, body: dict[str, Any], payment_header: Optional[str] = None
    ) -> httpx.Response:
        headers = {"Content-Type": "application/json"}
        if payment_header:
            headers[PAYMENT_SIGNATURE_HEADER] = payment_header
            headers["Access-Control-Expose-Headers"] = PAYMENT_RESPONSE_HEADER
        try:
            return await self._http_client.post(url, json=body, headers=headers)
        except httpx.HTTPError as e:
            raise self._fail(TransportError(f"Request to {url} failed: {e}")) from e

    def _unexpected(self, response: httpx.Response) -> TransportError:
        return self._fail(
            TransportError(
                f"Unexpected status {response.status_code} from {response.request.url}: {response.text}",
                status=response.status_code,
                body=response.text,
            )
        )

    def _read_challenge(
        self, response: httpx.Response, url: str
    ) -> tuple[x402PaymentRequiredResponse, bool]:
        """Decode the challenge from the header, else the body, else the fallback."""
        header = find_header(
            response.headers.get, PAYMENT_REQUIRED_HEADER, PAYMENT_REQUIRED_FALLBACK_HEADERS
        )
        if header:
            try:
                return decode_payment_required_header(header), False
            except DecodeError as e:
                logger.warning("Could not decode %s header: %s", PAYMENT_REQUIRED_HEADER, e)

        try:
            data = response.json()
        except ValueError:
            data = None
        if isinstance(data, dict) and ("accepts" in data or "x402Version" in data):
            try:
                challenge = x402PaymentRequiredResponse.model_validate(data)
                if challenge.accepts:
                    return challenge, False
            except PydanticValidationError as e:
                logger.warning("Could not decode payment challenge from body: %s", e)

        if self.fallback_requirements is None:
            raise self._fail(
                DecodeError(f"Payment required by {url} but no usable challenge was returned")
            )
        logger.warning(
            "USING FALLBACK PAYMENT CHALLENGE for %s: price %s is not confirmed by the service",
            url,
            self.fallback_requirements.amount,
        )
        challenge = x402PaymentRequiredResponse(
            x402_version=x402_VERSION,
            accepts=[self.fallback_requirements],
            error="Payment required",
            resource=ResourceInfo(
                url=url,
                description=self.fallback_description,
                mime_type="application/json",
            ),
        )
        self._from_fallback = True
        return challenge, True

    def _result(self, response: httpx.Response) -> QueryResult:
        try:
            data = response.json()
        except ValueError as e:
            raise self._fail(
                TransportError(
                    f"Malformed response body: {e}",
                    status=response.status_code,
                    body=response.text,
                )
            ) from e

        settlement = None
        payment_response = response.headers.get(PAYMENT_RESPONSE_HEADER)
        if payment_response:
            try:
                settlement = decode_payment_response_header(payment_response)
            except DecodeError as e:
                logger.warning("Ignoring undecodable %s header: %s", PAYMENT_RESPONSE_HEADER, e)

        self._transition(RequestState.COMPLETED)
        return QueryResult(
            content=data.get("response") or data.get("content") or "",
            context_id=data.get("contextId") or data.get("sessionId"),
            record_id=data.get("recordId"),
            timestamp=data.get("timestamp"),
            settlement=settlement,
            raw=data,
        )

    async def submit(self, content: str, context_id: Optional[str] = None) -> SubmitOutcome:
        """Send the query without payment evidence.

        Returns:
            QueryResult when the service answers directly, AuthorizationRequired
            when it asks for payment.

        Raises:
            ValidationError: If ``content`` is empty.
            DecodeError: If payment is required, no challenge is decodable and
                no fallback requirement is configured.
            TransportError: On network failure or an unexpected status.
        """
        body = self._body(content, context_id)
        url = f"{self.base_url}{self.chat_path}"
        self._transition(RequestState.IDLE)
        self._from_fallback = False

        response = await self._post(url, body)
        self._transition(RequestState.SENT)

        if response.status_code == 402:
            challenge, from_fallback = self._read_challenge(response, url)
            self._transition(RequestState.CHALLENGE_RECEIVED)
            logger.info(
                "Payment required: %s atomic units on %s",
                challenge.accepts[0].amount,
                challenge.accepts[0].network,
            )
            return AuthorizationRequired(
                challenge=challenge,
                from_fallback=from_fallback,
                pending=PendingRequest(url=url, body=body),
            )
        if response.is_success:
            return self._result(response)
        raise self._unexpected(response)

    def _select(
        self, challenge: x402PaymentRequiredResponse, requirement_index: Optional[int]
    ) -> PaymentRequirements:
        if requirement_index is None:
            return self.x402_client.select_payment_requirements(challenge.accepts)
        try:
            return challenge.accepts[requirement_index]
        except IndexError:
            raise ValidationError(
                f"Requirement index {requirement_index} out of range ({len(challenge.accepts)} offered)"
            ) from None

    async def _payment_header(
        self,
        challenge: x402PaymentRequiredResponse,
        requirement_index: Optional[int] = None,
    ) -> str:
        if self.x402_client is None:
            raise self._fail(ConfigurationError("No payment client configured"))
        self._transition(RequestState.AUTHORIZING)
        try:
            requirement = self._select(challenge, requirement_index)
            return await self.x402_client.create_payment_header(requirement, challenge.resource)
        except Exception as e:
            raise self._fail(e)

    def _rejected(self, response: httpx.Response) -> PaymentRejectedError:
        challenge = None
        header = find_header(
            response.headers.get, PAYMENT_REQUIRED_HEADER, PAYMENT_REQUIRED_FALLBACK_HEADERS
        )
        if header:
            try:
                challenge = decode_payment_required_header(header)
            except DecodeError as e:
                logger.warning("Could not decode %s header: %s", PAYMENT_REQUIRED_HEADER, e)
        if challenge is not None:
            reason = challenge.error
        else:
            try:
                data = response.json()
            except ValueError:
                data = {}
            reason = data.get("error") if isinstance(data, dict) else None
        reason = reason or "Payment rejected"
        logger.warning("Authorization rejected by %s: %s", response.request.url, reason)
        return self._fail(PaymentRejectedError(reason, challenge))

    async def authorize(
        self,
        pending: AuthorizationRequired,
        requirement_index: Optional[int] = None,
    ) -> QueryResult:
        """Authorize payment for a challenged request and resend it once.

        Args:
            pending: The value ``submit`` returned.
            requirement_index: Pick ``accepts[requirement_index]`` instead of
                the payment client's default selection.

        Raises:
            PaymentRejectedError: If the service answers the resend with 402.
            InsufficientFundsError, SigningRejectedError, ValidationError:
                From building the authorization.
            TransportError: On network failure or an unexpected status.
        """
        request = pending.pending
        if request.authorized:
            raise ValidationError("This request has already been authorized")

        payment_header = await self._payment_header(pending.challenge, requirement_index)
        # Set only once an authorization has been built
        request.authorized = True
        response = await self._post(request.url, request.body, payment_header)
        self._transition(RequestState.RESENT)
        logger.info("Resent %s with payment authorization", request.url)

        if response.status_code == 402:
            raise self._rejected(response)
        if response.is_success:
            return self._result(response)
        raise self._unexpected(response)

    async def submit_paid(self, content: str, context_id: Optional[str] = None) -> QueryResult:
        """Submit a query, paying for it when challenged.

        Raises:
            PaymentRequired: If the service asks for payment and no payment
                client is configured.
        """
        outcome = await self.submit(content, context_id)
        if isinstance(outcome, QueryResult):
            return outcome
        if self.x402_client is None:
            raise PaymentRequired(outcome.challenge.error, outcome.challenge)
        return await self.authorize(outcome)

    async def stream(
        self,
        content: str,
        context_id: Optional[str] = None,
        payment_header: Optional[str] = None,
    ) -> AsyncIterator[dict[str, Any]]:
        """Stream a query, yielding each server-sent event as a dict.

        When challenged without ``payment_header`` the payment client builds
        one authorization and the request is resent once.

        Raises:
            PaymentRequired: If challenged and no payment client is configured.
            PaymentRejectedError: If the authorized request is answered with 402.
            TransportError: On network failure or an unexpected status.
        """
        body = self._body(content, context_id)
        url = f"{self.base_url}{self.stream_path}"
        self._transition(RequestState.IDLE)
        self._from_fallback = False
        resent = payment_header is not None

        while True:
            headers = {"Content-Type": "application/json", "Accept": "text/event-stream"}
            if payment_header:
                headers[PAYMENT_SIGNATURE_HEADER] = payment_header
            try:
                async with self._http_client.stream(
                    "POST", url, json=body, headers=headers
                ) as response:
                    self._transition(RequestState.RESENT if resent else RequestState.SENT)
                    if response.status_code == 402:
                        await response.aread()
                        if resent:
                            raise self._rejected(response)
                        challenge, _ = self._read_challenge(response, url)
                        self._transition(RequestState.CHALLENGE_RECEIVED)
                        if self.x402_client is None:
                            raise self._fail(PaymentRequired(challenge.error, challenge))
                    elif not response.is_success:
                        await response.aread()
                        raise self._unexpected(response)
                    else:
                        async for event in self._events(response):
                            yield event
                        self._transition(RequestState.COMPLETED)
                        return
            except httpx.HTTPError as e:
                raise self._fail(TransportError(f"Stream from {url} failed: {e}")) from e

            payment_header = await self._payment_header(challenge)
            resent = True

    @staticmethod
    async def _events(response: httpx.Response) -> AsyncIterator[dict[str, Any]]:
        async for line in response.aiter_lines():
            if not line.startswith("data:"):
                continue
            data = line[len("data:"):].strip()
            if data == DONE_SENTINEL:
                return
            try:
                yield json.loads(data)
            except json.JSONDecodeError:
                logger.warning("Skipping malformed stream event: %s", data[:100])
