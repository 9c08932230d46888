import asyncio
from collections.abc import AsyncIterator, Sequence

import httpx
import pytest
from eth_account import Account

from x402_query.clients.base import x402Client
from x402_query.config import ServerSettings
from x402_query.context import Turn
from x402_query.errors import UpstreamProducerError
from x402_query.facilitator import LocalFacilitator
from x402_query.registry import PaymentRequirementRegistry
from x402_query.server import PROTECTED_RESOURCES, create_app
from x402_query.signers import EthAccountSigner
from x402_query.types import PaymentRequirements

PAY_TO = "0x1111111111111111111111111111111111111111"
USDC_BASE_SEPOLIA = "0x036CbD53842c5426634e7929541eC2318f3dCF7e"


class FakeProducer:
    """Answers every prompt with a canned reply and records what it was asked."""

    def __init__(self, reply="Keep a regular sleep schedule.", chunks=None, delay=0.0, error=None):
        self.reply = reply
        self.chunks = chunks or [reply[: len(reply) // 2], reply[len(reply) // 2 :]]
        self.delay = delay
        self.error = error
        self.calls: list[tuple[str, list[Turn]]] = []

    @property
    def model(self) -> str:
        return "fake-model"

    async def process_query(self, prompt: str, history: Sequence[Turn] = ()) -> str:
        self.calls.append((prompt, list(history)))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return f"{self.reply} ({prompt})"

    async def stream_query(
        self, prompt: str, history: Sequence[Turn] = ()
    ) -> AsyncIterator[str]:
        self.calls.append((prompt, list(history)))
        for chunk in self.chunks:
            if self.delay:
                await asyncio.sleep(self.delay)
            yield chunk
        if self.error:
            raise self.error


@pytest.fixture
def account():
    return Account.create()


@pytest.fixture
def signer(account):
    return EthAccountSigner(account)


@pytest.fixture
def payment_requirements():
    return PaymentRequirements(
        scheme="exact",
        network="eip155:84532",
        amount="10000",
        asset=USDC_BASE_SEPOLIA,
        pay_to=PAY_TO,
        max_timeout_seconds=300,
        extra={"name": "USDC", "version": "2"},
    )


@pytest.fixture
def settings():
    return ServerSettings(pay_to=PAY_TO, local_verify=True, agent_url="http://testserver")


@pytest.fixture
def registry(settings):
    return PaymentRequirementRegistry.from_settings(settings, PROTECTED_RESOURCES)


@pytest.fixture
def make_producer():
    return FakeProducer


@pytest.fixture
def producer():
    return FakeProducer()


@pytest.fixture
def failing_producer():
    return FakeProducer(error=UpstreamProducerError("Failed to process query securely"))


@pytest.fixture
def facilitator():
    return LocalFacilitator()


@pytest.fixture
def app(settings, producer, facilitator):
    return create_app(settings, producer=producer, facilitator=facilitator)


@pytest.fixture
async def http(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client


@pytest.fixture
def pay(registry, signer):
    """Build a fresh PAYMENT-SIGNATURE header value for a protected path."""
    client = x402Client(signer)

    async def pay(path):
        challenge = registry.challenge(path)
        return await client.create_payment_header(challenge.accepts[0], challenge.resource)

    return pay
