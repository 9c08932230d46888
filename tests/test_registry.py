import pytest

from x402_query.errors import ConfigurationError
from x402_query.registry import PaymentRequirementRegistry, ProtectedResource
from x402_query.server import CHAT_PATH, CHAT_STREAM_PATH

PAY_TO = "0x1111111111111111111111111111111111111111"


def test_requirements_for_default_price(registry):
    requirements = registry.requirements_for(CHAT_PATH)

    assert len(requirements) == 1
    req = requirements[0]
    assert req.scheme == "exact"
    assert req.network == "eip155:84532"
    assert req.amount == "10000"
    assert req.asset == "0x036CbD53842c5426634e7929541eC2318f3dCF7e"
    assert req.pay_to == PAY_TO
    assert req.max_timeout_seconds == 300
    assert req.extra == {"name": "USDC", "version": "2"}


def test_requirements_are_a_pure_function_of_configuration(registry):
    assert registry.requirements_for(CHAT_PATH) == registry.requirements_for(CHAT_PATH)


def test_requirements_without_payee():
    registry = PaymentRequirementRegistry(
        pay_to=None, resources=[ProtectedResource("/paid", "Paid")]
    )
    with pytest.raises(ConfigurationError, match="PAYMENT_WALLET_ADDRESS"):
        registry.requirements_for("/paid")


def test_requirements_for_unregistered_path(registry):
    with pytest.raises(ConfigurationError):
        registry.requirements_for("/not-protected")


def test_requirements_with_invalid_price():
    registry = PaymentRequirementRegistry(
        pay_to=PAY_TO, price="free", resources=[ProtectedResource("/paid", "Paid")]
    )
    with pytest.raises(ConfigurationError, match="Invalid price"):
        registry.requirements_for("/paid")


def test_per_resource_price_overrides_default():
    registry = PaymentRequirementRegistry(pay_to=PAY_TO, price="$0.01")
    registry.register("/premium", "Premium", price="$0.25")

    assert registry.requirements_for("/premium")[0].amount == "250000"


def test_network_alias_is_normalized():
    registry = PaymentRequirementRegistry(
        pay_to=PAY_TO, network="base", resources=[ProtectedResource("/paid", "Paid")]
    )
    req = registry.requirements_for("/paid")[0]
    assert req.network == "eip155:8453"
    assert req.extra == {"name": "USD Coin", "version": "2"}


def test_explicit_asset_address():
    registry = PaymentRequirementRegistry(
        pay_to=PAY_TO,
        network="eip155:84532",
        asset_address="0x036cbd53842c5426634e7929541ec2318f3dcf7e",
        resources=[ProtectedResource("/paid", "Paid")],
    )
    req = registry.requirements_for("/paid")[0]
    assert req.amount == "10000"
    assert req.asset == "0x036CbD53842c5426634e7929541eC2318f3dCF7e"


def test_unknown_asset_address():
    registry = PaymentRequirementRegistry(
        pay_to=PAY_TO,
        asset_address="0x0000000000000000000000000000000000000001",
        resources=[ProtectedResource("/paid", "Paid")],
    )
    with pytest.raises(ConfigurationError, match="Unknown asset"):
        registry.requirements_for("/paid")


def test_explicit_asset_rejects_sub_unit_price():
    registry = PaymentRequirementRegistry(
        pay_to=PAY_TO,
        price="$0.0000001",
        asset_address="0x036cbd53842c5426634e7929541ec2318f3dcf7e",
        resources=[ProtectedResource("/paid", "Paid")],
    )
    with pytest.raises(ConfigurationError, match="finer than the token"):
        registry.requirements_for("/paid")


def test_challenge(registry):
    challenge = registry.challenge(CHAT_STREAM_PATH, error="No PAYMENT-SIGNATURE header provided")

    assert challenge.x402_version == 2
    assert challenge.error == "No PAYMENT-SIGNATURE header provided"
    assert challenge.accepts == registry.requirements_for(CHAT_STREAM_PATH)
    assert challenge.resource.url == "http://testserver/api/chat/stream"
    assert challenge.resource.mime_type == "text/event-stream"


def test_match():
    registry = PaymentRequirementRegistry(pay_to=PAY_TO)
    exact = registry.register("/api/chat", "Chat")
    wildcard = registry.register("/api/reports/*", "Reports")

    assert registry.match("/api/chat") is exact
    assert registry.match("/api/reports/2024") is wildcard
    assert registry.match("/api/chat/health") is None
    assert registry.paths == ["/api/chat", "/api/reports/*"]
