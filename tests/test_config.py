import pytest

from x402_query.config import (
    DEFAULT_FACILITATOR_URL,
    DEFAULT_NILAI_MODEL,
    DEFAULT_TASK_RETENTION,
    ClientSettings,
    ServerSettings,
)
from x402_query.errors import ConfigurationError


def test_server_defaults():
    settings = ServerSettings.from_env({})

    assert settings.pay_to is None
    assert settings.price == "$0.01"
    assert settings.network == "eip155:84532"
    assert settings.max_timeout_seconds == 300
    assert settings.facilitator_url == DEFAULT_FACILITATOR_URL
    assert settings.local_verify is False
    assert settings.nilai_model == DEFAULT_NILAI_MODEL
    assert settings.port == 3001
    assert settings.task_retention == DEFAULT_TASK_RETENTION


def test_server_from_env():
    settings = ServerSettings.from_env(
        {
            "PAYMENT_WALLET_ADDRESS": " 0x1111111111111111111111111111111111111111 ",
            "X402_PRICE": "$0.05",
            "X402_NETWORK": "base",
            "X402_LOCAL_VERIFY": "true",
            "FACILITATOR_URL": "https://facilitator.test/",
            "AGENT_URL": "https://agent.test/",
            "NILLION_API_KEY": "key",
            "PORT": "8080",
            "TASK_RETENTION": "50",
        }
    )

    assert settings.pay_to == "0x1111111111111111111111111111111111111111"
    assert settings.price == "$0.05"
    assert settings.network == "eip155:8453"
    assert settings.local_verify is True
    assert settings.facilitator_url == "https://facilitator.test"
    assert settings.agent_url == "https://agent.test"
    assert settings.nillion_api_key == "key"
    assert settings.port == 8080
    assert settings.task_retention == 50


def test_blank_values_fall_back_to_defaults():
    settings = ServerSettings.from_env({"X402_PRICE": "  ", "PAYMENT_WALLET_ADDRESS": ""})
    assert settings.price == "$0.01"
    assert settings.pay_to is None


@pytest.mark.parametrize("network", ["solana", "eip155:abc"])
def test_invalid_network(network):
    with pytest.raises(ConfigurationError, match="X402_NETWORK"):
        ServerSettings.from_env({"X402_NETWORK": network})


@pytest.mark.parametrize("value", ["abc", "0", "-5"])
def test_invalid_integer(value):
    with pytest.raises(ConfigurationError, match="PORT"):
        ServerSettings.from_env({"PORT": value})


def test_reads_dotenv_file(tmp_path, monkeypatch):
    monkeypatch.delenv("PAYMENT_WALLET_ADDRESS", raising=False)
    env_file = tmp_path / ".env"
    env_file.write_text("PAYMENT_WALLET_ADDRESS=0x2222222222222222222222222222222222222222\n")

    settings = ServerSettings.from_env(env_file=str(env_file))
    monkeypatch.delenv("PAYMENT_WALLET_ADDRESS", raising=False)

    assert settings.pay_to == "0x2222222222222222222222222222222222222222"


def test_client_from_env():
    settings = ClientSettings.from_env(
        {"API_URL": "http://localhost:3001/", "EVM_PRIVATE_KEY": "0xabc", "RPC_URL": "http://rpc"}
    )

    assert settings.api_url == "http://localhost:3001"
    assert settings.private_key == "0xabc"
    assert settings.rpc_url == "http://rpc"
    assert settings.fallback_pay_to is None
    assert settings.fallback_price == "$0.01"
    assert settings.fallback_network == "eip155:84532"


def test_client_fallback_from_env():
    settings = ClientSettings.from_env(
        {
            "X402_FALLBACK_PAY_TO": "0x1111111111111111111111111111111111111111",
            "X402_FALLBACK_PRICE": "$0.02",
            "X402_FALLBACK_NETWORK": "base",
        }
    )

    assert settings.fallback_pay_to == "0x1111111111111111111111111111111111111111"
    assert settings.fallback_price == "$0.02"
    assert settings.fallback_network == "eip155:8453"


def test_client_invalid_fallback_network():
    with pytest.raises(ConfigurationError, match="X402_FALLBACK_NETWORK"):
        ClientSettings.from_env({"X402_FALLBACK_NETWORK": "solana"})
