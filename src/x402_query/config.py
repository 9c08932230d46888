"""Environment driven settings for the service and the requester."""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping, Optional

from dotenv import load_dotenv

from x402_query.errors import ConfigurationError, MalformedRequirementError
from x402_query.networks import BASE_SEPOLIA, get_chain_id, normalize_network

DEFAULT_FACILITATOR_URL = "https://x402.org/facilitator"
DEFAULT_PRICE = "$0.01"
DEFAULT_AGENT_URL = "http://localhost:3001"
DEFAULT_NILAI_BASE_URL = "https://nilai-a779.nillion.network/v1/"
DEFAULT_NILAI_MODEL = "google/gemma-3-27b-it"
DEFAULT_MAX_TIMEOUT_SECONDS = 300
DEFAULT_TASK_RETENTION = 10_000

_TRUTHY = {"1", "true", "yes", "on"}


def _get(env: Mapping[str, str], name: str) -> Optional[str]:
    value = env.get(name)
    if value is None:
        return None
    value = value.strip()
    return value or None


def _get_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = _get(env, name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from e
    if value <= 0:
        raise ConfigurationError(f"{name} must be positive, got {value}")
    return value


def _get_bool(env: Mapping[str, str], name: str) -> bool:
    return (_get(env, name) or "").lower() in _TRUTHY


def _get_network(env: Mapping[str, str], name: str) -> str:
    network = normalize_network(_get(env, name) or BASE_SEPOLIA)
    try:
        get_chain_id(network)
    except MalformedRequirementError as e:
        raise ConfigurationError(f"{name} is invalid: {e}") from e
    return network


def _load(env: Optional[Mapping[str, str]], env_file: Optional[str]) -> Mapping[str, str]:
    if env is not None:
        return env
    load_dotenv(env_file)
    return os.environ


@dataclass(frozen=True)
class ServerSettings:
    pay_to: Optional[str]
    price: str = DEFAULT_PRICE
    network: str = BASE_SEPOLIA
    asset_address: Optional[str] = None
    max_timeout_seconds: int = DEFAULT_MAX_TIMEOUT_SECONDS
    facilitator_url: str = DEFAULT_FACILITATOR_URL
    local_verify: bool = False
    agent_url: str = DEFAULT_AGENT_URL
    nilai_base_url: str = DEFAULT_NILAI_BASE_URL
    nilai_model: str = DEFAULT_NILAI_MODEL
    nillion_api_key: Optional[str] = None
    port: int = 3001
    task_retention: int = DEFAULT_TASK_RETENTION

    @classmethod
    def from_env(
        cls,
        env: Optional[Mapping[str, str]] = None,
        env_file: Optional[str] = None,
    ) -> "ServerSettings":
        """Build settings from ``env`` or, when omitted, from ``.env`` plus the process environment.

        The payee is not required here; the payment registry fails with
        ConfigurationError when it is asked for requirements without one.
        """
        env = _load(env, env_file)
        return cls(
            pay_to=_get(env, "PAYMENT_WALLET_ADDRESS"),
            price=_get(env, "X402_PRICE") or DEFAULT_PRICE,
            network=_get_network(env, "X402_NETWORK"),
            asset_address=_get(env, "X402_ASSET_ADDRESS"),
            max_timeout_seconds=_get_int(
                env, "X402_MAX_TIMEOUT_SECONDS", DEFAULT_MAX_TIMEOUT_SECONDS
            ),
            facilitator_url=(_get(env, "FACILITATOR_URL") or DEFAULT_FACILITATOR_URL).rstrip("/"),
            local_verify=_get_bool(env, "X402_LOCAL_VERIFY"),
            agent_url=(_get(env, "AGENT_URL") or DEFAULT_AGENT_URL).rstrip("/"),
            nilai_base_url=_get(env, "NILAI_BASE_URL") or DEFAULT_NILAI_BASE_URL,
            nilai_model=_get(env, "NILAI_MODEL") or DEFAULT_NILAI_MODEL,
            nillion_api_key=_get(env, "NILLION_API_KEY"),
            port=_get_int(env, "PORT", 3001),
            task_retention=_get_int(env, "TASK_RETENTION", DEFAULT_TASK_RETENTION),
        )


@dataclass(frozen=True)
class ClientSettings:
    """Requester settings.

    ``fallback_pay_to`` enables a locally built challenge for services whose
    402 responses carry no decodable one; it is priced with
    ``fallback_price`` on ``fallback_network``.
    """

    api_url: str = DEFAULT_AGENT_URL
    private_key: Optional[str] = None
    rpc_url: Optional[str] = None
    fallback_pay_to: Optional[str] = None
    fallback_price: str = DEFAULT_PRICE
    fallback_network: str = BASE_SEPOLIA

    @classmethod
    def from_env(
        cls,
        env: Optional[Mapping[str, str]] = None,
        env_file: Optional[str] = None,
    ) -> "ClientSettings":
        env = _load(env, env_file)
        return cls(
            api_url=(_get(env, "API_URL") or DEFAULT_AGENT_URL).rstrip("/"),
            private_key=_get(env, "EVM_PRIVATE_KEY"),
            rpc_url=_get(env, "RPC_URL"),
            fallback_pay_to=_get(env, "X402_FALLBACK_PAY_TO"),
            fallback_price=_get(env, "X402_FALLBACK_PRICE") or DEFAULT_PRICE,
            fallback_network=_get_network(env, "X402_FALLBACK_NETWORK"),
        )
