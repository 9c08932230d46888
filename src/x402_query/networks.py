from typing import TypedDict

from x402_query.errors import MalformedRequirementError

BASE_SEPOLIA = "eip155:84532"
BASE = "eip155:8453"

# Human readable aliases accepted wherever a network is configured
NETWORK_ALIASES = {
    "base-sepolia": BASE_SEPOLIA,
    "base": BASE,
    "avalanche-fuji": "eip155:43113",
    "avalanche": "eip155:43114",
}


class KnownToken(TypedDict):
    human_name: str
    address: str
    name: str
    decimals: int
    version: str


KNOWN_TOKENS: dict[int, list[KnownToken]] = {
    84532: [
        {
            "human_name": "usdc",
            "address": "0x036CbD53842c5426634e7929541eC2318f3dCF7e",
            "name": "USDC",
            "decimals": 6,
            "version": "2",
        }
    ],
    8453: [
        {
            "human_name": "usdc",
            "address": "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913",
            "name": "USD Coin",  # needs to be exactly what is returned by name() on contract
            "decimals": 6,
            "version": "2",
        }
    ],
    43113: [
        {
            "human_name": "usdc",
            "address": "0x5425890298aed601595a70AB815c96711a31Bc65",
            "name": "USD Coin",
            "decimals": 6,
            "version": "2",
        }
    ],
    43114: [
        {
            "human_name": "usdc",
            "address": "0xB97EF9Ef8734C71904D8002F8b6Bc66Dd9c48a6E",
            "name": "USDC",
            "decimals": 6,
            "version": "2",
        }
    ],
}


def normalize_network(network: str) -> str:
    """Return the CAIP-2 form of a network, resolving human readable aliases."""
    return NETWORK_ALIASES.get(network, network)


def get_chain_id(network: str) -> int:
    """Extract the chain ID from a CAIP-2 network identifier (eip155:CHAIN_ID).

    Raises:
        MalformedRequirementError: If the network cannot be parsed.
    """
    network = normalize_network(network)
    namespace, _, reference = network.partition(":")
    if namespace != "eip155" or not reference:
        raise MalformedRequirementError(
            f"Unsupported network format: {network} (expected eip155:CHAIN_ID)"
        )
    try:
        chain_id = int(reference)
    except ValueError as e:
        raise MalformedRequirementError(f"Invalid CAIP-2 network format: {network}") from e
    if chain_id <= 0:
        raise MalformedRequirementError(f"Invalid chain id in network: {network}")
    return chain_id


def _find_token(network: str, predicate) -> KnownToken:
    chain_id = get_chain_id(network)
    for token in KNOWN_TOKENS.get(chain_id, []):
        if predicate(token):
            return token
    raise ValueError(f"Token not found for network {network}")


def get_default_token(network: str, token_type: str = "usdc") -> KnownToken:
    """Get the default token for a given network and token type"""
    return _find_token(network, lambda t: t["human_name"] == token_type)


def get_token(network: str, address: str) -> KnownToken:
    """Get the token entry for a given network and contract address"""
    return _find_token(network, lambda t: t["address"].lower() == address.lower())
