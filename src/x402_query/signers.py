"""Signing capabilities and balance readers used by the authorization builder.

Key custody stays outside this package: the builder only ever talks to a
``ClientEvmSigner`` (anything exposing ``address`` and ``sign_typed_data``),
which may prompt a user and take arbitrarily long to answer.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Awaitable, Mapping, Optional, Protocol, Union, runtime_checkable

import httpx

from x402_query.errors import TransportError

if TYPE_CHECKING:
    from eth_account.signers.local import LocalAccount

logger = logging.getLogger(__name__)

# keccak256("balanceOf(address)")[:4]
BALANCE_OF_SELECTOR = "0x70a08231"


@runtime_checkable
class ClientEvmSigner(Protocol):
    """Signing capability: returns a 65-byte signature, sync or async."""

    @property
    def address(self) -> str: ...

    def sign_typed_data(
        self,
        domain: dict[str, Any],
        types: dict[str, list[dict[str, str]]],
        primary_type: str,
        message: dict[str, Any],
    ) -> Union[bytes, Awaitable[bytes]]: ...


class EthAccountSigner:
    """Client-side EVM signer using eth_account library.

    Example:
        ```python
        from eth_account import Account
        from x402_query.signers import EthAccountSigner

        signer = EthAccountSigner(Account.from_key("0x..."))
        ```

    Args:
        account: eth_account LocalAccount instance.
    """

    def __init__(self, account: "LocalAccount") -> None:
        self._account = account

    @property
    def address(self) -> str:
        """The signer's checksummed Ethereum address."""
        return self._account.address

    def sign_typed_data(
        self,
        domain: dict[str, Any],
        types: dict[str, list[dict[str, str]]],
        primary_type: str,
        message: dict[str, Any],
    ) -> bytes:
        """Sign EIP-712 typed data.

        ``primary_type`` is inferred by eth_account from ``types`` and is unused.
        """
        signed = self._account.sign_typed_data(
            domain_data=domain,
            message_types=types,
            message_data=message,
        )
        return bytes(signed.signature)


class BalanceReader(Protocol):
    async def get_balance(self, network: str, asset: str, owner: str) -> int: ...


class StaticBalanceReader:
    """Balance reader backed by a fixed ``{owner: balance}`` mapping."""

    def __init__(self, balances: Mapping[str, int]):
        self._balances = {k.lower(): v for k, v in balances.items()}

    async def get_balance(self, network: str, asset: str, owner: str) -> int:
        return self._balances.get(owner.lower(), 0)


class RpcBalanceReader:
    """Reads ERC-20 ``balanceOf`` through an Ethereum JSON-RPC endpoint."""

    def __init__(
        self,
        rpc_url: str,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
    ):
        self.rpc_url = rpc_url
        self._http_client = http_client
        self._timeout = timeout

    @staticmethod
    def encode_balance_of(owner: str) -> str:
        return BALANCE_OF_SELECTOR + owner.lower().removeprefix("0x").rjust(64, "0")

    async def get_balance(self, network: str, asset: str, owner: str) -> int:
        body = {
            "jsonrpc": "2.0",
            "id": 1,
            "method": "eth_call",
            "params": [{"to": asset, "data": self.encode_balance_of(owner)}, "latest"],
        }
        try:
            if self._http_client is not None:
                response = await self._http_client.post(self.rpc_url, json=body)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.post(self.rpc_url, json=body)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPError as e:
            raise TransportError(f"Balance lookup failed: {e}") from e

        if "error" in data:
            raise TransportError(f"Balance lookup failed: {data['error']}")
        result = data.get("result") or "0x"
        logger.debug("balanceOf(%s) on %s = %s", owner, asset, result)
        return int(result, 16) if result != "0x" else 0
