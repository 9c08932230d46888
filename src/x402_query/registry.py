"""Payment requirement registry: what payment satisfies each protected resource."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Iterable, Optional

from x402_query.common import (
    money_to_atomic_amount,
    process_price_to_atomic_amount,
    x402_VERSION,
)
from x402_query.config import DEFAULT_MAX_TIMEOUT_SECONDS, DEFAULT_PRICE
from x402_query.errors import ConfigurationError, MalformedRequirementError
from x402_query.networks import BASE_SEPOLIA, get_token, normalize_network
from x402_query.path import path_is_match
from x402_query.types import (
    EIP712Domain,
    PaymentRequirements,
    Price,
    ResourceInfo,
    TokenAmount,
    TokenAsset,
    x402PaymentRequiredResponse,
)

if TYPE_CHECKING:
    from x402_query.config import ServerSettings


@dataclass(frozen=True)
class ProtectedResource:
    path: str
    description: str
    mime_type: str = "application/json"
    price: Optional[Price] = None


class PaymentRequirementRegistry:
    """Maps protected resource paths to the ordered payment requirements they accept.

    Lookups are pure functions of the configuration given at construction;
    the first requirement returned is the default choice for payers.
    """

    def __init__(
        self,
        pay_to: Optional[str],
        price: Optional[Price] = DEFAULT_PRICE,
        network: str = BASE_SEPOLIA,
        asset_address: Optional[str] = None,
        max_timeout_seconds: int = DEFAULT_MAX_TIMEOUT_SECONDS,
        base_url: str = "",
        resources: Iterable[ProtectedResource] = (),
    ):
        self.pay_to = pay_to
        self.price = price
        self.network = normalize_network(network)
        self.asset_address = asset_address
        self.max_timeout_seconds = max_timeout_seconds
        self.base_url = base_url.rstrip("/")
        self._resources: dict[str, ProtectedResource] = {}
        for resource in resources:
            self._resources[resource.path] = resource

    @classmethod
    def from_settings(
        cls,
        settings: "ServerSettings",
        resources: Iterable[ProtectedResource] = (),
    ) -> "PaymentRequirementRegistry":
        return cls(
            pay_to=settings.pay_to,
            price=settings.price,
            network=settings.network,
            asset_address=settings.asset_address,
            max_timeout_seconds=settings.max_timeout_seconds,
            base_url=settings.agent_url,
            resources=resources,
        )

    def register(
        self,
        path: str,
        description: str,
        mime_type: str = "application/json",
        price: Optional[Price] = None,
    ) -> ProtectedResource:
        resource = ProtectedResource(path, description, mime_type, price)
        self._resources[path] = resource
        return resource

    @property
    def paths(self) -> list[str]:
        return list(self._resources)

    def resource(self, path: str) -> ProtectedResource:
        try:
            return self._resources[path]
        except KeyError:
            raise ConfigurationError(f"No protected resource registered for {path}") from None

    def match(self, request_path: str) -> Optional[ProtectedResource]:
        """Return the protected resource whose path pattern matches ``request_path``."""
        resource = self._resources.get(request_path)
        if resource is not None:
            return resource
        for pattern, resource in self._resources.items():
            if path_is_match(pattern, request_path):
                return resource
        return None

    def _price_for(self, resource: ProtectedResource) -> Price:
        price = resource.price if resource.price is not None else self.price
        if price is None or price == "":
            raise ConfigurationError(f"No price configured for {resource.path}")
        if self.asset_address and not isinstance(price, TokenAmount):
            # Money priced in a non-default asset: resolve decimals and domain from the token table
            try:
                token = get_token(self.network, self.asset_address)
            except (ValueError, MalformedRequirementError) as e:
                raise ConfigurationError(
                    f"Unknown asset {self.asset_address} on {self.network}"
                ) from e
            try:
                amount = money_to_atomic_amount(price, token["decimals"])
            except ValueError as e:
                raise ConfigurationError(f"Invalid price: {price}. Error: {e}") from e
            return TokenAmount(
                amount=amount,
                asset=TokenAsset(
                    address=token["address"],
                    decimals=token["decimals"],
                    eip712=EIP712Domain(name=token["name"], version=token["version"]),
                ),
            )
        return price

    def requirements_for(self, path: str) -> list[PaymentRequirements]:
        """Return the ordered payment requirements for a protected path.

        Raises:
            ConfigurationError: If no payee or price is configured.
        """
        if not self.pay_to:
            raise ConfigurationError("PAYMENT_WALLET_ADDRESS environment variable is required")
        resource = self.resource(path)
        price = self._price_for(resource)
        try:
            amount, asset_address, eip712_domain = process_price_to_atomic_amount(
                price, self.network
            )
        except (ValueError, MalformedRequirementError) as e:
            raise ConfigurationError(f"Invalid price: {price}. Error: {e}") from e

        return [
            PaymentRequirements(
                scheme="exact",
                network=self.network,
                amount=amount,
                asset=asset_address,
                pay_to=self.pay_to,
                max_timeout_seconds=self.max_timeout_seconds,
                extra=eip712_domain,
            )
        ]

    def resource_info(self, path: str, url: Optional[str] = None) -> ResourceInfo:
        resource = self.resource(path)
        return ResourceInfo(
            url=url or f"{self.base_url}{path}",
            description=resource.description,
            mime_type=resource.mime_type,
        )

    def challenge(
        self,
        path: str,
        error: str = "Payment required",
        url: Optional[str] = None,
    ) -> x402PaymentRequiredResponse:
        """Build the challenge returned with a 402 for ``path``."""
        return x402PaymentRequiredResponse(
            x402_version=x402_VERSION,
            accepts=self.requirements_for(path),
            error=error,
            resource=self.resource_info(path, url),
        )
