from typing import Callable, List, Optional

from x402_query.encoding import (
    decode_payment_response_header,
    encode_payment_signature_header,
)
from x402_query.errors import MalformedRequirementError, PaymentAmountExceededError
from x402_query.exact import build_payment_payload
from x402_query.signers import BalanceReader, ClientEvmSigner
from x402_query.types import (
    PaymentPayload,
    PaymentRequirements,
    ResourceInfo,
    SettleResponse,
)

# Define type for the payment requirements selector
PaymentSelectorCallable = Callable[
    [List[PaymentRequirements], Optional[str], Optional[str], Optional[int]],
    PaymentRequirements,
]


def decode_payment_response(header: str) -> SettleResponse:
    """Decode the PAYMENT-RESPONSE header.

    Args:
        header: The PAYMENT-RESPONSE header to decode

    Returns:
        The settlement result: success, transaction, network and payer
    """
    return decode_payment_response_header(header)


class x402Client:
    """Requester-side payment handling for the ``exact`` EVM scheme."""

    def __init__(
        self,
        signer: ClientEvmSigner,
        balance_reader: Optional[BalanceReader] = None,
        max_value: Optional[int] = None,
        payment_requirements_selector: Optional[PaymentSelectorCallable] = None,
    ):
        """Initialize the x402 client.

        Args:
            signer: Signing capability (address + EIP-712 typed data signing)
            balance_reader: Optional balance source enabling the funds pre-check
            max_value: Optional maximum allowed payment amount in base units
            payment_requirements_selector: Optional custom selector for payment requirements
        """
        self.signer = signer
        self.balance_reader = balance_reader
        self.max_value = max_value
        self._payment_requirements_selector = (
            payment_requirements_selector or self.default_payment_requirements_selector
        )

    @property
    def address(self) -> str:
        return self.signer.address

    @staticmethod
    def default_payment_requirements_selector(
        accepts: List[PaymentRequirements],
        network_filter: Optional[str] = None,
        scheme_filter: Optional[str] = None,
        max_value: Optional[int] = None,
    ) -> PaymentRequirements:
        """Select the first ``exact`` requirement passing the filters.

        Args:
            accepts: List of accepted payment requirements
            network_filter: Optional network to filter by
            scheme_filter: Optional scheme to filter by
            max_value: Optional maximum allowed payment amount

        Returns:
            Selected payment requirements

        Raises:
            MalformedRequirementError: If no supported scheme is found
            PaymentAmountExceededError: If payment amount exceeds max_value
        """
        for payment_requirements in accepts:
            if scheme_filter and payment_requirements.scheme != scheme_filter:
                continue
            if network_filter and payment_requirements.network != network_filter:
                continue

            if payment_requirements.scheme == "exact":
                if max_value is not None:
                    amount = int(payment_requirements.amount)
                    if amount > max_value:
                        raise PaymentAmountExceededError(
                            f"Payment amount {amount} exceeds maximum allowed value {max_value}"
                        )
                return payment_requirements

        raise MalformedRequirementError("No supported payment scheme found")

    def select_payment_requirements(
        self,
        accepts: List[PaymentRequirements],
        network_filter: Optional[str] = None,
        scheme_filter: Optional[str] = None,
    ) -> PaymentRequirements:
        """Select payment requirements using the configured selector."""
        return self._payment_requirements_selector(
            accepts, network_filter, scheme_filter, self.max_value
        )

    def check_max_value(self, payment_requirements: PaymentRequirements) -> None:
        if self.max_value is not None and int(payment_requirements.amount) > self.max_value:
            raise PaymentAmountExceededError(
                f"Payment amount {payment_requirements.amount} exceeds maximum allowed value {self.max_value}"
            )

    async def create_payment_payload(
        self,
        payment_requirements: PaymentRequirements,
        resource: Optional[ResourceInfo] = None,
    ) -> PaymentPayload:
        """Build and sign a fresh authorized request for ``payment_requirements``.

        Raises:
            PaymentAmountExceededError: If the amount exceeds ``max_value``.
            MalformedRequirementError: If the network has no parsable chain id.
            InsufficientFundsError: If the balance pre-check fails.
            SigningRejectedError: If the signer declines.
        """
        self.check_max_value(payment_requirements)
        return await build_payment_payload(
            payment_requirements,
            self.signer,
            resource=resource,
            balance_reader=self.balance_reader,
        )

    async def create_payment_header(
        self,
        payment_requirements: PaymentRequirements,
        resource: Optional[ResourceInfo] = None,
    ) -> str:
        """Create the base64 PAYMENT-SIGNATURE header value for the given requirements."""
        payment = await self.create_payment_payload(payment_requirements, resource)
        return encode_payment_signature_header(payment)
