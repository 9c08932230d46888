"""The ``exact`` EVM scheme: EIP-3009 transferWithAuthorization payloads.

Builds the signed, time-bounded, nonce-unique authorization a payer attaches
to a retried request, and recovers the signer from one on the verifying side.
"""

import inspect
import logging
import secrets
import time
from typing import Any, Optional

from eth_account import Account
from eth_account.messages import encode_typed_data

from x402_query.common import x402_VERSION
from x402_query.errors import (
    InsufficientFundsError,
    MalformedRequirementError,
    SigningRejectedError,
)
from x402_query.networks import get_chain_id, get_token
from x402_query.signers import BalanceReader, ClientEvmSigner
from x402_query.types import (
    EIP3009Authorization,
    ExactPaymentPayload,
    PaymentPayload,
    PaymentRequirements,
    ResourceInfo,
)

logger = logging.getLogger(__name__)

# validAfter is backdated to absorb clock drift between payer and verifier
VALIDITY_SKEW_SECONDS = 600
DEFAULT_MAX_TIMEOUT_SECONDS = 300

TRANSFER_WITH_AUTHORIZATION_TYPES = {
    "TransferWithAuthorization": [
        {"name": "from", "type": "address"},
        {"name": "to", "type": "address"},
        {"name": "value", "type": "uint256"},
        {"name": "validAfter", "type": "uint256"},
        {"name": "validBefore", "type": "uint256"},
        {"name": "nonce", "type": "bytes32"},
    ]
}


def create_nonce() -> str:
    """Create a random 32-byte hex-encoded nonce (0x...) for authorization signatures."""
    return "0x" + secrets.token_hex(32)


def get_eip712_domain(requirements: PaymentRequirements) -> dict[str, Any]:
    """Build the domain separator binding a signature to one token contract on one chain.

    Raises:
        MalformedRequirementError: If the network has no chain id or the token
            name/version are neither in ``extra`` nor known for the asset.
    """
    chain_id = get_chain_id(requirements.network)
    name = requirements.token_name
    version = requirements.token_version
    if not name or not version:
        try:
            token = get_token(requirements.network, requirements.asset)
        except ValueError:
            raise MalformedRequirementError(
                f"Missing token name/version for asset {requirements.asset}"
            ) from None
        name = name or token["name"]
        version = version or token["version"]

    return {
        "name": name,
        "version": version,
        "chainId": chain_id,
        "verifyingContract": requirements.asset,
    }


def get_typed_message(authorization: EIP3009Authorization) -> dict[str, Any]:
    return {
        "from": authorization.from_,
        "to": authorization.to,
        "value": int(authorization.value),
        "validAfter": int(authorization.valid_after),
        "validBefore": int(authorization.valid_before),
        "nonce": bytes.fromhex(authorization.nonce.removeprefix("0x")),
    }


def prepare_authorization(
    requirements: PaymentRequirements,
    payer: str,
    now: Optional[int] = None,
    nonce: Optional[str] = None,
) -> EIP3009Authorization:
    """Create the unsigned authorization for ``requirements``.

    ``validBefore`` counts the requirement's timeout from ``now``, not from
    the backdated ``validAfter``.
    """
    now = int(time.time()) if now is None else now
    timeout = requirements.max_timeout_seconds
    if timeout <= 0:
        timeout = DEFAULT_MAX_TIMEOUT_SECONDS

    return EIP3009Authorization(
        from_=payer,
        to=requirements.pay_to,
        value=requirements.amount,
        valid_after=str(now - VALIDITY_SKEW_SECONDS),
        valid_before=str(now + timeout),
        nonce=nonce or create_nonce(),
    )


async def check_balance(
    balance_reader: BalanceReader,
    requirements: PaymentRequirements,
    payer: str,
) -> None:
    """Fail before any signature is requested when the payer cannot cover the amount."""
    balance = await balance_reader.get_balance(
        requirements.network, requirements.asset, payer
    )
    required = int(requirements.amount)
    if balance < required:
        raise InsufficientFundsError(
            f"Insufficient balance: have {balance}, need {required} (atomic units)",
            balance=balance,
            required=required,
        )


async def sign_authorization(
    signer: ClientEvmSigner,
    requirements: PaymentRequirements,
    authorization: EIP3009Authorization,
) -> str:
    """Sign ``authorization`` with the signing capability and return a 0x hex signature."""
    domain = get_eip712_domain(requirements)
    try:
        signature = signer.sign_typed_data(
            domain,
            TRANSFER_WITH_AUTHORIZATION_TYPES,
            "TransferWithAuthorization",
            get_typed_message(authorization),
        )
        if inspect.isawaitable(signature):
            signature = await signature
    except SigningRejectedError:
        raise
    except Exception as e:
        raise SigningRejectedError(f"Signature was rejected: {e}") from e

    if not signature:
        raise SigningRejectedError("Signer returned no signature")
    if isinstance(signature, str):
        return signature if signature.startswith("0x") else f"0x{signature}"
    return "0x" + bytes(signature).hex()


async def build_authorization(
    requirements: PaymentRequirements,
    signer: ClientEvmSigner,
    now: Optional[int] = None,
    balance_reader: Optional[BalanceReader] = None,
) -> ExactPaymentPayload:
    """Build and sign a fresh EIP-3009 authorization satisfying ``requirements``.

    Raises:
        MalformedRequirementError: If the network cannot be parsed into a chain id.
        InsufficientFundsError: If ``balance_reader`` reports less than the amount.
        SigningRejectedError: If the signer declines.
    """
    # Resolve the domain first so malformed requirements never reach the user
    get_eip712_domain(requirements)
    if balance_reader is not None:
        await check_balance(balance_reader, requirements, signer.address)

    authorization = prepare_authorization(requirements, signer.address, now=now)
    signature = await sign_authorization(signer, requirements, authorization)
    logger.info(
        "Signed payment authorization for %s atomic units to %s (nonce %s...)",
        authorization.value,
        authorization.to,
        authorization.nonce[:10],
    )
    return ExactPaymentPayload(signature=signature, authorization=authorization)


async def build_payment_payload(
    requirements: PaymentRequirements,
    signer: ClientEvmSigner,
    resource: Optional[ResourceInfo] = None,
    now: Optional[int] = None,
    balance_reader: Optional[BalanceReader] = None,
) -> PaymentPayload:
    """Build the authorized request: signed authorization plus the chosen requirement."""
    payload = await build_authorization(
        requirements, signer, now=now, balance_reader=balance_reader
    )
    return PaymentPayload(
        x402_version=x402_VERSION,
        resource=resource,
        accepted=requirements,
        payload=payload,
    )


def recover_authorization_signer(
    requirements: PaymentRequirements,
    payload: ExactPaymentPayload,
) -> str:
    """Recover the address that signed ``payload`` under the requirement's domain."""
    signable = encode_typed_data(
        domain_data=get_eip712_domain(requirements),
        message_types=TRANSFER_WITH_AUTHORIZATION_TYPES,
        message_data=get_typed_message(payload.authorization),
    )
    return Account.recover_message(signable, signature=payload.signature)
