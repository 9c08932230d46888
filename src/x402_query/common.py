from decimal import Decimal, InvalidOperation
from typing import Any, Optional

import jcs

from x402_query.networks import get_default_token
from x402_query.types import PaymentPayload, PaymentRequirements, Price, TokenAmount

x402_VERSION = 2


def canonical_json(obj: Any) -> bytes:
    """Serialize a JSON value per RFC 8785 so equal values give equal bytes."""
    return jcs.canonicalize(obj)


def parse_money(money: str | int) -> Decimal:
    """Parse a USD amount such as ``"$0.01"``, ``"0.01"`` or ``1`` into a Decimal."""
    if isinstance(money, str):
        money = money.strip().removeprefix("$").strip()
    try:
        amount = Decimal(str(money))
    except InvalidOperation as e:
        raise ValueError(f"Invalid money amount: {money!r}") from e
    if not amount.is_finite() or amount < 0:
        raise ValueError(f"Invalid money amount: {money!r}")
    return amount


def money_to_atomic_amount(money: str | int, decimals: int) -> str:
    """Convert a USD amount to the smallest unit of a token with ``decimals`` places.

    Raises:
        ValueError: If the amount is invalid or finer than the token can represent.
    """
    atomic = parse_money(money) * (Decimal(10) ** decimals)
    if atomic != atomic.to_integral_value():
        raise ValueError(f"Price {money!r} is finer than the token's {decimals} decimals")
    return str(int(atomic))


def process_price_to_atomic_amount(
    price: Price, network: str
) -> tuple[str, str, dict[str, Any]]:
    """Process a Price into atomic amount, asset address, and EIP-712 domain info

    Args:
        price: Either Money (USD string/int) or TokenAmount
        network: Network identifier

    Returns:
        Tuple of (amount, asset_address, eip712_domain)

    Raises:
        ValueError: If price format is invalid
    """
    if isinstance(price, TokenAmount):
        return (
            price.amount,
            price.asset.address,
            {
                "name": price.asset.eip712.name,
                "version": price.asset.eip712.version,
            },
        )

    token = get_default_token(network)
    return (
        money_to_atomic_amount(price, token["decimals"]),
        token["address"],
        {"name": token["name"], "version": token["version"]},
    )


def requirements_equal(a: PaymentRequirements, b: PaymentRequirements) -> bool:
    """Compare two requirements on their canonical wire form."""
    return canonical_json(a.model_dump(by_alias=True)) == canonical_json(
        b.model_dump(by_alias=True)
    )


def find_matching_payment_requirements(
    payment_requirements: list[PaymentRequirements],
    payment: PaymentPayload,
) -> Optional[PaymentRequirements]:
    """Return the offered requirement the payment's ``accepted`` field is identical to."""
    for requirements in payment_requirements:
        if requirements_equal(requirements, payment.accepted):
            return requirements
    return None
