"""Payment-gated query service and task protocol built on x402."""

__version__ = "0.1.0"

from x402_query.common import x402_VERSION
from x402_query.errors import (
    ConfigurationError,
    DecodeError,
    InsufficientFundsError,
    MalformedRequirementError,
    PaymentRejectedError,
    PaymentRequired,
    SigningRejectedError,
    TaskNotFoundError,
    TaskTerminatedError,
    TransportError,
    UpstreamProducerError,
    ValidationError,
    X402QueryError,
)
from x402_query.types import (
    AuthorizedRequest,
    PaymentChallenge,
    PaymentPayload,
    PaymentRequirements,
    x402PaymentRequiredResponse,
)

__all__ = [
    "__version__",
    "x402_VERSION",
    "X402QueryError",
    "ConfigurationError",
    "ValidationError",
    "MalformedRequirementError",
    "DecodeError",
    "PaymentRequired",
    "InsufficientFundsError",
    "SigningRejectedError",
    "PaymentRejectedError",
    "UpstreamProducerError",
    "TaskNotFoundError",
    "TaskTerminatedError",
    "TransportError",
    "PaymentRequirements",
    "x402PaymentRequiredResponse",
    "PaymentChallenge",
    "PaymentPayload",
    "AuthorizedRequest",
]
