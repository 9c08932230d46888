"""Error taxonomy for the payment gate, the request orchestrator and the task protocol.

Every error carries a stable ``kind`` string so callers can branch on a small
closed set of failure categories instead of on transport exceptions.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from x402_query.types import x402PaymentRequiredResponse


class X402QueryError(Exception):
    """Base class for all x402_query errors."""

    kind = "error"
    status_code = 500

    def to_dict(self) -> dict[str, str]:
        return {"error": str(self), "kind": self.kind}


class ConfigurationError(X402QueryError):
    """Required configuration is missing or invalid."""

    kind = "configuration_error"


class ValidationError(X402QueryError):
    """Malformed input. Never retried."""

    kind = "validation_error"
    status_code = 400


class MalformedRequirementError(ValidationError):
    """A payment requirement cannot be turned into a signable authorization."""

    kind = "malformed_requirement"


class PaymentAmountExceededError(ValidationError):
    """Raised when payment amount exceeds maximum allowed value."""

    kind = "payment_amount_exceeded"


class DecodeError(X402QueryError):
    """A challenge or authorization header could not be decoded."""

    kind = "decode_error"
    status_code = 400


class PaymentRequired(X402QueryError):
    """The service asked for payment and the caller chose not to authorize."""

    kind = "payment_required"
    status_code = 402

    def __init__(
        self,
        message: str,
        challenge: Optional["x402PaymentRequiredResponse"] = None,
    ):
        super().__init__(message)
        self.challenge = challenge


class InsufficientFundsError(X402QueryError):
    """The payer's known balance is below the required amount."""

    kind = "insufficient_funds"
    status_code = 402

    def __init__(self, message: str, balance: int = 0, required: int = 0):
        super().__init__(message)
        self.balance = balance
        self.required = required


class SigningRejectedError(X402QueryError):
    """The signing capability declined or the user aborted."""

    kind = "signing_rejected"
    status_code = 400


class PaymentRejectedError(X402QueryError):
    """The service rejected an authorization. The orchestrator does not retry."""

    kind = "payment_rejected"
    status_code = 402

    def __init__(
        self,
        message: str,
        challenge: Optional["x402PaymentRequiredResponse"] = None,
    ):
        super().__init__(message)
        self.challenge = challenge


class UpstreamProducerError(X402QueryError):
    """The work producer failed."""

    kind = "upstream_producer_failure"
    status_code = 502


class TaskNotFoundError(X402QueryError):
    kind = "task_not_found"
    status_code = 404

    def __init__(self, task_id: str):
        super().__init__(f"Task not found: {task_id}")
        self.task_id = task_id


class TaskTerminatedError(X402QueryError):
    kind = "task_terminated"
    status_code = 409

    def __init__(self, task_id: str, state: str):
        super().__init__(f"Task {task_id} is already {state}")
        self.task_id = task_id
        self.state = state


class TransportError(X402QueryError):
    """Network failure or unexpected HTTP status, reported verbatim."""

    kind = "transport_error"
    status_code = 502

    def __init__(
        self,
        message: str,
        status: Optional[int] = None,
        body: Optional[str] = None,
    ):
        super().__init__(message)
        self.status = status
        self.body = body
