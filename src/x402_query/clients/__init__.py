from x402_query.clients.base import x402Client, decode_payment_response
from x402_query.clients.httpx import (
    AuthorizationRequired,
    QueryClient,
    QueryResult,
    RequestState,
)

__all__ = [
    "x402Client",
    "decode_payment_response",
    "QueryClient",
    "QueryResult",
    "AuthorizationRequired",
    "RequestState",
]
