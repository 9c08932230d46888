"""FastAPI application for the payment-gated query service.

Run with ``x402-query-server`` or ``python -m x402_query.server``; configuration
comes from the environment (see ``x402_query.config``).
"""

from __future__ import annotations

import logging
import uuid
from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from x402_query import __version__
from x402_query.a2a import create_a2a_router
from x402_query.config import ServerSettings
from x402_query.encoding import encode_payment_response_header
from x402_query.errors import PaymentRejectedError, ValidationError, X402QueryError
from x402_query.facilitator import Facilitator, FacilitatorClient, LocalFacilitator
from x402_query.fastapi.middleware import require_payment
from x402_query.producer import OpenAIChatProducer, WorkProducer
from x402_query.records import RecordStore, utc_timestamp
from x402_query.registry import PaymentRequirementRegistry, ProtectedResource
from x402_query.service import QueryService
from x402_query.streaming import SSE_HEADERS
from x402_query.tasks import Task, TaskRegistry
from x402_query.types import SettleResponse

logger = logging.getLogger(__name__)

CHAT_PATH = "/api/chat"
CHAT_STREAM_PATH = "/api/chat/stream"
A2A_PATH = "/a2a"
AGENT_CARD_PATH = "/.well-known/agent-card.json"

PROTECTED_RESOURCES = (
    ProtectedResource(CHAT_PATH, "Private Medical AI Query"),
    ProtectedResource(CHAT_STREAM_PATH, "Private Medical AI Query (streaming)", "text/event-stream"),
    ProtectedResource(A2A_PATH, "Private Medical AI agent task"),
)


class ChatRequest(BaseModel):
    message: Optional[str] = None
    content: Optional[str] = None
    session_id: Optional[str] = None
    context_id: Optional[str] = None
    user_wallet: Optional[str] = None
    payment_tx_hash: Optional[str] = None

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    @property
    def text(self) -> str:
        text = self.message if self.message is not None else self.content
        if not isinstance(text, str) or not text.strip():
            raise ValidationError("Message is required")
        return text

    @property
    def conversation_id(self) -> Optional[str]:
        return self.context_id or self.session_id


class ChatStreamEvents:
    def __init__(self, context_id: str):
        self.context_id = context_id

    def started(self, task: Task) -> None:
        return None

    def increment(self, task: Task, chunk: str) -> dict[str, Any]:
        return {"chunk": chunk, "contextId": self.context_id, "sessionId": self.context_id}

    def completed(
        self, task: Task, record_id: str, settlement: Optional[SettleResponse] = None
    ) -> dict[str, Any]:
        event = {
            "done": True,
            "recordId": record_id,
            "taskId": task.id,
            "contextId": self.context_id,
            "sessionId": self.context_id,
        }
        if settlement is not None:
            event["paymentResponse"] = encode_payment_response_header(settlement)
        return event

    def failed(self, task: Task, error: Exception) -> dict[str, Any]:
        if isinstance(error, PaymentRejectedError):
            return {"error": str(error), "kind": error.kind, "taskId": task.id}
        kind = error.kind if isinstance(error, X402QueryError) else "upstream_producer_failure"
        return {"error": "Stream failed", "kind": kind, "taskId": task.id}

    def canceled(self, task: Task) -> dict[str, Any]:
        return {
            "done": True,
            "canceled": True,
            "taskId": task.id,
            "contextId": self.context_id,
            "sessionId": self.context_id,
        }


def agent_card(settings: ServerSettings) -> dict[str, Any]:
    return {
        "name": "Private Medical AI",
        "description": "Privacy-preserving medical AI assistant powered by Nillion",
        "url": settings.agent_url,
        "version": __version__,
        "capabilities": {
            "streaming": True,
            "pushNotifications": False,
            "stateTransitionHistory": True,
        },
        "authentication": {"schemes": ["x402"]},
        "defaultInputModes": ["text"],
        "defaultOutputModes": ["text"],
        "skills": [
            {
                "id": "medical-chat",
                "name": "Medical Chat",
                "description": "Answer medical questions with privacy protection",
                "tags": ["medical", "health", "privacy", "ai"],
                "examples": [
                    "What are the symptoms of the common cold?",
                    "How can I improve my sleep quality?",
                    "What should I do for a mild headache?",
                ],
            }
        ],
    }


async def _chat_request(request: Request) -> ChatRequest:
    try:
        body = await request.json()
    except ValueError:
        raise ValidationError("Request body must be JSON") from None
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")
    try:
        return ChatRequest.model_validate(body)
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid chat request: {e}") from e


def _payer(request: Request, chat: ChatRequest) -> Optional[str]:
    return getattr(request.state, "payer", None) or chat.user_wallet


def _payment_ref(request: Request, chat: ChatRequest) -> Optional[str]:
    return getattr(request.state, "payment_nonce", None) or chat.payment_tx_hash


def create_facilitator(settings: ServerSettings) -> Facilitator:
    if settings.local_verify:
        logger.info("Verifying payments locally")
        return LocalFacilitator()
    logger.info("Verifying payments with facilitator %s", settings.facilitator_url)
    return FacilitatorClient(settings.facilitator_url)


def create_app(
    settings: Optional[ServerSettings] = None,
    producer: Optional[WorkProducer] = None,
    facilitator: Optional[Facilitator] = None,
    records: Optional[RecordStore] = None,
    registry: Optional[PaymentRequirementRegistry] = None,
) -> FastAPI:
    """Build the service.

    Collaborators default to the ones ``settings`` describes; tests pass
    their own producer, facilitator and record store.
    """
    settings = settings or ServerSettings.from_env()
    if producer is None:
        producer = OpenAIChatProducer(
            api_key=settings.nillion_api_key,
            base_url=settings.nilai_base_url,
            model=settings.nilai_model,
        )
    facilitator = facilitator or create_facilitator(settings)
    registry = registry or PaymentRequirementRegistry.from_settings(
        settings, PROTECTED_RESOURCES
    )
    service = QueryService(
        producer,
        tasks=TaskRegistry(max_terminal_tasks=settings.task_retention),
        records=records,
    )

    app = FastAPI(title="x402 query service", version=__version__)
    app.state.settings = settings
    app.state.service = service
    app.state.registry = registry
    app.middleware("http")(require_payment(registry, facilitator))

    @app.exception_handler(X402QueryError)
    async def x402_query_error_handler(request: Request, exc: X402QueryError):
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.post(CHAT_PATH)
    async def chat(request: Request):
        chat = await _chat_request(request)
        outcome = await service.run(
            chat.text,
            chat.conversation_id,
            payer=_payer(request, chat),
            payment_ref=_payment_ref(request, chat),
        )
        return {
            "response": outcome.content,
            "content": outcome.content,
            "contextId": outcome.context_id,
            "sessionId": outcome.context_id,
            "taskId": outcome.task.id,
            "recordId": outcome.record_id,
            "timestamp": outcome.timestamp,
        }

    @app.post(CHAT_STREAM_PATH)
    async def chat_stream(request: Request):
        chat = await _chat_request(request)
        text = chat.text
        context_id = chat.conversation_id or str(uuid.uuid4())
        return StreamingResponse(
            service.stream(
                text,
                ChatStreamEvents(context_id),
                context_id=context_id,
                payer=_payer(request, chat),
                payment_ref=_payment_ref(request, chat),
                settle=getattr(request.state, "settle_payment", None),
            ),
            media_type="text/event-stream",
            headers=SSE_HEADERS,
        )

    @app.get("/api/chat/history/{context_id}")
    async def session_history(context_id: str):
        history = await service.records.get_session_history(context_id)
        return {
            "contextId": context_id,
            "sessionId": context_id,
            "history": [r.model_dump(by_alias=True) for r in history],
        }

    @app.get("/api/chat/user/{wallet}")
    async def user_history(wallet: str):
        history = await service.records.get_user_history(wallet)
        return {"wallet": wallet, "history": [r.model_dump(by_alias=True) for r in history]}

    @app.get("/api/chat/context/{context_id}")
    async def conversation_context(context_id: str):
        return {
            "contextId": context_id,
            "turns": [turn.model_dump() for turn in service.contexts.get(context_id)],
        }

    @app.get("/api/chat/health")
    async def health():
        return {"status": "healthy", "model": producer.model, "timestamp": utc_timestamp()}

    @app.get(AGENT_CARD_PATH)
    async def discovery():
        return agent_card(settings)

    app.include_router(create_a2a_router(service))
    return app


def main() -> None:
    import uvicorn

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    settings = ServerSettings.from_env()
    app = create_app(settings)
    logger.info("Starting x402 query service on port %d (network %s)", settings.port, settings.network)
    uvicorn.run(app, host="0.0.0.0", port=settings.port)


if __name__ == "__main__":
    main()
