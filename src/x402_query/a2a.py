"""Structured task protocol: JSON-RPC 2.0 over ``POST /a2a``.

Methods:
    message/send   create a task for a message, optionally streaming it
    tasks/get      fetch a task by id
    tasks/cancel   cancel a task that has not reached a terminal state
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Optional, Union

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, StreamingResponse

from x402_query.errors import ValidationError, X402QueryError
from x402_query.service import QueryService
from x402_query.streaming import SSE_HEADERS
from x402_query.tasks import Task
from x402_query.types import SettleResponse

logger = logging.getLogger(__name__)

JSONRPC_VERSION = "2.0"

PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INTERNAL_ERROR = -32603

RequestId = Union[str, int, None]


def rpc_result(request_id: RequestId, result: Any) -> dict[str, Any]:
    return {"jsonrpc": JSONRPC_VERSION, "result": result, "id": request_id}


def rpc_error(
    request_id: RequestId,
    code: int,
    message: str,
    data: Optional[dict[str, Any]] = None,
) -> dict[str, Any]:
    error: dict[str, Any] = {"code": code, "message": message}
    if data:
        error["data"] = data
    return {"jsonrpc": JSONRPC_VERSION, "error": error, "id": request_id}


class TaskStreamEvents:
    """Every event carries the task snapshot as a JSON-RPC result."""

    def __init__(self, request_id: RequestId):
        self.request_id = request_id

    def started(self, task: Task) -> dict[str, Any]:
        return rpc_result(self.request_id, task.to_wire())

    def increment(self, task: Task, chunk: str) -> dict[str, Any]:
        return rpc_result(self.request_id, task.to_wire())

    def completed(
        self, task: Task, record_id: str, settlement: Optional[SettleResponse] = None
    ) -> dict[str, Any]:
        result = task.to_wire()
        if settlement is not None:
            result["metadata"] = {
                "x402.payment.settled": settlement.model_dump(by_alias=True, exclude_none=True)
            }
        return rpc_result(self.request_id, result)

    def failed(self, task: Task, error: Exception) -> dict[str, Any]:
        return rpc_error(
            self.request_id,
            INTERNAL_ERROR,
            str(error) if isinstance(error, X402QueryError) else "Stream failed",
            {"kind": getattr(error, "kind", "upstream_producer_failure"), "task": task.to_wire()},
        )

    def canceled(self, task: Task) -> dict[str, Any]:
        return rpc_result(self.request_id, task.to_wire())


def _message_text(params: dict[str, Any]) -> str:
    message = params.get("message")
    if not isinstance(message, dict) or not isinstance(message.get("parts"), list):
        raise ValidationError("params.message with a parts list is required")
    text = "\n".join(
        part["text"]
        for part in message["parts"]
        if isinstance(part, dict) and part.get("type", "text") == "text" and part.get("text")
    )
    if not text.strip():
        raise ValidationError("params.message has no text parts")
    return text


def _task_id(params: dict[str, Any]) -> str:
    task_id = params.get("taskId") or params.get("id")
    if not isinstance(task_id, str) or not task_id:
        raise ValidationError("params.taskId is required")
    return task_id


def create_a2a_router(service: QueryService) -> APIRouter:
    router = APIRouter()

    async def message_send(request: Request, params: dict[str, Any], request_id: RequestId):
        configuration = params.get("configuration") or {}
        if not isinstance(configuration, dict):
            raise ValidationError("params.configuration must be an object")
        text = _message_text(params)
        context_id = configuration.get("contextId") or params.get("contextId")
        payer = getattr(request.state, "payer", None)
        payment_ref = getattr(request.state, "payment_nonce", None)

        if configuration.get("streaming"):
            return StreamingResponse(
                service.stream(
                    text,
                    TaskStreamEvents(request_id),
                    context_id=context_id,
                    payer=payer,
                    payment_ref=payment_ref,
                    settle=getattr(request.state, "settle_payment", None),
                ),
                media_type="text/event-stream",
                headers=SSE_HEADERS,
            )

        outcome = await service.run(text, context_id, payer=payer, payment_ref=payment_ref)
        return outcome.task.to_wire()

    async def tasks_get(request: Request, params: dict[str, Any], request_id: RequestId):
        return service.tasks.get(_task_id(params)).to_wire()

    async def tasks_cancel(request: Request, params: dict[str, Any], request_id: RequestId):
        task = await service.tasks.cancel(_task_id(params))
        return task.to_wire()

    methods: dict[str, Callable[[Request, dict[str, Any], RequestId], Awaitable[Any]]] = {
        "message/send": message_send,
        "tasks/get": tasks_get,
        "tasks/cancel": tasks_cancel,
    }

    @router.post("/a2a")
    async def a2a(request: Request):
        # Error envelopes carry a non-2xx status so the payment gate does not settle them
        try:
            body = await request.json()
        except ValueError:
            return JSONResponse(rpc_error(None, PARSE_ERROR, "Parse error"), status_code=400)

        request_id = body.get("id") if isinstance(body, dict) else None
        if not isinstance(body, dict) or body.get("jsonrpc") != JSONRPC_VERSION:
            return JSONResponse(
                rpc_error(request_id, INVALID_REQUEST, "Invalid Request"), status_code=400
            )

        method = body.get("method")
        handler = methods.get(method) if isinstance(method, str) else None
        if handler is None:
            return JSONResponse(
                rpc_error(request_id, METHOD_NOT_FOUND, f"Method not found: {method}"),
                status_code=404,
            )

        params = body.get("params") or {}
        if not isinstance(params, dict):
            return JSONResponse(
                rpc_error(
                    request_id,
                    INTERNAL_ERROR,
                    "params must be an object",
                    {"kind": ValidationError.kind},
                ),
                status_code=ValidationError.status_code,
            )

        try:
            result = await handler(request, params, request_id)
        except X402QueryError as e:
            logger.warning("%s failed: %s", method, e)
            return JSONResponse(
                rpc_error(request_id, INTERNAL_ERROR, str(e), {"kind": e.kind}),
                status_code=e.status_code,
            )
        except Exception as e:
            logger.exception("%s failed", method)
            return JSONResponse(
                rpc_error(request_id, INTERNAL_ERROR, str(e) or "Internal error"),
                status_code=500,
            )

        if isinstance(result, StreamingResponse):
            return result
        return JSONResponse(rpc_result(request_id, result))

    return router
