import asyncio
import json
from unittest.mock import AsyncMock

import pytest

from x402_query.errors import PaymentRejectedError, TaskTerminatedError, UpstreamProducerError
from x402_query.server import ChatStreamEvents
from x402_query.service import QueryService
from x402_query.tasks import TaskState
from x402_query.types import SettleResponse


@pytest.fixture
def service(producer):
    return QueryService(producer)


def events_of(frames):
    out = []
    for frame in frames:
        data = frame[len("data: "):].strip()
        out.append(data if data == "[DONE]" else json.loads(data))
    return out


async def test_run(service, producer):
    outcome = await service.run("What helps with sleep?", "ctx-1", payer="0xabc", payment_ref="0x01")

    assert outcome.task.status == TaskState.COMPLETED
    assert outcome.content == "Keep a regular sleep schedule. (What helps with sleep?)"
    assert outcome.context_id == "ctx-1"
    assert [t.role for t in service.contexts.get("ctx-1")] == ["user", "assistant"]

    [record] = await service.records.get_session_history("ctx-1")
    assert record.id == outcome.record_id
    assert record.response == outcome.content
    assert record.user_wallet == "0xabc"
    assert record.payment_ref == "0x01"


async def test_run_feeds_prior_turns(service, producer):
    await service.run("first", "ctx")
    await service.run("second", "ctx")

    prompt, history = producer.calls[-1]
    assert prompt == "second"
    assert [t.content for t in history][0] == "first"
    assert len(history) == 2


async def test_run_assigns_context(service):
    outcome = await service.run("hello")
    assert outcome.context_id
    assert len(service.contexts.get(outcome.context_id)) == 2


async def test_run_failure_marks_task_failed(make_producer):
    service = QueryService(make_producer(error=UpstreamProducerError("Failed to process query securely")))

    with pytest.raises(UpstreamProducerError):
        await service.run("hello", "ctx")

    assert service.contexts.get("ctx") == []
    [record] = await service.records.get_session_history("ctx")
    assert record.response is None
    assert len(service.tasks) == 1
    [task_id] = list(service.tasks._terminal)
    assert service.tasks.get(task_id).status == TaskState.FAILED


async def test_run_unexpected_producer_error_marks_task_failed(make_producer):
    service = QueryService(make_producer(error=RuntimeError("connection reset")))

    with pytest.raises(UpstreamProducerError, match="connection reset"):
        await service.run("hello", "ctx")

    [task_id] = list(service.tasks._terminal)
    task = service.tasks.get(task_id)
    assert task.status == TaskState.FAILED
    assert "connection reset" in task.error
    assert not service.tasks._active
    assert service.contexts.get("ctx") == []


async def test_run_canceled_while_producing(make_producer):
    service = QueryService(make_producer(delay=0.05))
    run = asyncio.create_task(service.run("hello", "ctx"))
    await asyncio.sleep(0.01)

    [task_id] = list(service.tasks._active)
    await service.tasks.cancel(task_id)

    with pytest.raises(TaskTerminatedError):
        await run
    assert service.contexts.get("ctx") == []


async def test_concurrent_runs_in_one_context_keep_every_turn(make_producer):
    service = QueryService(make_producer(delay=0.01))

    outcomes = await asyncio.gather(*(service.run(f"q{i}", "shared") for i in range(5)))

    turns = service.contexts.get("shared")
    assert len(turns) == 10
    assert {t.content for t in turns[::2]} == {f"q{i}" for i in range(5)}
    assert len({o.task.id for o in outcomes}) == 5


async def test_stream(service):
    frames = [f async for f in service.stream("hello", ChatStreamEvents("ctx"), context_id="ctx")]
    events = events_of(frames)

    chunks = [e["chunk"] for e in events if isinstance(e, dict) and "chunk" in e]
    assert "".join(chunks) == "Keep a regular sleep schedule."
    assert events[-2]["done"] is True
    assert events[-2]["recordId"]
    assert events[-1] == "[DONE]"

    task = service.tasks.get(events[-2]["taskId"])
    assert task.status == TaskState.COMPLETED
    assert task.agent_text == "Keep a regular sleep schedule."
    assert [t.content for t in service.contexts.get("ctx")] == [
        "hello",
        "Keep a regular sleep schedule.",
    ]


async def test_stream_failure(make_producer):
    service = QueryService(
        make_producer(chunks=["par", "tial"], error=UpstreamProducerError("Failed to stream response"))
    )

    frames = [f async for f in service.stream("hello", ChatStreamEvents("ctx"), context_id="ctx")]
    events = events_of(frames)

    assert [e["chunk"] for e in events[:2]] == ["par", "tial"]
    assert events[2]["error"] == "Stream failed"
    assert events[2]["kind"] == "upstream_producer_failure"
    assert events[3] == "[DONE]"
    assert service.tasks.get(events[2]["taskId"]).status == TaskState.FAILED
    assert service.contexts.get("ctx") == []


async def test_stream_canceled_task(make_producer):
    service = QueryService(make_producer(chunks=["a", "b", "c"], delay=0.01))
    stream = service.stream("hello", ChatStreamEvents("ctx"), context_id="ctx")

    first = await stream.__anext__()
    assert events_of([first])[0]["chunk"] == "a"

    [task_id] = list(service.tasks._active)
    await service.tasks.cancel(task_id)
    rest = events_of([f async for f in stream])

    assert rest[0]["canceled"] is True
    assert rest[1] == "[DONE]"
    assert service.tasks.get(task_id).status == TaskState.CANCELED
    assert service.contexts.get("ctx") == []


async def test_stream_consumer_disconnect_cancels_task(make_producer):
    service = QueryService(make_producer(chunks=["a", "b", "c"]))
    stream = service.stream("hello", ChatStreamEvents("ctx"), context_id="ctx")

    await stream.__anext__()
    [task_id] = list(service.tasks._active)
    await stream.aclose()

    assert service.tasks.get(task_id).status == TaskState.CANCELED
    assert service.contexts.get("ctx") == []


async def test_stream_settles_before_completing(service):
    settle = AsyncMock(return_value=SettleResponse(success=True, transaction="0xnonce"))

    frames = [
        f
        async for f in service.stream("hello", ChatStreamEvents("ctx"), context_id="ctx", settle=settle)
    ]
    done = events_of(frames)[-2]

    settle.assert_awaited_once()
    assert done["done"] is True
    assert done["paymentResponse"]


async def test_stream_settlement_failure_fails_task(service):
    settle = AsyncMock(side_effect=PaymentRejectedError("Settle failed: insufficient_funds"))

    frames = [
        f
        async for f in service.stream("hello", ChatStreamEvents("ctx"), context_id="ctx", settle=settle)
    ]
    terminal = events_of(frames)[-2]

    assert terminal == {
        "error": "Settle failed: insufficient_funds",
        "kind": "payment_rejected",
        "taskId": terminal["taskId"],
    }
    assert service.tasks.get(terminal["taskId"]).status == TaskState.FAILED
    assert service.contexts.get("ctx") == []


async def test_stream_failure_is_never_settled(make_producer):
    service = QueryService(make_producer(error=UpstreamProducerError("Failed to stream response")))
    settle = AsyncMock()

    frames = [
        f
        async for f in service.stream("hello", ChatStreamEvents("ctx"), context_id="ctx", settle=settle)
    ]

    assert events_of(frames)[-2]["kind"] == "upstream_producer_failure"
    settle.assert_not_awaited()


async def test_stream_disconnect_is_never_settled(make_producer):
    service = QueryService(make_producer(chunks=["a", "b", "c"]))
    settle = AsyncMock()
    stream = service.stream("hello", ChatStreamEvents("ctx"), context_id="ctx", settle=settle)

    await stream.__anext__()
    await stream.aclose()

    settle.assert_not_awaited()
