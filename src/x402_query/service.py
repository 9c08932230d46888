"""Runs paid queries: one task, one context turn and one record per query."""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass
from typing import Optional, Protocol

from x402_query.context import ConversationContextStore
from x402_query.errors import UpstreamProducerError, X402QueryError
from x402_query.producer import WorkProducer
from x402_query.records import InMemoryRecordStore, RecordStore, utc_timestamp
from x402_query.streaming import Event, format_event, relay
from x402_query.tasks import Task, TaskRegistry
from x402_query.types import SettleResponse

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QueryOutcome:
    task: Task
    record_id: str
    timestamp: str

    @property
    def content(self) -> str:
        return self.task.agent_text

    @property
    def context_id(self) -> str:
        return self.task.context_id


class StreamEvents(Protocol):
    """Shapes the events one streaming protocol sends for a task."""

    def started(self, task: Task) -> Optional[Event]: ...

    def increment(self, task: Task, chunk: str) -> Event: ...

    def completed(
        self, task: Task, record_id: str, settlement: Optional[SettleResponse] = None
    ) -> Event: ...

    def failed(self, task: Task, error: Exception) -> Event: ...

    def canceled(self, task: Task) -> Event: ...


class QueryService:
    """Answers queries through the work producer, tracking each as a task.

    The context's lock is held from reading its history until the produced
    turn pair is appended, so concurrent queries in one context see each
    other's turns and none is lost.
    """

    def __init__(
        self,
        producer: WorkProducer,
        tasks: Optional[TaskRegistry] = None,
        contexts: Optional[ConversationContextStore] = None,
        records: Optional[RecordStore] = None,
    ):
        self.producer = producer
        self.tasks = tasks or TaskRegistry()
        self.contexts = contexts or ConversationContextStore()
        self.records = records or InMemoryRecordStore()

    async def _settle_abandoned(self, task_id: str) -> None:
        if not self.tasks.get(task_id).is_terminal:
            await self.tasks.cancel(task_id)

    async def run(
        self,
        content: str,
        context_id: Optional[str] = None,
        payer: Optional[str] = None,
        payment_ref: Optional[str] = None,
    ) -> QueryOutcome:
        """Answer ``content`` in one piece.

        Raises:
            UpstreamProducerError: If the producer fails; the task is marked failed.
            TaskTerminatedError: If the task was canceled while the producer ran.
        """
        context_id = context_id or str(uuid.uuid4())
        async with self.contexts.turn(context_id) as pending:
            task = await self.tasks.create(content, context_id)
            record_id = await self.records.store_prompt(context_id, content, payment_ref, payer)
            try:
                answer = await self.producer.process_query(content, pending.history)
            except X402QueryError as e:
                await self.tasks.fail(task.id, str(e))
                raise
            except asyncio.CancelledError:
                await self._settle_abandoned(task.id)
                raise
            except Exception as e:
                logger.exception("Producer failed on query %s", task.id)
                await self.tasks.fail(task.id, f"Producer failed: {e}")
                raise UpstreamProducerError(f"Producer failed: {e}") from e

            task = await self.tasks.complete(task.id, answer)
            pending.commit(content, answer)
            await self.records.store_response(record_id, answer)

        logger.info("Query %s answered in context %s", task.id, context_id)
        return QueryOutcome(task=task, record_id=record_id, timestamp=utc_timestamp())

    async def stream(
        self,
        content: str,
        events: StreamEvents,
        context_id: Optional[str] = None,
        payer: Optional[str] = None,
        payment_ref: Optional[str] = None,
        settle: Optional[Callable[[], Awaitable[SettleResponse]]] = None,
    ) -> AsyncIterator[str]:
        """Answer ``content`` incrementally, yielding SSE frames shaped by ``events``.

        Producer failures end the stream with a failure event instead of
        raising; a canceled task ends it with a cancellation event.

        ``settle`` collects payment once the producer has finished and before
        the task completes. If it raises, the task fails and the failure is
        the terminal event, so streams that fail or are abandoned never pay.
        """
        context_id = context_id or str(uuid.uuid4())
        async with self.contexts.turn(context_id) as pending:
            task = await self.tasks.create(content, context_id)
            record_id = await self.records.store_prompt(context_id, content, payment_ref, payer)

            async def on_increment(chunk: str) -> Event:
                return events.increment(await self.tasks.advance(task.id, chunk), chunk)

            async def on_complete(full: str) -> Event:
                settlement = None
                if settle is not None:
                    try:
                        settlement = await settle()
                    except X402QueryError as e:
                        logger.warning("Payment for query %s was not settled: %s", task.id, e)
                        return events.failed(await self.tasks.fail(task.id, str(e)), e)
                done = await self.tasks.complete(task.id, full)
                pending.commit(content, full)
                await self.records.store_response(record_id, full)
                logger.info("Streamed query %s answered in context %s", task.id, context_id)
                return events.completed(done, record_id, settlement)

            async def on_error(error: Exception) -> Event:
                if self.tasks.get(task.id).is_terminal:
                    return events.canceled(self.tasks.get(task.id))
                failed = await self.tasks.fail(task.id, str(error))
                return events.failed(failed, error)

            async def on_cancel(full: str) -> Event:
                await self._settle_abandoned(task.id)
                return events.canceled(self.tasks.get(task.id))

            started = events.started(task)
            if started is not None:
                yield format_event(started)

            frames = relay(
                self.producer.stream_query(content, pending.history),
                on_increment,
                on_complete,
                on_error,
                on_cancel,
                signal=self.tasks.cancellation(task.id),
            )
            try:
                async for frame in frames:
                    yield frame
            except (asyncio.CancelledError, GeneratorExit):
                await frames.aclose()
                await self._settle_abandoned(task.id)
                raise
