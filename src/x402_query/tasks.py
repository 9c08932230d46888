"""Task registry: lifecycle of each unit of work, independent of payment.

Lifecycle::

    submitted -> working -> completed | failed | canceled
                    \\-> input-required -> working

Terminal states are final. Mutations of one task are serialized on that
task's own lock; tasks never contend with each other.
"""

from __future__ import annotations

import logging
import uuid
from collections import OrderedDict
from enum import Enum
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from x402_query.config import DEFAULT_TASK_RETENTION
from x402_query.errors import TaskNotFoundError, TaskTerminatedError, ValidationError
from x402_query.locks import KeyedLock
from x402_query.streaming import CancellationSignal

logger = logging.getLogger(__name__)


class TaskState(str, Enum):
    SUBMITTED = "submitted"
    WORKING = "working"
    INPUT_REQUIRED = "input-required"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELED = "canceled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({TaskState.COMPLETED, TaskState.FAILED, TaskState.CANCELED})


class Part(BaseModel):
    type: Literal["text"] = "text"
    text: str


class Message(BaseModel):
    role: Literal["user", "agent"]
    parts: list[Part]

    @classmethod
    def from_text(cls, role: str, text: str) -> "Message":
        return cls(role=role, parts=[Part(text=text)])

    @property
    def text(self) -> str:
        return "\n".join(part.text for part in self.parts if part.text)


class Artifact(BaseModel):
    name: str
    parts: list[Part] = Field(default_factory=list)


class Task(BaseModel):
    id: str
    context_id: str
    status: TaskState
    messages: list[Message] = Field(default_factory=list)
    artifacts: list[Artifact] = Field(default_factory=list)
    error: Optional[str] = None

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def agent_text(self) -> str:
        agent = [m for m in self.messages if m.role == "agent"]
        return agent[-1].text if agent else ""

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True, mode="json", exclude_none=True)


class TaskRegistry:
    """Owns every Task; callers only ever receive copies.

    Non-terminal tasks are always retained. Terminal tasks are kept in an LRU
    of ``max_terminal_tasks`` entries so they stay queryable after completion
    until newer completions push them out.
    """

    def __init__(self, max_terminal_tasks: int = DEFAULT_TASK_RETENTION):
        if max_terminal_tasks <= 0:
            raise ValueError("max_terminal_tasks must be positive")
        self.max_terminal_tasks = max_terminal_tasks
        self._active: dict[str, Task] = {}
        self._terminal: OrderedDict[str, Task] = OrderedDict()
        self._signals: dict[str, CancellationSignal] = {}
        self._locks = KeyedLock()

    def __len__(self) -> int:
        return len(self._active) + len(self._terminal)

    def __contains__(self, task_id: str) -> bool:
        return task_id in self._active or task_id in self._terminal

    def _lookup(self, task_id: str) -> Task:
        task = self._active.get(task_id)
        if task is not None:
            return task
        task = self._terminal.get(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        self._terminal.move_to_end(task_id)
        return task

    def _mutable(self, task_id: str) -> Task:
        task = self._lookup(task_id)
        if task.is_terminal:
            raise TaskTerminatedError(task_id, task.status.value)
        return task

    def _finish(self, task: Task, state: TaskState) -> None:
        task.status = state
        del self._active[task.id]
        self._signals.pop(task.id, None)
        self._terminal[task.id] = task
        while len(self._terminal) > self.max_terminal_tasks:
            evicted, _ = self._terminal.popitem(last=False)
            logger.debug("Evicted terminal task %s", evicted)
        logger.info("Task %s %s", task.id, state.value)

    @staticmethod
    def _agent_message(task: Task) -> Message:
        if not task.messages or task.messages[-1].role != "agent":
            task.messages.append(Message.from_text("agent", ""))
        return task.messages[-1]

    async def create(
        self,
        content: str,
        context_id: Optional[str] = None,
        state: TaskState = TaskState.WORKING,
    ) -> Task:
        """Create a task recording the initiating user message."""
        if state not in (TaskState.SUBMITTED, TaskState.WORKING):
            raise ValidationError(f"Tasks cannot be created in state {state.value}")
        task = Task(
            id=str(uuid.uuid4()),
            context_id=context_id or str(uuid.uuid4()),
            status=state,
            messages=[Message.from_text("user", content)],
        )
        self._active[task.id] = task
        self._signals[task.id] = CancellationSignal()
        logger.info("Task %s created in context %s", task.id, task.context_id)
        return task.model_copy(deep=True)

    def get(self, task_id: str) -> Task:
        """Return a snapshot of the task.

        Raises:
            TaskNotFoundError: If the task is unknown or has been evicted.
        """
        return self._lookup(task_id).model_copy(deep=True)

    def cancellation(self, task_id: str) -> CancellationSignal:
        """The signal fired when ``task_id`` is canceled; already fired for terminal tasks."""
        signal = self._signals.get(task_id)
        if signal is None:
            task = self._lookup(task_id)
            signal = CancellationSignal()
            signal.cancel(f"task {task.status.value}")
        return signal

    async def start(self, task_id: str) -> Task:
        """Move a submitted task to working."""
        async with self._locks.hold(task_id):
            task = self._mutable(task_id)
            task.status = TaskState.WORKING
            return task.model_copy(deep=True)

    async def advance(self, task_id: str, delta: str) -> Task:
        """Extend the produced-content message with ``delta``.

        Raises:
            TaskTerminatedError: If the task already reached a terminal state.
        """
        async with self._locks.hold(task_id):
            task = self._mutable(task_id)
            if task.status == TaskState.SUBMITTED:
                task.status = TaskState.WORKING
            message = self._agent_message(task)
            message.parts[-1].text += delta
            return task.model_copy(deep=True)

    async def request_input(self, task_id: str, prompt: str) -> Task:
        """Pause the task until the requester supplies more input."""
        async with self._locks.hold(task_id):
            task = self._mutable(task_id)
            task.messages.append(Message.from_text("agent", prompt))
            task.status = TaskState.INPUT_REQUIRED
            logger.info("Task %s waiting for input", task_id)
            return task.model_copy(deep=True)

    async def resume(self, task_id: str, content: str) -> Task:
        """Record the requester's answer to an input-required task and resume work."""
        async with self._locks.hold(task_id):
            task = self._mutable(task_id)
            if task.status != TaskState.INPUT_REQUIRED:
                raise ValidationError(f"Task {task_id} is {task.status.value}, not input-required")
            task.messages.append(Message.from_text("user", content))
            task.status = TaskState.WORKING
            return task.model_copy(deep=True)

    async def complete(self, task_id: str, final_content: Optional[str] = None) -> Task:
        """Mark the task completed; ``final_content`` replaces the produced message.

        Raises:
            TaskTerminatedError: If the task already reached a terminal state.
            ValidationError: If the task is waiting for input.
        """
        async with self._locks.hold(task_id):
            task = self._mutable(task_id)
            if task.status == TaskState.INPUT_REQUIRED:
                raise ValidationError(f"Task {task_id} is waiting for input")
            if final_content is not None:
                self._agent_message(task).parts = [Part(text=final_content)]
            self._finish(task, TaskState.COMPLETED)
            return task.model_copy(deep=True)

    async def fail(self, task_id: str, reason: str) -> Task:
        async with self._locks.hold(task_id):
            task = self._mutable(task_id)
            task.error = reason
            self._finish(task, TaskState.FAILED)
            return task.model_copy(deep=True)

    async def cancel(self, task_id: str) -> Task:
        """Cancel a non-terminal task and fire its cancellation signal.

        Cancellation is cooperative: a producer already running for the task
        keeps going unless it watches the signal.

        Raises:
            TaskNotFoundError: If the task is unknown.
            TaskTerminatedError: If the task already reached a terminal state.
        """
        async with self._locks.hold(task_id):
            task = self._mutable(task_id)
            signal = self._signals.get(task_id)
            self._finish(task, TaskState.CANCELED)
            if signal is not None:
                signal.cancel("task canceled")
            return task.model_copy(deep=True)
