"""Conversation context store: prior turns per context id, fed to the work producer."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Literal

from pydantic import BaseModel, ConfigDict

from x402_query.locks import KeyedLock

logger = logging.getLogger(__name__)


class Turn(BaseModel):
    role: Literal["user", "assistant"]
    content: str

    model_config = ConfigDict(frozen=True)


class PendingTurn:
    """One request's exclusive view of a context while its lock is held."""

    def __init__(self, store: "ConversationContextStore", context_id: str):
        self._store = store
        self.context_id = context_id
        self.history = store.get(context_id)
        self.committed = False

    def commit(self, user_content: str, produced_content: str) -> None:
        """Append the user turn and the produced turn, in that order."""
        if self.committed:
            raise RuntimeError(f"Turn for context {self.context_id} already committed")
        self._store._extend(
            self.context_id,
            [
                Turn(role="user", content=user_content),
                Turn(role="assistant", content=produced_content),
            ],
        )
        self.committed = True


class ConversationContextStore:
    """Append-only turn lists keyed by context id.

    ``turn()`` holds the context's lock from the read of its history until
    the produced turn pair is appended, so concurrent requests sharing a
    context are applied one after another in the order their work completes.
    Different contexts never wait on each other.
    """

    def __init__(self):
        self._contexts: dict[str, list[Turn]] = {}
        self._locks = KeyedLock()

    def __contains__(self, context_id: str) -> bool:
        return context_id in self._contexts

    def get(self, context_id: str) -> list[Turn]:
        """Return the turns of ``context_id`` in order; empty when unknown."""
        return list(self._contexts.get(context_id, ()))

    def _extend(self, context_id: str, turns: list[Turn]) -> None:
        self._contexts.setdefault(context_id, []).extend(turns)
        logger.debug("Context %s now has %d turns", context_id, len(self._contexts[context_id]))

    async def append(self, context_id: str, turn: Turn) -> None:
        async with self._locks.hold(context_id):
            self._extend(context_id, [turn])

    @asynccontextmanager
    async def turn(self, context_id: str) -> AsyncIterator[PendingTurn]:
        """Hold ``context_id`` exclusively for a read, produce, append cycle.

        Nothing is appended unless the body calls ``commit``.

        Example:
            ```python
            async with store.turn(context_id) as pending:
                answer = await producer.process_query(prompt, pending.history)
                pending.commit(prompt, answer)
            ```
        """
        async with self._locks.hold(context_id):
            yield PendingTurn(self, context_id)

