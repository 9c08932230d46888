"""Query/response record store.

Every paid query is recorded before inference runs and completed with the
answer afterwards, so an answered query can be looked up by conversation or
by the paying wallet.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Optional, Protocol

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from x402_query.errors import ValidationError

logger = logging.getLogger(__name__)


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class QueryRecord(BaseModel):
    id: str
    context_id: str
    prompt: str
    response: Optional[str] = None
    user_wallet: str = ""
    payment_ref: str = ""
    timestamp: str

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class RecordStore(Protocol):
    async def store_prompt(
        self,
        context_id: str,
        prompt: str,
        payment_ref: Optional[str] = None,
        wallet: Optional[str] = None,
    ) -> str: ...

    async def store_response(self, record_id: str, response: str) -> None: ...

    async def get_session_history(self, context_id: str) -> list[QueryRecord]: ...

    async def get_user_history(self, wallet: str) -> list[QueryRecord]: ...


class InMemoryRecordStore:
    """Process-local RecordStore. Records live as long as the process."""

    def __init__(self):
        self._records: dict[str, QueryRecord] = {}

    def __len__(self) -> int:
        return len(self._records)

    async def store_prompt(
        self,
        context_id: str,
        prompt: str,
        payment_ref: Optional[str] = None,
        wallet: Optional[str] = None,
    ) -> str:
        record = QueryRecord(
            id=str(uuid.uuid4()),
            context_id=context_id,
            prompt=prompt,
            user_wallet=wallet or "",
            payment_ref=payment_ref or "",
            timestamp=utc_timestamp(),
        )
        self._records[record.id] = record
        logger.info(
            "Stored prompt %s for context %s (wallet %s)",
            record.id,
            context_id,
            wallet or "anonymous",
        )
        return record.id

    async def store_response(self, record_id: str, response: str) -> None:
        record = self._records.get(record_id)
        if record is None:
            raise ValidationError(f"Unknown record: {record_id}")
        self._records[record_id] = record.model_copy(update={"response": response})

    async def get_session_history(self, context_id: str) -> list[QueryRecord]:
        return sorted(
            (r for r in self._records.values() if r.context_id == context_id),
            key=lambda r: r.timestamp,
        )

    async def get_user_history(self, wallet: str) -> list[QueryRecord]:
        wallet = wallet.lower()
        return sorted(
            (r for r in self._records.values() if r.user_wallet.lower() == wallet),
            key=lambda r: r.timestamp,
            reverse=True,
        )
