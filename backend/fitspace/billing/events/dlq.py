import json
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from fitspace.services.redis import RedisClient
from fitspace.utils.logger import logger


@dataclass
class DLQEntry:
    entry_id: str
    event_id: str
    event_type: str
    data: Dict[str, Any]
    error: str
    attempt_count: int
    created_at: float
    failed_at: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entry_id": self.entry_id,
            "event_id": self.event_id,
            "event_type": self.event_type,
            "data": self.data,
            "error": self.error,
            "attempt_count": self.attempt_count,
            "created_at": self.created_at,
            "failed_at": self.failed_at,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "DLQEntry":
        return cls(
            entry_id=d["entry_id"],
            event_id=d["event_id"],
            event_type=d["event_type"],
            data=d["data"],
            error=d["error"],
            attempt_count=d["attempt_count"],
            created_at=d["created_at"],
            failed_at=d["failed_at"],
        )


class DeadLetterStore(ABC):
    @abstractmethod
    async def add(self, entry: DLQEntry) -> None:
        pass

    @abstractmethod
    async def list(self, count: int = 100) -> List[DLQEntry]:
        pass

    @abstractmethod
    async def remove(self, entry_id: str) -> bool:
        pass

    @abstractmethod
    async def count(self) -> int:
        pass


class InMemoryDeadLetterStore(DeadLetterStore):
    def __init__(self):
        self._entries: Dict[str, DLQEntry] = {}

    async def add(self, entry: DLQEntry) -> None:
        self._entries[entry.entry_id] = entry

    async def list(self, count: int = 100) -> List[DLQEntry]:
        return list(self._entries.values())[:count]

    async def remove(self, entry_id: str) -> bool:
        return self._entries.pop(entry_id, None) is not None

    async def count(self) -> int:
        return len(self._entries)


class RedisDeadLetterStore(DeadLetterStore):
    """Entries live as JSON payloads on a capped Redis stream."""

    QUEUE_KEY = "dlq:billing_events"
    MAX_ENTRIES = 10000

    def __init__(self, redis: RedisClient, queue_key: Optional[str] = None):
        self.redis = redis
        self.queue_key = queue_key or self.QUEUE_KEY

    async def add(self, entry: DLQEntry) -> None:
        await self.redis.stream_add(
            self.queue_key,
            {"payload": json.dumps(entry.to_dict())},
            maxlen=self.MAX_ENTRIES,
        )

    async def _scan(self, count: Optional[int] = None):
        raw_entries = await self.redis.stream_range(self.queue_key, "-", "+", count=count)
        for msg_id, fields in raw_entries:
            payload = fields.get("payload")
            if payload:
                yield msg_id, DLQEntry.from_dict(json.loads(payload))

    async def list(self, count: int = 100) -> List[DLQEntry]:
        return [entry async for _, entry in self._scan(count)]

    async def remove(self, entry_id: str) -> bool:
        async for msg_id, entry in self._scan():
            if entry.entry_id == entry_id:
                await self.redis.stream_delete(self.queue_key, msg_id)
                return True
        return False

    async def count(self) -> int:
        return await self.redis.stream_len(self.queue_key)


class DeadLetterQueue:
    """Events whose processing kept failing transiently, kept for replay."""

    def __init__(self, store: Optional[DeadLetterStore] = None):
        self.store = store or InMemoryDeadLetterStore()

    async def send(
        self,
        event_id: str,
        event_type: str,
        data: Dict[str, Any],
        error: str,
        attempt_count: int,
        created_at: Optional[float] = None,
    ) -> DLQEntry:
        now = time.time()
        entry = DLQEntry(
            entry_id=str(uuid.uuid4()),
            event_id=event_id,
            event_type=event_type,
            data=data,
            error=error,
            attempt_count=attempt_count,
            created_at=created_at or now,
            failed_at=now,
        )
        try:
            await self.store.add(entry)
        except Exception as e:
            logger.critical(f"[DLQ] Could not persist event {event_id}: {e}")
            raise
        logger.error(
            f"[DLQ] Event {event_id} ({event_type}) dead-lettered after {attempt_count} attempts: {error[:200]}"
        )
        return entry

    async def get_entries(self, count: int = 100) -> List[DLQEntry]:
        return await self.store.list(count)

    async def delete_entry(self, entry_id: str) -> bool:
        return await self.store.remove(entry_id)

    async def get_stats(self) -> Dict[str, Any]:
        entries = await self.get_entries(count=100)
        types: Dict[str, int] = {}
        for entry in entries:
            types[entry.event_type] = types.get(entry.event_type, 0) + 1
        return {
            "total_entries": await self.store.count(),
            "by_type": types,
            "oldest_entry_age": time.time() - min(e.created_at for e in entries) if entries else 0,
        }
