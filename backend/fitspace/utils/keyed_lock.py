"""Per-key asyncio locks.

One lock per key, created on first use and dropped again once nobody holds
or waits on it, so the arena only grows with the number of keys that are
busy right now. Unrelated keys never block each other.
"""
import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Dict

from fitspace.utils.logger import logger


@dataclass
class _Slot:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class KeyedLock:
    def __init__(self, name: str = "keyed"):
        self.name = name
        self._slots: Dict[str, _Slot] = {}
        self._slots_lock = asyncio.Lock()

    async def _checkout(self, key: str) -> _Slot:
        async with self._slots_lock:
            slot = self._slots.get(key)
            if slot is None:
                slot = _Slot()
                self._slots[key] = slot
            slot.users += 1
            return slot

    async def _checkin(self, key: str, slot: _Slot) -> None:
        async with self._slots_lock:
            slot.users -= 1
            if slot.users == 0 and self._slots.get(key) is slot:
                del self._slots[key]

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        slot = await self._checkout(key)
        try:
            if slot.lock.locked():
                logger.debug(f"[LOCK] {self.name}: waiting for {key}")
            await slot.lock.acquire()
            try:
                yield
            finally:
                slot.lock.release()
        finally:
            await self._checkin(key, slot)

    def is_locked(self, key: str) -> bool:
        slot = self._slots.get(key)
        return bool(slot and slot.lock.locked())

    def __len__(self) -> int:
        return len(self._slots)
