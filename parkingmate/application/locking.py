"""
Per-key serialization for read-then-write decisions.

Two detections of the same plate must not interleave their "look up, then
create or update" steps. The registry hands out one asyncio.Lock per key and
drops it once nobody holds or waits for it.

Keys used by the service:
    ("plate", org_id, plate)        detection processing, guest confirmation
    ("customer", org_id, customer)  token issuance, OTP verification

The plate lock is always taken before the customer lock.
"""

import asyncio
from collections.abc import AsyncIterator, Hashable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field


def plate_key(org_id: str, plate: str) -> tuple[str, str, str]:
    return ("plate", org_id, plate)


def customer_key(org_id: str, customer_id: str) -> tuple[str, str, str]:
    return ("customer", org_id, customer_id)


@dataclass
class _LockEntry:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    holders: int = 0


@dataclass
class KeyedLockRegistry:
    """
    Registry of reference-counted asyncio locks.

    Only serializes work inside one process; across processes the database
    unique constraints take over.

    Example:
        locks = KeyedLockRegistry()
        async with locks.hold(plate_key(org_id, "AB123")):
            ...
    """

    _entries: dict[Hashable, _LockEntry] = field(default_factory=dict)

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        """
        Hold the lock for ``key`` for the duration of the block.

        Args:
            key: Any hashable key.
        """
        entry = self._entries.get(key)
        if entry is None:
            entry = _LockEntry()
            self._entries[key] = entry
        entry.holders += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.holders -= 1
            if entry.holders == 0:
                self._entries.pop(key, None)

    def is_locked(self, key: Hashable) -> bool:
        entry = self._entries.get(key)
        return entry is not None and entry.lock.locked()

    def __len__(self) -> int:
        return len(self._entries)


_lock_registry: KeyedLockRegistry | None = None


def get_lock_registry() -> KeyedLockRegistry:
    """Get or create the process-wide lock registry."""
    global _lock_registry
    if _lock_registry is None:
        _lock_registry = KeyedLockRegistry()
    return _lock_registry
