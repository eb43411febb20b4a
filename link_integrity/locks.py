from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict


_base_locks: Dict[str, asyncio.Lock] = {}
_base_lock_users: Dict[str, int] = {}
_locks_lock = asyncio.Lock()


async def remove_base_lock(base_id: str) -> bool:
    """Remove the repair lock of a base unless it is held or awaited."""
    async with _locks_lock:
        lock = _base_locks.get(base_id)
        if lock is None or lock.locked() or _base_lock_users.get(base_id):
            return False
        del _base_locks[base_id]
        return True


@asynccontextmanager
async def hold_base_lock(base_id: str) -> AsyncIterator[None]:
    """Serialize repairs of one base; the lock is dropped when the last holder leaves."""
    async with _locks_lock:
        lock = _base_locks.setdefault(base_id, asyncio.Lock())
        _base_lock_users[base_id] = _base_lock_users.get(base_id, 0) + 1
    try:
        async with lock:
            yield
    finally:
        async with _locks_lock:
            remaining = _base_lock_users.pop(base_id, 1) - 1
            if remaining > 0:
                _base_lock_users[base_id] = remaining
        await remove_base_lock(base_id)
