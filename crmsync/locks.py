"""In-process keyed locks guarding email-group decisions."""

from __future__ import annotations

import asyncio
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import AsyncIterator, Iterable


class KeyedLocks:
    """A lazily-populated map of asyncio locks keyed by string.

    Locks for several keys are always taken in sorted order so two callers
    asking for overlapping key sets cannot deadlock.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._refs: dict[str, int] = defaultdict(int)

    @asynccontextmanager
    async def hold(self, *keys: str | None) -> AsyncIterator[None]:
        ordered = sorted({k for k in keys if k})
        referenced: list[str] = []
        acquired: list[str] = []
        try:
            for key in ordered:
                self._refs[key] += 1
                referenced.append(key)
                await self._locks[key].acquire()
                acquired.append(key)
            yield
        finally:
            for key in reversed(acquired):
                self._locks[key].release()
            for key in referenced:
                self._refs[key] -= 1
                if self._refs[key] <= 0:
                    self._refs.pop(key, None)
                    lock = self._locks.get(key)
                    if lock is not None and not lock.locked():
                        self._locks.pop(key, None)

    def is_locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return bool(lock and lock.locked())

    def held_keys(self) -> Iterable[str]:
        return [k for k, lock in self._locks.items() if lock.locked()]


def email_group_key(email_key: str | None) -> str | None:
    if not email_key:
        return None
    return f"email:{email_key}"


# Shared by the webhook upsert path and the secondary dedup pass.
email_group_locks = KeyedLocks()

# Single-runner guard for the secondary dedup pass.
dedup_pass_lock = asyncio.Lock()
