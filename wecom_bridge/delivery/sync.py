from __future__ import annotations

import asyncio
import threading
from contextlib import contextmanager
from typing import Any, Callable, Iterator, Protocol


SUPERSEDED_STATUS = 409
SUPERSEDED_BODY = {"error": "New synchronous request superseded this one"}
TIMEOUT_STATUS = 202
TIMEOUT_BODY = {"status": "accepted", "message": "Processing continued, poll for results."}


class Cancellable(Protocol):
    def cancel(self) -> None: ...


class ResponseHandle(Protocol):
    @property
    def done(self) -> bool: ...

    def resolve(self, status_code: int, body: dict[str, Any]) -> bool: ...

    def call_later(self, delay: float, callback: Callable[..., None], *args: Any) -> Cancellable: ...


class _LoopTimer:
    """Timer on an event loop that may be cancelled from any thread."""

    def __init__(self, loop: asyncio.AbstractEventLoop, handle: asyncio.TimerHandle) -> None:
        self._loop = loop
        self._handle = handle

    def cancel(self) -> None:
        if self._loop.is_closed():
            return
        self._loop.call_soon_threadsafe(self._handle.cancel)


class SyncResponseHandle:
    """A held-open HTTP response, resolvable once from any thread."""

    def __init__(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        self._loop = loop or asyncio.get_running_loop()
        self._future: asyncio.Future[tuple[int, dict[str, Any]]] = self._loop.create_future()
        self._lock = threading.Lock()
        self._done = False

    @property
    def done(self) -> bool:
        with self._lock:
            return self._done

    def resolve(self, status_code: int, body: dict[str, Any]) -> bool:
        with self._lock:
            if self._done:
                return False
            self._done = True
        try:
            self._loop.call_soon_threadsafe(self._set_result, (status_code, body))
        except RuntimeError:
            # Event loop already closed; the request is gone.
            return False
        return True

    def call_later(self, delay: float, callback: Callable[..., None], *args: Any) -> Cancellable:
        # Must be called on the handle's loop, which is where registration happens.
        return _LoopTimer(self._loop, self._loop.call_later(delay, callback, *args))

    def _set_result(self, result: tuple[int, dict[str, Any]]) -> None:
        if not self._future.done():
            self._future.set_result(result)

    async def wait(self) -> tuple[int, dict[str, Any]]:
        return await self._future


class _KeyedLock:
    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.users = 0


class KeyedLocks:
    """One lock per key, dropped again once nobody holds or waits on it."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, _KeyedLock] = {}

    @contextmanager
    def __call__(self, key: str) -> Iterator[None]:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = _KeyedLock()
            entry.users += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._guard:
                entry.users -= 1
                if entry.users == 0:
                    del self._locks[key]


class _Pending:
    __slots__ = ("handle", "timer")

    def __init__(self, handle: ResponseHandle, timer: Cancellable) -> None:
        self.handle = handle
        self.timer = timer


class PendingSyncStore:
    """At most one held-open response per recipient."""

    def __init__(self, *, locks: KeyedLocks | None = None) -> None:
        self._locks = locks or KeyedLocks()
        self._pending: dict[str, _Pending] = {}

    def register(self, recipient_id: str, handle: ResponseHandle, timeout_seconds: float = 30.0) -> None:
        timer = handle.call_later(timeout_seconds, self._expire, recipient_id, handle)
        with self._locks(recipient_id):
            previous = self._pending.get(recipient_id)
            self._pending[recipient_id] = _Pending(handle, timer)
        if previous is None:
            return
        previous.timer.cancel()
        if previous.handle is not handle and not previous.handle.done:
            previous.handle.resolve(SUPERSEDED_STATUS, dict(SUPERSEDED_BODY))

    def _expire(self, recipient_id: str, handle: ResponseHandle) -> None:
        with self._locks(recipient_id):
            entry = self._pending.get(recipient_id)
            if entry is None or entry.handle is not handle:
                return
            del self._pending[recipient_id]
        handle.resolve(TIMEOUT_STATUS, dict(TIMEOUT_BODY))

    def take(self, recipient_id: str) -> ResponseHandle | None:
        with self._locks(recipient_id):
            entry = self._pending.pop(recipient_id, None)
        if entry is None:
            return None
        entry.timer.cancel()
        if entry.handle.done:
            return None
        return entry.handle

    def has_pending(self, recipient_id: str) -> bool:
        with self._locks(recipient_id):
            return recipient_id in self._pending
