import threading
from contextlib import contextmanager
from typing import Iterator
from uuid import UUID
from weakref import WeakValueDictionary


class RequestLockRegistry:
    """In-process mutexes keyed by signing request id.

    Signers of the same request serialise through one lock; different
    requests get different locks and never block each other. Locks are held
    weakly so finished requests do not accumulate.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: "WeakValueDictionary[str, threading.Lock]" = WeakValueDictionary()

    def lock_for(self, request_id: UUID | str) -> threading.Lock:
        key = str(request_id)
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, request_id: UUID | str) -> Iterator[None]:
        lock = self.lock_for(request_id)
        with lock:
            yield


request_locks = RequestLockRegistry()
