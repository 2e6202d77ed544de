"""
Run-scoped memoization with single-flight loading.

Concurrent first access to the same key runs the loader once; the other
callers block until it finishes and then share its value (or its error).
Values are retained for the lifetime of the cache object, which the
orchestrator ties to one verification run.
"""

import threading
from typing import Callable, Generic, Hashable, TypeVar

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


class _Slot:
    __slots__ = ("event", "value", "error", "abandoned")

    def __init__(self):
        self.event = threading.Event()
        self.value = None
        self.error: Exception | None = None
        self.abandoned = False


class SingleFlightCache(Generic[K, V]):
    """Thread-safe memo keyed by ``K`` that loads each key at most once.

    A loader that raises an ``Exception`` is not retried: the error is cached
    and re-raised to every caller for that key, so a missing database or a
    broken binary is reported identically for every cell that touches it.
    An interrupt (``KeyboardInterrupt``, ``SystemExit``) is never cached; the
    slot is dropped and the next caller loads the key again.
    """

    def __init__(self, loader: Callable[[K], V]):
        self._loader = loader
        self._lock = threading.Lock()
        self._slots: dict[K, _Slot] = {}

    def get(self, key: K) -> V:
        while True:
            with self._lock:
                slot = self._slots.get(key)
                owner = slot is None
                if owner:
                    slot = _Slot()
                    self._slots[key] = slot

            if owner:
                return self._load(key, slot)
            slot.event.wait()
            if slot.abandoned:
                continue
            if slot.error is not None:
                raise slot.error
            return slot.value

    def _load(self, key: K, slot: _Slot) -> V:
        try:
            slot.value = self._loader(key)
        except Exception as e:
            slot.error = e
            raise
        except BaseException:
            with self._lock:
                del self._slots[key]
            slot.abandoned = True
            raise
        finally:
            slot.event.set()
        return slot.value

    def __contains__(self, key: K) -> bool:
        with self._lock:
            slot = self._slots.get(key)
        return slot is not None and slot.event.is_set() and slot.error is None

    def __len__(self) -> int:
        with self._lock:
            return len(self._slots)
