"""Per-key admission control for external calls."""

import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, Optional

from loop_medic.exceptions import AdmissionResetError, AdmissionTimeoutError

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 3
DEFAULT_ACQUIRE_TIMEOUT_MS = 30000


def make_key(provider: str, model: str) -> str:
    """Build a controller key of the form ``provider:model``."""
    return f"{provider}:{model}"


@dataclass
class ConcurrencyStats:
    """Snapshot of slot usage."""

    active_slots: Dict[str, int] = field(default_factory=dict)
    queue_lengths: Dict[str, int] = field(default_factory=dict)

    @property
    def total_active(self) -> int:
        return sum(self.active_slots.values())

    @property
    def total_queued(self) -> int:
        return sum(self.queue_lengths.values())


class _Waiter:
    def __init__(self):
        self.event = threading.Event()
        self.granted = False
        self.rejected = False


class Lease:
    """A held slot; releases itself once when used as a context manager."""

    def __init__(self, controller: "ConcurrencyController", key: str):
        self.controller = controller
        self.key = key
        self._released = False

    def release(self) -> None:
        if not self._released:
            self._released = True
            self.controller.release(self.key)

    def __enter__(self) -> "Lease":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
        return False


class ConcurrencyController:
    """Bounds concurrent holders per key, handing freed slots to waiters FIFO.

    Limits resolve most-specific first: ``models["provider-model"]``,
    then ``models[model]``, then ``providers[provider]``, then the default.
    """

    def __init__(
        self,
        default: int = DEFAULT_LIMIT,
        providers: Optional[Dict[str, int]] = None,
        models: Optional[Dict[str, int]] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.default = default
        self.providers = dict(providers or {})
        self.models = dict(models or {})
        self.logger = logger or logging.getLogger(__name__)
        self._lock = threading.Lock()
        self._active: Dict[str, int] = {}
        self._queues: Dict[str, Deque[_Waiter]] = {}

    def get_limit(self, key: str) -> int:
        provider, _, model = key.partition(":")
        if model:
            specific = f"{provider}-{model}"
            if specific in self.models:
                return self.models[specific]
            if model in self.models:
                return self.models[model]
        if provider in self.providers:
            return self.providers[provider]
        return self.default

    def acquire(self, key: str, timeout_ms: int = DEFAULT_ACQUIRE_TIMEOUT_MS) -> Lease:
        """Take a slot for ``key``, waiting up to ``timeout_ms``.

        Args:
            key: Controller key (``provider:model``).
            timeout_ms: Maximum time to wait for a slot.

        Returns:
            Lease that must be released when the call completes.

        Raises:
            AdmissionTimeoutError: No slot became available in time.
            AdmissionResetError: The controller was reset while waiting.
        """
        with self._lock:
            queue = self._queues.setdefault(key, deque())
            active = self._active.get(key, 0)
            if active < self.get_limit(key) and not queue:
                self._active[key] = active + 1
                return Lease(self, key)
            waiter = _Waiter()
            queue.append(waiter)

        waiter.event.wait(timeout_ms / 1000.0)

        with self._lock:
            if waiter.granted:
                return Lease(self, key)
            if waiter.rejected:
                raise AdmissionResetError(key)
            queue = self._queues.get(key)
            if queue is not None and waiter in queue:
                queue.remove(waiter)
        self.logger.warning(f"Timed out after {timeout_ms}ms waiting for {key}")
        raise AdmissionTimeoutError(key)

    def lease(self, key: str, timeout_ms: int = DEFAULT_ACQUIRE_TIMEOUT_MS) -> Lease:
        """Alias of acquire() that reads well in a ``with`` statement."""
        return self.acquire(key, timeout_ms)

    def release(self, key: str) -> None:
        """Free a slot, passing it straight to the oldest waiter if any."""
        with self._lock:
            queue = self._queues.get(key)
            if queue:
                waiter = queue.popleft()
                waiter.granted = True
                waiter.event.set()
                return
            self._active[key] = max(0, self._active.get(key, 0) - 1)

    def available_slots(self, key: str) -> int:
        with self._lock:
            return max(0, self.get_limit(key) - self._active.get(key, 0))

    def queue_length(self, key: str) -> int:
        with self._lock:
            return len(self._queues.get(key, ()))

    def stats(self) -> ConcurrencyStats:
        with self._lock:
            return ConcurrencyStats(
                active_slots={k: v for k, v in self._active.items() if v},
                queue_lengths={k: len(q) for k, q in self._queues.items() if q},
            )

    def reset(self) -> None:
        """Drop all slots and reject every waiter."""
        with self._lock:
            for queue in self._queues.values():
                for waiter in queue:
                    waiter.rejected = True
                    waiter.event.set()
            self._queues.clear()
            self._active.clear()
