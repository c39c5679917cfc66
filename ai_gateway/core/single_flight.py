"""
Single-flight coordination for concurrent identical calls.

Concurrent callers asking for the same key share one computation and
observe its outcome. The registry keeps no results: an entry exists only
while its computation runs.
"""

import threading
from typing import Any, Callable, Dict, Optional, TypeVar

from ai_gateway.logging_config import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class _Call:
    """One in-flight computation and its eventual outcome."""

    def __init__(self):
        self.done = threading.Event()
        self.value: Any = None
        self.error: Optional[BaseException] = None


class SingleFlightRegistry:
    """Deduplicates concurrent computations by key within one process.

    Owned by a Gateway instance. It does not coordinate across processes;
    see DESIGN.md for the cluster-wide upgrade path.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._calls: Dict[str, _Call] = {}

    def dedup(self, key: str, compute: Callable[[], T]) -> T:
        """Run compute() once per key among concurrent callers.

        Args:
            key: Deduplication key (normally the cache key)
            compute: Zero-argument function producing the result

        Returns:
            The value produced by the single in-flight computation

        Raises:
            Whatever compute() raised, re-raised in every waiting caller
        """
        with self._lock:
            call = self._calls.get(key)
            if call is not None:
                owner = False
            else:
                call = _Call()
                self._calls[key] = call
                owner = True

        if not owner:
            logger.info("In-flight dedup hit", cache_key=key)
            call.done.wait()
            if call.error is not None:
                raise call.error
            return call.value

        try:
            call.value = compute()
            return call.value
        except BaseException as e:
            call.error = e
            raise
        finally:
            with self._lock:
                if self._calls.get(key) is call:
                    del self._calls[key]
            call.done.set()

    def in_flight_count(self) -> int:
        """Number of keys currently being computed."""
        with self._lock:
            return len(self._calls)
