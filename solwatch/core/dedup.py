"""Bounded set of recently seen transaction signatures."""

from __future__ import annotations

from collections import OrderedDict

DEFAULT_CAPACITY = 1000


class SignatureCache:
    """Seen + in-flight signature tracking.

    Marking is eager: a signature is recorded as seen before its fetch
    completes, so a burst of notifications for one signature yields one
    fetch. Eviction drops the oldest insertion once capacity is exceeded;
    lookups do not refresh recency.
    """

    def __init__(self, capacity: int = DEFAULT_CAPACITY) -> None:
        self._capacity = capacity
        self._seen: OrderedDict[str, None] = OrderedDict()
        self._in_flight: set[str] = set()

    def should_process(self, signature: str) -> bool:
        """Return True exactly once per signature while it stays cached."""
        if signature in self._seen or signature in self._in_flight:
            return False

        self._in_flight.add(signature)
        self._seen[signature] = None
        if len(self._seen) > self._capacity:
            self._seen.popitem(last=False)
        return True

    def release(self, signature: str) -> None:
        """Clear the in-flight mark once a fetch finishes."""
        self._in_flight.discard(signature)

    def is_in_flight(self, signature: str) -> bool:
        return signature in self._in_flight

    def clear(self) -> None:
        self._seen.clear()
        self._in_flight.clear()

    def __contains__(self, signature: object) -> bool:
        return signature in self._seen

    def __len__(self) -> int:
        return len(self._seen)
