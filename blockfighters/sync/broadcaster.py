"""
Realtime Sync — fans Match Store changes out to connected viewers.

Guarantees the latest snapshot after any committed write reaches every
subscriber at least once. Intermediate states may be coalesced. A new
subscriber receives the current snapshot immediately on subscribe.
"""

import asyncio
import threading
from typing import Callable, List, Optional

from blockfighters.errors import OperationTimeout
from blockfighters.matches.store import MatchStore
from blockfighters.models.match import Match
from blockfighters.observability.logging import get_logger
from blockfighters.storage.repository import Unsubscribe

MatchesListener = Callable[[List[Match]], None]

log = get_logger("realtime_sync")


class MatchBroadcaster:
    """Single Match Store subscription shared by any number of viewers."""

    def __init__(self, match_store: MatchStore):
        self.match_store = match_store
        self._lock = threading.Lock()
        self._subscribers: List[MatchesListener] = []
        self._store_unsubscribe: Optional[Unsubscribe] = match_store.subscribe(self._fan_out)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def subscribe(self, on_matches_changed: MatchesListener) -> Unsubscribe:
        """Register a viewer; it is called at once with the current snapshot."""
        with self._lock:
            self._subscribers.append(on_matches_changed)

        def unsubscribe() -> None:
            with self._lock:
                if on_matches_changed in self._subscribers:
                    self._subscribers.remove(on_matches_changed)

        self._deliver(on_matches_changed, self.match_store.list_matches())
        return unsubscribe

    def close(self) -> None:
        """Detach from the Match Store and drop all viewers."""
        if self._store_unsubscribe:
            self._store_unsubscribe()
            self._store_unsubscribe = None
        with self._lock:
            self._subscribers.clear()

    def _fan_out(self, matches: List[Match]) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for subscriber in subscribers:
            self._deliver(subscriber, matches)

    def _deliver(self, subscriber: MatchesListener, matches: List[Match]) -> None:
        try:
            subscriber(matches)
        except Exception:
            log.exception("subscriber_failed")


class SnapshotMailbox:
    """
    One-slot, coalescing mailbox from writer threads to an asyncio consumer.

    offer() may be called from any thread; only the newest snapshot is kept.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop):
        self._loop = loop
        self._event = asyncio.Event()
        self._latest: Optional[List[Match]] = None
        self.sequence = 0

    def offer(self, matches: List[Match]) -> None:
        try:
            self._loop.call_soon_threadsafe(self._store, matches)
        except RuntimeError:
            log.debug("mailbox_loop_closed")

    def _store(self, matches: List[Match]) -> None:
        self._latest = matches
        self.sequence += 1
        self._event.set()

    async def get(self, timeout: float) -> List[Match]:
        """Wait for the next snapshot; raise OperationTimeout after timeout seconds."""
        try:
            await asyncio.wait_for(self._event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            raise OperationTimeout(
                f"No match snapshot within {timeout}s", {"timeout_seconds": timeout}
            )
        self._event.clear()
        return self._latest or []
