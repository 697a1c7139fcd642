"""
Storage repository contract shared by the Vote Ledger and the Match Store.

Documents are JSON-compatible dicts kept in named collections under a
string key. Every write bumps the document's version so callers can run
compare-and-set loops instead of blind read-then-write.

Behavioral Contract:
- insert_if_absent is a single conditional write (no read-then-write race)
- compare_and_set succeeds only if the stored version still matches
- subscribers are notified after the write is committed, never before
- backend failures surface as StorageUnavailable
"""

import threading
from typing import Callable, Dict, List, Optional, Protocol

from pydantic import BaseModel

from blockfighters.observability.logging import get_logger

log = get_logger("repository")

ChangeListener = Callable[[str], None]
Unsubscribe = Callable[[], None]


class Document(BaseModel):
    """A stored document and the version it was read at."""

    key: str
    body: dict
    version: int


class Repository(Protocol):
    """Protocol for the backing store — pluggable backend."""

    def get(self, collection: str, key: str) -> Optional[Document]: ...

    def list(self, collection: str) -> List[Document]: ...

    def insert_if_absent(self, collection: str, key: str, body: dict) -> bool: ...

    def compare_and_set(
        self, collection: str, key: str, expected_version: int, body: dict
    ) -> bool: ...

    def put(self, collection: str, key: str, body: dict) -> Document: ...

    def delete(self, collection: str, key: str) -> bool: ...

    def subscribe(self, collection: str, listener: ChangeListener) -> Unsubscribe: ...


class ListenerRegistry:
    """Per-collection change listeners, notified after commit."""

    def __init__(self):
        self._lock = threading.Lock()
        self._listeners: Dict[str, List[ChangeListener]] = {}

    def add(self, collection: str, listener: ChangeListener) -> Unsubscribe:
        with self._lock:
            self._listeners.setdefault(collection, []).append(listener)

        def unsubscribe() -> None:
            with self._lock:
                listeners = self._listeners.get(collection, [])
                if listener in listeners:
                    listeners.remove(listener)

        return unsubscribe

    def notify(self, collection: str) -> None:
        with self._lock:
            listeners = list(self._listeners.get(collection, []))
        for listener in listeners:
            try:
                listener(collection)
            except Exception:
                # Listener failures never fail the write.
                log.exception("change_listener_failed", collection=collection)
