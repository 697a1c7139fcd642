"""
In-memory repository for tests and single-process deployments.
Production would use the SQLite repository or a networked store.
"""

import copy
import threading
from typing import Dict, List, Optional, Tuple

from blockfighters.storage.repository import (
    ChangeListener,
    Document,
    ListenerRegistry,
    Unsubscribe,
)


class InMemoryRepository:
    """Lock-guarded dict of collections. Bodies are copied in and out."""

    def __init__(self):
        self._lock = threading.Lock()
        self._collections: Dict[str, Dict[str, Tuple[dict, int]]] = {}
        self._listeners = ListenerRegistry()

    def _collection(self, collection: str) -> Dict[str, Tuple[dict, int]]:
        return self._collections.setdefault(collection, {})

    def get(self, collection: str, key: str) -> Optional[Document]:
        with self._lock:
            entry = self._collection(collection).get(key)
            if entry is None:
                return None
            body, version = entry
            return Document(key=key, body=copy.deepcopy(body), version=version)

    def list(self, collection: str) -> List[Document]:
        with self._lock:
            return [
                Document(key=key, body=copy.deepcopy(body), version=version)
                for key, (body, version) in self._collection(collection).items()
            ]

    def insert_if_absent(self, collection: str, key: str, body: dict) -> bool:
        with self._lock:
            docs = self._collection(collection)
            if key in docs:
                return False
            docs[key] = (copy.deepcopy(body), 1)
        self._listeners.notify(collection)
        return True

    def compare_and_set(
        self, collection: str, key: str, expected_version: int, body: dict
    ) -> bool:
        with self._lock:
            docs = self._collection(collection)
            entry = docs.get(key)
            if entry is None or entry[1] != expected_version:
                return False
            docs[key] = (copy.deepcopy(body), expected_version + 1)
        self._listeners.notify(collection)
        return True

    def put(self, collection: str, key: str, body: dict) -> Document:
        with self._lock:
            docs = self._collection(collection)
            entry = docs.get(key)
            version = entry[1] + 1 if entry else 1
            docs[key] = (copy.deepcopy(body), version)
        self._listeners.notify(collection)
        return Document(key=key, body=copy.deepcopy(body), version=version)

    def delete(self, collection: str, key: str) -> bool:
        with self._lock:
            removed = self._collection(collection).pop(key, None)
        if removed is None:
            return False
        self._listeners.notify(collection)
        return True

    def subscribe(self, collection: str, listener: ChangeListener) -> Unsubscribe:
        return self._listeners.add(collection, listener)
