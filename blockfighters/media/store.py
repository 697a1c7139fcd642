"""
Blob / JSON storage boundary — contestant portraits and match snapshots.

References are content addressed: blob://<sha256 of the bytes>. Storing
the same bytes twice yields the same reference. Not in the vote path.
"""

import hashlib
import json
import threading
from pathlib import Path
from typing import Any, Dict, Optional, Protocol, Tuple

from blockfighters.errors import NotFound, StorageUnavailable
from blockfighters.observability.logging import get_logger

BLOB_SCHEME = "blob://"
IPFS_SCHEME = "ipfs://"
JSON_CONTENT_TYPE = "application/json"

log = get_logger("media_store")


class BlobStore(Protocol):
    """Protocol for media storage. Pluggable backend."""

    def put_blob(self, data: bytes, content_type: str = "application/octet-stream") -> str: ...

    def get_blob(self, reference: str) -> Tuple[bytes, str]: ...

    def put_json(self, obj: Any) -> str: ...

    def get_json(self, reference: str) -> Any: ...


def content_reference(data: bytes) -> str:
    return BLOB_SCHEME + hashlib.sha256(data).hexdigest()


def _digest(reference: str) -> str:
    if not reference.startswith(BLOB_SCHEME):
        raise NotFound(f"Not a blob reference: {reference}", {"reference": reference})
    digest = reference[len(BLOB_SCHEME):]
    if len(digest) != 64 or any(c not in "0123456789abcdef" for c in digest):
        raise NotFound(f"Malformed blob reference: {reference}", {"reference": reference})
    return digest


def _encode_json(obj: Any) -> bytes:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), default=str).encode("utf-8")


def preview_url(reference: str, gateway: str, media_path: str = "/media") -> str:
    """
    Turn a stored media reference into something a browser can load.

    ipfs://<cid>  -> https://<gateway>/ipfs/<cid>
    blob://<hash> -> <media_path>/<hash>
    anything else is assumed to be a URL already.
    """
    if reference.startswith(IPFS_SCHEME):
        return f"https://{gateway}/ipfs/{reference[len(IPFS_SCHEME):]}"
    if reference.startswith(BLOB_SCHEME):
        return f"{media_path}/{reference[len(BLOB_SCHEME):]}"
    return reference


class InMemoryBlobStore:
    """Blob store kept in a dict."""

    def __init__(self):
        self._lock = threading.Lock()
        self._blobs: Dict[str, Tuple[bytes, str]] = {}

    def put_blob(self, data: bytes, content_type: str = "application/octet-stream") -> str:
        reference = content_reference(data)
        with self._lock:
            self._blobs[_digest(reference)] = (bytes(data), content_type)
        return reference

    def get_blob(self, reference: str) -> Tuple[bytes, str]:
        with self._lock:
            entry = self._blobs.get(_digest(reference))
        if entry is None:
            raise NotFound(f"Blob {reference} not found", {"reference": reference})
        return entry

    def put_json(self, obj: Any) -> str:
        return self.put_blob(_encode_json(obj), JSON_CONTENT_TYPE)

    def get_json(self, reference: str) -> Any:
        data, _ = self.get_blob(reference)
        return json.loads(data)


class LocalBlobStore:
    """
    Content-addressed files under a directory.
    Each blob is <hash>; its content type sits next to it in <hash>.type.
    """

    def __init__(self, root: str):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def put_blob(self, data: bytes, content_type: str = "application/octet-stream") -> str:
        reference = content_reference(data)
        digest = _digest(reference)
        try:
            path = self.root / digest
            if not path.exists():
                tmp = self.root / f"{digest}.tmp"
                tmp.write_bytes(data)
                tmp.replace(path)
            (self.root / f"{digest}.type").write_text(content_type, encoding="utf-8")
        except OSError as e:
            log.error("blob_write_failed", reference=reference, error=str(e))
            raise StorageUnavailable(f"Could not store blob: {e}") from e
        log.info("blob_stored", reference=reference, size=len(data))
        return reference

    def get_blob(self, reference: str) -> Tuple[bytes, str]:
        digest = _digest(reference)
        path = self.root / digest
        if not path.exists():
            raise NotFound(f"Blob {reference} not found", {"reference": reference})
        try:
            data = path.read_bytes()
            type_path = self.root / f"{digest}.type"
            content_type: Optional[str] = None
            if type_path.exists():
                content_type = type_path.read_text(encoding="utf-8")
        except OSError as e:
            raise StorageUnavailable(f"Could not read blob: {e}") from e
        return data, content_type or "application/octet-stream"

    def put_json(self, obj: Any) -> str:
        return self.put_blob(_encode_json(obj), JSON_CONTENT_TYPE)

    def get_json(self, reference: str) -> Any:
        data, _ = self.get_blob(reference)
        return json.loads(data)
