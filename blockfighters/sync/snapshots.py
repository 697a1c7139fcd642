"""
Snapshot Publisher — periodic off-store JSON copies of all matches.

Snapshots go to the blob store and are only used to seed an empty Match
Store after a reset. They are throttled (min interval) and scheduled by a
cron expression; neither affects the vote path.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from croniter import croniter

from blockfighters.matches.store import MatchStore
from blockfighters.media.store import BlobStore
from blockfighters.models.match import Match
from blockfighters.observability.logging import get_logger

SNAPSHOT_FORMAT_VERSION = 1

log = get_logger("snapshot_publisher")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SnapshotPublisher:
    """Publishes match snapshots to a blob store and restores from them."""

    def __init__(
        self,
        match_store: MatchStore,
        blob_store: BlobStore,
        schedule: str = "*/5 * * * *",
        min_interval_seconds: int = 60,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        if not croniter.is_valid(schedule):
            raise ValueError(f"Invalid snapshot schedule: {schedule!r}")
        self.match_store = match_store
        self.blob_store = blob_store
        self.schedule = schedule
        self.min_interval = timedelta(seconds=min_interval_seconds)
        self._clock = clock or _utcnow
        self.latest_reference: Optional[str] = None
        self.last_published_at: Optional[datetime] = None

    def is_due(self, current_time: Optional[datetime] = None) -> bool:
        """True if the schedule has fired since the last publication."""
        if current_time is None:
            current_time = self._clock()
        if self.last_published_at is None:
            return True
        next_fire = croniter(self.schedule, self.last_published_at).get_next(datetime)
        return next_fire <= current_time

    def publish(
        self,
        force: bool = False,
        current_time: Optional[datetime] = None,
    ) -> Optional[str]:
        """
        Store a snapshot and return its reference.

        Returns None when throttled (unless force) or when there are no matches.
        """
        if current_time is None:
            current_time = self._clock()

        if (
            not force
            and self.last_published_at is not None
            and current_time - self.last_published_at < self.min_interval
        ):
            log.debug("snapshot_skipped", reason="throttled")
            return None

        matches = self.match_store.list_matches()
        if not matches:
            log.debug("snapshot_skipped", reason="no_matches")
            return None

        payload = {
            "format_version": SNAPSHOT_FORMAT_VERSION,
            "published_at": current_time.isoformat(),
            "matches": [m.model_dump(mode="json") for m in matches],
        }
        reference = self.blob_store.put_json(payload)
        self.latest_reference = reference
        self.last_published_at = current_time
        log.info("snapshot_published", reference=reference, match_count=len(matches))
        return reference

    def publish_if_due(self, current_time: Optional[datetime] = None) -> Optional[str]:
        if current_time is None:
            current_time = self._clock()
        if not self.is_due(current_time):
            return None
        return self.publish(current_time=current_time)

    def restore_if_empty(self, reference: Optional[str] = None) -> int:
        """Seed an empty Match Store from a snapshot. Returns matches restored."""
        if self.match_store.list_matches():
            log.debug("snapshot_restore_skipped", reason="store_not_empty")
            return 0
        reference = reference or self.latest_reference
        if not reference:
            return 0

        data = self.blob_store.get_json(reference)
        matches = [Match.model_validate(m) for m in data.get("matches", [])]
        restored = self.match_store.restore(matches)
        self.latest_reference = reference
        log.info("snapshot_restored", reference=reference, match_count=restored)
        return restored

    async def run_async(
        self,
        stop_event: Optional[asyncio.Event] = None,
        poll_seconds: float = 30.0,
    ) -> None:
        """Publish on schedule until stop_event is set."""
        if stop_event is None:
            stop_event = asyncio.Event()

        while not stop_event.is_set():
            try:
                await asyncio.to_thread(self.publish_if_due)
            except Exception:
                log.exception("snapshot_publish_failed")
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=poll_seconds)
            except asyncio.TimeoutError:
                continue
