"""
Match Store — authoritative tallies and lifecycle for every match.

Updated by: the Vote Coordinator (tallies) and master identities (lifecycle)
Queried by: the Vote Coordinator, Realtime Sync and the snapshot publisher

Behavioral Contract:
- Only privileged identities create, delete or change the status of a match
- Tally increments are compare-and-set retry loops against the single
  stored document; a lost race re-reads and retries, never overwrites
- Increments are accepted only while the match is OPEN
- Every stored state satisfies total_votes == sum of contestant counters
"""

import random
import threading
import time
from datetime import datetime, timezone
from typing import Callable, Dict, FrozenSet, List, Optional

from blockfighters.errors import (
    InvalidTransition,
    MatchConflict,
    MatchNotOpen,
    NotFound,
    StorageUnavailable,
    TallyContended,
    Unauthorized,
)
from blockfighters.models.identity import Identity
from blockfighters.models.match import Contestant, Match, MatchStatus
from blockfighters.observability.logging import get_logger
from blockfighters.storage.repository import Repository, Unsubscribe

MATCHES = "matches"

TransitionTable = Dict[MatchStatus, FrozenSet[MatchStatus]]

# Masters may move a match to any state, including backwards, to correct
# mistakes. Deployments wanting a stricter lifecycle pass their own table.
TRANSITIONS: TransitionTable = {
    MatchStatus.PENDING: frozenset({MatchStatus.PENDING, MatchStatus.OPEN, MatchStatus.CLOSED}),
    MatchStatus.OPEN: frozenset({MatchStatus.PENDING, MatchStatus.OPEN, MatchStatus.CLOSED}),
    MatchStatus.CLOSED: frozenset({MatchStatus.PENDING, MatchStatus.OPEN, MatchStatus.CLOSED}),
}

_DISPLAY_ORDER = {
    MatchStatus.OPEN: 0,
    MatchStatus.PENDING: 1,
    MatchStatus.CLOSED: 2,
}

log = get_logger("match_store")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _require_privileged(actor: Identity, action: str) -> None:
    if not actor.privileged:
        log.warning("unauthorized_match_action", identity_id=actor.identity_id, action=action)
        raise Unauthorized(
            f"Identity {actor.identity_id} may not {action}",
            {"identity_id": actor.identity_id, "action": action},
        )


def order_for_display(matches: List[Match]) -> List[Match]:
    """Open matches first, then pending, then closed; stable within a status."""
    return sorted(matches, key=lambda m: _DISPLAY_ORDER[m.status])


def current_match(matches: List[Match]) -> Optional[Match]:
    """The first open match, else the first match, else None."""
    for m in matches:
        if m.is_open:
            return m
    return matches[0] if matches else None


class MatchStore:
    """Match lifecycle and tallies over an injected repository."""

    def __init__(
        self,
        repository: Repository,
        max_attempts: int = 5,
        backoff_seconds: float = 0.01,
        clock: Optional[Callable[[], datetime]] = None,
        transitions: Optional[TransitionTable] = None,
    ):
        self.repository = repository
        self.transitions = transitions or TRANSITIONS
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self._clock = clock or _utcnow
        self._id_lock = threading.Lock()
        self._last_id = 0

    # --- Reads ---

    def get_match(self, match_id: int) -> Match:
        """Get a match by id. Raises NotFound."""
        doc = self.repository.get(MATCHES, str(match_id))
        if doc is None:
            raise NotFound(f"Match {match_id} not found", {"match_id": match_id})
        return Match.model_validate(doc.body)

    def list_matches(self) -> List[Match]:
        """All matches, in creation order."""
        matches = [Match.model_validate(d.body) for d in self.repository.list(MATCHES)]
        return sorted(matches, key=lambda m: m.id)

    # --- Master operations ---

    def create_match(
        self,
        actor: Identity,
        title: str,
        contestant_a: Contestant,
        contestant_b: Contestant,
    ) -> Match:
        """Create a PENDING match with both counters at zero."""
        _require_privileged(actor, "create_match")

        now = self._clock()
        match = Match(
            id=self._next_id(now),
            title=title,
            contestant_a=contestant_a.model_copy(update={"vote_count": 0}),
            contestant_b=contestant_b.model_copy(update={"vote_count": 0}),
            status=MatchStatus.PENDING,
            total_votes=0,
            created_at=now,
            updated_at=now,
        )
        if not self.repository.insert_if_absent(
            MATCHES, str(match.id), match.model_dump(mode="json")
        ):
            raise MatchConflict(
                f"Match id {match.id} already exists", {"match_id": match.id}
            )

        log.info("match_created", match_id=match.id, title=title, identity_id=actor.identity_id)
        return match

    def set_status(self, actor: Identity, match_id: int, new_status: MatchStatus) -> Match:
        """Move a match to new_status. Counters are carried over untouched."""
        _require_privileged(actor, "set_status")

        for attempt in range(self.max_attempts):
            doc = self.repository.get(MATCHES, str(match_id))
            if doc is None:
                raise NotFound(f"Match {match_id} not found", {"match_id": match_id})
            match = Match.model_validate(doc.body)

            if new_status not in self.transitions.get(match.status, frozenset()):
                raise InvalidTransition(
                    f"Cannot move match {match_id} from {match.status.value} to {new_status.value}",
                    {"from": match.status.value, "to": new_status.value},
                )

            updated = match.model_copy(update={"status": new_status, "updated_at": self._clock()})
            if self.repository.compare_and_set(
                MATCHES, str(match_id), doc.version, updated.model_dump(mode="json")
            ):
                log.info(
                    "match_status_changed",
                    match_id=match_id,
                    old_status=match.status.value,
                    new_status=new_status.value,
                    identity_id=actor.identity_id,
                )
                return updated
            self._backoff(attempt)

        raise StorageUnavailable(
            f"Could not update status of match {match_id}", {"match_id": match_id}
        )

    def delete_match(self, actor: Identity, match_id: int) -> None:
        """Remove a match. Raises NotFound if it does not exist."""
        _require_privileged(actor, "delete_match")
        if not self.repository.delete(MATCHES, str(match_id)):
            raise NotFound(f"Match {match_id} not found", {"match_id": match_id})
        log.info("match_deleted", match_id=match_id, identity_id=actor.identity_id)

    # --- Tallies ---

    def increment_vote(self, match_id: int, contestant_id: int, amount: int = 1) -> Match:
        """
        Atomically add amount to one contestant's counter.

        Raises NotFound for an unknown match or contestant, MatchNotOpen unless
        the match is OPEN, and TallyContended if the retry budget runs out.
        """
        if amount < 1:
            raise ValueError("amount must be a positive integer")

        for attempt in range(self.max_attempts):
            doc = self.repository.get(MATCHES, str(match_id))
            if doc is None:
                raise NotFound(f"Match {match_id} not found", {"match_id": match_id})
            match = Match.model_validate(doc.body)

            if match.contestant(contestant_id) is None:
                raise NotFound(
                    f"Contestant {contestant_id} is not part of match {match_id}",
                    {"match_id": match_id, "contestant_id": contestant_id},
                )
            if not match.is_open:
                raise MatchNotOpen(
                    f"Match {match_id} is {match.status.value}",
                    {"match_id": match_id, "status": match.status.value},
                )

            updated = match.with_increment(contestant_id, amount).model_copy(
                update={"updated_at": self._clock()}
            )
            if self.repository.compare_and_set(
                MATCHES, str(match_id), doc.version, updated.model_dump(mode="json")
            ):
                return updated

            log.debug("tally_increment_retry", match_id=match_id, attempt=attempt + 1)
            self._backoff(attempt)

        log.error("tally_increment_exhausted", match_id=match_id, attempts=self.max_attempts)
        raise TallyContended(
            f"Tally increment on match {match_id} lost {self.max_attempts} races",
            {"match_id": match_id},
        )

    # --- Subscription ---

    def subscribe(self, callback: Callable[[List[Match]], None]) -> Unsubscribe:
        """Call callback with the full match list after every committed change."""
        def on_change(_collection: str) -> None:
            callback(self.list_matches())

        return self.repository.subscribe(MATCHES, on_change)

    def restore(self, matches: List[Match]) -> int:
        """Insert matches that are not already stored. Returns how many were added."""
        added = 0
        for match in matches:
            if self.repository.insert_if_absent(
                MATCHES, str(match.id), match.model_dump(mode="json")
            ):
                added += 1
        with self._id_lock:
            self._last_id = max([self._last_id] + [m.id for m in matches])
        return added

    # --- Internals ---

    def _next_id(self, now: datetime) -> int:
        """Timestamp-derived id, strictly increasing within this process."""
        with self._id_lock:
            candidate = max(int(now.timestamp() * 1000), self._last_id + 1)
            self._last_id = candidate
            return candidate

    def _backoff(self, attempt: int) -> None:
        if self.backoff_seconds:
            delay = self.backoff_seconds * (2 ** min(attempt, 6))
            time.sleep(delay * random.uniform(0.5, 1.5))
