"""
Vote Ledger — authoritative record of which identity voted on which match.

Owns VoteRecord (collection "votes") and RateLimitState (collection
"rate_limits"). Nothing else writes to those collections.

Behavioral Contract:
- can_vote / check_eligibility are pure reads with no side effects
- record_vote is an insert-if-absent; a second record for the same
  (identity, match) is rejected with VoteConflict, never overwritten
- the rate-limit slot is claimed with compare-and-set, so two concurrent
  votes by one identity on different matches cannot both land inside
  the minimum interval
- records are never mutated; revoke_vote is the administrative deletion path
"""

import time
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional

from blockfighters.errors import RateLimited, StorageUnavailable, VoteConflict
from blockfighters.models.vote import (
    Ineligibility,
    IneligibilityReason,
    RateLimitState,
    VoteRecord,
    vote_key,
)
from blockfighters.observability.logging import get_logger
from blockfighters.storage.repository import Repository

VOTES = "votes"
RATE_LIMITS = "rate_limits"

# Contention on one identity's rate-limit document is at most a few tabs.
RATE_LIMIT_CAS_ATTEMPTS = 10

log = get_logger("vote_ledger")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class VoteLedger:
    """One-vote-per-identity enforcement plus per-identity anti-spam interval."""

    def __init__(
        self,
        repository: Repository,
        min_vote_interval_ms: int = 5000,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.repository = repository
        self.min_vote_interval = timedelta(milliseconds=min_vote_interval_ms)
        self._clock = clock or _utcnow

    def now(self) -> datetime:
        return self._clock()

    # --- Reads ---

    def get_vote(self, identity_id: str, match_id: int) -> Optional[VoteRecord]:
        """The VoteRecord for (identity, match), if one exists."""
        doc = self.repository.get(VOTES, vote_key(identity_id, match_id))
        return VoteRecord.model_validate(doc.body) if doc else None

    def rate_limit_state(self, identity_id: str) -> Optional[RateLimitState]:
        doc = self.repository.get(RATE_LIMITS, identity_id)
        return RateLimitState.model_validate(doc.body) if doc else None

    def check_eligibility(
        self,
        identity_id: str,
        match_id: int,
        current_time: Optional[datetime] = None,
    ) -> Optional[Ineligibility]:
        """Return why identity cannot vote on match right now, or None if it can."""
        if current_time is None:
            current_time = self.now()

        existing = self.get_vote(identity_id, match_id)
        if existing:
            return Ineligibility(
                reason=IneligibilityReason.ALREADY_VOTED,
                existing_vote=existing,
            )

        remaining = self._remaining_interval(
            self.rate_limit_state(identity_id), current_time
        )
        if remaining > 0:
            return Ineligibility(
                reason=IneligibilityReason.RATE_LIMITED,
                retry_after_ms=remaining,
            )
        return None

    def can_vote(
        self,
        identity_id: str,
        match_id: int,
        current_time: Optional[datetime] = None,
    ) -> bool:
        """True if identity has not voted on match and is outside the interval."""
        return self.check_eligibility(identity_id, match_id, current_time) is None

    def votes_for_identity(self, identity_id: str) -> List[VoteRecord]:
        prefix = f"{identity_id}:"
        return [
            VoteRecord.model_validate(d.body)
            for d in self.repository.list(VOTES)
            if d.key.startswith(prefix)
        ]

    def votes_for_match(self, match_id: int) -> List[VoteRecord]:
        records = [VoteRecord.model_validate(d.body) for d in self.repository.list(VOTES)]
        return [r for r in records if r.match_id == match_id]

    # --- Writes ---

    def record_vote(
        self,
        identity_id: str,
        match_id: int,
        contestant_id: int,
        current_time: Optional[datetime] = None,
    ) -> VoteRecord:
        """
        Durably record that identity voted on match.

        Raises VoteConflict if a record already exists at commit time and
        RateLimited if another vote by this identity committed inside the
        minimum interval.
        """
        if current_time is None:
            current_time = self.now()

        record = VoteRecord(
            identity_id=identity_id,
            match_id=match_id,
            contestant_id=contestant_id,
            timestamp=current_time,
        )
        inserted = self.repository.insert_if_absent(
            VOTES, record.key, record.model_dump(mode="json")
        )
        if not inserted:
            log.info("vote_conflict", identity_id=identity_id, match_id=match_id)
            raise VoteConflict(
                f"Identity {identity_id} already voted on match {match_id}",
                {"identity_id": identity_id, "match_id": match_id},
            )

        try:
            self._claim_rate_limit_slot(identity_id, current_time)
        except (RateLimited, StorageUnavailable):
            # The slot was not claimed; this record never counted.
            self.repository.delete(VOTES, record.key)
            raise

        log.info(
            "vote_recorded",
            identity_id=identity_id,
            match_id=match_id,
            contestant_id=contestant_id,
        )
        return record

    def revoke_vote(self, identity_id: str, match_id: int) -> bool:
        """Administrative deletion of a VoteRecord. The rate-limit state is kept."""
        removed = self.repository.delete(VOTES, vote_key(identity_id, match_id))
        if removed:
            log.warning("vote_revoked", identity_id=identity_id, match_id=match_id)
        return removed

    def revoke_votes_for_match(self, match_id: int) -> int:
        """Remove every record for a match (used when the match is deleted)."""
        count = 0
        for record in self.votes_for_match(match_id):
            if self.repository.delete(VOTES, record.key):
                count += 1
        return count

    # --- Internals ---

    def _remaining_interval(
        self, state: Optional[RateLimitState], current_time: datetime
    ) -> int:
        """Milliseconds until the identity may vote again (0 = now)."""
        if state is None or state.last_vote_at is None:
            return 0
        elapsed = current_time - state.last_vote_at
        if elapsed >= self.min_vote_interval:
            return 0
        return max(1, int((self.min_vote_interval - elapsed).total_seconds() * 1000))

    def _claim_rate_limit_slot(self, identity_id: str, current_time: datetime) -> None:
        """Set last_vote_at = current_time unless a vote landed inside the interval."""
        new_state = RateLimitState(identity_id=identity_id, last_vote_at=current_time)
        body = new_state.model_dump(mode="json")

        for attempt in range(RATE_LIMIT_CAS_ATTEMPTS):
            doc = self.repository.get(RATE_LIMITS, identity_id)
            if doc is None:
                if self.repository.insert_if_absent(RATE_LIMITS, identity_id, body):
                    return
                continue

            state = RateLimitState.model_validate(doc.body)
            remaining = self._remaining_interval(state, current_time)
            if remaining > 0:
                log.info("vote_rate_limited", identity_id=identity_id, retry_after_ms=remaining)
                raise RateLimited(
                    f"Identity {identity_id} must wait {remaining} ms before voting again",
                    retry_after_ms=remaining,
                )
            if self.repository.compare_and_set(RATE_LIMITS, identity_id, doc.version, body):
                return
            time.sleep(0.001 * (attempt + 1))

        raise StorageUnavailable(
            f"Could not update rate-limit state for {identity_id}",
            {"identity_id": identity_id},
        )
