"""
Vote Coordinator — orchestrates one vote attempt end to end.

Ordering: the ledger commit happens BEFORE the tally increment. The
ledger's insert-if-absent is the single point of truth for "this identity
has voted", so a duplicate or retried attempt loses at the ledger and
never reaches the counters.

    eligibility -> match open? -> ledger commit -> tally increment

Failure handling after the ledger commit:
- definite failure (MatchNotOpen, NotFound, StorageUnavailable including
  TallyContended): no increment happened, the ledger record is revoked so
  the identity may vote again once its rate-limit interval has passed
- unknown outcome (OperationTimeout): the record is kept; a retry answers
  AlreadyVoted. This may under-count one vote but can never count it twice.

The coordinator owns no state and caches nothing between calls.
"""

from typing import Optional

from blockfighters.errors import (
    AlreadyVoted,
    MatchNotOpen,
    NotFound,
    OperationTimeout,
    RateLimited,
    StorageUnavailable,
    VoteConflict,
    VotingError,
)
from blockfighters.ledger.store import VoteLedger
from blockfighters.matches.store import MatchStore
from blockfighters.models.identity import Identity
from blockfighters.models.vote import Ineligibility, IneligibilityReason, VoteReceipt
from blockfighters.observability.logging import get_logger
from blockfighters.storage.guard import OperationGuard

log = get_logger("vote_coordinator")


class VoteCoordinator:
    """Runs cast_vote against the Vote Ledger and the Match Store."""

    def __init__(
        self,
        ledger: VoteLedger,
        match_store: MatchStore,
        guard: Optional[OperationGuard] = None,
    ):
        self.ledger = ledger
        self.match_store = match_store
        self.guard = guard or OperationGuard()

    def eligibility(self, identity: Identity, match_id: int) -> Optional[Ineligibility]:
        """Why identity cannot vote on match right now, or None."""
        return self.guard.call(
            "check_eligibility",
            self.ledger.check_eligibility,
            identity.identity_id,
            match_id,
        )

    def cast_vote(self, identity: Identity, match_id: int, contestant_id: int) -> VoteReceipt:
        """
        Cast identity's single vote on match for contestant.

        Raises AlreadyVoted, RateLimited, NotFound, MatchNotOpen,
        OperationTimeout or StorageUnavailable. Returns only after both the
        ledger record and the tally increment were acknowledged.
        """
        vlog = log.bind(
            identity_id=identity.identity_id,
            match_id=match_id,
            contestant_id=contestant_id,
        )

        # 1. Eligibility (re-read every time)
        ineligible = self.eligibility(identity, match_id)
        if ineligible is not None:
            vlog.info("vote_rejected", reason=ineligible.reason.value)
            if ineligible.reason == IneligibilityReason.ALREADY_VOTED:
                raise AlreadyVoted(
                    f"Identity {identity.identity_id} already voted on match {match_id}",
                    {"match_id": match_id},
                )
            raise RateLimited(
                "Vote attempted too soon after the previous one",
                retry_after_ms=ineligible.retry_after_ms,
            )

        # 2. Target must exist and be open
        match = self.guard.call("get_match", self.match_store.get_match, match_id)
        if match.contestant(contestant_id) is None:
            raise NotFound(
                f"Contestant {contestant_id} is not part of match {match_id}",
                {"match_id": match_id, "contestant_id": contestant_id},
            )
        if not match.is_open:
            vlog.info("vote_rejected", reason="match_not_open", status=match.status.value)
            raise MatchNotOpen(
                f"Match {match_id} is {match.status.value}",
                {"match_id": match_id, "status": match.status.value},
            )

        # 3. Ledger commit decides
        try:
            record = self.guard.call(
                "record_vote",
                self.ledger.record_vote,
                identity.identity_id,
                match_id,
                contestant_id,
            )
        except VoteConflict as e:
            vlog.info("vote_rejected", reason="already_voted")
            raise AlreadyVoted(e.message, e.detail) from e

        # 4. Tally increment
        try:
            updated = self.guard.call(
                "increment_vote",
                self.match_store.increment_vote,
                match_id,
                contestant_id,
                1,
            )
        except OperationTimeout as e:
            vlog.error("vote_tally_unconfirmed", error=e.code)
            raise
        except (MatchNotOpen, NotFound, StorageUnavailable) as e:
            vlog.warning("vote_tally_failed", error=e.code)
            self._compensate(identity, match_id)
            raise

        vlog.info("vote_cast", total_votes=updated.total_votes)
        return VoteReceipt(record=record, match=updated)

    def _compensate(self, identity: Identity, match_id: int) -> None:
        """Undo a ledger record whose tally increment definitely did not happen."""
        try:
            self.guard.call(
                "revoke_vote",
                self.ledger.revoke_vote,
                identity.identity_id,
                match_id,
            )
        except VotingError as e:
            # The original failure is re-raised by the caller; this one is logged.
            log.error(
                "vote_compensation_failed",
                identity_id=identity.identity_id,
                match_id=match_id,
                error=e.code,
            )

    def delete_match(self, actor: Identity, match_id: int) -> int:
        """Delete a match (masters only), then purge its ledger records."""
        self.guard.call("delete_match", self.match_store.delete_match, actor, match_id)
        purged = self.guard.call(
            "revoke_votes_for_match", self.ledger.revoke_votes_for_match, match_id
        )
        log.info("match_votes_purged", match_id=match_id, purged=purged)
        return purged
