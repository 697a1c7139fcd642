"""Tests for the Vote Ledger."""

import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

import pytest

from blockfighters.errors import RateLimited, StorageUnavailable, VoteConflict
from blockfighters.ledger.store import RATE_LIMITS, VOTES, VoteLedger
from blockfighters.models.vote import IneligibilityReason
from blockfighters.storage.memory import InMemoryRepository


class FakeClock:
    def __init__(self):
        self.current = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, ms: int) -> None:
        self.current += timedelta(milliseconds=ms)


def _make_ledger(interval_ms: int = 5000):
    clock = FakeClock()
    repo = InMemoryRepository()
    return VoteLedger(repo, min_vote_interval_ms=interval_ms, clock=clock), repo, clock


class TestEligibility:
    def test_fresh_identity_can_vote(self):
        ledger, _, _ = _make_ledger()
        assert ledger.can_vote("user_a", 1) is True
        assert ledger.check_eligibility("user_a", 1) is None

    def test_checks_have_no_side_effects(self):
        ledger, repo, _ = _make_ledger()
        for _ in range(3):
            ledger.can_vote("user_a", 1)
        assert repo.list(VOTES) == []
        assert repo.list(RATE_LIMITS) == []

    def test_already_voted(self):
        ledger, _, clock = _make_ledger()
        ledger.record_vote("user_a", 1, 2)
        clock.advance(60_000)

        result = ledger.check_eligibility("user_a", 1)
        assert result.reason == IneligibilityReason.ALREADY_VOTED
        assert result.existing_vote.contestant_id == 2

    def test_rate_limited_across_matches(self):
        ledger, _, clock = _make_ledger()
        ledger.record_vote("user_a", 1, 1)
        clock.advance(1000)

        result = ledger.check_eligibility("user_a", 2)
        assert result.reason == IneligibilityReason.RATE_LIMITED
        assert result.retry_after_ms == 4000

    def test_interval_boundary(self):
        ledger, _, clock = _make_ledger()
        ledger.record_vote("user_a", 1, 1)
        clock.advance(4999)
        assert ledger.can_vote("user_a", 2) is False
        clock.advance(1)
        assert ledger.can_vote("user_a", 2) is True

    def test_rate_limit_is_per_identity(self):
        ledger, _, _ = _make_ledger()
        ledger.record_vote("user_a", 1, 1)
        assert ledger.can_vote("user_b", 1) is True

    def test_explicit_time_overrides_clock(self):
        ledger, _, clock = _make_ledger()
        ledger.record_vote("user_a", 1, 1)
        later = clock.current + timedelta(seconds=10)
        assert ledger.can_vote("user_a", 2, current_time=later) is True


class TestRecordVote:
    def test_records(self):
        ledger, _, clock = _make_ledger()
        record = ledger.record_vote("user_a", 7, 1)
        assert record.identity_id == "user_a"
        assert record.match_id == 7
        assert record.timestamp == clock.current
        assert ledger.get_vote("user_a", 7) == record
        assert ledger.rate_limit_state("user_a").last_vote_at == clock.current

    def test_second_record_rejected_not_overwritten(self):
        ledger, _, clock = _make_ledger()
        ledger.record_vote("user_a", 7, 1)
        clock.advance(10_000)

        with pytest.raises(VoteConflict):
            ledger.record_vote("user_a", 7, 2)
        assert ledger.get_vote("user_a", 7).contestant_id == 1

    def test_inside_interval_rejected_and_not_kept(self):
        ledger, _, clock = _make_ledger()
        ledger.record_vote("user_a", 1, 1)
        clock.advance(2000)

        with pytest.raises(RateLimited) as exc_info:
            ledger.record_vote("user_a", 2, 1)
        assert exc_info.value.retry_after_ms == 3000
        assert ledger.get_vote("user_a", 2) is None

    def test_after_interval_accepted(self):
        ledger, _, clock = _make_ledger()
        ledger.record_vote("user_a", 1, 1)
        clock.advance(5000)
        ledger.record_vote("user_a", 2, 2)
        assert len(ledger.votes_for_identity("user_a")) == 2

    def test_concurrent_same_match_one_winner(self):
        ledger, _, _ = _make_ledger()
        barrier = threading.Barrier(10)

        def attempt(_):
            barrier.wait()
            try:
                ledger.record_vote("user_a", 1, 1)
                return "ok"
            except (VoteConflict, RateLimited) as e:
                return e.code

        with ThreadPoolExecutor(max_workers=10) as pool:
            results = list(pool.map(attempt, range(10)))

        assert results.count("ok") == 1
        assert len(ledger.votes_for_match(1)) == 1

    def test_concurrent_different_matches_respect_interval(self):
        ledger, _, _ = _make_ledger()
        barrier = threading.Barrier(6)

        def attempt(match_id):
            barrier.wait()
            try:
                ledger.record_vote("user_a", match_id, 1)
                return "ok"
            except RateLimited:
                return "rate_limited"

        with ThreadPoolExecutor(max_workers=6) as pool:
            results = list(pool.map(attempt, range(1, 7)))

        assert results.count("ok") == 1
        assert len(ledger.votes_for_identity("user_a")) == 1

    def test_storage_failure_on_slot_claim_removes_record(self):
        repo = InMemoryRepository()
        ledger = VoteLedger(repo, min_vote_interval_ms=5000)

        def broken_claim(identity_id, current_time):
            raise StorageUnavailable("down")

        ledger._claim_rate_limit_slot = broken_claim
        with pytest.raises(StorageUnavailable):
            ledger.record_vote("user_a", 1, 1)
        assert ledger.get_vote("user_a", 1) is None


class TestRevoke:
    def test_revoke_vote(self):
        ledger, _, clock = _make_ledger()
        ledger.record_vote("user_a", 1, 1)

        assert ledger.revoke_vote("user_a", 1) is True
        assert ledger.revoke_vote("user_a", 1) is False
        assert ledger.get_vote("user_a", 1) is None
        # Rate-limit window is not reset by revocation
        assert ledger.can_vote("user_a", 1) is False
        clock.advance(5000)
        assert ledger.can_vote("user_a", 1) is True

    def test_revoke_votes_for_match(self):
        ledger, _, _ = _make_ledger()
        ledger.record_vote("user_a", 1, 1)
        ledger.record_vote("user_b", 1, 2)
        ledger.record_vote("user_c", 2, 1)

        assert ledger.revoke_votes_for_match(1) == 2
        assert ledger.votes_for_match(1) == []
        assert len(ledger.votes_for_match(2)) == 1
