"""Tests for core data models."""

from datetime import datetime, timezone

import pytest

from blockfighters.models import (
    Contestant,
    Identity,
    Match,
    MatchStatus,
    VoteRecord,
    VotingConfig,
    vote_key,
)


def _make_match(a_votes: int = 0, b_votes: int = 0, status: MatchStatus = MatchStatus.OPEN) -> Match:
    return Match(
        id=1,
        title="A vs B",
        contestant_a=Contestant(id=1, name="A", vote_count=a_votes),
        contestant_b=Contestant(id=2, name="B", vote_count=b_votes),
        status=status,
        total_votes=a_votes + b_votes,
        created_at=datetime.now(timezone.utc),
    )


class TestMatch:
    def test_defaults(self):
        match = Match(
            id=7,
            title="Fresh",
            contestant_a=Contestant(id=1, name="A"),
            contestant_b=Contestant(id=2, name="B"),
            created_at=datetime.now(timezone.utc),
        )
        assert match.status == MatchStatus.PENDING
        assert match.total_votes == 0
        assert match.is_open is False

    def test_total_must_equal_sum(self):
        with pytest.raises(Exception):
            Match(
                id=1,
                title="Broken",
                contestant_a=Contestant(id=1, name="A", vote_count=2),
                contestant_b=Contestant(id=2, name="B", vote_count=1),
                total_votes=4,
                created_at=datetime.now(timezone.utc),
            )

    def test_negative_counts_rejected(self):
        with pytest.raises(Exception):
            Contestant(id=1, name="A", vote_count=-1)

    def test_contestant_ids_must_differ(self):
        with pytest.raises(Exception):
            Match(
                id=1,
                title="Twins",
                contestant_a=Contestant(id=1, name="A"),
                contestant_b=Contestant(id=1, name="B"),
                created_at=datetime.now(timezone.utc),
            )

    def test_with_increment_keeps_invariant(self):
        match = _make_match(a_votes=3, b_votes=1)
        updated = match.with_increment(2, 1)
        assert updated.contestant_b.vote_count == 2
        assert updated.contestant_a.vote_count == 3
        assert updated.total_votes == 5
        # Original untouched
        assert match.total_votes == 4

    def test_contestant_lookup(self):
        match = _make_match()
        assert match.contestant(1).name == "A"
        assert match.contestant(2).name == "B"
        assert match.contestant(3) is None

    def test_winner_only_when_closed(self):
        open_match = _make_match(a_votes=5, b_votes=2)
        assert open_match.leader().id == 1
        assert open_match.winner() is None

        closed = _make_match(a_votes=5, b_votes=2, status=MatchStatus.CLOSED)
        assert closed.winner().id == 1

    def test_tie_has_no_winner(self):
        closed = _make_match(a_votes=3, b_votes=3, status=MatchStatus.CLOSED)
        assert closed.winner() is None

    def test_json_round_trip(self):
        match = _make_match(a_votes=1, b_votes=2)
        restored = Match.model_validate(match.model_dump(mode="json"))
        assert restored == match


class TestVoteRecord:
    def test_key(self):
        record = VoteRecord(
            identity_id="user_abc",
            match_id=42,
            contestant_id=1,
            timestamp=datetime.now(timezone.utc),
        )
        assert record.key == "user_abc:42"
        assert vote_key("user_abc", 42) == record.key


class TestIdentity:
    def test_not_privileged_by_default(self):
        assert Identity(identity_id="u1").privileged is False


class TestVotingConfig:
    def test_defaults(self):
        config = VotingConfig()
        assert config.min_vote_interval_ms == 5000
        assert config.increment_max_attempts == 5
        assert config.snapshot_schedule == "*/5 * * * *"
        assert config.session_secret

    def test_from_env(self):
        config = VotingConfig.from_env({
            "BF_MIN_VOTE_INTERVAL_MS": "2500",
            "BF_OPERATION_TIMEOUT_SECONDS": "1.5",
            "BF_DATABASE_PATH": "/tmp/bf.db",
            "BF_MASTER_ACCESS_CODE": "",
            "UNRELATED": "x",
        })
        assert config.min_vote_interval_ms == 2500
        assert config.operation_timeout_seconds == 1.5
        assert config.database_path == "/tmp/bf.db"
        # Empty values fall back to defaults
        assert config.master_access_code == "bfethcc8master"

    def test_from_env_rejects_invalid(self):
        with pytest.raises(Exception):
            VotingConfig.from_env({"BF_INCREMENT_MAX_ATTEMPTS": "0"})

    def test_production_requires_access_codes(self):
        with pytest.raises(Exception):
            VotingConfig(log_environment="production")
        with pytest.raises(Exception):
            VotingConfig(log_environment="production", master_access_code="s3cret-master")
        with pytest.raises(Exception):
            VotingConfig.from_env({"BF_LOG_ENVIRONMENT": "production"})

    def test_production_with_own_codes(self):
        config = VotingConfig.from_env({
            "BF_LOG_ENVIRONMENT": "production",
            "BF_MASTER_ACCESS_CODE": "s3cret-master",
            "BF_USER_ACCESS_CODE": "s3cret-user",
        })
        assert config.master_access_code == "s3cret-master"
        assert config.log_environment == "production"
