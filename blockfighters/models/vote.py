"""Vote Ledger records — who voted on which match, and when."""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel

from blockfighters.models.match import Match


class VoteRecord(BaseModel):
    """Exactly one per (identity, match) pair that has voted."""

    identity_id: str
    match_id: int
    contestant_id: int
    timestamp: datetime

    @property
    def key(self) -> str:
        return vote_key(self.identity_id, self.match_id)


class RateLimitState(BaseModel):
    """Anti-spam state per identity, across all matches."""

    identity_id: str
    last_vote_at: Optional[datetime] = None


class IneligibilityReason(str, Enum):
    ALREADY_VOTED = "already_voted"
    RATE_LIMITED = "rate_limited"


class Ineligibility(BaseModel):
    """Why an identity cannot vote right now."""

    reason: IneligibilityReason
    retry_after_ms: int = 0
    existing_vote: Optional[VoteRecord] = None


def vote_key(identity_id: str, match_id: int) -> str:
    return f"{identity_id}:{match_id}"


class VoteReceipt(BaseModel):
    """Positive acknowledgment of a counted vote."""

    record: VoteRecord
    match: Match
