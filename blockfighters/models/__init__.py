"""BlockFighters data models."""

from blockfighters.models.config import VotingConfig
from blockfighters.models.identity import EnrolledIdentity, Identity, SessionGrant
from blockfighters.models.match import Contestant, Match, MatchStatus
from blockfighters.models.vote import (
    Ineligibility,
    IneligibilityReason,
    RateLimitState,
    VoteReceipt,
    VoteRecord,
    vote_key,
)

__all__ = [
    "Contestant",
    "EnrolledIdentity",
    "Identity",
    "Ineligibility",
    "IneligibilityReason",
    "Match",
    "MatchStatus",
    "RateLimitState",
    "SessionGrant",
    "VoteReceipt",
    "VoteRecord",
    "VotingConfig",
    "vote_key",
]
