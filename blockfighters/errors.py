"""
Error taxonomy for the voting core.

Every error carries a machine-readable code and whether the caller may
retry. Stores raise these; the coordinator and the API propagate them
unmodified.
"""

from typing import Optional


class VotingError(Exception):
    """Base class for all voting-core errors."""

    code = "voting_error"
    retriable = False

    def __init__(self, message: str = "", detail: Optional[dict] = None):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.detail = detail or {}

    def to_dict(self) -> dict:
        return {
            "error": self.code,
            "message": self.message,
            "retriable": self.retriable,
            "detail": self.detail,
        }


class Unauthorized(VotingError):
    """Privileged operation attempted by a non-privileged identity."""
    code = "unauthorized"


class AuthenticationFailed(VotingError):
    """Identity could not be proven (bad, expired or unverifiable token)."""
    code = "authentication_failed"


class AlreadyVoted(VotingError):
    code = "already_voted"


class VoteConflict(VotingError):
    """A VoteRecord for (identity, match) already existed at commit time."""
    code = "vote_conflict"


class RateLimited(VotingError):
    code = "rate_limited"
    retriable = True

    def __init__(self, message: str = "", retry_after_ms: int = 0):
        super().__init__(message, {"retry_after_ms": retry_after_ms})
        self.retry_after_ms = retry_after_ms


class MatchNotOpen(VotingError):
    code = "match_not_open"
    retriable = True


class NotFound(VotingError):
    code = "not_found"
    retriable = True


class MatchConflict(VotingError):
    """A match with the generated id already exists."""
    code = "match_conflict"
    retriable = True


class InvalidTransition(VotingError):
    code = "invalid_transition"


class OperationTimeout(VotingError):
    """No positive acknowledgment within the bound. Outcome is unknown."""
    code = "timeout"
    retriable = True


class StorageUnavailable(VotingError):
    code = "storage_unavailable"
    retriable = True


class TallyContended(StorageUnavailable):
    """A tally increment lost every compare-and-set race. Nothing was written."""
    code = "tally_contended"
