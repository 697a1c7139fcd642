"""Match — one contestant-pair voting round and its tallies."""

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, model_validator


class MatchStatus(str, Enum):
    PENDING = "pending"
    OPEN = "open"       # Accepting votes
    CLOSED = "closed"


class Contestant(BaseModel):
    """One of the two choices in a match."""

    id: int
    name: str
    media_ref: str = ""                     # Portrait URL or ipfs:// reference
    vote_count: int = Field(ge=0, default=0)


class Match(BaseModel):
    """
    Authoritative state of a match.

    total_votes must always equal the sum of the two counters.
    """

    id: int
    title: str
    contestant_a: Contestant
    contestant_b: Contestant
    status: MatchStatus = MatchStatus.PENDING
    total_votes: int = Field(ge=0, default=0)
    created_at: datetime
    updated_at: Optional[datetime] = None

    @model_validator(mode="after")
    def _check_tally(self) -> "Match":
        if self.contestant_a.id == self.contestant_b.id:
            raise ValueError("contestants must have distinct ids")
        expected = self.contestant_a.vote_count + self.contestant_b.vote_count
        if self.total_votes != expected:
            raise ValueError(
                f"total_votes {self.total_votes} != contestant sum {expected}"
            )
        return self

    @property
    def contestants(self) -> List[Contestant]:
        return [self.contestant_a, self.contestant_b]

    @property
    def is_open(self) -> bool:
        return self.status == MatchStatus.OPEN

    def contestant(self, contestant_id: int) -> Optional[Contestant]:
        """Look up a contestant of this match by id."""
        for c in self.contestants:
            if c.id == contestant_id:
                return c
        return None

    def leader(self) -> Optional[Contestant]:
        """Contestant with strictly more votes, None on a tie."""
        a, b = self.contestant_a, self.contestant_b
        if a.vote_count == b.vote_count:
            return None
        return a if a.vote_count > b.vote_count else b

    def winner(self) -> Optional[Contestant]:
        """The leader of a closed match. Open and pending matches have no winner."""
        if self.status != MatchStatus.CLOSED:
            return None
        return self.leader()

    def with_increment(self, contestant_id: int, amount: int) -> "Match":
        """Return a copy with one contestant's counter raised by amount."""
        data = self.model_dump()
        key = "contestant_a" if self.contestant_a.id == contestant_id else "contestant_b"
        data[key]["vote_count"] += amount
        data["total_votes"] += amount
        return Match.model_validate(data)
