"""Identity — opaque voter handle issued by the identity provider."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel


class Identity(BaseModel):
    """A proven voter. privileged = master."""

    identity_id: str
    display_name: str = ""
    privileged: bool = False


class EnrolledIdentity(BaseModel):
    """Identity plus the credential metadata the provider keeps for it."""

    identity: Identity
    enrolled_at: datetime
    last_verified_at: Optional[datetime] = None


class SessionGrant(BaseModel):
    """Returned by enrollment: the identity and a bearer token for it."""

    identity: Identity
    token: str
    expires_at: datetime
