"""
Identity Provider boundary.

The voting core only needs "prove control of identity I" returning a
stable handle and a privileged flag. AccessCodeIdentityProvider is the
in-service implementation: enrollment is gated by a shared access code
(one for voters, one for masters) and yields a random identity handle
plus an HMAC-signed, expiring bearer token.

The handle issued here is the only key the Vote Ledger uses. Nothing is
derived from device or browser characteristics.
"""

import base64
import hashlib
import hmac
import json
import secrets
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional, Protocol

from blockfighters.errors import AuthenticationFailed, NotFound, StorageUnavailable, Unauthorized
from blockfighters.models.identity import EnrolledIdentity, Identity, SessionGrant
from blockfighters.observability.logging import get_logger
from blockfighters.storage.repository import Repository

IDENTITIES = "identities"

log = get_logger("identity_provider")


class IdentityProvider(Protocol):
    """Anything that can turn a bearer token back into an Identity."""

    def enroll(
        self, display_name: str, wants_privileged: bool, access_code: str
    ) -> SessionGrant: ...

    def verify(self, token: str) -> Identity: ...

    def list_identities(self) -> List[EnrolledIdentity]: ...

    def remove_identity(self, identity_id: str) -> None: ...


def _b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _b64url_decode(data: str) -> bytes:
    padding = "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode((data + padding).encode("ascii"))


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AccessCodeIdentityProvider:
    """Enrolls identities behind access codes and verifies signed session tokens."""

    def __init__(
        self,
        repository: Repository,
        session_secret: str,
        user_access_code: str,
        master_access_code: str,
        session_ttl_seconds: int = 3600,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        if not session_secret:
            raise ValueError("session_secret is required")
        self.repository = repository
        self._secret = session_secret.encode("utf-8")
        self._user_code = user_access_code
        self._master_code = master_access_code
        self.session_ttl = timedelta(seconds=session_ttl_seconds)
        self._clock = clock or _utcnow

    # --- Enrollment ---

    def enroll(
        self, display_name: str, wants_privileged: bool, access_code: str
    ) -> SessionGrant:
        """Create a new identity. Masters need the master access code."""
        if wants_privileged:
            allowed = hmac.compare_digest(access_code, self._master_code)
        else:
            allowed = hmac.compare_digest(access_code, self._user_code) or hmac.compare_digest(
                access_code, self._master_code
            )
        if not allowed:
            log.warning("enrollment_rejected", privileged=wants_privileged)
            raise Unauthorized("Invalid access code")

        now = self._clock()
        prefix = "master" if wants_privileged else "user"
        identity = Identity(
            identity_id=f"{prefix}_{secrets.token_hex(8)}",
            display_name=display_name,
            privileged=wants_privileged,
        )
        enrolled = EnrolledIdentity(identity=identity, enrolled_at=now)
        self.repository.put(IDENTITIES, identity.identity_id, enrolled.model_dump(mode="json"))

        log.info("identity_enrolled", identity_id=identity.identity_id, privileged=wants_privileged)
        return self.issue_session(identity, now)

    def issue_session(self, identity: Identity, now: Optional[datetime] = None) -> SessionGrant:
        """Sign a bearer token for an enrolled identity."""
        if now is None:
            now = self._clock()
        expires_at = now + self.session_ttl
        payload = {
            "sub": identity.identity_id,
            "exp": int(expires_at.timestamp()),
        }
        payload_part = _b64url_encode(
            json.dumps(payload, sort_keys=True, separators=(",", ":")).encode("utf-8")
        )
        signature = hmac.new(self._secret, payload_part.encode("ascii"), hashlib.sha256).digest()
        return SessionGrant(
            identity=identity,
            token=f"{payload_part}.{_b64url_encode(signature)}",
            expires_at=expires_at,
        )

    # --- Verification ---

    def verify(self, token: str) -> Identity:
        """Return the identity a token proves, or raise AuthenticationFailed."""
        try:
            payload_part, signature_part = token.split(".", 1)
            provided = _b64url_decode(signature_part)
            expected = hmac.new(
                self._secret, payload_part.encode("ascii"), hashlib.sha256
            ).digest()
        except (ValueError, AttributeError) as e:
            raise AuthenticationFailed("Malformed session token") from e

        if not hmac.compare_digest(expected, provided):
            raise AuthenticationFailed("Invalid session token signature")

        try:
            payload = json.loads(_b64url_decode(payload_part).decode("utf-8"))
            identity_id = payload["sub"]
            expires = int(payload["exp"])
        except (ValueError, KeyError, TypeError) as e:
            raise AuthenticationFailed("Malformed session token payload") from e

        now = self._clock()
        if expires < int(now.timestamp()):
            raise AuthenticationFailed("Session token expired")

        doc = self.repository.get(IDENTITIES, identity_id)
        if doc is None:
            raise AuthenticationFailed("Identity no longer enrolled")

        enrolled = EnrolledIdentity.model_validate(doc.body)
        enrolled.last_verified_at = now
        try:
            self.repository.put(IDENTITIES, identity_id, enrolled.model_dump(mode="json"))
        except StorageUnavailable as e:
            # Bookkeeping only; the token itself was proven above.
            log.warning("last_verified_update_failed", identity_id=identity_id, error=e.code)
        return enrolled.identity

    # --- Administration ---

    def list_identities(self) -> List[EnrolledIdentity]:
        return [EnrolledIdentity.model_validate(d.body) for d in self.repository.list(IDENTITIES)]

    def remove_identity(self, identity_id: str) -> None:
        """Revoke an enrollment; its tokens stop verifying."""
        if not self.repository.delete(IDENTITIES, identity_id):
            raise NotFound(f"Identity {identity_id} not found", {"identity_id": identity_id})
        log.info("identity_removed", identity_id=identity_id)
