"""
BlockFighters API — FastAPI endpoints.

Exposes the voting core via a REST API for:
- Identity enrollment (access-code gated) and session checks
- Match management (masters only)
- Vote casting and eligibility
- Media upload for contestant portraits
- Match snapshots
- A WebSocket stream of match snapshots for live viewers
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Dict, List, Optional, Type

from fastapi import (
    Depends,
    FastAPI,
    Header,
    HTTPException,
    Request,
    Response,
    WebSocket,
    WebSocketDisconnect,
)
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from blockfighters.coordinator.service import VoteCoordinator
from blockfighters.errors import (
    AlreadyVoted,
    AuthenticationFailed,
    InvalidTransition,
    MatchConflict,
    MatchNotOpen,
    NotFound,
    OperationTimeout,
    RateLimited,
    StorageUnavailable,
    TallyContended,
    Unauthorized,
    VoteConflict,
    VotingError,
)
from blockfighters.identity.provider import AccessCodeIdentityProvider, IdentityProvider
from blockfighters.ledger.store import VoteLedger
from blockfighters.matches.store import MatchStore, current_match, order_for_display
from blockfighters.media.store import (
    BLOB_SCHEME,
    BlobStore,
    InMemoryBlobStore,
    LocalBlobStore,
    preview_url,
)
from blockfighters.models.config import VotingConfig
from blockfighters.models.identity import Identity
from blockfighters.models.match import Contestant, Match, MatchStatus
from blockfighters.observability.logging import configure_structlog, get_logger
from blockfighters.storage.guard import OperationGuard
from blockfighters.storage.repository import Repository
from blockfighters.storage.sqlite import SQLiteRepository
from blockfighters.sync.broadcaster import MatchBroadcaster, SnapshotMailbox
from blockfighters.sync.snapshots import SnapshotPublisher

log = get_logger("api")

STATUS_CODES: Dict[Type[VotingError], int] = {
    Unauthorized: 403,
    AuthenticationFailed: 401,
    AlreadyVoted: 409,
    VoteConflict: 409,
    RateLimited: 429,
    MatchNotOpen: 409,
    NotFound: 404,
    MatchConflict: 409,
    InvalidTransition: 409,
    OperationTimeout: 504,
    StorageUnavailable: 503,
    TallyContended: 503,
}


# --- Request/Response Models ---

class EnrollRequest(BaseModel):
    display_name: str
    access_code: str
    privileged: bool = False


class ContestantRequest(BaseModel):
    name: str
    media_ref: str = ""


class MatchCreateRequest(BaseModel):
    title: str
    contestant_a: ContestantRequest
    contestant_b: ContestantRequest


class StatusUpdateRequest(BaseModel):
    status: MatchStatus


class VoteRequest(BaseModel):
    contestant_id: int


class RestoreRequest(BaseModel):
    reference: Optional[str] = None


# --- Application Factory ---

def create_app(
    config: Optional[VotingConfig] = None,
    repository: Optional[Repository] = None,
    identity_provider: Optional[IdentityProvider] = None,
    blob_store: Optional[BlobStore] = None,
    run_snapshot_scheduler: bool = False,
) -> FastAPI:
    """Create and configure the FastAPI application."""

    cfg = config or VotingConfig.from_env()
    configure_structlog(cfg.log_environment)

    # Initialize components
    repo = repository or SQLiteRepository(cfg.database_path)
    guard = OperationGuard(timeout_seconds=cfg.operation_timeout_seconds)
    ledger = VoteLedger(repo, min_vote_interval_ms=cfg.min_vote_interval_ms)
    match_store = MatchStore(
        repo,
        max_attempts=cfg.increment_max_attempts,
        backoff_seconds=cfg.increment_backoff_seconds,
    )
    coordinator = VoteCoordinator(ledger, match_store, guard)
    broadcaster = MatchBroadcaster(match_store)
    identities = identity_provider or AccessCodeIdentityProvider(
        repo,
        session_secret=cfg.session_secret,
        user_access_code=cfg.user_access_code,
        master_access_code=cfg.master_access_code,
        session_ttl_seconds=cfg.session_ttl_seconds,
    )
    media = blob_store or (LocalBlobStore(cfg.media_dir) if cfg.media_dir else InMemoryBlobStore())
    publisher = SnapshotPublisher(
        match_store,
        media,
        schedule=cfg.snapshot_schedule,
        min_interval_seconds=cfg.snapshot_min_interval_seconds,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        stop = asyncio.Event()
        task = None
        if run_snapshot_scheduler:
            task = asyncio.create_task(publisher.run_async(stop))
        try:
            yield
        finally:
            stop.set()
            if task:
                await task
            broadcaster.close()
            guard.shutdown()

    app = FastAPI(
        title="BlockFighters API",
        description="One-vote-per-identity match voting",
        version="0.1.0",
        lifespan=lifespan,
    )

    # Store components on app state for access in endpoints and tests
    app.state.config = cfg
    app.state.repository = repo
    app.state.guard = guard
    app.state.ledger = ledger
    app.state.match_store = match_store
    app.state.coordinator = coordinator
    app.state.broadcaster = broadcaster
    app.state.identity_provider = identities
    app.state.blob_store = media
    app.state.snapshot_publisher = publisher

    @app.exception_handler(VotingError)
    async def voting_error_handler(request: Request, exc: VotingError):
        status = STATUS_CODES.get(type(exc), 400)
        log.info("request_rejected", path=request.url.path, error=exc.code, status=status)
        headers = {}
        if isinstance(exc, RateLimited):
            headers["Retry-After"] = str(max(1, -(-exc.retry_after_ms // 1000)))
        return JSONResponse(status_code=status, content=exc.to_dict(), headers=headers)

    def match_view(match: Match) -> dict:
        data = match.model_dump(mode="json")
        for key in ("contestant_a", "contestant_b"):
            data[key]["preview_url"] = preview_url(data[key]["media_ref"], cfg.media_gateway)
        winner = match.winner()
        data["winner_id"] = winner.id if winner else None
        return data

    # === IDENTITY ===

    def current_identity(authorization: Optional[str] = Header(None)) -> Identity:
        """Resolve the bearer token. A verify that times out is a failed login."""
        if not authorization or not authorization.lower().startswith("bearer "):
            raise AuthenticationFailed("Missing bearer token")
        token = authorization.split(" ", 1)[1].strip()
        try:
            return guard.call("verify_identity", identities.verify, token)
        except OperationTimeout as e:
            raise AuthenticationFailed("Identity verification timed out") from e

    @app.post("/identities")
    def enroll(req: EnrollRequest):
        """Enroll a new identity with an access code."""
        grant = identities.enroll(req.display_name, req.privileged, req.access_code)
        return grant.model_dump(mode="json")

    @app.get("/identities/me")
    def whoami(identity: Identity = Depends(current_identity)):
        """The identity behind the bearer token."""
        return identity.model_dump(mode="json")

    @app.get("/identities")
    def list_identities(identity: Identity = Depends(current_identity)):
        """Every enrolled identity (masters only)."""
        if not identity.privileged:
            raise Unauthorized("Only masters may list identities")
        enrolled = guard.call("list_identities", identities.list_identities)
        return [e.model_dump(mode="json") for e in enrolled]

    @app.delete("/identities/{identity_id}")
    def remove_identity(identity_id: str, identity: Identity = Depends(current_identity)):
        """Revoke an enrollment (masters only). Its votes stay in the ledger."""
        if not identity.privileged:
            raise Unauthorized("Only masters may remove identities")
        guard.call("remove_identity", identities.remove_identity, identity_id)
        return {"status": "removed", "identity_id": identity_id}

    # === MATCHES ===

    @app.get("/matches")
    def list_matches(ordered: bool = False):
        """All matches; ordered=true puts open matches first."""
        matches = guard.call("list_matches", match_store.list_matches)
        if ordered:
            matches = order_for_display(matches)
        return [match_view(m) for m in matches]

    @app.get("/matches/current")
    def get_current_match():
        """The match viewers should see first."""
        match = current_match(guard.call("list_matches", match_store.list_matches))
        if match is None:
            raise NotFound("No matches")
        return match_view(match)

    @app.get("/matches/{match_id}")
    def get_match(match_id: int):
        return match_view(guard.call("get_match", match_store.get_match, match_id))

    @app.post("/matches", status_code=201)
    def create_match(req: MatchCreateRequest, identity: Identity = Depends(current_identity)):
        """Create a pending match (masters only)."""
        match = guard.call(
            "create_match",
            match_store.create_match,
            identity,
            req.title,
            Contestant(id=1, name=req.contestant_a.name, media_ref=req.contestant_a.media_ref),
            Contestant(id=2, name=req.contestant_b.name, media_ref=req.contestant_b.media_ref),
        )
        return match_view(match)

    @app.patch("/matches/{match_id}/status")
    def set_status(
        match_id: int,
        req: StatusUpdateRequest,
        identity: Identity = Depends(current_identity),
    ):
        """Move a match to any status (masters only)."""
        match = guard.call("set_status", match_store.set_status, identity, match_id, req.status)
        return match_view(match)

    @app.delete("/matches/{match_id}")
    def delete_match(match_id: int, identity: Identity = Depends(current_identity)):
        """Delete a match and its ledger records (masters only)."""
        coordinator.delete_match(identity, match_id)
        return {"status": "deleted", "match_id": match_id}

    # === VOTING ===

    @app.post("/matches/{match_id}/vote")
    def cast_vote(match_id: int, req: VoteRequest, identity: Identity = Depends(current_identity)):
        """Cast this identity's single vote on a match."""
        receipt = coordinator.cast_vote(identity, match_id, req.contestant_id)
        return {
            "vote": receipt.record.model_dump(mode="json"),
            "match": match_view(receipt.match),
        }

    @app.get("/matches/{match_id}/eligibility")
    def eligibility(match_id: int, identity: Identity = Depends(current_identity)):
        """Whether this identity may vote on the match right now."""
        ineligible = coordinator.eligibility(identity, match_id)
        if ineligible is None:
            return {"can_vote": True, "reason": None, "retry_after_ms": 0, "vote": None}
        return {
            "can_vote": False,
            "reason": ineligible.reason.value,
            "retry_after_ms": ineligible.retry_after_ms,
            "vote": (
                ineligible.existing_vote.model_dump(mode="json")
                if ineligible.existing_vote else None
            ),
        }

    @app.get("/votes/me")
    def my_votes(identity: Identity = Depends(current_identity)):
        """Every vote this identity has cast."""
        records = guard.call("votes_for_identity", ledger.votes_for_identity, identity.identity_id)
        return [r.model_dump(mode="json") for r in records]

    # === MEDIA ===

    @app.post("/media", status_code=201)
    async def upload_media(request: Request, identity: Identity = Depends(current_identity)):
        """Store a contestant portrait (masters only). Body is the raw image."""
        if not identity.privileged:
            raise Unauthorized("Only masters may upload media")
        data = await request.body()
        if not data:
            raise HTTPException(400, "Empty upload")
        content_type = request.headers.get("content-type", "application/octet-stream")
        reference = await asyncio.to_thread(media.put_blob, data, content_type)
        return {"reference": reference, "preview_url": preview_url(reference, cfg.media_gateway)}

    @app.get("/media/{digest}")
    def get_media(digest: str):
        data, content_type = media.get_blob(BLOB_SCHEME + digest)
        return Response(content=data, media_type=content_type)

    # === SNAPSHOTS ===

    @app.post("/snapshots", status_code=201)
    def publish_snapshot(identity: Identity = Depends(current_identity)):
        """Publish a snapshot of all matches now (masters only)."""
        if not identity.privileged:
            raise Unauthorized("Only masters may publish snapshots")
        reference = publisher.publish(force=True)
        if reference is None:
            raise NotFound("No matches to snapshot")
        return {"reference": reference}

    @app.get("/snapshots/latest")
    def latest_snapshot():
        if publisher.latest_reference is None:
            raise NotFound("No snapshot published")
        return {
            "reference": publisher.latest_reference,
            "published_at": (
                publisher.last_published_at.isoformat()
                if publisher.last_published_at else None
            ),
        }

    @app.post("/snapshots/restore")
    def restore_snapshot(req: RestoreRequest, identity: Identity = Depends(current_identity)):
        """Seed an empty match store from a snapshot (masters only)."""
        if not identity.privileged:
            raise Unauthorized("Only masters may restore snapshots")
        restored = publisher.restore_if_empty(req.reference)
        return {"restored": restored}

    # === REALTIME ===

    @app.websocket("/matches/stream")
    async def stream_matches(websocket: WebSocket):
        """Current snapshot on connect, then the latest snapshot after each change."""
        await websocket.accept()
        mailbox = SnapshotMailbox(asyncio.get_running_loop())
        unsubscribe = await asyncio.to_thread(broadcaster.subscribe, mailbox.offer)

        async def wait_for_disconnect() -> None:
            try:
                while True:
                    await websocket.receive_text()
            except WebSocketDisconnect:
                return

        disconnected = asyncio.create_task(wait_for_disconnect())
        try:
            while not disconnected.done():
                next_snapshot = asyncio.create_task(
                    mailbox.get(timeout=cfg.subscriber_timeout_seconds)
                )
                done, _ = await asyncio.wait(
                    {next_snapshot, disconnected},
                    return_when=asyncio.FIRST_COMPLETED,
                )
                if next_snapshot not in done:
                    next_snapshot.cancel()
                    break
                try:
                    matches: List[Match] = next_snapshot.result()
                except OperationTimeout:
                    await websocket.send_json({"type": "heartbeat"})
                    continue
                await websocket.send_json({
                    "type": "matches",
                    "sequence": mailbox.sequence,
                    "matches": [match_view(m) for m in matches],
                })
        finally:
            unsubscribe()
            disconnected.cancel()

    return app


# Default application instance
app = create_app()
