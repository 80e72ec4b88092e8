"""REST API routes for sync, webhooks, contacts, approvals, threads and SSE."""

from __future__ import annotations

import asyncio
import json
import threading
from dataclasses import asdict
from typing import Iterator, Literal

from fastapi import APIRouter, Body, Depends, HTTPException, Query
from pydantic import BaseModel, ValidationError
from sse_starlette.sse import EventSourceResponse

from crosswire.adapters.records import parse_contact_record
from crosswire.annotations import AnnotationQueue, build_annotation_queue
from crosswire.config import Config, load_config
from crosswire.database import get_db, init_db
from crosswire.engine import SyncEngine
from crosswire.errors import (
    ConflictingDecision,
    ContactNotFound,
    CredentialExpired,
    CrosswireError,
    NotAuthenticated,
    PendingNotFound,
    RateLimited,
    SyncInProgress,
)
from crosswire.events import subscribe_events, unsubscribe_events
from crosswire.models import Decision, DecisionKind, NormalizedContact, SyncStatus

router = APIRouter(tags=["api"])

_STATUS_BY_ERROR = [
    (ConflictingDecision, 409),
    (SyncInProgress, 409),
    (RateLimited, 429),
    (NotAuthenticated, 401),
    (CredentialExpired, 401),
    (PendingNotFound, 404),
    (ContactNotFound, 404),
]


def to_http(e: CrosswireError) -> HTTPException:
    """Map an engine error to an HTTPException carrying its kind."""
    status = next((code for cls, code in _STATUS_BY_ERROR if isinstance(e, cls)), 502)
    headers = None
    if isinstance(e, RateLimited) and e.retry_after is not None:
        headers = {"Retry-After": str(int(e.retry_after))}
    return HTTPException(status, detail=e.to_dict(), headers=headers)


_annotator: AnnotationQueue | None = None
_annotator_lock = threading.Lock()


def shared_annotator(config: Config) -> AnnotationQueue | None:
    """Process-wide summary queue; per-request engines hand work to it."""
    global _annotator
    with _annotator_lock:
        if _annotator is None:
            _annotator = build_annotation_queue(config)
        return _annotator


def get_engine() -> Iterator[SyncEngine]:
    """Per-request engine on its own connection."""
    config = load_config()
    conn = get_db(config)
    init_db(conn)
    engine = SyncEngine.from_config(config, conn, annotator=shared_annotator(config))
    try:
        yield engine
    finally:
        engine.close()
        conn.close()


class DecisionBody(BaseModel):
    decision: Literal["approve_new", "approve_merge", "reject"]
    target_id: str | None = None


class WebhookBody(BaseModel):
    cursor: str | None = None


@router.post("/sync/{user_id}")
def trigger_sync(
    user_id: str,
    platforms: list[str] | None = Query(None),
    force: bool = False,
    engine: SyncEngine = Depends(get_engine),
):
    """Run a sync. Without platforms the scheduler decides."""
    report = engine.sync_user(user_id, platforms, force)
    kinds = {r.error_kind for r in report.platforms.values()}
    if report.status == SyncStatus.FAILED and kinds == {SyncInProgress.kind}:
        raise HTTPException(409, detail={"kind": SyncInProgress.kind, "report": report.to_dict()})
    return report.to_dict()


@router.get("/sync/{user_id}/status")
def sync_status(user_id: str, engine: SyncEngine = Depends(get_engine)):
    return engine.status(user_id)


@router.post("/webhook/{platform}/{user_id}")
def webhook(
    platform: str,
    user_id: str,
    body: WebhookBody | None = None,
    engine: SyncEngine = Depends(get_engine),
):
    """Best-effort push: fetch the delta since the stored cursor."""
    report = engine.handle_webhook(user_id, platform, body.cursor if body else None)
    return report.to_dict()


@router.get("/users/{user_id}/contacts")
def list_contacts(user_id: str, engine: SyncEngine = Depends(get_engine)):
    return [asdict(c) for c in engine.list_contacts(user_id)]


@router.get("/users/{user_id}/contacts/{contact_id}")
def get_contact(user_id: str, contact_id: str, engine: SyncEngine = Depends(get_engine)):
    """A unified contact with one identity per linked platform."""
    try:
        return asdict(engine.get_contact(user_id, contact_id))
    except CrosswireError as e:
        raise to_http(e) from e


def _contact_record(payload: dict) -> tuple[str, NormalizedContact]:
    try:
        record = parse_contact_record(payload)
    except ValidationError as e:
        raise HTTPException(
            422, detail={"kind": "invalid_record", "errors": [err["msg"] for err in e.errors()]}
        ) from e
    return record.platform, record.normalize()


@router.post("/users/{user_id}/contacts/find-matches")
def find_matches(user_id: str, payload: dict = Body(...), engine: SyncEngine = Depends(get_engine)):
    """Score existing contacts against a platform contact record. Read-only."""
    _, contact = _contact_record(payload)
    return [asdict(c) for c in engine.find_matches(user_id, contact)]


@router.post("/users/{user_id}/contacts/import")
def import_contact(user_id: str, payload: dict = Body(...), engine: SyncEngine = Depends(get_engine)):
    """Run one platform contact record through unification."""
    platform, contact = _contact_record(payload)
    try:
        result = engine.process_contact(user_id, platform, contact)
    except CrosswireError as e:
        raise to_http(e) from e
    return {
        "action": result.action.value,
        "contact_id": result.contact_id,
        "pending_id": result.pending_id,
        "candidates": [asdict(c) for c in result.candidates],
        "bot_reasons": result.bot_reasons,
    }


@router.get("/users/{user_id}/pending")
def list_pending(user_id: str, engine: SyncEngine = Depends(get_engine)):
    return [
        {
            "id": p.id,
            "platform": p.platform,
            "platform_contact_id": p.platform_contact_id,
            "sender_name": p.sender_name,
            "sender_email": p.sender_email,
            "sender_handle": p.sender_handle,
            "candidate_contact_id": p.candidate_contact_id,
            "candidate_score": p.candidate_score,
            "candidate_reasons": p.candidate_reasons,
            "message_count": p.message_count,
            "first_message_date": p.first_message_date,
            "last_message_date": p.last_message_date,
            "preview_content": p.preview_content,
            "created_at": p.created_at,
        }
        for p in engine.list_pending(user_id)
    ]


@router.post("/users/{user_id}/pending/{pending_id}/decision")
def decide_pending(
    user_id: str,
    pending_id: str,
    body: DecisionBody,
    engine: SyncEngine = Depends(get_engine),
):
    kind = DecisionKind(body.decision)
    if kind == DecisionKind.APPROVE_MERGE and not body.target_id:
        raise HTTPException(400, "approve_merge requires target_id")
    try:
        result = engine.decide_pending(user_id, pending_id, Decision(kind, body.target_id))
    except CrosswireError as e:
        raise to_http(e) from e
    return {
        "pending_id": result.pending_id,
        "status": result.status.value,
        "contact_id": result.contact_id,
        "messages_imported": result.messages_imported,
        "replayed": result.replayed,
    }


@router.get("/users/{user_id}/threads")
def list_threads(
    user_id: str,
    limit: int = 50,
    offset: int = 0,
    engine: SyncEngine = Depends(get_engine),
):
    threads = list(engine.thread_view(user_id))
    return {
        "total": len(threads),
        "threads": [t.to_dict() for t in threads[offset:offset + limit]],
    }


@router.get("/users/{user_id}/blacklist")
def list_blacklist(user_id: str, engine: SyncEngine = Depends(get_engine)):
    return [vars(e) for e in engine.list_blacklist(user_id)]


@router.delete("/users/{user_id}/blacklist/{entry_id}")
def remove_blacklist(user_id: str, entry_id: str, engine: SyncEngine = Depends(get_engine)):
    if not engine.remove_blacklist(user_id, entry_id):
        raise HTTPException(404, f"Blacklist entry {entry_id} not found")
    return {"removed": entry_id}


@router.post("/admin/sync-state/{user_id}/{platform}/reset")
def reset_sync_state(user_id: str, platform: str, engine: SyncEngine = Depends(get_engine)):
    state = engine.reset_sync_state(user_id, platform)
    return vars(state)


@router.get("/admin/sync-state/stuck")
def stuck_runs(user_id: str | None = None, engine: SyncEngine = Depends(get_engine)):
    """Runs holding the in-progress flag past max_run_minutes."""
    return [vars(s) for s in engine.reset_eligible(user_id)]


@router.get("/sync/stream")
async def sync_event_stream():
    """SSE endpoint for live sync updates."""
    queue = subscribe_events()

    async def event_generator():
        try:
            while True:
                if queue:
                    event = queue.pop(0)
                    yield {"event": event.get("type", "message"), "data": json.dumps(event)}
                else:
                    await asyncio.sleep(0.5)
        finally:
            unsubscribe_events(queue)

    return EventSourceResponse(event_generator())
