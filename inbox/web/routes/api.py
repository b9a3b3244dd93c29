"""JSON API routes (/api/v1/)."""

from __future__ import annotations

import logging
import sqlite3

from fastapi import APIRouter, Query, Request
from fastapi.responses import JSONResponse

from ...degradation import SourceDegradedError
from ...engine import MESSAGE_EVENTS, InboxEngine
from ...models import Channel, MessageRow
from ...sources import ClientNotFoundError

log = logging.getLogger(__name__)

router = APIRouter()

# Failures worth a retry from the client
_TRANSIENT = (sqlite3.Error, SourceDegradedError)


def _engine(request: Request) -> InboxEngine:
    return request.app.state.engine


def _unavailable(exc: Exception) -> JSONResponse:
    return JSONResponse({"error": str(exc)}, status_code=503)


# ------------------------------------------------------------------
# Health and sources
# ------------------------------------------------------------------

@router.get("/health")
def health():
    return {"status": "ok", "version": "1.0.0"}


@router.get("/sources")
def sources(request: Request):
    """Availability of each data source (primary or fallback)."""
    return _engine(request).sources()


# ------------------------------------------------------------------
# Thread list
# ------------------------------------------------------------------

@router.get("/threads")
async def threads(request: Request, branch: list[str] = Query(default=[])):
    """Current thread list snapshot; the first call for a branch scope loads it."""
    thread_list = _engine(request).thread_list(branch)
    state = await thread_list.ensure_loaded()
    return state.to_dict()


@router.post("/threads/load-more")
async def threads_load_more(request: Request, branch: list[str] = Query(default=[])):
    thread_list = _engine(request).thread_list(branch)
    await thread_list.ensure_loaded()
    try:
        state = await thread_list.load_more()
    except _TRANSIENT as exc:
        return _unavailable(exc)
    return state.to_dict()


@router.post("/threads/refetch")
async def threads_refetch(request: Request, branch: list[str] = Query(default=[])):
    state = await _engine(request).thread_list(branch).refetch()
    return state.to_dict()


@router.put("/threads/pinned")
async def threads_pinned(request: Request, branch: list[str] = Query(default=[])):
    """Replace the pinned ids.  Body: a JSON list of client ids."""
    try:
        body = await request.json()
    except Exception:
        return JSONResponse({"error": "Invalid JSON"}, status_code=400)
    if not isinstance(body, list):
        return JSONResponse({"error": "Expected a list of ids"}, status_code=400)

    thread_list = _engine(request).thread_list(branch)
    await thread_list.ensure_loaded()
    state = await thread_list.set_pinned(body)
    return state.to_dict()


@router.get("/threads/search")
async def threads_search(request: Request, q: str = "", branch: list[str] = Query(default=[])):
    """Inject clients matching *q* that are not already listed."""
    thread_list = _engine(request).thread_list(branch)
    await thread_list.ensure_loaded()
    state = await thread_list.set_search(q)
    return state.to_dict()


# ------------------------------------------------------------------
# Conversations
# ------------------------------------------------------------------

@router.get("/conversations/{client_id}")
async def conversation(request: Request, client_id: str, limit: int | None = Query(default=None, ge=1)):
    try:
        detail = await _engine(request).conversations.read_through(client_id, limit=limit)
    except ClientNotFoundError:
        return JSONResponse({"error": "Conversation not found"}, status_code=404)
    except _TRANSIENT as exc:
        log.warning("Conversation %s unavailable: %s", client_id, exc)
        return _unavailable(exc)
    return detail.to_dict()


@router.post("/conversations/{client_id}/invalidate")
def conversation_invalidate(request: Request, client_id: str):
    _engine(request).conversations.invalidate(client_id)
    return {"ok": True}


@router.post("/conversations/{client_id}/prefetch")
async def conversation_prefetch(request: Request, client_id: str):
    task = _engine(request).conversations.prefetch(client_id)
    return {"scheduled": task is not None}


@router.put("/conversations/{client_id}/avatars/{channel}")
async def conversation_avatar(request: Request, client_id: str, channel: str):
    """Patch one channel's avatar.  Body: ``{"url": ...}``."""
    resolved = Channel.from_tag(channel)
    if resolved is None:
        return JSONResponse({"error": "Unknown channel"}, status_code=400)
    try:
        body = await request.json()
    except Exception:
        return JSONResponse({"error": "Invalid JSON"}, status_code=400)
    if not isinstance(body, dict):
        return JSONResponse({"error": "Expected an object"}, status_code=400)

    _engine(request).update_avatar(client_id, resolved, body.get("url"))
    return {"ok": True}


# ------------------------------------------------------------------
# Realtime events
# ------------------------------------------------------------------

@router.post("/events/messages")
async def message_event(request: Request):
    """Apply a realtime message event.  Body: ``{"event": ..., "message": {...}}``."""
    try:
        body = await request.json()
    except Exception:
        return JSONResponse({"error": "Invalid JSON"}, status_code=400)

    if not isinstance(body, dict):
        return JSONResponse({"error": "Expected an object"}, status_code=400)
    event = body.get("event")
    message = body.get("message")
    if event not in MESSAGE_EVENTS:
        return JSONResponse({"error": "Unknown event"}, status_code=400)
    if not isinstance(message, dict) or not message.get("id") or not message.get("client_id"):
        return JSONResponse({"error": "message.id and message.client_id are required"}, status_code=400)

    await _engine(request).handle_message_event(event, MessageRow.from_row(message))
    return {"ok": True}
