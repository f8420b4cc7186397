from __future__ import annotations

import json
from typing import Iterator

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status
from fastapi.responses import StreamingResponse

from phoneops.api.schemas.sessions import (
    CreateSessionRequest,
    SessionKindListResponse,
    SessionKindResponse,
    SessionListResponse,
    SessionResponse,
    SessionStatsResponse,
)
from phoneops.auth.gate import OwnershipServiceError
from phoneops.core.config import get_settings
from phoneops.db.models import SessionKind, SessionStatus
from phoneops.sessions.controller import SessionController, SessionForbiddenError
from phoneops.sessions.lock_service import SessionConflictError
from phoneops.sessions.store import SessionNotFoundError, snapshot_to_dict, stats_to_dict
from phoneops.sessions.types import event_to_dict
from phoneops.workers.base import InvalidSessionOptionsError
from phoneops.workers.registry import UnsupportedSessionKindError

router = APIRouter(prefix="/sessions", tags=["sessions"])


def get_controller(request: Request) -> SessionController:
    return request.app.state.controller


def get_user_id(x_user_id: str | None = Header(default=None)) -> str:
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing X-User-Id header")
    return x_user_id.strip()


def _conflict(exc: SessionConflictError) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_409_CONFLICT,
        detail={"message": str(exc), "session_id": exc.session_id},
    )


@router.post("", response_model=SessionResponse, status_code=status.HTTP_201_CREATED)
def create_session(
    request: CreateSessionRequest,
    user_id: str = Depends(get_user_id),
    controller: SessionController = Depends(get_controller),
) -> SessionResponse:
    try:
        session = controller.create_session(user_id, request.device_id, request.kind, request.options)
    except SessionForbiddenError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
    except SessionConflictError as exc:
        raise _conflict(exc) from exc
    except (InvalidSessionOptionsError, UnsupportedSessionKindError) as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    except OwnershipServiceError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return SessionResponse.model_validate(snapshot_to_dict(session))


@router.get("", response_model=SessionListResponse)
def list_sessions(
    kind: SessionKind | None = None,
    session_status: SessionStatus | None = Query(default=None, alias="status"),
    limit: int | None = Query(default=None, ge=1),
    cursor: str | None = None,
    user_id: str = Depends(get_user_id),
    controller: SessionController = Depends(get_controller),
) -> SessionListResponse:
    try:
        result = controller.list_sessions(user_id, kind=kind, status=session_status, limit=limit, cursor=cursor)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    return SessionListResponse(
        items=[SessionResponse.model_validate(snapshot_to_dict(item)) for item in result.items],
        next_cursor=result.next_cursor,
    )


@router.get("/stats", response_model=SessionStatsResponse)
def session_stats(
    days: int = Query(default=30, ge=1, le=3650),
    user_id: str = Depends(get_user_id),
    controller: SessionController = Depends(get_controller),
) -> SessionStatsResponse:
    stats = controller.session_stats(user_id, days=days)
    return SessionStatsResponse.model_validate(stats_to_dict(stats))


@router.get("/kinds", response_model=SessionKindListResponse)
def supported_kinds(
    _user_id: str = Depends(get_user_id),
    controller: SessionController = Depends(get_controller),
) -> SessionKindListResponse:
    return SessionKindListResponse(
        items=[
            SessionKindResponse(kind=kind, options_schema=schema)
            for kind, schema in controller.supported_kinds()
        ]
    )


@router.get("/{session_id}", response_model=SessionResponse)
def get_session(
    session_id: str,
    user_id: str = Depends(get_user_id),
    controller: SessionController = Depends(get_controller),
) -> SessionResponse:
    try:
        session = controller.get_session(session_id, user_id)
    except SessionNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except SessionForbiddenError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
    return SessionResponse.model_validate(snapshot_to_dict(session))


def _run_command(controller: SessionController, command: str, session_id: str, user_id: str) -> SessionResponse:
    handler = {
        "pause": controller.pause_session,
        "resume": controller.resume_session,
        "cancel": controller.cancel_session,
    }[command]
    try:
        session = handler(session_id, user_id)
    except SessionNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except SessionForbiddenError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
    except SessionConflictError as exc:
        raise _conflict(exc) from exc
    except OwnershipServiceError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return SessionResponse.model_validate(snapshot_to_dict(session))


@router.post("/{session_id}/pause", response_model=SessionResponse)
def pause_session(
    session_id: str,
    user_id: str = Depends(get_user_id),
    controller: SessionController = Depends(get_controller),
) -> SessionResponse:
    return _run_command(controller, "pause", session_id, user_id)


@router.post("/{session_id}/resume", response_model=SessionResponse)
def resume_session(
    session_id: str,
    user_id: str = Depends(get_user_id),
    controller: SessionController = Depends(get_controller),
) -> SessionResponse:
    return _run_command(controller, "resume", session_id, user_id)


@router.post("/{session_id}/cancel", response_model=SessionResponse)
def cancel_session(
    session_id: str,
    user_id: str = Depends(get_user_id),
    controller: SessionController = Depends(get_controller),
) -> SessionResponse:
    return _run_command(controller, "cancel", session_id, user_id)


@router.get("/{session_id}/events")
def stream_session_events(
    session_id: str,
    user_id: str = Depends(get_user_id),
    controller: SessionController = Depends(get_controller),
) -> StreamingResponse:
    try:
        subscription = controller.subscribe_progress(session_id, user_id)
    except SessionNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except SessionForbiddenError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    keepalive_seconds = get_settings().stream_keepalive_seconds

    def event_generator() -> Iterator[str]:
        for event in subscription.events(keepalive_seconds=keepalive_seconds):
            if event is None:
                yield ": keep-alive\n\n"
                continue
            yield f"data: {json.dumps(event_to_dict(event))}\n\n"

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )
