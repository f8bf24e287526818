import logging
from typing import Optional

from fastapi import APIRouter, Body, Depends, File, HTTPException, Query, UploadFile

from runstudio.core.errors import (
    APIError,
    FormValidationError,
    InsufficientCreditsError,
    UnauthorizedError,
)
from runstudio.schemas import (
    CreditsResponse,
    FieldUpdateRequest,
    MetadataUpdateRequest,
    RunRequest,
    SessionCreateRequest,
    SessionResponse,
)
from runstudio.services.session_manager import RunSession, SessionManager, get_session_manager

logger = logging.getLogger(__name__)

router = APIRouter()


def _session_or_404(manager: SessionManager, session_id: str) -> RunSession:
    session = manager.get_session(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return session


def _api_error(e: APIError) -> HTTPException:
    if isinstance(e, UnauthorizedError):
        return HTTPException(status_code=401, detail=str(e))
    if isinstance(e, InsufficientCreditsError):
        return HTTPException(status_code=402, detail=str(e))
    status = getattr(e, "status_code", None)
    if status == 404:
        return HTTPException(status_code=404, detail=str(e))
    return HTTPException(status_code=502, detail=str(e))


# === Sessions ===

@router.post("/sessions", response_model=SessionResponse)
async def open_session(request: SessionCreateRequest, manager: SessionManager = Depends(get_session_manager)):
    try:
        session = await manager.open_session(request.modelId, api_key=request.apiKey)
    except APIError as e:
        logger.error("Could not open session for %s: %s", request.modelId, e)
        raise _api_error(e)
    return session.view()


@router.get("/sessions/{session_id}", response_model=SessionResponse)
def get_session(session_id: str, manager: SessionManager = Depends(get_session_manager)):
    return _session_or_404(manager, session_id).view()


@router.delete("/sessions/{session_id}")
def close_session(session_id: str, manager: SessionManager = Depends(get_session_manager)):
    if not manager.close_session(session_id):
        raise HTTPException(status_code=404, detail="Session not found")
    return {"status": "closed"}


@router.put("/sessions/{session_id}/fields/{key}", response_model=SessionResponse)
def update_field(session_id: str, key: str, request: FieldUpdateRequest,
                 manager: SessionManager = Depends(get_session_manager)):
    session = _session_or_404(manager, session_id)
    try:
        session.set_value(key, request.value)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Unknown field: {key}")
    return session.view()


@router.post("/sessions/{session_id}/fields/{key}/image", response_model=SessionResponse)
async def upload_field_image(session_id: str, key: str, file: UploadFile = File(...),
                             manager: SessionManager = Depends(get_session_manager)):
    session = _session_or_404(manager, session_id)
    content = await file.read()
    try:
        session.engine.attach_image(session.form, key, content)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Unknown field: {key}")
    except FormValidationError as e:
        raise HTTPException(status_code=400, detail={"errors": e.errors})
    session.touch()
    return session.view()


# === Runs ===

@router.post("/sessions/{session_id}/run", response_model=SessionResponse)
async def run_session(session_id: str, request: Optional[RunRequest] = Body(None),
                      manager: SessionManager = Depends(get_session_manager)):
    session = _session_or_404(manager, session_id)
    request = request or RunRequest()
    try:
        await session.submit(title=request.title, tags=request.tags)
    except InsufficientCreditsError as e:
        raise HTTPException(status_code=402, detail={
            "message": session.ledger.warning or str(e),
            "required": e.required,
            "available": e.available,
        })
    except FormValidationError as e:
        raise HTTPException(status_code=400, detail={"errors": e.errors})
    return session.view()


@router.post("/sessions/{session_id}/regenerate", response_model=SessionResponse)
async def regenerate(session_id: str, manager: SessionManager = Depends(get_session_manager)):
    session = _session_or_404(manager, session_id)
    await session.controller.regenerate()
    session.touch()
    return session.view()


@router.post("/sessions/{session_id}/favorite", response_model=SessionResponse)
async def toggle_favorite(session_id: str, manager: SessionManager = Depends(get_session_manager)):
    session = _session_or_404(manager, session_id)
    if session.controller.result is None:
        raise HTTPException(status_code=409, detail="No generation to favorite")
    await session.controller.toggle_favorite()
    return session.view()


@router.post("/sessions/{session_id}/cancel", response_model=SessionResponse)
async def cancel_run(session_id: str, manager: SessionManager = Depends(get_session_manager)):
    session = _session_or_404(manager, session_id)
    if not session.controller.is_busy:
        raise HTTPException(status_code=409, detail="No running generation to cancel")
    await session.controller.cancel_run()
    session.touch()
    return session.view()


@router.patch("/sessions/{session_id}/result", response_model=SessionResponse)
async def update_result(session_id: str, request: MetadataUpdateRequest,
                        manager: SessionManager = Depends(get_session_manager)):
    session = _session_or_404(manager, session_id)
    if session.controller.result is None:
        raise HTTPException(status_code=409, detail="No generation to update")
    await session.controller.update_metadata(title=request.title, tags=request.tags)
    return session.view()


@router.post("/sessions/{session_id}/reset", response_model=SessionResponse)
def reset_session(session_id: str, manager: SessionManager = Depends(get_session_manager)):
    session = _session_or_404(manager, session_id)
    session.controller.reset()
    session.form.clear()
    session.touch()
    return session.view()


# === Credits ===

@router.get("/credits", response_model=CreditsResponse)
async def get_credits(apiKey: Optional[str] = Query(None), manager: SessionManager = Depends(get_session_manager)):
    ledger = manager.ledger_for(apiKey)
    if ledger.authoritative is None:
        await ledger.refresh()
    return ledger.view()


@router.post("/credits/refresh", response_model=CreditsResponse)
async def refresh_credits(apiKey: Optional[str] = Body(None, embed=True),
                          manager: SessionManager = Depends(get_session_manager)):
    ledger = manager.ledger_for(apiKey)
    await ledger.refresh()
    return ledger.view()


@router.delete("/credits/warning", response_model=CreditsResponse)
def dismiss_credit_warning(apiKey: Optional[str] = Query(None), manager: SessionManager = Depends(get_session_manager)):
    ledger = manager.ledger_for(apiKey)
    ledger.dismiss_warning()
    return ledger.view()
