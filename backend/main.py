"""
FastAPI Backend for the Class Registry - WITH SUPABASE INTEGRATION

Provides REST API endpoints with:
- JWT Authentication (admins and professors only)
- Per-enrollment registry workspaces holding unsaved edits between requests
- Save / save-all with professor confirmation
- Reschedules, learning objectives and evaluations
"""

from fastapi import FastAPI, Depends, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from typing import Optional, List, Dict, Any, Tuple
from collections import OrderedDict
from dataclasses import asdict
from datetime import date
import os
import sys
import signal

# Add the class_registry package to Python path
backend_dir = os.path.dirname(os.path.abspath(__file__))
project_root = os.path.dirname(backend_dir)

package_src = os.path.join(project_root, 'class_registry', 'src')
if os.path.exists(package_src) and package_src not in sys.path:
    sys.path.insert(0, package_src)

# Setup enhanced logging with pretty formatting
from lib.logger import setup_logging, get_logger

setup_logging(use_colors=True)
logger = get_logger("backend.main")

# Import Supabase and auth utilities
from lib.supabase_client import get_registry_store
from lib.auth import get_current_user, resolve_actor

from class_registry.errors import (
    ClassRegistryError,
    ConflictError,
    NotFoundError,
    PermissionDeniedError,
    PreconditionError,
    TransientError,
    ValidationError,
)
from class_registry.models import ClassSession, reschedule_label
from class_registry.registry_store import RegistryStore
from class_registry.registry_workspace import RegistryWorkspace, SaveResult

# One workspace per (user id, enrollment id); unsaved edits live here between requests
MAX_WORKSPACES = int(os.getenv("WORKSPACE_CACHE_SIZE", "256"))
_workspaces: "OrderedDict[Tuple[str, str], RegistryWorkspace]" = OrderedDict()

# Initialize FastAPI app
app = FastAPI(
    title="Class Registry API",
    description="REST API for recording tutoring classes, reschedules, objectives and evaluations",
    version="1.0.0"
)

# CORS middleware for the frontend
app.add_middleware(
    CORSMiddleware,
    allow_origins=[origin.strip() for origin in os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",")],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ==================== Pydantic Models ====================

class DraftUpdate(BaseModel):
    minutes_viewed: Optional[Any] = None
    class_type: Optional[List[str]] = None
    content_type: Optional[List[str]] = None
    vocabulary_content: Optional[str] = None
    student_mood: Optional[str] = None
    note: Optional[Dict[str, Any]] = None
    homework: Optional[str] = None
    class_time: Optional[str] = None
    class_date: Optional[date] = None


class SaveRequest(BaseModel):
    confirmed: bool = False


class NoteRequest(BaseModel):
    content: Optional[str] = None
    student_visible: bool = False


class RescheduleRequest(BaseModel):
    class_date: Optional[date] = None


class ObjectiveRequest(BaseModel):
    category: Optional[str] = None  # content category id
    objective: Optional[str] = None
    objective_date: Optional[date] = None
    teachers_note: Optional[str] = None
    objective_achieved: bool = False


class EvaluationRequest(BaseModel):
    topics_evaluated: Optional[str] = None
    skill_evaluated: Optional[str] = None
    material_link: Optional[str] = None
    capture: Optional[str] = None
    score: Optional[str] = None
    comment: Optional[str] = None


# ==================== Error handling ====================

def status_for(error: ClassRegistryError) -> int:
    """HTTP status code for a registry error."""
    if isinstance(error, PermissionDeniedError):
        return error.status_code
    if isinstance(error, ValidationError):
        return 400
    if isinstance(error, (PreconditionError, ConflictError)):
        return 409
    if isinstance(error, NotFoundError):
        return 404
    if isinstance(error, TransientError):
        return 502
    return 400


@app.exception_handler(ClassRegistryError)
async def class_registry_error_handler(request: Request, error: ClassRegistryError):
    status = status_for(error)
    logger.warning("Registry request rejected", data={
        "path": request.url.path,
        "status": status,
        "error": type(error).__name__,
        "detail": error.user_message,
    })
    content = {"detail": error.user_message, "error": type(error).__name__}
    if error.field:
        content["field"] = error.field
    return JSONResponse(status_code=status, content=content)


# ==================== Helper Functions ====================

async def get_workspace(
    enrollment_id: str,
    user: dict,
    store: RegistryStore,
    refresh: bool = False,
) -> RegistryWorkspace:
    """
    Get the cached workspace of this user for an enrollment.

    A new workspace is loaded once; `refresh` reloads a cached one. The least
    recently used workspace is evicted past MAX_WORKSPACES.
    """
    actor = resolve_actor(user)
    key = (actor.id, enrollment_id)
    workspace = _workspaces.get(key)
    if workspace is None:
        workspace = RegistryWorkspace(store, enrollment_id, actor)
        await workspace.load()
        _workspaces[key] = workspace
        logger.info("Workspace created", data={"user_id": actor.id, "enrollment_id": enrollment_id})
        while len(_workspaces) > MAX_WORKSPACES:
            (old_user_id, old_enrollment_id), evicted = _workspaces.popitem(last=False)
            logger.warning("Workspace evicted", data={
                "user_id": old_user_id,
                "enrollment_id": old_enrollment_id,
                "unsaved_sessions": evicted.buffer.dirty_ids(),
            })
    else:
        _workspaces.move_to_end(key)
        if refresh:
            await workspace.load()
    return workspace


def session_view(workspace: RegistryWorkspace, session: ClassSession) -> Dict[str, Any]:
    """Session record plus the derived flags the registry table shows."""
    view = asdict(session)
    draft = workspace.buffer.get(session.id)
    view.update({
        "reschedule_label": reschedule_label(session.reschedule),
        "locked": workspace.is_locked(session.id),
        "has_evaluation": workspace.has_evaluation(session.id),
        "dirty": workspace.buffer.is_dirty(session.id),
        "draft": asdict(draft) if draft else None,
    })
    return view


def save_response(result: SaveResult) -> Dict[str, Any]:
    response = asdict(result)
    response["ok"] = result.ok
    return response


# ==================== API Endpoints ====================

@app.get("/")
async def root():
    """Health check endpoint"""
    return {
        "status": "ok",
        "message": "Class Registry API",
        "version": "1.0.0",
    }


@app.get("/api/class-registry/{enrollment_id}")
async def get_registry(
    enrollment_id: str,
    user: dict = Depends(get_current_user),
    store: RegistryStore = Depends(get_registry_store),
):
    """Sessions of an enrollment with their unsaved drafts, catalogs and objective slots"""
    logger.request("GET", f"/api/class-registry/{enrollment_id}", user_id=user.get("id"))
    workspace = await get_workspace(enrollment_id, user, store, refresh=True)
    return {
        "enrollment_id": enrollment_id,
        "sessions": [session_view(workspace, s) for s in workspace.sessions],
        "class_types": [asdict(tag) for tag in workspace.class_types],
        "content_categories": [asdict(tag) for tag in workspace.content_categories],
        "objectives": [asdict(o) for o in workspace.objective_slots()],
    }


@app.patch("/api/class-registry/{enrollment_id}/drafts/{session_id}")
async def update_draft(
    enrollment_id: str,
    session_id: str,
    update: DraftUpdate,
    user: dict = Depends(get_current_user),
    store: RegistryStore = Depends(get_registry_store),
):
    """Merge field edits into the unsaved draft of a session"""
    workspace = await get_workspace(enrollment_id, user, store)
    fields = update.model_dump(exclude_unset=True)
    if "note" in fields:
        fields["note"] = workspace.notes.from_payload(fields["note"])
    workspace.edit(session_id, **fields)
    return session_view(workspace, workspace.get_session(session_id))


@app.delete("/api/class-registry/{enrollment_id}/drafts/{session_id}")
async def discard_draft(
    enrollment_id: str,
    session_id: str,
    user: dict = Depends(get_current_user),
    store: RegistryStore = Depends(get_registry_store),
):
    """Drop the unsaved edits of a session"""
    workspace = await get_workspace(enrollment_id, user, store)
    workspace.discard(session_id)
    return {"status": "discarded", "session_id": session_id}


@app.post("/api/class-registry/{enrollment_id}/sessions/{session_id}/save")
async def save_session(
    enrollment_id: str,
    session_id: str,
    request: SaveRequest,
    user: dict = Depends(get_current_user),
    store: RegistryStore = Depends(get_registry_store),
):
    """Save one session; professors must confirm saves that finalize it"""
    logger.request("POST", f"/api/class-registry/{enrollment_id}/sessions/{session_id}/save",
                   user_id=user.get("id"), data={"confirmed": request.confirmed})
    workspace = await get_workspace(enrollment_id, user, store)
    result = await workspace.save_session(session_id, confirmed=request.confirmed)
    return save_response(result)


@app.post("/api/class-registry/{enrollment_id}/save")
async def save_all(
    enrollment_id: str,
    request: SaveRequest,
    user: dict = Depends(get_current_user),
    store: RegistryStore = Depends(get_registry_store),
):
    """Save every session with unsaved edits"""
    logger.request("POST", f"/api/class-registry/{enrollment_id}/save",
                   user_id=user.get("id"), data={"confirmed": request.confirmed})
    workspace = await get_workspace(enrollment_id, user, store)
    result = await workspace.save_all(confirmed=request.confirmed)
    if result.errors:
        logger.warning("Save-all finished with errors", data={"errors": result.errors})
    return save_response(result)


@app.put("/api/class-registry/{enrollment_id}/sessions/{session_id}/note")
async def save_note(
    enrollment_id: str,
    session_id: str,
    request: NoteRequest,
    user: dict = Depends(get_current_user),
    store: RegistryStore = Depends(get_registry_store),
):
    """Persist only the note of a session"""
    workspace = await get_workspace(enrollment_id, user, store)
    await workspace.save_note(session_id, request.content, request.student_visible)
    return session_view(workspace, workspace.get_session(session_id))


@app.post("/api/class-registry/{enrollment_id}/sessions/{session_id}/reschedule")
async def create_reschedule(
    enrollment_id: str,
    session_id: str,
    request: RescheduleRequest,
    user: dict = Depends(get_current_user),
    store: RegistryStore = Depends(get_registry_store),
):
    """Create a reschedule of a session on a new date"""
    logger.request("POST", f"/api/class-registry/{enrollment_id}/sessions/{session_id}/reschedule",
                   user_id=user.get("id"), data={"class_date": str(request.class_date)})
    workspace = await get_workspace(enrollment_id, user, store)
    outcome = await workspace.create_reschedule(session_id, request.class_date)
    return {
        "message": outcome.reminder,
        "new_session": session_view(workspace, outcome.new_session),
        "original_session": session_view(workspace, outcome.original_session),
        "sessions": [session_view(workspace, s) for s in workspace.sessions],
    }


@app.get("/api/class-registry/{enrollment_id}/history")
async def get_history(
    enrollment_id: str,
    user: dict = Depends(get_current_user),
    store: RegistryStore = Depends(get_registry_store),
):
    """Class history: originals newest first, each followed by its reschedules"""
    workspace = await get_workspace(enrollment_id, user, store)
    await workspace.fetch_sessions()
    return {"sessions": [session_view(workspace, s) for s in workspace.class_history()]}


@app.get("/api/class-registry/{enrollment_id}/objectives")
async def get_objectives(
    enrollment_id: str,
    user: dict = Depends(get_current_user),
    store: RegistryStore = Depends(get_registry_store),
):
    """The four active objective slots (placeholders included)"""
    workspace = await get_workspace(enrollment_id, user, store)
    await workspace.fetch_objectives()
    return {"objectives": [asdict(o) for o in workspace.objective_slots()]}


@app.get("/api/class-registry/{enrollment_id}/objectives/history")
async def get_objective_history(
    enrollment_id: str,
    user: dict = Depends(get_current_user),
    store: RegistryStore = Depends(get_registry_store),
):
    """Every objective of the enrollment, newest first"""
    workspace = await get_workspace(enrollment_id, user, store)
    await workspace.fetch_objectives()
    return {"objectives": [asdict(o) for o in workspace.objective_history()]}


@app.put("/api/class-registry/{enrollment_id}/objectives/{objective_id}")
async def save_objective(
    enrollment_id: str,
    objective_id: str,
    request: ObjectiveRequest,
    user: dict = Depends(get_current_user),
    store: RegistryStore = Depends(get_registry_store),
):
    """Create (temporary id) or update an objective"""
    workspace = await get_workspace(enrollment_id, user, store)
    saved = await workspace.save_objective(objective_id, request.model_dump())
    return {
        "objective": asdict(saved),
        "objectives": [asdict(o) for o in workspace.objective_slots()],
    }


@app.get("/api/class-registry/{enrollment_id}/evaluations")
async def get_evaluations(
    enrollment_id: str,
    user: dict = Depends(get_current_user),
    store: RegistryStore = Depends(get_registry_store),
):
    """Evaluations of the enrollment's sessions"""
    workspace = await get_workspace(enrollment_id, user, store)
    evaluations = await workspace.fetch_evaluations()
    return {"evaluations": [asdict(e) for e in evaluations]}


@app.post("/api/class-registry/{enrollment_id}/sessions/{session_id}/evaluation")
async def create_evaluation(
    enrollment_id: str,
    session_id: str,
    request: EvaluationRequest,
    user: dict = Depends(get_current_user),
    store: RegistryStore = Depends(get_registry_store),
):
    """Create the evaluation of a session (at most one per session)"""
    workspace = await get_workspace(enrollment_id, user, store)
    evaluation = await workspace.create_evaluation(session_id, request.model_dump(exclude_unset=True))
    return {"evaluation": asdict(evaluation)}


@app.put("/api/class-registry/{enrollment_id}/evaluations/{evaluation_id}")
async def update_evaluation(
    enrollment_id: str,
    evaluation_id: str,
    request: EvaluationRequest,
    user: dict = Depends(get_current_user),
    store: RegistryStore = Depends(get_registry_store),
):
    """Update an evaluation; its date never changes"""
    workspace = await get_workspace(enrollment_id, user, store)
    evaluation = await workspace.update_evaluation(evaluation_id, request.model_dump(exclude_unset=True))
    return {"evaluation": asdict(evaluation)}


if __name__ == "__main__":
    import uvicorn

    def handle_exit(*args):
        """Handle graceful shutdown."""
        logger.section("SERVER SHUTDOWN", {"reason": "signal received"})
        sys.exit(0)

    signal.signal(signal.SIGINT, handle_exit)
    signal.signal(signal.SIGTERM, handle_exit)

    try:
        uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
    except KeyboardInterrupt:
        logger.info("🛑 Server stopped.")
        sys.exit(0)
