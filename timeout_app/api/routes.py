"""FastAPI routes for profiles, study rooms, classrooms and live sessions.

Every route resolves the caller, calls exactly one manager operation and
returns its ``OperationResult`` envelope with the matching HTTP status.
"""
from typing import Any, Dict, Optional
from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from timeout_app.core.auth import get_current_user_id, require_webhook_key
from timeout_app.core.errors import OperationResult
from timeout_app.core.logging import get_logger
from timeout_app.domain.user import IdentityPayload
from timeout_app.services.classrooms import ClassroomManager
from timeout_app.services.profiles import ProfileService
from timeout_app.services.rooms import RoomManager

logger = get_logger(__name__)
router = APIRouter()


def respond(result: OperationResult) -> JSONResponse:
    return JSONResponse(status_code=result.status_code, content=result.to_response())


def get_profiles(request: Request) -> ProfileService:
    return request.app.state.profiles


def get_rooms(request: Request) -> RoomManager:
    return request.app.state.rooms


def get_classrooms(request: Request) -> ClassroomManager:
    return request.app.state.classrooms


# Request bodies

class RequestBody(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ProfileSyncRequest(RequestBody):
    """Identity fields the client SDK reports for the signed-in user."""
    email: str = ""
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    avatar_url: Optional[str] = None


class IdentityEvent(BaseModel):
    """Identity-provider webhook envelope, e.g. ``{"type": "user.created", "data": {...}}``."""
    type: str
    data: Dict[str, Any] = Field(default_factory=dict)


class RoleRequest(RequestBody):
    role: str


class StudySessionRequest(RequestBody):
    study_time: Any = None
    session_completed: Any = False


class ActivityRequest(RequestBody):
    is_active: Any = None


class RoomStatusRequest(RequestBody):
    status: str


# -----------------
# PROFILES
# -----------------

@router.post("/profiles/sync")
def sync_profile(
    body: ProfileSyncRequest,
    user_id: str = Depends(get_current_user_id),
    profiles: ProfileService = Depends(get_profiles),
):
    """Create or merge the caller's profile on sign-in."""
    payload = IdentityPayload(id=user_id, **body.model_dump())
    return respond(profiles.sync_identity(payload))


@router.post("/webhooks/identity", dependencies=[Depends(require_webhook_key)])
def identity_webhook(event: IdentityEvent, profiles: ProfileService = Depends(get_profiles)):
    """Identity-provider webhook: user.created, user.updated, user.deleted."""
    logger.info(f"Identity event received: {event.type}")
    return respond(profiles.handle_identity_event(event.type, event.data))


@router.get("/profiles/me")
def get_my_profile(user_id: str = Depends(get_current_user_id), profiles: ProfileService = Depends(get_profiles)):
    return respond(profiles.get_profile(user_id))


@router.post("/profiles/me/role")
def set_my_role(
    body: RoleRequest,
    user_id: str = Depends(get_current_user_id),
    profiles: ProfileService = Depends(get_profiles),
):
    return respond(profiles.set_role(user_id, body.role))


@router.patch("/profiles/me/preferences")
def update_my_preferences(
    body: Dict[str, Any],
    user_id: str = Depends(get_current_user_id),
    profiles: ProfileService = Depends(get_profiles),
):
    return respond(profiles.update_preferences(user_id, body))


@router.post("/profiles/me/study-sessions")
def record_study_session(
    body: StudySessionRequest,
    user_id: str = Depends(get_current_user_id),
    profiles: ProfileService = Depends(get_profiles),
):
    return respond(profiles.record_study_session(user_id, body.study_time, body.session_completed))


@router.post("/profiles/me/study-stats/reset-weekly")
def reset_weekly_progress(
    user_id: str = Depends(get_current_user_id),
    profiles: ProfileService = Depends(get_profiles),
):
    """Start a new week: zero ``weeklyProgress``, keep the totals."""
    return respond(profiles.reset_weekly_progress(user_id))


@router.post("/profiles/me/study-stats/reset-streak")
def reset_current_streak(
    user_id: str = Depends(get_current_user_id),
    profiles: ProfileService = Depends(get_profiles),
):
    return respond(profiles.reset_current_streak(user_id))


# -----------------
# STUDY ROOMS
# -----------------

@router.post("/rooms")
def create_room(
    body: Dict[str, Any],
    user_id: str = Depends(get_current_user_id),
    rooms: RoomManager = Depends(get_rooms),
):
    return respond(rooms.create_room(user_id, body))


@router.get("/rooms/public")
def list_public_rooms(
    limit: Optional[int] = Query(default=None),
    subject: Optional[str] = Query(default=None),
    user_id: str = Depends(get_current_user_id),
    rooms: RoomManager = Depends(get_rooms),
):
    return respond(rooms.list_public_rooms(limit=limit, subject=subject))


@router.get("/rooms/{room_id}")
def get_room_details(
    room_id: str,
    user_id: str = Depends(get_current_user_id),
    rooms: RoomManager = Depends(get_rooms),
):
    return respond(rooms.get_room_details(room_id, user_id))


@router.post("/rooms/{room_id}/join")
def join_room(room_id: str, user_id: str = Depends(get_current_user_id), rooms: RoomManager = Depends(get_rooms)):
    return respond(rooms.join_room(room_id, user_id))


@router.post("/rooms/{room_id}/leave")
def leave_room(room_id: str, user_id: str = Depends(get_current_user_id), rooms: RoomManager = Depends(get_rooms)):
    return respond(rooms.leave_room(room_id, user_id))


@router.post("/rooms/{room_id}/activity")
def update_activity(
    room_id: str,
    body: ActivityRequest,
    user_id: str = Depends(get_current_user_id),
    rooms: RoomManager = Depends(get_rooms),
):
    return respond(rooms.update_participant_activity(room_id, user_id, body.is_active))


@router.post("/rooms/{room_id}/status")
def update_room_status(
    room_id: str,
    body: RoomStatusRequest,
    user_id: str = Depends(get_current_user_id),
    rooms: RoomManager = Depends(get_rooms),
):
    return respond(rooms.update_room_status(room_id, user_id, body.status))


# -----------------
# CLASSROOMS
# -----------------

@router.post("/classrooms")
def create_classroom(
    body: Dict[str, Any],
    user_id: str = Depends(get_current_user_id),
    classrooms: ClassroomManager = Depends(get_classrooms),
):
    return respond(classrooms.create_classroom(user_id, body))


@router.get("/classrooms/mine")
def get_my_classrooms(
    user_id: str = Depends(get_current_user_id),
    classrooms: ClassroomManager = Depends(get_classrooms),
):
    return respond(classrooms.get_my_classrooms(user_id))


@router.get("/classrooms/available")
def get_available_classrooms(
    subject: Optional[str] = Query(default=None),
    limit: int = Query(default=20),
    offset: int = Query(default=0),
    user_id: str = Depends(get_current_user_id),
    classrooms: ClassroomManager = Depends(get_classrooms),
):
    return respond(classrooms.get_available_classrooms(subject=subject, limit=limit, offset=offset))


@router.post("/classrooms/{classroom_id}/join")
def join_classroom(
    classroom_id: str,
    user_id: str = Depends(get_current_user_id),
    classrooms: ClassroomManager = Depends(get_classrooms),
):
    return respond(classrooms.join_classroom(classroom_id, user_id))


@router.post("/classrooms/{classroom_id}/leave")
def leave_classroom(
    classroom_id: str,
    user_id: str = Depends(get_current_user_id),
    classrooms: ClassroomManager = Depends(get_classrooms),
):
    return respond(classrooms.leave_classroom(classroom_id, user_id))


@router.post("/classrooms/{classroom_id}/sessions")
def start_class_session(
    classroom_id: str,
    body: Optional[Dict[str, Any]] = None,
    user_id: str = Depends(get_current_user_id),
    classrooms: ClassroomManager = Depends(get_classrooms),
):
    return respond(classrooms.start_class_session(classroom_id, user_id, body))


# -----------------
# LIVE SESSIONS
# -----------------

@router.get("/sessions/{session_id}")
def get_live_session(
    session_id: str,
    user_id: str = Depends(get_current_user_id),
    classrooms: ClassroomManager = Depends(get_classrooms),
):
    return respond(classrooms.get_live_session_details(session_id, user_id))


@router.post("/sessions/{session_id}/end")
def end_class_session(
    session_id: str,
    user_id: str = Depends(get_current_user_id),
    classrooms: ClassroomManager = Depends(get_classrooms),
):
    return respond(classrooms.end_class_session(session_id, user_id))


@router.post("/sessions/{session_id}/join")
def join_live_session(
    session_id: str,
    user_id: str = Depends(get_current_user_id),
    classrooms: ClassroomManager = Depends(get_classrooms),
):
    return respond(classrooms.join_live_session(session_id, user_id))


@router.post("/sessions/{session_id}/leave")
def leave_live_session(
    session_id: str,
    user_id: str = Depends(get_current_user_id),
    classrooms: ClassroomManager = Depends(get_classrooms),
):
    return respond(classrooms.leave_live_session(session_id, user_id))


@router.patch("/sessions/{session_id}/participants/me")
def update_session_participant(
    session_id: str,
    body: Dict[str, Any],
    user_id: str = Depends(get_current_user_id),
    classrooms: ClassroomManager = Depends(get_classrooms),
):
    return respond(classrooms.update_session_participant(session_id, user_id, body))
