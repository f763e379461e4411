"""Pure validation predicates for rooms, classrooms and live sessions.

Nothing here touches the store. The ``*_join_error`` helpers name the
first rule a join breaks; the managers raise that error and the ``can_*``
predicates just test for its absence. Limits come from the ``Settings`` object
handed in by the caller, so every function can be unit tested on plain
models.
"""
import re
from datetime import datetime
from typing import List, Optional, Union
from pydantic import BaseModel, Field

from timeout_app.core.config import Settings
from timeout_app.core.errors import (
    Conflict,
    EngineError,
    FailedPrecondition,
    PermissionDenied,
    ResourceExhausted,
)
from timeout_app.domain.classroom import (
    ClassSession,
    Classroom,
    ClassroomStatus,
    CreateClassroomParams,
    SessionStatus,
)
from timeout_app.domain.room import CreateRoomParams, Room, RoomStatus, RoomVisibility
from timeout_app.utils.clock import minutes_between

IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z0-9_\-:@]{1,128}$")


class ValidationResult(BaseModel):
    valid: bool
    errors: List[str] = Field(default_factory=list)


def _is_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def is_valid_name(name: Optional[str], max_length: int) -> bool:
    if not isinstance(name, str):
        return False
    trimmed = name.strip()
    return 0 < len(trimmed) <= max_length


def is_valid_subject(subject: Optional[str], max_length: int) -> bool:
    if not isinstance(subject, str):
        return False
    trimmed = subject.strip()
    return 0 < len(trimmed) <= max_length


def is_valid_description(description: Optional[str], max_length: int) -> bool:
    """Descriptions are optional; only the length is checked."""
    if not description:
        return True
    return isinstance(description, str) and len(description) <= max_length


def is_valid_max_count(count, minimum: int, maximum: int) -> bool:
    return _is_int(count) and minimum <= count <= maximum


def is_valid_identifier(value) -> bool:
    """Document and user ids must be safe to use as a dotted-path segment."""
    return isinstance(value, str) and bool(IDENTIFIER_PATTERN.match(value))


def is_valid_session_title(title: Optional[str], max_length: int) -> bool:
    return is_valid_name(title, max_length)


def room_join_error(room: Room, user_id: str) -> Optional[EngineError]:
    """Why ``user_id`` cannot join ``room`` right now, or None.

    Checked in order: ended, already joined, full, late join disallowed.
    """
    if room.status == RoomStatus.ENDED:
        return FailedPrecondition("Room has ended")
    if user_id in room.participants:
        return Conflict("Already in this room")
    if room.current_participants >= room.max_participants:
        return ResourceExhausted("Room is full")
    if room.status == RoomStatus.ACTIVE and not room.settings.allow_late_join:
        return FailedPrecondition("Late joining is not allowed")
    return None


def classroom_join_error(classroom: Classroom, user_id: str) -> Optional[EngineError]:
    """Why ``user_id`` cannot enroll in ``classroom``, or None.

    The classroom's own teacher and users already enrolled are refused
    first, then inactive or private classrooms, then a full one.
    """
    if user_id == classroom.teacher_id:
        return FailedPrecondition("Teachers cannot join their own classroom")
    if user_id in classroom.enrolled_students:
        return Conflict("Already enrolled in this classroom")
    if classroom.status != ClassroomStatus.ACTIVE or not classroom.is_public:
        return FailedPrecondition("Cannot join this classroom")
    if classroom.current_students >= classroom.max_students:
        return ResourceExhausted("Classroom is full")
    return None


def can_join(entity: Union[Room, Classroom], user_id: str) -> bool:
    """Whether ``user_id`` may join the room or enroll in the classroom now."""
    if isinstance(entity, Room):
        return room_join_error(entity, user_id) is None
    return classroom_join_error(entity, user_id) is None


def can_manage(entity: Union[Room, Classroom, ClassSession], user_id: str) -> bool:
    """Hosts manage open rooms; teachers manage their classrooms and sessions."""
    if isinstance(entity, Room):
        return entity.host_id == user_id and entity.status != RoomStatus.ENDED
    return entity.teacher_id == user_id


def can_start_session(classroom: Classroom, user_id: str) -> bool:
    return classroom.teacher_id == user_id and classroom.status == ClassroomStatus.ACTIVE


def is_member(classroom: Classroom, user_id: str) -> bool:
    return user_id == classroom.teacher_id or user_id in classroom.enrolled_students


def session_capacity(session: ClassSession, settings: Settings) -> int:
    return min(session.settings.max_participants, settings.max_participants_per_session)


def session_join_error(
    session: ClassSession,
    classroom: Classroom,
    user_id: str,
    settings: Settings,
    now: Optional[datetime] = None,
) -> Optional[EngineError]:
    """Why ``user_id`` cannot join the live session, or None.

    Checked in order: session live, caller teaches or is enrolled, maximum
    duration not passed (only when ``now`` is given), not already in, a
    seat is free.
    """
    if session.status != SessionStatus.LIVE:
        return FailedPrecondition("Session is not currently live")
    if not is_member(classroom, user_id):
        return PermissionDenied("Cannot join this session")
    if now is not None and has_exceeded_max_duration(session, now, settings.max_session_duration_minutes):
        return FailedPrecondition("Session has exceeded its maximum duration")
    if user_id in session.participants:
        return Conflict("Already in this session")
    if len(session.participants) >= session_capacity(session, settings):
        return ResourceExhausted("Session is full")
    return None


def can_join_session(
    session: ClassSession,
    classroom: Classroom,
    user_id: str,
    settings: Settings,
    now: Optional[datetime] = None,
) -> bool:
    return session_join_error(session, classroom, user_id, settings, now) is None


def session_duration_minutes(session: ClassSession, now: datetime) -> int:
    """Minutes from start to end, or to ``now`` while the session runs."""
    return minutes_between(session.start_time, session.end_time or now)


def has_exceeded_max_duration(session: ClassSession, now: datetime, max_minutes: int) -> bool:
    return session_duration_minutes(session, now) > max_minutes


def validate_create_room(params: CreateRoomParams, settings: Settings) -> ValidationResult:
    errors = []

    if not is_valid_name(params.name, settings.max_room_name_length):
        errors.append("Room name is required and must be at most "
                      f"{settings.max_room_name_length} characters")

    if not is_valid_description(params.description, settings.max_room_description_length):
        errors.append("Description is too long")

    if params.subject and len(params.subject.strip()) > settings.max_room_subject_length:
        errors.append("Subject is too long")

    if params.visibility not in (RoomVisibility.PUBLIC.value, RoomVisibility.PRIVATE.value):
        errors.append("Visibility must be 'public' or 'private'")

    max_participants = params.max_participants
    if max_participants is None:
        max_participants = settings.default_room_participants
    if not is_valid_max_count(max_participants, settings.min_room_participants, settings.max_room_participants):
        errors.append(f"Max participants must be between {settings.min_room_participants} "
                      f"and {settings.max_room_participants}")

    if params.focus_time is not None and not is_valid_max_count(
            params.focus_time, settings.min_timer_minutes, settings.max_timer_minutes):
        errors.append(f"Focus time must be between {settings.min_timer_minutes} "
                      f"and {settings.max_timer_minutes} minutes")

    for label, minutes in (("Short break", params.short_break_time), ("Long break", params.long_break_time)):
        if minutes is not None and not is_valid_max_count(minutes, 1, settings.max_timer_minutes):
            errors.append(f"{label} must be between 1 and {settings.max_timer_minutes} minutes")

    return ValidationResult(valid=not errors, errors=errors)


def validate_create_classroom(params: CreateClassroomParams, settings: Settings) -> ValidationResult:
    errors = []

    if not is_valid_name(params.name, settings.max_classroom_name_length):
        errors.append("Invalid classroom name")

    if not is_valid_subject(params.subject, settings.max_subject_length):
        errors.append("Invalid subject")

    if not is_valid_description(params.description, settings.max_description_length):
        errors.append("Description is too long")

    max_students = params.max_students
    if max_students is None:
        max_students = settings.default_max_students
    if not is_valid_max_count(max_students, settings.min_students, settings.max_students):
        errors.append("Invalid maximum students count")

    return ValidationResult(valid=not errors, errors=errors)
