"""Domain models for ad-hoc study rooms."""
from datetime import datetime
from enum import Enum
from typing import Dict, Optional
from pydantic import Field

from timeout_app.domain.base import DocumentModel, ParamsModel


class RoomStatus(str, Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    PAUSED = "paused"
    ENDED = "ended"


class RoomVisibility(str, Enum):
    PUBLIC = "public"
    PRIVATE = "private"


class ParticipantRole(str, Enum):
    HOST = "host"
    PARTICIPANT = "participant"


class TimerPhase(str, Enum):
    FOCUS = "focus"
    SHORT_BREAK = "shortBreak"
    LONG_BREAK = "longBreak"


# Allowed status changes requested by the host. Ending through
# leave_room bypasses this table (the last participant leaving).
ROOM_TRANSITIONS = {
    RoomStatus.WAITING: {RoomStatus.ACTIVE, RoomStatus.ENDED},
    RoomStatus.ACTIVE: {RoomStatus.PAUSED, RoomStatus.ENDED},
    RoomStatus.PAUSED: {RoomStatus.ACTIVE, RoomStatus.ENDED},
    RoomStatus.ENDED: set(),
}


class RoomParticipant(DocumentModel):
    user_id: str
    display_name: str = "Anonymous"
    avatar_url: str = ""
    role: ParticipantRole
    joined_at: datetime
    is_active: bool = True
    study_time: int = 0  # seconds


class RoomTimer(DocumentModel):
    """Pomodoro timer state; durations in seconds."""
    focus_time: int
    short_break_time: int
    long_break_time: int
    current_session: int = 1
    total_sessions: int = 4
    current_phase: TimerPhase = TimerPhase.FOCUS
    time_remaining: int
    is_running: bool = False
    started_at: Optional[datetime] = None
    paused_at: Optional[datetime] = None


class RoomSettings(DocumentModel):
    auto_start_breaks: bool = True
    allow_late_join: bool = True
    show_participant_progress: bool = True
    mute_chat: bool = False


class RoomStats(DocumentModel):
    total_focus_time: int = 0
    total_break_time: int = 0
    sessions_completed: int = 0
    participant_count: int = 1  # everyone who ever joined, host included


class Room(DocumentModel):
    """Ephemeral study room.

    ``current_participants`` always equals ``len(participants)`` and never
    exceeds ``max_participants``. While the room is not ended exactly one
    participant has the host role. An ended room keeps its last participant
    map as a historical record.
    """
    id: str
    name: str
    description: str = ""
    subject: str = ""
    host_id: str
    host_name: str = "Anonymous"
    host_avatar: str = ""
    visibility: RoomVisibility = RoomVisibility.PUBLIC
    status: RoomStatus = RoomStatus.WAITING
    max_participants: int
    current_participants: int
    participants: Dict[str, RoomParticipant] = Field(default_factory=dict)
    timer: RoomTimer
    settings: RoomSettings = Field(default_factory=RoomSettings)
    stats: RoomStats = Field(default_factory=RoomStats)
    created_at: datetime
    updated_at: datetime
    ended_at: Optional[datetime] = None


class CreateRoomParams(ParamsModel):
    """Room creation input; timer durations in minutes."""
    name: str = ""
    description: str = ""
    subject: str = ""
    visibility: str = RoomVisibility.PUBLIC.value
    max_participants: Optional[int] = None
    focus_time: Optional[int] = None
    short_break_time: Optional[int] = None
    long_break_time: Optional[int] = None
    settings: Optional[RoomSettings] = None
