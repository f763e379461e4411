"""Domain models for persistent classrooms and their live sessions."""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from pydantic import Field

from timeout_app.domain.base import DocumentModel, ParamsModel


class ClassroomStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    ARCHIVED = "archived"


class SessionStatus(str, Enum):
    SCHEDULED = "scheduled"
    LIVE = "live"
    ENDED = "ended"
    CANCELLED = "cancelled"


class ClassroomParticipantRole(str, Enum):
    TEACHER = "teacher"
    STUDENT = "student"


class ConnectionStatus(str, Enum):
    EXCELLENT = "excellent"
    GOOD = "good"
    POOR = "poor"
    DISCONNECTED = "disconnected"


class Classroom(DocumentModel):
    """Persistent classroom owned by one teacher.

    The teacher is never in ``enrolled_students`` and ``current_students``
    never exceeds ``max_students``.
    """
    id: str
    name: str
    subject: str
    teacher_id: str
    teacher_name: str = "Anonymous"
    teacher_avatar: str = ""
    description: Optional[str] = None
    max_students: int
    current_students: int = 0
    enrolled_students: List[str] = Field(default_factory=list)
    status: ClassroomStatus = ClassroomStatus.ACTIVE
    is_public: bool = True
    created_at: datetime
    updated_at: datetime

    def to_public(self) -> Dict[str, Any]:
        """Document without student ids, for discovery listings."""
        data = self.to_document()
        data.pop("enrolledStudents", None)
        data["enrolledStudentsCount"] = self.current_students
        return data


class SessionSettings(DocumentModel):
    allow_student_video: bool
    allow_student_audio: bool
    allow_student_chat: bool
    auto_mute_on_join: bool
    max_participants: int
    require_approval: bool


class SessionParticipant(DocumentModel):
    """A user's record in a live session; kept after they leave."""
    user_id: str
    display_name: str = "Anonymous"
    avatar_url: str = ""
    role: ClassroomParticipantRole
    joined_at: datetime
    left_at: Optional[datetime] = None
    video_enabled: bool = False
    audio_enabled: bool = False
    is_active: bool = True
    connection_status: ConnectionStatus = ConnectionStatus.GOOD


class ClassSession(DocumentModel):
    """Live session under a classroom.

    ``participants`` holds only the users currently in the session while
    ``participant_details`` has an entry for everyone who ever joined.
    """
    id: str
    classroom_id: str
    teacher_id: str
    teacher_name: str = "Anonymous"
    title: str
    start_time: datetime
    end_time: Optional[datetime] = None
    status: SessionStatus
    participants: List[str] = Field(default_factory=list)
    participant_details: Dict[str, SessionParticipant] = Field(default_factory=dict)
    video_enabled: bool = True
    chat_enabled: bool = True
    settings: SessionSettings
    created_at: datetime
    updated_at: datetime


class CreateClassroomParams(ParamsModel):
    name: str = ""
    subject: str = ""
    description: Optional[str] = None
    max_students: Optional[int] = None
    is_public: bool = True


class SessionSettingsPatch(ParamsModel):
    allow_student_video: Optional[bool] = None
    allow_student_audio: Optional[bool] = None
    allow_student_chat: Optional[bool] = None
    auto_mute_on_join: Optional[bool] = None
    max_participants: Optional[int] = None
    require_approval: Optional[bool] = None


class StartSessionParams(ParamsModel):
    title: Optional[str] = None
    settings: Optional[SessionSettingsPatch] = None


class SessionParticipantPatch(ParamsModel):
    """The only participant fields a user may change on their own record."""
    video_enabled: Optional[bool] = None
    audio_enabled: Optional[bool] = None
    connection_status: Optional[ConnectionStatus] = None
