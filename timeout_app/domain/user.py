"""Domain models for user profiles and identity payloads."""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Literal, Optional
from pydantic import Field

from timeout_app.domain.base import DocumentModel, ParamsModel


class UserRole(str, Enum):
    STUDENT = "student"
    TEACHER = "teacher"
    ADMIN = "admin"


# Roles a user may pick for themselves during onboarding
SELF_ASSIGNABLE_ROLES = (UserRole.STUDENT, UserRole.TEACHER)


class StudyStats(DocumentModel):
    """Study counters, all in minutes or counts.

    ``total_study_time``, ``sessions_completed`` and ``longest_streak`` only
    ever grow. ``current_streak`` and ``weekly_progress`` grow the same way
    but have explicit reset operations.
    """
    total_study_time: int = 0
    sessions_completed: int = 0
    current_streak: int = 0
    longest_streak: int = 0
    weekly_goal: int = 0
    weekly_progress: int = 0


class UserPreferences(DocumentModel):
    default_focus_time: int = 25
    short_break_time: int = 5
    long_break_time: int = 15
    sessions_before_long_break: int = 4
    sound_enabled: bool = True
    notifications_enabled: bool = True
    theme: Literal["light", "dark", "system"] = "system"


class UserProfile(DocumentModel):
    """Stored user profile, one per identity.

    Attributes:
        user_id: Identity-provider user id (immutable)
        email: Primary email (immutable once set)
        role: Unset until onboarding, then fixed
        is_active: False once the identity is deleted (soft delete)
    """
    user_id: str
    email: str = ""
    first_name: str = ""
    last_name: str = ""
    display_name: str = "Anonymous"
    avatar_url: str = ""
    role: Optional[UserRole] = None
    created_at: datetime
    updated_at: datetime
    is_active: bool = True
    deleted_at: Optional[datetime] = None
    study_stats: StudyStats = Field(default_factory=StudyStats)
    preferences: UserPreferences = Field(default_factory=UserPreferences)


class IdentityPayload(ParamsModel):
    """User fields supplied by the identity provider on sign-in.

    Example:
        {"id": "user_2abc", "email": "ada@example.com", "firstName": "Ada",
         "lastName": "Lovelace", "avatarUrl": "https://img.example/ada.png"}
    """
    id: str
    email: str = ""
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    avatar_url: Optional[str] = None
    role: Optional[UserRole] = None


class PreferencesUpdate(ParamsModel):
    default_focus_time: Optional[int] = Field(default=None, ge=5, le=480)
    short_break_time: Optional[int] = Field(default=None, ge=1, le=60)
    long_break_time: Optional[int] = Field(default=None, ge=1, le=120)
    sessions_before_long_break: Optional[int] = Field(default=None, ge=1, le=12)
    sound_enabled: Optional[bool] = None
    notifications_enabled: Optional[bool] = None
    theme: Optional[Literal["light", "dark", "system"]] = None


class ProfileMergeResult(DocumentModel):
    """Outcome of merging an identity payload into a stored profile.

    ``updates`` maps dotted document paths to new values. It is empty when
    nothing substantive changed, in which case nothing is written.
    """
    created: bool
    updates: Dict[str, Any] = Field(default_factory=dict)
