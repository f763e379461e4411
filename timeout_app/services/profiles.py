"""Profile merge engine and profile operations.

Every sign-in hands the identity provider's view of the user to
``merge_profile``. Stored fields fall into three classes:

- Immutable: ``userId``, ``email`` (once set), ``createdAt`` and the
  cumulative study counters. Never overwritten; conflicting incoming values
  are logged and dropped.
- Updatable from the identity source: first/last name, the display name
  derived from them, avatar url. Written only when they differ.
- Fill-if-missing: ``role`` (only while unset), ``isActive``, every
  ``preferences`` key, ``studyStats.weeklyGoal`` and
  ``studyStats.weeklyProgress``. Written only when the stored value is absent.

An empty update set means nothing is written, so repeating a sign-in with
the same payload is a no-op.
"""
from datetime import datetime
from typing import Any, Dict, Optional, Union
from pydantic.alias_generators import to_camel

from timeout_app.core.config import Settings
from timeout_app.core.errors import (
    FailedPrecondition,
    InvalidArgument,
    NotFound,
    OperationResult,
    StatsInvariantError,
    operation,
)
from timeout_app.core.logging import get_logger
from timeout_app.domain.base import coerce_params
from timeout_app.domain.user import (
    SELF_ASSIGNABLE_ROLES,
    IdentityPayload,
    PreferencesUpdate,
    ProfileMergeResult,
    StudyStats,
    UserPreferences,
    UserProfile,
    UserRole,
)
from timeout_app.infrastructure.store import DocumentStore, Transaction, apply_field_updates
from timeout_app.services.validation import is_valid_identifier
from timeout_app.utils.clock import Clock, to_iso, utcnow
from timeout_app.utils.text import display_name

logger = get_logger(__name__)

_MISSING = object()

# Counters that may never decrease, whatever the operation
CUMULATIVE_STATS = ("total_study_time", "sessions_completed", "longest_streak")

# Counters that only decrease through an explicit reset operation
RESETTABLE_STATS = ("current_streak", "weekly_progress")


def _get_path(document: Dict[str, Any], path: str) -> Any:
    current: Any = document
    for key in path.split("."):
        if not isinstance(current, dict) or key not in current or current[key] is None:
            return _MISSING
        current = current[key]
    return current


def _new_profile(payload: IdentityPayload, now: datetime) -> UserProfile:
    return UserProfile(
        user_id=payload.id,
        email=payload.email,
        first_name=payload.first_name or "",
        last_name=payload.last_name or "",
        display_name=display_name(payload.first_name, payload.last_name),
        avatar_url=payload.avatar_url or "",
        role=payload.role,
        created_at=now,
        updated_at=now,
    )


def merge_profile(
    payload: IdentityPayload,
    existing: Optional[Dict[str, Any]],
    now: datetime,
) -> ProfileMergeResult:
    """Compute the safe update set for a sign-in.

    Args:
        payload: Identity-provider user fields
        existing: Stored profile document, or None on first sign-in
        now: Timestamp for ``createdAt``/``updatedAt``

    Returns:
        ``created=True`` with the full new document, or ``created=False``
        with dotted-path updates (empty when nothing changed)
    """
    if existing is None:
        return ProfileMergeResult(created=True, updates=_new_profile(payload, now).to_document())

    updates: Dict[str, Any] = {}
    context = {"user_id": payload.id}

    # Immutable fields: observe, never apply
    stored_id = existing.get("userId")
    if stored_id and stored_id != payload.id:
        logger.warning(f"Ignoring identity id change {stored_id} -> {payload.id}", extra=context)

    stored_email = existing.get("email") or ""
    if not stored_email and payload.email:
        updates["email"] = payload.email
    elif payload.email and payload.email != stored_email:
        logger.warning("Ignoring email change for existing profile", extra=context)

    if _get_path(existing, "createdAt") is _MISSING:
        updates["createdAt"] = to_iso(now)

    # Updatable from the identity source (None means "not supplied")
    for field, value in (
        ("firstName", payload.first_name),
        ("lastName", payload.last_name),
        ("avatarUrl", payload.avatar_url),
    ):
        if value is not None and value != existing.get(field):
            updates[field] = value

    new_display_name = display_name(
        updates.get("firstName", existing.get("firstName")),
        updates.get("lastName", existing.get("lastName")),
    )
    if new_display_name != existing.get("displayName"):
        updates["displayName"] = new_display_name

    # Fill if missing
    stored_role = existing.get("role")
    if payload.role is not None:
        if stored_role is None:
            updates["role"] = payload.role.value
        elif stored_role != payload.role.value:
            logger.warning(f"Ignoring role change {stored_role} -> {payload.role.value}", extra=context)

    if _get_path(existing, "isActive") is _MISSING:
        updates["isActive"] = True

    default_preferences = UserPreferences().to_document()
    if not isinstance(existing.get("preferences"), dict):
        updates["preferences"] = default_preferences
    else:
        for key, value in default_preferences.items():
            if _get_path(existing, f"preferences.{key}") is _MISSING:
                updates[f"preferences.{key}"] = value

    if not isinstance(existing.get("studyStats"), dict):
        updates["studyStats"] = StudyStats().to_document()
    else:
        for key in ("weeklyGoal", "weeklyProgress"):
            if _get_path(existing, f"studyStats.{key}") is _MISSING:
                updates[f"studyStats.{key}"] = 0

    if updates:
        updates["updatedAt"] = to_iso(now)
        logger.debug(f"Profile merge updates: {sorted(updates)}", extra=context)

    return ProfileMergeResult(created=False, updates=updates)


def ensure_non_decreasing(before: StudyStats, after: StudyStats, fields=CUMULATIVE_STATS + RESETTABLE_STATS):
    """Raise StatsInvariantError if any of ``fields`` went down."""
    for field in fields:
        old, new = getattr(before, field), getattr(after, field)
        if not new >= old:
            raise StatsInvariantError(f"studyStats.{field} would decrease from {old} to {new}")


def apply_additive_stats(existing: StudyStats, study_time_delta: int, session_completed: bool) -> StudyStats:
    """Add one study submission to the stored stats.

    Raises:
        InvalidArgument: Negative or non-integer delta
        StatsInvariantError: A counter would decrease (data corruption)
    """
    if not isinstance(study_time_delta, int) or isinstance(study_time_delta, bool):
        raise InvalidArgument("Study time must be a whole number of minutes")
    if study_time_delta < 0:
        raise InvalidArgument("Study time cannot be negative")
    if not isinstance(session_completed, bool):
        raise InvalidArgument("sessionCompleted must be a boolean")

    current_streak = existing.current_streak + (1 if session_completed else 0)
    updated = StudyStats(
        total_study_time=existing.total_study_time + study_time_delta,
        sessions_completed=existing.sessions_completed + (1 if session_completed else 0),
        current_streak=current_streak,
        longest_streak=max(existing.longest_streak, current_streak),
        weekly_goal=existing.weekly_goal,
        weekly_progress=existing.weekly_progress + study_time_delta,
    )
    ensure_non_decreasing(existing, updated)
    return updated


def identity_payload_from_event(data: Dict[str, Any]) -> IdentityPayload:
    """Map an identity-provider user object (snake_case webhook shape) to a payload.

    The primary address is picked from ``email_addresses`` by
    ``primary_email_address_id``; an unknown metadata role is ignored.
    """
    primary_id = data.get("primary_email_address_id")
    email = ""
    for address in data.get("email_addresses") or []:
        if address.get("id") == primary_id:
            email = address.get("email_address") or ""
            break

    role = (data.get("public_metadata") or {}).get("role")
    if role not in [r.value for r in UserRole]:
        role = None

    return coerce_params(IdentityPayload, {
        "id": data.get("id") or "",
        "email": email,
        "first_name": data.get("first_name") or "",
        "last_name": data.get("last_name") or "",
        "avatar_url": data.get("image_url") or "",
        "role": role,
    })


def read_profile(txn: Transaction, settings: Settings, user_id: str) -> UserProfile:
    """Load a profile inside a transaction or raise NotFound."""
    document = txn.get(settings.users_collection, user_id)
    if document is None:
        raise NotFound("User profile not found")
    return UserProfile.model_validate(document)


class ProfileService:
    """Sign-in merge, onboarding role choice, preferences and study stats."""

    def __init__(self, store: DocumentStore, settings: Settings, clock: Clock = utcnow):
        self.store = store
        self.settings = settings
        self.clock = clock
        self.logger = logger

    @property
    def collection(self) -> str:
        return self.settings.users_collection

    def _require_identifier(self, user_id: str):
        if not is_valid_identifier(user_id):
            raise InvalidArgument("A valid user ID is required")

    @operation("sync_identity")
    def sync_identity(self, payload: Union[IdentityPayload, Dict[str, Any]]):
        """Create the profile on first sign-in, merge it on later ones.

        Args:
            payload: Identity fields reported by the identity provider

        Returns:
            ``{created, updatedFields, profile}``; an empty ``updatedFields``
            means nothing was written
        """
        payload = coerce_params(IdentityPayload, payload)
        self._require_identifier(payload.id)

        def merge(txn: Transaction):
            existing = txn.get(self.collection, payload.id)
            result = merge_profile(payload, existing, self.clock())
            if result.created:
                txn.create(self.collection, payload.id, result.updates)
                return result, result.updates
            if result.updates:
                txn.update(self.collection, payload.id, result.updates)
                return result, apply_field_updates(existing, result.updates)
            return result, existing

        result, document = self.store.run_transaction(merge)
        self.logger.info(
            "Profile created" if result.created else f"Profile merged ({len(result.updates)} fields)",
            extra={"user_id": payload.id}
        )
        return {
            "created": result.created,
            "updatedFields": [] if result.created else sorted(result.updates),
            "profile": UserProfile.model_validate(document).to_document(),
        }

    @operation("get_profile", user_id="user_id")
    def get_profile(self, user_id: str):
        """Return the stored profile document for ``user_id``."""
        self._require_identifier(user_id)
        document = self.store.get(self.collection, user_id)
        if document is None:
            raise NotFound("User profile not found")
        return UserProfile.model_validate(document).to_document()

    @operation("set_role", user_id="user_id")
    def set_role(self, user_id: str, role: str):
        """Pick student or teacher once. Repeating the same choice is a no-op.

        Args:
            user_id: Profile to update
            role: ``student`` or ``teacher``

        Returns:
            ``{role}``, or a failed-precondition result once a different
            role is already stored
        """
        self._require_identifier(user_id)
        try:
            role = UserRole(role)
        except ValueError:
            raise InvalidArgument("Invalid role provided")
        if role not in SELF_ASSIGNABLE_ROLES:
            raise InvalidArgument("Invalid role provided")

        def assign(txn: Transaction):
            profile = read_profile(txn, self.settings, user_id)
            if profile.role == role:
                return profile.role
            if profile.role is not None:
                raise FailedPrecondition("Role has already been set")
            txn.update(self.collection, user_id, {"role": role.value, "updatedAt": to_iso(self.clock())})
            return role

        return {"role": self.store.run_transaction(assign).value}

    @operation("update_preferences", user_id="user_id")
    def update_preferences(self, user_id: str, preferences: Union[PreferencesUpdate, Dict[str, Any]]):
        """Merge the given preference keys over the stored ones.

        Args:
            user_id: Profile to update
            preferences: Any subset of the preference fields (camelCase keys)

        Returns:
            ``{preferences}`` with the full merged preferences map
        """
        self._require_identifier(user_id)
        changes = coerce_params(PreferencesUpdate, preferences).model_dump(
            mode="json", by_alias=True, exclude_none=True
        )
        if not changes:
            raise InvalidArgument("Preferences data required")

        def update(txn: Transaction):
            profile = read_profile(txn, self.settings, user_id)
            merged = UserPreferences.model_validate({**profile.preferences.to_document(), **changes})
            updates = {f"preferences.{key}": value for key, value in changes.items()}
            updates["updatedAt"] = to_iso(self.clock())
            txn.update(self.collection, user_id, updates)
            return merged

        return {"preferences": self.store.run_transaction(update).to_document()}

    @operation("record_study_session", user_id="user_id")
    def record_study_session(self, user_id: str, study_time: int, session_completed: bool = False):
        """Add minutes studied (and optionally a completed session) to the stats."""
        self._require_identifier(user_id)
        # Input problems surface before the transaction is opened
        apply_additive_stats(StudyStats(), study_time, session_completed)

        def record(txn: Transaction):
            profile = read_profile(txn, self.settings, user_id)
            if not profile.is_active:
                raise FailedPrecondition("User profile is deactivated")
            stats = apply_additive_stats(profile.study_stats, study_time, session_completed)
            txn.update(self.collection, user_id, {
                "studyStats": stats.to_document(),
                "updatedAt": to_iso(self.clock()),
            })
            return stats

        return {"studyStats": self.store.run_transaction(record).to_document()}

    def _reset(self, user_id: str, field: str):
        self._require_identifier(user_id)

        def reset(txn: Transaction):
            profile = read_profile(txn, self.settings, user_id)
            stats = profile.study_stats.model_copy(update={field: 0})
            ensure_non_decreasing(profile.study_stats, stats, fields=CUMULATIVE_STATS)
            txn.update(self.collection, user_id, {
                f"studyStats.{to_camel(field)}": 0,
                "updatedAt": to_iso(self.clock()),
            })
            return stats

        return {"studyStats": self.store.run_transaction(reset).to_document()}

    @operation("reset_weekly_progress", user_id="user_id")
    def reset_weekly_progress(self, user_id: str):
        """Zero ``weeklyProgress`` at the start of a new week."""
        return self._reset(user_id, "weekly_progress")

    @operation("reset_current_streak", user_id="user_id")
    def reset_current_streak(self, user_id: str):
        """Zero ``currentStreak``; ``longestStreak`` keeps its record."""
        return self._reset(user_id, "current_streak")

    @operation("deactivate_profile", user_id="user_id")
    def deactivate_profile(self, user_id: str):
        """Soft delete: profiles are never removed from the store."""
        self._require_identifier(user_id)

        def deactivate(txn: Transaction):
            read_profile(txn, self.settings, user_id)
            now = to_iso(self.clock())
            txn.update(self.collection, user_id, {"isActive": False, "deletedAt": now, "updatedAt": now})

        self.store.run_transaction(deactivate)
        return {"userId": user_id, "isActive": False}

    def handle_identity_event(self, event_type: str, data: Dict[str, Any]):
        """Dispatch an identity webhook event to the matching operation."""
        if event_type in ("user.created", "user.updated"):
            try:
                payload = identity_payload_from_event(data or {})
            except InvalidArgument as e:
                return OperationResult.fail(e)
            return self.sync_identity(payload)
        if event_type == "user.deleted":
            return self.deactivate_profile((data or {}).get("id") or "")
        self.logger.info(f"Ignoring identity event {event_type}")
        return OperationResult.ok({"ignored": event_type})
