"""Classroom enrollment and live class sessions.

A classroom is owned by one teacher and has a bounded set of enrolled
students. A live session hangs off a classroom: ``participants`` lists who
is in the session right now, ``participantDetails`` keeps a record for
everyone who ever joined (``isActive=False`` and ``leftAt`` once they left).
"""
from typing import Any, Dict, Optional, Union

from timeout_app.core.config import Settings
from timeout_app.core.errors import (
    FailedPrecondition,
    InvalidArgument,
    NotFound,
    PermissionDenied,
    operation,
)
from timeout_app.core.logging import get_logger
from timeout_app.domain.base import coerce_params
from timeout_app.domain.classroom import (
    ClassSession,
    Classroom,
    ClassroomParticipantRole,
    ClassroomStatus,
    CreateClassroomParams,
    SessionParticipant,
    SessionParticipantPatch,
    SessionSettings,
    SessionStatus,
    StartSessionParams,
)
from timeout_app.domain.user import UserRole
from timeout_app.infrastructure.store import ArrayRemove, ArrayUnion, DocumentStore, Increment, Transaction
from timeout_app.services.profiles import read_profile
from timeout_app.services.validation import (
    can_manage,
    can_start_session,
    classroom_join_error,
    has_exceeded_max_duration,
    is_member,
    is_valid_identifier,
    is_valid_max_count,
    is_valid_session_title,
    session_duration_minutes,
    session_join_error,
    validate_create_classroom,
)
from timeout_app.utils.clock import Clock, to_iso, utcnow
from timeout_app.utils.text import sanitize_multiline, sanitize_text

logger = get_logger(__name__)


def default_session_settings(settings: Settings) -> SessionSettings:
    return SessionSettings(
        allow_student_video=settings.session_allow_student_video,
        allow_student_audio=settings.session_allow_student_audio,
        allow_student_chat=settings.session_allow_student_chat,
        auto_mute_on_join=settings.session_auto_mute_on_join,
        max_participants=settings.max_participants_per_session,
        require_approval=settings.session_require_approval,
    )


def _newest_first(classrooms):
    return sorted(classrooms, key=lambda c: c.created_at, reverse=True)


class ClassroomManager:
    """Teacher-owned classrooms and their live sessions.

    Args:
        store: Document store the classrooms, sessions and profiles live in
        settings: Limits, session defaults and collection names
        clock: Source of the current time (injected for tests)
    """

    def __init__(self, store: DocumentStore, settings: Settings, clock: Clock = utcnow):
        self.store = store
        self.settings = settings
        self.clock = clock
        self.logger = logger

    def _require_ids(self, **ids: str):
        for label, value in ids.items():
            if not is_valid_identifier(value):
                raise InvalidArgument(f"A valid {label.replace('_', ' ')} is required")

    def _read_classroom(self, txn: Transaction, classroom_id: str) -> Classroom:
        document = txn.get(self.settings.classrooms_collection, classroom_id)
        if document is None:
            raise NotFound("Classroom not found")
        return Classroom.model_validate(document)

    def _read_session(self, txn: Transaction, session_id: str) -> ClassSession:
        document = txn.get(self.settings.sessions_collection, session_id)
        if document is None:
            raise NotFound("Session not found")
        return ClassSession.model_validate(document)

    # Classrooms

    @operation("create_classroom", user_id="teacher_id")
    def create_classroom(self, teacher_id: str, params: Union[CreateClassroomParams, Dict[str, Any]]):
        """Create an active classroom with no students. Teachers only."""
        self._require_ids(user_id=teacher_id)
        params = coerce_params(CreateClassroomParams, params)
        validation = validate_create_classroom(params, self.settings)
        if not validation.valid:
            raise InvalidArgument(", ".join(validation.errors))

        max_students = params.max_students
        if max_students is None:
            max_students = self.settings.default_max_students
        classroom_id = self.store.new_id()

        def create(txn: Transaction) -> Classroom:
            profile = read_profile(txn, self.settings, teacher_id)
            if profile.role != UserRole.TEACHER:
                raise PermissionDenied("Only teachers can create classrooms")

            now = self.clock()
            description = sanitize_multiline(params.description) if params.description else None
            classroom = Classroom(
                id=classroom_id,
                name=sanitize_text(params.name),
                subject=sanitize_text(params.subject),
                teacher_id=teacher_id,
                teacher_name=profile.display_name,
                teacher_avatar=profile.avatar_url,
                description=description,
                max_students=max_students,
                is_public=params.is_public,
                created_at=now,
                updated_at=now,
            )
            txn.create(self.settings.classrooms_collection, classroom_id, classroom.to_document())
            return classroom

        classroom = self.store.run_transaction(create)
        self.logger.info(
            f"Classroom created: {classroom.name}",
            extra={"classroom_id": classroom.id, "user_id": teacher_id}
        )
        return {"classroomId": classroom.id, "classroom": classroom.to_document()}

    @operation("join_classroom", classroom_id="classroom_id", user_id="user_id")
    def join_classroom(self, classroom_id: str, user_id: str):
        """Enroll a student.

        The classroom's own teacher and users already enrolled are refused
        first, then inactive or private classrooms, then a full one.
        """
        self._require_ids(classroom_id=classroom_id, user_id=user_id)

        def join(txn: Transaction) -> Classroom:
            classroom = self._read_classroom(txn, classroom_id)
            error = classroom_join_error(classroom, user_id)
            if error:
                raise error

            read_profile(txn, self.settings, user_id)
            txn.update(self.settings.classrooms_collection, classroom_id, {
                "enrolledStudents": ArrayUnion(user_id),
                "currentStudents": Increment(1),
                "updatedAt": to_iso(self.clock()),
            })
            return Classroom.model_validate(txn.get(self.settings.classrooms_collection, classroom_id))

        classroom = self.store.run_transaction(join)
        return {"classroom": classroom.to_public()}

    @operation("leave_classroom", classroom_id="classroom_id", user_id="user_id")
    def leave_classroom(self, classroom_id: str, user_id: str):
        """Drop an enrolled student. The teacher cannot leave their own classroom."""
        self._require_ids(classroom_id=classroom_id, user_id=user_id)

        def leave(txn: Transaction):
            classroom = self._read_classroom(txn, classroom_id)
            if user_id == classroom.teacher_id:
                raise FailedPrecondition("Teachers cannot leave their own classroom")
            if user_id not in classroom.enrolled_students:
                raise FailedPrecondition("Not enrolled in this classroom")

            txn.update(self.settings.classrooms_collection, classroom_id, {
                "enrolledStudents": ArrayRemove(user_id),
                "currentStudents": max(0, classroom.current_students - 1),
                "updatedAt": to_iso(self.clock()),
            })

        self.store.run_transaction(leave)
        return {"classroomId": classroom_id}

    @operation("get_my_classrooms", user_id="user_id")
    def get_my_classrooms(self, user_id: str):
        """Active classrooms the user teaches or is enrolled in, newest first."""
        self._require_ids(user_id=user_id)
        if self.store.get(self.settings.users_collection, user_id) is None:
            raise NotFound("User profile not found")

        classrooms = [
            Classroom.model_validate(doc)
            for doc in self.store.list_documents(self.settings.classrooms_collection)
        ]
        active = [c for c in classrooms if c.status == ClassroomStatus.ACTIVE]
        teaching = _newest_first(c for c in active if c.teacher_id == user_id)
        enrolled = _newest_first(c for c in active if user_id in c.enrolled_students)

        return {
            "classrooms": [c.to_document() for c in teaching + enrolled],
            "teachingClassrooms": [c.to_document() for c in teaching],
            "enrolledClassrooms": [c.to_document() for c in enrolled],
        }

    @operation("get_available_classrooms")
    def get_available_classrooms(self, subject: Optional[str] = None, limit: int = 20, offset: int = 0):
        """Public active classrooms without student ids, plus the total count."""
        if not is_valid_max_count(limit, 1, self.settings.max_public_rooms_limit):
            raise InvalidArgument(f"limit must be between 1 and {self.settings.max_public_rooms_limit}")
        if not is_valid_max_count(offset, 0, 10_000):
            raise InvalidArgument("offset must be a non-negative integer")

        classrooms = [
            Classroom.model_validate(doc)
            for doc in self.store.list_documents(self.settings.classrooms_collection)
        ]
        matching = _newest_first(
            c for c in classrooms
            if c.is_public and c.status == ClassroomStatus.ACTIVE and (not subject or c.subject == subject)
        )
        page = matching[offset:offset + limit]
        return {"classrooms": [c.to_public() for c in page], "total": len(matching)}

    # Live sessions

    @operation("start_class_session", classroom_id="classroom_id", user_id="teacher_id")
    def start_class_session(
        self,
        classroom_id: str,
        teacher_id: str,
        params: Union[StartSessionParams, Dict[str, Any], None] = None,
    ):
        """Open a live session with the teacher as its first participant."""
        self._require_ids(classroom_id=classroom_id, user_id=teacher_id)
        params = coerce_params(StartSessionParams, params)
        if params.title is not None and not is_valid_session_title(
                params.title, self.settings.max_session_title_length):
            raise InvalidArgument(
                f"Session title must be 1-{self.settings.max_session_title_length} characters"
            )

        patch = params.settings.model_dump(exclude_none=True) if params.settings else {}
        if "max_participants" in patch and not is_valid_max_count(
                patch["max_participants"], 1, self.settings.max_participants_per_session):
            raise InvalidArgument(
                f"maxParticipants must be between 1 and {self.settings.max_participants_per_session}"
            )
        session_settings = default_session_settings(self.settings).model_copy(update=patch)
        session_id = self.store.new_id()

        def start(txn: Transaction) -> ClassSession:
            classroom = self._read_classroom(txn, classroom_id)
            if not can_start_session(classroom, teacher_id):
                if classroom.teacher_id != teacher_id:
                    raise PermissionDenied("Only the classroom teacher can start sessions")
                raise FailedPrecondition("Classroom is not active")

            profile = read_profile(txn, self.settings, teacher_id)
            now = self.clock()
            teacher = SessionParticipant(
                user_id=teacher_id,
                display_name=profile.display_name,
                avatar_url=profile.avatar_url,
                role=ClassroomParticipantRole.TEACHER,
                joined_at=now,
                video_enabled=False,
                audio_enabled=not session_settings.auto_mute_on_join,
            )
            session = ClassSession(
                id=session_id,
                classroom_id=classroom_id,
                teacher_id=teacher_id,
                teacher_name=profile.display_name,
                title=sanitize_text(params.title) if params.title else self.settings.default_session_title,
                start_time=now,
                status=SessionStatus.LIVE,
                participants=[teacher_id],
                participant_details={teacher_id: teacher},
                chat_enabled=session_settings.allow_student_chat,
                settings=session_settings,
                created_at=now,
                updated_at=now,
            )
            txn.create(self.settings.sessions_collection, session_id, session.to_document())
            return session

        session = self.store.run_transaction(start)
        self.logger.info(
            f"Live session started: {session.title}",
            extra={"session_id": session.id, "classroom_id": classroom_id, "user_id": teacher_id}
        )
        return {"sessionId": session.id, "session": session.to_document()}

    @operation("end_class_session", session_id="session_id", user_id="teacher_id")
    def end_class_session(self, session_id: str, teacher_id: str):
        """End a live session; returns its duration in whole minutes."""
        self._require_ids(session_id=session_id, user_id=teacher_id)

        def end(txn: Transaction) -> int:
            session = self._read_session(txn, session_id)
            if not can_manage(session, teacher_id):
                raise PermissionDenied("Only the session teacher can end it")
            if session.status != SessionStatus.LIVE:
                raise FailedPrecondition("Session is not currently live")

            now = self.clock()
            duration = session_duration_minutes(session, now)
            txn.update(self.settings.sessions_collection, session_id, {
                "status": SessionStatus.ENDED.value,
                "endTime": to_iso(now),
                "updatedAt": to_iso(now),
            })
            return duration

        duration = self.store.run_transaction(end)
        self.logger.info(
            f"Live session ended after {duration} minutes",
            extra={"session_id": session_id, "user_id": teacher_id}
        )
        return {"sessionId": session_id, "durationMinutes": duration}

    @operation("join_live_session", session_id="session_id", user_id="user_id")
    def join_live_session(self, session_id: str, user_id: str):
        """Join a live session of a classroom the caller teaches or is enrolled in.

        Rejoining after leaving replaces the old participant record.

        Args:
            session_id: Live session to join
            user_id: Teacher or enrolled student

        Returns:
            ``{session, participantId}`` with the updated session document
        """
        self._require_ids(session_id=session_id, user_id=user_id)

        def join(txn: Transaction) -> ClassSession:
            session = self._read_session(txn, session_id)
            classroom = self._read_classroom(txn, session.classroom_id)

            now = self.clock()
            error = session_join_error(session, classroom, user_id, self.settings, now)
            if error:
                raise error

            profile = read_profile(txn, self.settings, user_id)
            is_teacher = user_id == classroom.teacher_id
            participant = SessionParticipant(
                user_id=user_id,
                display_name=profile.display_name,
                avatar_url=profile.avatar_url,
                role=ClassroomParticipantRole.TEACHER if is_teacher else ClassroomParticipantRole.STUDENT,
                joined_at=now,
                video_enabled=False,
                audio_enabled=(is_teacher or session.settings.allow_student_audio)
                and not session.settings.auto_mute_on_join,
            )
            txn.update(self.settings.sessions_collection, session_id, {
                "participants": ArrayUnion(user_id),
                f"participantDetails.{user_id}": participant.to_document(),
                "updatedAt": to_iso(now),
            })
            return ClassSession.model_validate(txn.get(self.settings.sessions_collection, session_id))

        session = self.store.run_transaction(join)
        return {"session": session.to_document(), "participantId": user_id}

    @operation("leave_live_session", session_id="session_id", user_id="user_id")
    def leave_live_session(self, session_id: str, user_id: str):
        """Leave a session, keeping the participant record for history."""
        self._require_ids(session_id=session_id, user_id=user_id)

        def leave(txn: Transaction):
            session = self._read_session(txn, session_id)
            if user_id not in session.participants:
                raise FailedPrecondition("User is not in this session")

            now = to_iso(self.clock())
            updates = {"participants": ArrayRemove(user_id), "updatedAt": now}
            if user_id in session.participant_details:
                updates[f"participantDetails.{user_id}.leftAt"] = now
                updates[f"participantDetails.{user_id}.isActive"] = False
            txn.update(self.settings.sessions_collection, session_id, updates)

        self.store.run_transaction(leave)
        return {"sessionId": session_id}

    @operation("update_session_participant", session_id="session_id", user_id="user_id")
    def update_session_participant(
        self,
        session_id: str,
        user_id: str,
        patch: Union[SessionParticipantPatch, Dict[str, Any]],
    ):
        """Change the caller's own video, audio or connection status."""
        self._require_ids(session_id=session_id, user_id=user_id)
        changes = coerce_params(SessionParticipantPatch, patch).model_dump(
            mode="json", by_alias=True, exclude_none=True
        )
        if not changes:
            raise InvalidArgument("Participant updates are required")

        def update(txn: Transaction) -> SessionParticipant:
            session = self._read_session(txn, session_id)
            if user_id not in session.participants:
                raise FailedPrecondition("User is not in this session")
            current = session.participant_details.get(user_id)
            if current is None:
                raise NotFound("Participant details not found")
            if session.status != SessionStatus.LIVE:
                raise FailedPrecondition("Session is not currently live")

            if current.role == ClassroomParticipantRole.STUDENT:
                if changes.get("videoEnabled") and not session.settings.allow_student_video:
                    raise PermissionDenied("Student video is disabled for this session")
                if changes.get("audioEnabled") and not session.settings.allow_student_audio:
                    raise PermissionDenied("Student audio is disabled for this session")

            updates = {f"participantDetails.{user_id}.{key}": value for key, value in changes.items()}
            updates["updatedAt"] = to_iso(self.clock())
            txn.update(self.settings.sessions_collection, session_id, updates)
            return current.model_copy(update=SessionParticipantPatch.model_validate(changes).model_dump(
                exclude_none=True
            ))

        participant = self.store.run_transaction(update)
        return {"participant": participant.to_document()}

    @operation("get_live_session_details", session_id="session_id", user_id="user_id")
    def get_live_session_details(self, session_id: str, user_id: str):
        """Session document plus its running duration. Members only."""
        self._require_ids(session_id=session_id, user_id=user_id)

        def read(txn: Transaction):
            session = self._read_session(txn, session_id)
            classroom = self._read_classroom(txn, session.classroom_id)
            return session, classroom

        session, classroom = self.store.run_transaction(read)
        if not is_member(classroom, user_id):
            raise PermissionDenied("Access denied to this session")

        now = self.clock()
        data = session.to_document()
        data["durationMinutes"] = session_duration_minutes(session, now)
        data["exceededMaxDuration"] = has_exceeded_max_duration(
            session, now, self.settings.max_session_duration_minutes
        )
        return {"session": data}
