"""Study room lifecycle: create, join, leave, host succession and status.

All membership changes run inside a store transaction and check their
invariants against the state read by that transaction, so two concurrent
joins can never both take the last seat.
"""
from typing import Any, Dict, Iterable, Optional, Union

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
from timeout_app.domain.room import (
    ROOM_TRANSITIONS,
    CreateRoomParams,
    ParticipantRole,
    Room,
    RoomParticipant,
    RoomSettings,
    RoomStatus,
    RoomTimer,
    RoomVisibility,
)
from timeout_app.infrastructure.store import DELETE_FIELD, DocumentStore, Increment, Transaction
from timeout_app.services.profiles import read_profile
from timeout_app.services.validation import (
    can_manage,
    is_valid_identifier,
    room_join_error,
    validate_create_room,
)
from timeout_app.utils.clock import Clock, to_iso, utcnow
from timeout_app.utils.text import sanitize_multiline, sanitize_text

logger = get_logger(__name__)


def select_successor(candidates: Iterable[RoomParticipant]) -> Optional[RoomParticipant]:
    """Pick the next host: earliest ``joinedAt``, ties broken by user id."""
    return min(candidates, key=lambda p: (p.joined_at, p.user_id), default=None)


def _public_summary(room: Room) -> Dict[str, Any]:
    data = room.to_document()
    data["participants"] = len(room.participants)
    return data


class RoomManager:
    """Membership and lifecycle operations for ad-hoc study rooms.

    Args:
        store: Document store the rooms and profiles live in
        settings: Limits and collection names
        clock: Source of the current time (injected for tests)
    """

    def __init__(self, store: DocumentStore, settings: Settings, clock: Clock = utcnow):
        self.store = store
        self.settings = settings
        self.clock = clock
        self.logger = logger

    @property
    def collection(self) -> str:
        return self.settings.rooms_collection

    def _require_ids(self, **ids: str):
        for label, value in ids.items():
            if not is_valid_identifier(value):
                raise InvalidArgument(f"A valid {label.replace('_', ' ')} is required")

    def _read_room(self, txn: Transaction, room_id: str) -> Room:
        document = txn.get(self.collection, room_id)
        if document is None:
            raise NotFound("Room not found")
        return Room.model_validate(document)

    @operation("create_room", user_id="host_id")
    def create_room(self, host_id: str, params: Union[CreateRoomParams, Dict[str, Any]]):
        """Create a room in ``waiting`` status with the host as sole participant.

        Args:
            host_id: Caller, who becomes the host
            params: Name, visibility, capacity, timer minutes and settings

        Returns:
            ``{roomId, room}`` with timer durations stored in seconds
        """
        self._require_ids(user_id=host_id)
        params = coerce_params(CreateRoomParams, params)
        validation = validate_create_room(params, self.settings)
        if not validation.valid:
            raise InvalidArgument("; ".join(validation.errors))

        settings = self.settings
        max_participants = params.max_participants
        if max_participants is None:
            max_participants = settings.default_room_participants
        focus_minutes = params.focus_time if params.focus_time is not None else settings.default_focus_minutes
        short_minutes = (params.short_break_time if params.short_break_time is not None
                         else settings.default_short_break_minutes)
        long_minutes = (params.long_break_time if params.long_break_time is not None
                        else settings.default_long_break_minutes)
        room_id = self.store.new_id()

        def create(txn: Transaction) -> Room:
            profile = read_profile(txn, settings, host_id)
            now = self.clock()
            room = Room(
                id=room_id,
                name=sanitize_text(params.name),
                description=sanitize_multiline(params.description),
                subject=sanitize_text(params.subject),
                host_id=host_id,
                host_name=profile.display_name,
                host_avatar=profile.avatar_url,
                visibility=RoomVisibility(params.visibility),
                status=RoomStatus.WAITING,
                max_participants=max_participants,
                current_participants=1,
                participants={
                    host_id: RoomParticipant(
                        user_id=host_id,
                        display_name=profile.display_name,
                        avatar_url=profile.avatar_url,
                        role=ParticipantRole.HOST,
                        joined_at=now,
                    )
                },
                timer=RoomTimer(
                    focus_time=focus_minutes * 60,
                    short_break_time=short_minutes * 60,
                    long_break_time=long_minutes * 60,
                    total_sessions=settings.default_timer_sessions,
                    time_remaining=focus_minutes * 60,
                ),
                settings=params.settings or RoomSettings(),
                created_at=now,
                updated_at=now,
            )
            txn.create(self.collection, room_id, room.to_document())
            return room

        room = self.store.run_transaction(create)
        self.logger.info(f"Room created: {room.name}", extra={"room_id": room.id, "user_id": host_id})
        return {"roomId": room.id, "room": room.to_document()}

    @operation("join_room", room_id="room_id", user_id="user_id")
    def join_room(self, room_id: str, user_id: str):
        """Add ``user_id`` as a participant.

        Checked in order: room exists, not ended, not already joined, a seat
        is free, late join allowed.
        """
        self._require_ids(room_id=room_id, user_id=user_id)

        def join(txn: Transaction) -> Room:
            room = self._read_room(txn, room_id)
            error = room_join_error(room, user_id)
            if error:
                raise error

            profile = read_profile(txn, self.settings, user_id)
            now = self.clock()
            participant = RoomParticipant(
                user_id=user_id,
                display_name=profile.display_name,
                avatar_url=profile.avatar_url,
                role=ParticipantRole.PARTICIPANT,
                joined_at=now,
            )
            txn.update(self.collection, room_id, {
                f"participants.{user_id}": participant.to_document(),
                "currentParticipants": Increment(1),
                "stats.participantCount": Increment(1),
                "updatedAt": to_iso(now),
            })
            return Room.model_validate(txn.get(self.collection, room_id))

        room = self.store.run_transaction(join)
        return {"room": room.to_document()}

    @operation("leave_room", room_id="room_id", user_id="user_id")
    def leave_room(self, room_id: str, user_id: str):
        """Remove ``user_id`` from the room.

        A leaving host hands the room to the successor chosen by
        ``select_successor``; a host leaving alone ends the room and keeps
        the participant map as a record.

        Returns:
            ``{roomId, outcome}`` where outcome is ``left``, ``ended`` or
            ``hostTransferred`` (the last also carries ``newHostId``)
        """
        self._require_ids(room_id=room_id, user_id=user_id)

        def leave(txn: Transaction) -> Dict[str, Any]:
            room = self._read_room(txn, room_id)
            if user_id not in room.participants:
                raise NotFound("Not in this room")
            if room.status == RoomStatus.ENDED:
                raise FailedPrecondition("Room has ended")

            now = to_iso(self.clock())
            if room.host_id != user_id:
                txn.update(self.collection, room_id, {
                    f"participants.{user_id}": DELETE_FIELD,
                    "currentParticipants": Increment(-1),
                    "updatedAt": now,
                })
                return {"roomId": room_id, "outcome": "left"}

            successor = select_successor(p for uid, p in room.participants.items() if uid != user_id)
            if successor is None:
                txn.update(self.collection, room_id, {
                    "status": RoomStatus.ENDED.value,
                    "endedAt": now,
                    f"participants.{user_id}.isActive": False,
                    "updatedAt": now,
                })
                return {"roomId": room_id, "outcome": "ended"}

            txn.update(self.collection, room_id, {
                "hostId": successor.user_id,
                "hostName": successor.display_name,
                "hostAvatar": successor.avatar_url,
                f"participants.{successor.user_id}.role": ParticipantRole.HOST.value,
                f"participants.{user_id}": DELETE_FIELD,
                "currentParticipants": Increment(-1),
                "updatedAt": now,
            })
            return {"roomId": room_id, "outcome": "hostTransferred", "newHostId": successor.user_id}

        result = self.store.run_transaction(leave)
        if result["outcome"] != "left":
            self.logger.info(
                f"Host left room: {result['outcome']}",
                extra={"room_id": room_id, "user_id": user_id}
            )
        return result

    @operation("update_participant_activity", room_id="room_id", user_id="user_id")
    def update_participant_activity(self, room_id: str, user_id: str, is_active: bool):
        """Mark the caller as studying or away.

        Args:
            room_id: Room the caller is in
            user_id: Participant reporting the change
            is_active: True while studying

        Returns:
            ``{status}``, either ``studying`` or ``away``
        """
        self._require_ids(room_id=room_id, user_id=user_id)
        if not isinstance(is_active, bool):
            raise InvalidArgument("isActive must be a boolean")

        def update(txn: Transaction):
            room = self._read_room(txn, room_id)
            if user_id not in room.participants or room.status == RoomStatus.ENDED:
                raise FailedPrecondition("User is not a participant in this room")
            txn.update(self.collection, room_id, {
                f"participants.{user_id}.isActive": is_active,
                "updatedAt": to_iso(self.clock()),
            })

        self.store.run_transaction(update)
        return {"status": "studying" if is_active else "away"}

    @operation("update_room_status", room_id="room_id", user_id="user_id")
    def update_room_status(self, room_id: str, user_id: str, status: str):
        """Host-driven status change along ``ROOM_TRANSITIONS``."""
        self._require_ids(room_id=room_id, user_id=user_id)
        try:
            status = RoomStatus(status)
        except ValueError:
            raise InvalidArgument(f"Unknown room status '{status}'")

        def update(txn: Transaction) -> Room:
            room = self._read_room(txn, room_id)
            if not can_manage(room, user_id):
                if room.host_id != user_id:
                    raise PermissionDenied("Only the host can change the room status")
                raise FailedPrecondition("Room has ended")
            if status not in ROOM_TRANSITIONS[room.status]:
                raise FailedPrecondition(f"Cannot move room from {room.status.value} to {status.value}")

            now = to_iso(self.clock())
            updates: Dict[str, Any] = {"status": status.value, "updatedAt": now}
            if status == RoomStatus.ENDED:
                updates["endedAt"] = now
            txn.update(self.collection, room_id, updates)
            return Room.model_validate(txn.get(self.collection, room_id))

        room = self.store.run_transaction(update)
        return {"room": room.to_document()}

    @operation("get_room_details", room_id="room_id", user_id="user_id")
    def get_room_details(self, room_id: str, user_id: str):
        """Full room document. Private rooms are visible to participants only."""
        self._require_ids(room_id=room_id, user_id=user_id)
        document = self.store.get(self.collection, room_id)
        if document is None:
            raise NotFound("Room not found")
        room = Room.model_validate(document)
        if room.visibility == RoomVisibility.PRIVATE and user_id not in room.participants:
            raise PermissionDenied("Access denied to private room")
        return {"room": room.to_document()}

    @operation("list_public_rooms")
    def list_public_rooms(self, limit: Optional[int] = None, subject: Optional[str] = None):
        """Open public rooms, newest first, with participants collapsed to a count."""
        if limit is None:
            limit = self.settings.default_public_rooms_limit
        if not isinstance(limit, int) or isinstance(limit, bool) or limit < 1:
            raise InvalidArgument("limit must be a positive integer")
        limit = min(limit, self.settings.max_public_rooms_limit)

        rooms = [Room.model_validate(doc) for doc in self.store.list_documents(self.collection)]
        rooms = [
            room for room in rooms
            if room.visibility == RoomVisibility.PUBLIC
            and room.status in (RoomStatus.WAITING, RoomStatus.ACTIVE)
            and (not subject or room.subject == subject)
        ]
        rooms.sort(key=lambda room: room.created_at, reverse=True)
        return {"rooms": [_public_summary(room) for room in rooms[:limit]]}
