"""Tests for the study room lifecycle."""
import threading
from datetime import timedelta

import pytest

from timeout_app.core.errors import ErrorCode
from timeout_app.domain.room import ParticipantRole, Room, RoomParticipant
from timeout_app.infrastructure.store import InMemoryDocumentStore
from timeout_app.services.profiles import ProfileService
from timeout_app.services.rooms import RoomManager, select_successor


def assert_room_invariants(room: dict):
    assert room["currentParticipants"] == len(room["participants"])
    assert room["currentParticipants"] <= room["maxParticipants"]
    if room["status"] != "ended":
        hosts = [uid for uid, p in room["participants"].items() if p["role"] == "host"]
        assert hosts == [room["hostId"]]


@pytest.fixture
def host(make_user):
    return make_user("host_h", "Hana", "Host")


@pytest.fixture
def room_id(rooms, host):
    result = rooms.create_room(host, {"name": "Deep Work", "maxParticipants": 3})
    assert result.success, result.error_message
    return result.data["roomId"]


def get_room(store, settings, room_id) -> dict:
    return store.get(settings.rooms_collection, room_id)


class TestCreateRoom:

    def test_host_is_sole_participant(self, rooms, host):
        result = rooms.create_room(host, {"name": "  Deep   Work ", "focusTime": 50})

        room = result.data["room"]
        assert room["name"] == "Deep Work"
        assert room["status"] == "waiting"
        assert room["hostName"] == "Hana Host"
        assert room["participants"][host]["role"] == "host"
        assert room["timer"]["focusTime"] == 3000
        assert room["timer"]["timeRemaining"] == 3000
        assert room["maxParticipants"] == 8
        assert_room_invariants(room)

    def test_invalid_params_fail_before_any_write(self, rooms, host, store, settings):
        result = rooms.create_room(host, {"name": "", "maxParticipants": 50})

        assert result.error_code == ErrorCode.INVALID_ARGUMENT
        assert store.list_documents(settings.rooms_collection) == []

    def test_requires_profile(self, rooms):
        assert rooms.create_room("ghost", {"name": "Room"}).error_code == ErrorCode.NOT_FOUND


class TestJoinRoom:

    def test_join_adds_participant(self, rooms, room_id, make_user, store, settings):
        make_user("p1")

        result = rooms.join_room(room_id, "p1")

        assert result.success
        room = get_room(store, settings, room_id)
        assert room["participants"]["p1"]["role"] == "participant"
        assert room["stats"]["participantCount"] == 2
        assert_room_invariants(room)

    def test_timestamps_share_one_format(self, rooms, room_id, make_user, store, settings):
        make_user("p1")
        rooms.join_room(room_id, "p1")

        room = get_room(store, settings, room_id)
        stamps = [room["createdAt"], room["updatedAt"], room["participants"]["p1"]["joinedAt"]]

        assert all(stamp.endswith("Z") for stamp in stamps)
        assert room["updatedAt"] == room["participants"]["p1"]["joinedAt"]

    def test_join_twice_conflicts(self, rooms, room_id, make_user):
        make_user("p1")
        rooms.join_room(room_id, "p1")

        assert rooms.join_room(room_id, "p1").error_code == ErrorCode.CONFLICT

    def test_full_room(self, rooms, room_id, make_user, store, settings):
        for uid in ("p1", "p2", "p3"):
            make_user(uid)
        rooms.join_room(room_id, "p1")
        rooms.join_room(room_id, "p2")

        result = rooms.join_room(room_id, "p3")

        assert result.error_code == ErrorCode.RESOURCE_EXHAUSTED
        assert "p3" not in get_room(store, settings, room_id)["participants"]

    def test_missing_room(self, rooms, make_user):
        make_user("p1")
        assert rooms.join_room("nope", "p1").error_code == ErrorCode.NOT_FOUND

    def test_late_join_disallowed(self, rooms, host, make_user):
        make_user("p1")
        room_id = rooms.create_room(host, {"name": "Strict", "settings": {"allowLateJoin": False}}).data["roomId"]
        rooms.update_room_status(room_id, host, "active")

        assert rooms.join_room(room_id, "p1").error_code == ErrorCode.FAILED_PRECONDITION

    def test_concurrent_joins_never_overfill(self, settings, clock):
        store = InMemoryDocumentStore(max_attempts=200, backoff_seconds=0.0005)
        profiles = ProfileService(store, settings, clock=clock)
        rooms = RoomManager(store, settings, clock=clock)
        for uid in ["host"] + [f"u{i}" for i in range(10)]:
            profiles.sync_identity({"id": uid, "email": f"{uid}@example.com"})
        room_id = rooms.create_room("host", {"name": "Race", "maxParticipants": 5}).data["roomId"]

        results = []
        lock = threading.Lock()

        def join(uid):
            result = rooms.join_room(room_id, uid)
            with lock:
                results.append(result)

        threads = [threading.Thread(target=join, args=(f"u{i}",)) for i in range(10)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        successes = [r for r in results if r.success]
        failures = [r for r in results if not r.success]
        assert len(successes) == 4
        assert {r.error_code for r in failures} == {ErrorCode.RESOURCE_EXHAUSTED}
        room = store.get(settings.rooms_collection, room_id)
        assert room["currentParticipants"] == 5
        assert_room_invariants(room)


class TestLeaveRoom:

    def test_participant_leaves(self, rooms, room_id, make_user, store, settings):
        make_user("p1")
        rooms.join_room(room_id, "p1")

        result = rooms.leave_room(room_id, "p1")

        assert result.data["outcome"] == "left"
        room = get_room(store, settings, room_id)
        assert "p1" not in room["participants"]
        assert_room_invariants(room)

    def test_host_leaving_transfers_to_earliest_joiner(self, rooms, room_id, host, make_user, clock, store, settings):
        make_user("zoe")
        make_user("adam")
        rooms.join_room(room_id, "zoe")
        clock.advance(minutes=5)
        rooms.join_room(room_id, "adam")

        result = rooms.leave_room(room_id, host)

        assert result.data == {"roomId": room_id, "outcome": "hostTransferred", "newHostId": "zoe"}
        room = get_room(store, settings, room_id)
        assert room["hostId"] == "zoe"
        assert room["currentParticipants"] == 2
        assert host not in room["participants"]
        assert_room_invariants(room)

    def test_two_person_room_scenario(self, rooms, host, make_user, store, settings):
        make_user("p1")
        room_id = rooms.create_room(host, {"name": "Pair", "maxParticipants": 2}).data["roomId"]
        rooms.join_room(room_id, "p1")

        rooms.leave_room(room_id, host)

        room = get_room(store, settings, room_id)
        assert room["hostId"] == "p1"
        assert room["status"] in ("waiting", "active")
        assert room["currentParticipants"] == 1
        assert_room_invariants(room)

    def test_sole_host_ends_room_and_keeps_record(self, rooms, room_id, host, store, settings):
        result = rooms.leave_room(room_id, host)

        assert result.data["outcome"] == "ended"
        room = get_room(store, settings, room_id)
        assert room["status"] == "ended"
        assert room["endedAt"] is not None
        assert host in room["participants"]
        assert room["participants"][host]["isActive"] is False

    def test_ended_room_is_closed(self, rooms, room_id, host, make_user):
        make_user("p1")
        rooms.leave_room(room_id, host)

        assert rooms.join_room(room_id, "p1").error_code == ErrorCode.FAILED_PRECONDITION
        assert rooms.leave_room(room_id, host).error_code == ErrorCode.FAILED_PRECONDITION

    def test_non_participant_cannot_leave(self, rooms, room_id):
        assert rooms.leave_room(room_id, "stranger").error_code == ErrorCode.NOT_FOUND


class TestSuccession:

    def test_ties_broken_by_user_id(self, clock):
        now = clock()
        candidates = [
            RoomParticipant(user_id="zed", role=ParticipantRole.PARTICIPANT, joined_at=now),
            RoomParticipant(user_id="amy", role=ParticipantRole.PARTICIPANT, joined_at=now),
            RoomParticipant(user_id="bob", role=ParticipantRole.PARTICIPANT, joined_at=now - timedelta(seconds=1)),
        ]
        assert select_successor(candidates).user_id == "bob"
        assert select_successor(candidates[:2]).user_id == "amy"
        assert select_successor([]) is None


class TestActivityAndStatus:

    def test_update_activity(self, rooms, room_id, host, store, settings):
        assert rooms.update_participant_activity(room_id, host, False).data == {"status": "away"}
        assert get_room(store, settings, room_id)["participants"][host]["isActive"] is False

    def test_activity_requires_membership_and_boolean(self, rooms, room_id, host):
        assert rooms.update_participant_activity(room_id, "stranger", True).error_code == ErrorCode.FAILED_PRECONDITION
        assert rooms.update_participant_activity(room_id, host, "yes").error_code == ErrorCode.INVALID_ARGUMENT

    def test_status_state_machine(self, rooms, room_id, host):
        assert rooms.update_room_status(room_id, host, "paused").error_code == ErrorCode.FAILED_PRECONDITION
        assert rooms.update_room_status(room_id, host, "active").data["room"]["status"] == "active"
        assert rooms.update_room_status(room_id, host, "paused").success
        assert rooms.update_room_status(room_id, host, "active").success
        ended = rooms.update_room_status(room_id, host, "ended").data["room"]
        assert ended["endedAt"] is not None
        assert rooms.update_room_status(room_id, host, "active").error_code == ErrorCode.FAILED_PRECONDITION

    def test_only_host_changes_status(self, rooms, room_id, make_user):
        make_user("p1")
        rooms.join_room(room_id, "p1")

        assert rooms.update_room_status(room_id, "p1", "active").error_code == ErrorCode.PERMISSION_DENIED
        assert rooms.update_room_status(room_id, "p1", "bogus").error_code == ErrorCode.INVALID_ARGUMENT

    def test_ended_room_cannot_be_managed(self, rooms, room_id, host, make_user):
        make_user("p1")
        rooms.join_room(room_id, "p1")
        rooms.update_room_status(room_id, host, "ended")

        by_host = rooms.update_room_status(room_id, host, "waiting")
        by_guest = rooms.update_room_status(room_id, "p1", "active")

        assert by_host.error_code == ErrorCode.FAILED_PRECONDITION
        assert by_host.error_message == "Room has ended"
        assert by_guest.error_code == ErrorCode.PERMISSION_DENIED


class TestDiscovery:

    def test_private_room_details_hidden(self, rooms, host, make_user):
        make_user("p1")
        room_id = rooms.create_room(host, {"name": "Secret", "visibility": "private"}).data["roomId"]

        assert rooms.get_room_details(room_id, host).success
        assert rooms.get_room_details(room_id, "p1").error_code == ErrorCode.PERMISSION_DENIED

    def test_list_public_rooms(self, rooms, host, clock):
        rooms.create_room(host, {"name": "Old", "subject": "Math"})
        clock.advance(minutes=1)
        rooms.create_room(host, {"name": "New", "subject": "Math"})
        rooms.create_room(host, {"name": "Hidden", "visibility": "private"})
        ended_id = rooms.create_room(host, {"name": "Done"}).data["roomId"]
        rooms.leave_room(ended_id, host)

        listed = rooms.list_public_rooms().data["rooms"]
        assert [r["name"] for r in listed] == ["New", "Old"]
        assert listed[0]["participants"] == 1

        assert rooms.list_public_rooms(limit=1, subject="Math").data["rooms"][0]["name"] == "New"
        assert rooms.list_public_rooms(subject="Art").data["rooms"] == []
        assert rooms.list_public_rooms(limit=0).error_code == ErrorCode.INVALID_ARGUMENT

    def test_room_document_round_trips(self, rooms, room_id, store, settings):
        room = Room.model_validate(get_room(store, settings, room_id))
        hosts = [uid for uid, p in room.participants.items() if p.role == ParticipantRole.HOST]
        assert hosts == [room.host_id]
