"""Tests for the profile merge engine and profile operations."""
import pytest

from timeout_app.core.errors import ErrorCode, InvalidArgument, StatsInvariantError
from timeout_app.domain.user import IdentityPayload, StudyStats, UserRole
from timeout_app.services.profiles import (
    apply_additive_stats,
    ensure_non_decreasing,
    identity_payload_from_event,
    merge_profile,
)


@pytest.fixture
def payload():
    return IdentityPayload(
        id="user_ada",
        email="ada@example.com",
        first_name="Ada",
        last_name="Lovelace",
        avatar_url="https://img.example/ada.png",
    )


@pytest.fixture
def stored(payload, clock):
    """A profile document as first written for ``payload``."""
    return merge_profile(payload, None, clock()).updates


class TestMergeProfile:

    def test_first_sign_in_creates_full_profile(self, payload, clock):
        result = merge_profile(payload, None, clock())

        assert result.created
        assert result.updates["userId"] == "user_ada"
        assert result.updates["displayName"] == "Ada Lovelace"
        assert result.updates["role"] is None
        assert result.updates["isActive"] is True
        assert result.updates["studyStats"]["totalStudyTime"] == 0
        assert result.updates["preferences"]["defaultFocusTime"] == 25

    def test_merge_is_idempotent(self, payload, stored, clock):
        clock.advance(days=1)
        result = merge_profile(payload, stored, clock())

        assert not result.created
        assert result.updates == {}

    def test_name_change_updates_display_name(self, payload, stored, clock):
        renamed = payload.model_copy(update={"first_name": "Augusta"})
        result = merge_profile(renamed, stored, clock())

        assert result.updates["firstName"] == "Augusta"
        assert result.updates["displayName"] == "Augusta Lovelace"
        assert "updatedAt" in result.updates
        assert "lastName" not in result.updates

    def test_email_and_stats_are_immutable(self, payload, stored, clock):
        stored["studyStats"]["totalStudyTime"] = 120
        changed = payload.model_copy(update={"email": "other@example.com"})
        result = merge_profile(changed, stored, clock())

        assert result.updates == {}

    def test_missing_email_is_filled(self, payload, stored, clock):
        stored["email"] = ""
        result = merge_profile(payload, stored, clock())

        assert result.updates["email"] == "ada@example.com"

    def test_role_fills_only_when_unset(self, payload, stored, clock):
        with_role = payload.model_copy(update={"role": UserRole.TEACHER})
        assert merge_profile(with_role, stored, clock()).updates["role"] == "teacher"

        stored["role"] = "student"
        assert merge_profile(with_role, stored, clock()).updates == {}

    def test_missing_preferences_and_weekly_fields_are_filled(self, payload, stored, clock):
        del stored["preferences"]["theme"]
        del stored["studyStats"]["weeklyProgress"]
        del stored["isActive"]
        result = merge_profile(payload, stored, clock())

        assert result.updates["preferences.theme"] == "system"
        assert result.updates["studyStats.weeklyProgress"] == 0
        assert result.updates["isActive"] is True
        assert "preferences.soundEnabled" not in result.updates

    def test_missing_name_fields_are_not_cleared(self, stored, clock):
        sparse = IdentityPayload(id="user_ada", email="ada@example.com")
        assert merge_profile(sparse, stored, clock()).updates == {}


class TestAdditiveStats:

    def test_adds_time_and_completed_session(self):
        stats = StudyStats(total_study_time=100, sessions_completed=3, current_streak=2, longest_streak=2)
        updated = apply_additive_stats(stats, 25, True)

        assert updated.total_study_time == 125
        assert updated.weekly_progress == 25
        assert updated.sessions_completed == 4
        assert updated.current_streak == 3
        assert updated.longest_streak == 3

    def test_longest_streak_is_kept(self):
        stats = StudyStats(current_streak=1, longest_streak=7)
        assert apply_additive_stats(stats, 10, True).longest_streak == 7

    @pytest.mark.parametrize("delta", [-1, 2.5, "30", None, True])
    def test_rejects_bad_delta(self, delta):
        with pytest.raises(InvalidArgument):
            apply_additive_stats(StudyStats(), delta, False)

    def test_decrease_is_an_internal_error(self):
        with pytest.raises(StatsInvariantError) as exc_info:
            ensure_non_decreasing(StudyStats(total_study_time=50), StudyStats(total_study_time=40))

        assert exc_info.value.code == ErrorCode.INTERNAL


class TestProfileService:

    def test_sync_creates_then_merges(self, profiles):
        identity = {"id": "user_ada", "email": "ada@example.com", "firstName": "Ada", "lastName": "Lovelace"}

        first = profiles.sync_identity(identity)
        second = profiles.sync_identity(identity)

        assert first.success and first.data["created"]
        assert second.success and not second.data["created"]
        assert second.data["updatedFields"] == []
        assert second.data["profile"]["displayName"] == "Ada Lovelace"

    def test_sync_rejects_unknown_fields(self, profiles):
        result = profiles.sync_identity({"id": "user_ada", "isAdmin": True})

        assert not result.success
        assert result.error_code == ErrorCode.INVALID_ARGUMENT

    def test_get_missing_profile(self, profiles):
        result = profiles.get_profile("nobody")

        assert result.error_code == ErrorCode.NOT_FOUND

    def test_role_can_be_set_once(self, profiles, make_user):
        make_user("user_ada")

        assert profiles.set_role("user_ada", "student").data == {"role": "student"}
        assert profiles.set_role("user_ada", "student").success
        result = profiles.set_role("user_ada", "teacher")
        assert result.error_code == ErrorCode.FAILED_PRECONDITION
        assert profiles.get_profile("user_ada").data["role"] == "student"

    def test_admin_role_is_not_self_assignable(self, profiles, make_user):
        make_user("user_ada")

        assert profiles.set_role("user_ada", "admin").error_code == ErrorCode.INVALID_ARGUMENT

    def test_update_preferences(self, profiles, make_user):
        make_user("user_ada")

        result = profiles.update_preferences("user_ada", {"theme": "dark", "defaultFocusTime": 50})
        assert result.success
        assert result.data["preferences"]["theme"] == "dark"
        stored = profiles.get_profile("user_ada").data["preferences"]
        assert stored["defaultFocusTime"] == 50
        assert stored["shortBreakTime"] == 5

    def test_update_preferences_validates(self, profiles, make_user):
        make_user("user_ada")

        assert profiles.update_preferences("user_ada", {"theme": "neon"}).error_code == ErrorCode.INVALID_ARGUMENT
        assert profiles.update_preferences("user_ada", {}).error_code == ErrorCode.INVALID_ARGUMENT

    def test_record_study_session(self, profiles, make_user):
        make_user("user_ada")

        profiles.record_study_session("user_ada", 25, True)
        result = profiles.record_study_session("user_ada", 30)

        stats = result.data["studyStats"]
        assert stats["totalStudyTime"] == 55
        assert stats["sessionsCompleted"] == 1

    def test_negative_study_time_leaves_stats_unchanged(self, profiles, make_user):
        make_user("user_ada")
        profiles.record_study_session("user_ada", 25)

        result = profiles.record_study_session("user_ada", -5)

        assert result.error_code == ErrorCode.INVALID_ARGUMENT
        assert profiles.get_profile("user_ada").data["studyStats"]["totalStudyTime"] == 25

    def test_weekly_reset_keeps_totals(self, profiles, make_user):
        make_user("user_ada")
        profiles.record_study_session("user_ada", 40, True)

        stats = profiles.reset_weekly_progress("user_ada").data["studyStats"]

        assert stats["weeklyProgress"] == 0
        assert stats["totalStudyTime"] == 40
        assert profiles.reset_current_streak("user_ada").data["studyStats"]["currentStreak"] == 0
        assert profiles.get_profile("user_ada").data["studyStats"]["longestStreak"] == 1

    def test_streak_reset_keeps_cumulative_counters(self, profiles, make_user):
        make_user("user_ada")
        profiles.record_study_session("user_ada", 30, True)
        profiles.record_study_session("user_ada", 20, True)

        stats = profiles.reset_current_streak("user_ada").data["studyStats"]
        stored = profiles.get_profile("user_ada").data["studyStats"]

        assert stats["currentStreak"] == 0
        assert stored == stats
        assert stored["longestStreak"] == 2
        assert stored["sessionsCompleted"] == 2
        assert stored["totalStudyTime"] == 50
        assert stored["weeklyProgress"] == 50

    def test_streak_reset_requires_profile(self, profiles):
        assert profiles.reset_current_streak("ghost").error_code == ErrorCode.NOT_FOUND

    def test_deactivated_profile_cannot_record(self, profiles, make_user):
        make_user("user_ada")

        assert profiles.deactivate_profile("user_ada").success
        profile = profiles.get_profile("user_ada").data
        assert profile["isActive"] is False
        assert profile["deletedAt"] is not None
        assert profiles.record_study_session("user_ada", 5).error_code == ErrorCode.FAILED_PRECONDITION


class TestIdentityEvents:

    def test_payload_uses_primary_email(self):
        payload = identity_payload_from_event({
            "id": "user_ada",
            "primary_email_address_id": "e2",
            "email_addresses": [
                {"id": "e1", "email_address": "old@example.com"},
                {"id": "e2", "email_address": "ada@example.com"},
            ],
            "first_name": "Ada",
            "image_url": "https://img.example/ada.png",
            "public_metadata": {"role": "wizard"},
        })

        assert payload.email == "ada@example.com"
        assert payload.last_name == ""
        assert payload.role is None

    def test_created_then_deleted(self, profiles):
        created = profiles.handle_identity_event("user.created", {"id": "user_ada", "first_name": "Ada"})
        deleted = profiles.handle_identity_event("user.deleted", {"id": "user_ada"})
        ignored = profiles.handle_identity_event("session.created", {})

        assert created.data["created"]
        assert deleted.data == {"userId": "user_ada", "isActive": False}
        assert ignored.data == {"ignored": "session.created"}
