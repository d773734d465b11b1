"""
Tests for the presence registry.
"""

from relaychat.presence import PresenceRegistry


class TestRegister:
    def test_register_adds_session(self):
        presence = PresenceRegistry()
        presence.register("s1", 7)

        assert presence.sessions_for_user(7) == {"s1"}
        assert presence.user_for_session("s1") == 7
        assert presence.is_online(7)

    def test_register_twice_is_noop(self):
        presence = PresenceRegistry()
        presence.register("s1", 7)
        presence.register("s1", 7)

        assert presence.sessions_for_user(7) == {"s1"}
        assert presence.session_count() == 1

    def test_multiple_devices(self):
        presence = PresenceRegistry()
        presence.register("phone", 7)
        presence.register("laptop", 7)

        assert presence.sessions_for_user(7) == {"phone", "laptop"}

    def test_reregister_to_other_user_moves_session(self):
        presence = PresenceRegistry()
        presence.register("s1", 7)
        presence.register("s1", 8)

        assert not presence.is_online(7)
        assert presence.sessions_for_user(8) == {"s1"}

    def test_returned_sets_are_copies(self):
        presence = PresenceRegistry()
        presence.register("s1", 7)
        sessions = presence.sessions_for_user(7)

        presence.register("s2", 7)

        assert sessions == {"s1"}


class TestUnregister:
    def test_n_connects_n_minus_one_disconnects(self):
        presence = PresenceRegistry()
        for i in range(4):
            presence.register(f"s{i}", 7)
        for i in range(3):
            presence.unregister(f"s{i}")

        assert presence.sessions_for_user(7) == {"s3"}

        assert presence.unregister("s3") == 7
        assert not presence.is_online(7)
        assert presence.sessions_for_user(7) == frozenset()

    def test_unregister_unknown_session_is_safe(self):
        presence = PresenceRegistry()

        assert presence.unregister("never-registered") is None
        assert presence.session_count() == 0

    def test_unregister_leaves_rooms(self):
        presence = PresenceRegistry()
        presence.register("s1", 7)
        presence.join_chat_room("s1", 42)

        presence.unregister("s1")

        assert presence.sessions_in_room(42) == frozenset()


class TestChatRooms:
    def test_join_requires_registration(self):
        presence = PresenceRegistry()

        assert presence.join_chat_room("anon", 42) is False
        assert presence.sessions_in_room(42) == frozenset()

    def test_join_and_leave(self):
        presence = PresenceRegistry()
        presence.register("s1", 7)
        presence.register("s2", 8)

        assert presence.join_chat_room("s1", 42)
        assert presence.join_chat_room("s2", 42)
        assert presence.sessions_in_room(42) == {"s1", "s2"}

        presence.leave_chat_room("s1", 42)
        assert presence.sessions_in_room(42) == {"s2"}

    def test_leaving_room_keeps_user_group(self):
        presence = PresenceRegistry()
        presence.register("s1", 7)
        presence.join_chat_room("s1", 42)

        presence.leave_chat_room("s1", 42)

        assert presence.sessions_for_user(7) == {"s1"}
