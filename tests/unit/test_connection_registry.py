"""Tests for ConnectionRegistry socket and session bindings."""

from __future__ import annotations

from wagerlab.server.connection_registry import ConnectionRegistry


class TestConnections:
    def test_register_and_lookup(self):
        registry = ConnectionRegistry()
        assert registry.register("sid1", "A") is None

        assert registry.participant_for("sid1") == "A"
        assert registry.sid_for("A") == "sid1"
        assert registry.connected_count() == 1

    def test_newest_connection_wins(self):
        registry = ConnectionRegistry()
        registry.register("sid1", "A")

        assert registry.register("sid2", "A") == "sid1"
        assert registry.sid_for("A") == "sid2"
        assert registry.participant_for("sid1") is None

    def test_old_socket_disconnect_keeps_new_binding(self):
        """A late disconnect of a replaced socket does not orphan the participant."""
        registry = ConnectionRegistry()
        registry.register("sid1", "A")
        registry.register("sid2", "A")

        assert registry.unregister("sid1") is None
        assert registry.sid_for("A") == "sid2"

    def test_unregister_keeps_session_binding(self):
        registry = ConnectionRegistry()
        registry.register("sid1", "A")
        registry.bind_session("A", "s1")

        assert registry.unregister("sid1") == "A"
        assert registry.sid_for("A") is None
        assert registry.session_for("A") == "s1"

    def test_socket_reused_for_other_participant(self):
        registry = ConnectionRegistry()
        registry.register("sid1", "A")
        registry.register("sid1", "B")

        assert registry.sid_for("A") is None
        assert registry.sid_for("B") == "sid1"


class TestSessionBindings:
    def test_unbind_session_only_touches_that_session(self):
        registry = ConnectionRegistry()
        registry.bind_session("A", "s1")
        registry.bind_session("B", "s1")
        registry.bind_session("C", "s2")

        assert sorted(registry.unbind_session("s1")) == ["A", "B"]
        assert registry.session_for("A") is None
        assert registry.session_for("C") == "s2"

    def test_rebinding_moves_participant(self):
        registry = ConnectionRegistry()
        registry.bind_session("A", "cohort")
        registry.bind_session("A", "solo")

        assert registry.unbind_session("cohort") == []
        assert registry.session_for("A") == "solo"
