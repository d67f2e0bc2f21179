"""
Tests for MessageRouter: message validation, dispatch, acknowledgements,
error reporting and reconnect handling.
"""

from __future__ import annotations

from unittest.mock import patch

from wagerlab.configurations.experiment_config import ExperimentConfig
from wagerlab.server.message_router import GENERIC_FAILURE_MESSAGE, UNKNOWN_MESSAGE
from wagerlab.server.phase_coordinator import SESSION_INACTIVE_MESSAGE


def trial_payload(subject_id, trial=1, **fields):
    return {
        "event": "trialData",
        "data": {
            "clientID": subject_id,
            "trialNumber": trial,
            "initialWager": 3,
            "finalWager": 3,
            "walletBefore": 100,
            "walletAfter": 103,
            "aiCorrect": True,
            **fields,
        },
    }


def start_solo(harness, subject_id="A"):
    harness.connect(subject_id)
    harness.send(subject_id, "startSession")
    harness.scheduler.advance(30)
    return harness.registry.session_for(subject_id)


class TestInboundValidation:
    def test_malformed_json_is_dropped(self, harness):
        harness.router.handle_raw("sid-X", "{not json")
        harness.router.handle_raw("sid-X", "[1, 2]")

        assert harness.transport.sent == []
        assert harness.transport.broadcasts == []

    def test_raw_json_frame_is_dispatched(self, harness):
        harness.router.handle_raw("sid-X", '{"type": "register", "clientID": "A"}')

        assert harness.registry.sid_for("A") == "sid-X"
        assert harness.transport.broadcasts[-1] == ("participantCount", {"type": "participantCount", "count": 1})

    def test_unknown_type_reported_to_sender(self, harness):
        harness.connect("A")
        harness.router.handle("sid-A", "teleport", {"type": "teleport"})

        assert harness.transport.last("sid-A", "error")["message"] == UNKNOWN_MESSAGE

    def test_register_requires_client_id(self, harness):
        harness.router.handle("sid-X", "register", {"type": "register"})

        assert harness.transport.last("sid-X", "error")["message"] == UNKNOWN_MESSAGE
        assert harness.registry.connected_count() == 0

    def test_errors_only_reach_the_sender(self, harness):
        harness.connect("A")
        harness.connect("B")
        harness.transport.clear()

        harness.send("B", "confirmDecision", phase="initial")

        assert harness.transport.messages("sid-A") == []
        assert len(harness.transport.messages("sid-B", "error")) == 1

    def test_internal_failure_gets_generic_message(self, harness):
        start_solo(harness)
        with patch.object(harness.aggregator, "record_trial", side_effect=RuntimeError("boom")):
            harness.send("A", "sendData", payload=trial_payload("A"))

        assert harness.transport.last("sid-A", "error")["message"] == GENERIC_FAILURE_MESSAGE


class TestSessionMessages:
    def test_register_sends_experiment_config(self, harness):
        harness.router.experiment_config = ExperimentConfig().experiment(experiment_id="exp")
        harness.connect("A")

        config = harness.transport.last("sid-A", "experimentConfig")
        assert config["experiment_id"] == "exp"
        assert config["default_wager"] == 2

    def test_start_session_acknowledged(self, harness):
        harness.connect("A")
        harness.send("A", "startSession")

        started = harness.transport.last("sid-A", "sessionStarted")
        assert started["status"] == "waiting"
        assert started["participants"] == ["A"]
        assert started["sessionID"] == harness.registry.session_for("A")

    def test_solo_round_trip(self, harness):
        session_id = start_solo(harness)
        assert harness.transport.last("sid-A", "phaseChange")["phase"] == "initial"

        harness.send("A", "updateWager", wagerType="initialWager", value=3)
        assert harness.transport.last("sid-A", "wagerUpdated")["value"] == 3

        harness.send("A", "confirmDecision", phase="initial")
        assert harness.transport.last("sid-A", "decisionConfirmed")["phase"] == "initial"
        assert harness.transport.last("sid-A", "phaseChange")["phase"] == "finalDecision"

        harness.send("A", "sendData", payload=trial_payload("A"))
        assert harness.transport.last("sid-A", "dataSent")["duplicate"] is False
        harness.send("A", "sendData", payload=trial_payload("A"))
        assert harness.transport.last("sid-A", "dataSent")["duplicate"] is True

        harness.send("A", "sendData", payload={"event": "postTaskSurvey", "data": {"wins": 3}})
        harness.send("A", "sendData", payload={"event": "finishSession", "data": {}})
        assert harness.transport.last("sid-A", "dataSent")["sessionEnded"] is True
        assert harness.manager.get_session(session_id)["status"] == "ended"
        assert harness.transport.last("sid-A", "sessionUpdate")["status"] == "ended"

        harness.send("A", "startSession")
        assert "already completed" in harness.transport.last("sid-A", "error")["message"]

    def test_invalid_wager_rejected(self, harness):
        start_solo(harness)
        harness.send("A", "updateWager", wagerType="initialWager", value=9)

        assert harness.transport.messages("sid-A", "wagerUpdated") == []
        assert "between" in harness.transport.last("sid-A", "error")["message"]

    def test_unknown_data_event(self, harness):
        start_solo(harness)
        harness.send("A", "sendData", payload={"event": "midTaskSurvey", "data": {}})
        assert "midTaskSurvey" in harness.transport.last("sid-A", "error")["message"]

    def test_chat_message(self, harness):
        for subject_id in "ABC":
            harness.connect(subject_id)
            harness.send(subject_id, "startSession")

        harness.send("B", "chat", message="blue has reach", timestamp=42)

        for sid in ("sid-A", "sid-B", "sid-C"):
            chat = harness.transport.last(sid, "chat")
            assert (chat["clientID"], chat["message"], chat["timestamp"]) == ("B", "blue has reach", 42)

    def test_relayed_chat_stored_with_group_trial(self, harness):
        for subject_id in "ABC":
            harness.connect(subject_id)
            harness.send(subject_id, "startSession")
        session_id = harness.registry.session_for("A")

        harness.scheduler.advance(15)
        assert harness.transport.last("sid-A", "phaseChange")["subPhase"] == "chat"
        harness.send("A", "chat", message="red has reach", timestamp=111)
        harness.scheduler.advance(30)

        # The trial data does not echo the chat back
        harness.send("A", "sendData", payload=trial_payload("A"))

        doc = harness.store.get(f"sessions/{session_id}/trials", "trial_1_group")
        assert doc["chatTranscript"] == [{"clientID": "A", "message": "red has reach", "timestamp": 111}]
        assert list(doc["submissions"]) == ["A"]


class TestReconnect:
    def test_disconnect_updates_count(self, harness):
        harness.connect("A")
        harness.connect("B")
        harness.router.on_disconnect("sid-A")

        assert harness.transport.broadcasts[-1][1]["count"] == 1

    def test_reconnect_receives_rejoin_snapshot(self, harness):
        for subject_id in "ABC":
            harness.connect(subject_id)
            harness.send(subject_id, "startSession")
        harness.scheduler.advance(4)
        harness.send("A", "updateWager", wagerType="initialWager", value=1)

        harness.router.on_disconnect("sid-B")
        harness.connect("B", sid="sid-B2")

        snapshot = harness.transport.last("sid-B2", "rejoinSession")
        assert snapshot["phase"] == "groupDelib"
        assert snapshot["remainingTime"] == 11_000
        assert snapshot["currentWagers"] == {"A": 1}

        # Later broadcasts follow the new socket
        harness.scheduler.advance(11)
        assert harness.transport.last("sid-B2", "phaseChange")["subPhase"] == "chat"

    def test_evicted_session_reported_on_register(self, harness):
        session_id = start_solo(harness)
        harness.coordinator.live_sessions.pop(session_id)

        harness.connect("A", sid="sid-A2")

        assert harness.transport.last("sid-A2", "error")["message"] == SESSION_INACTIVE_MESSAGE
        assert harness.transport.messages("sid-A2", "rejoinSession") == []

    def test_completed_session_not_reported(self, harness):
        start_solo(harness)
        harness.scheduler.advance(15 * 12)
        assert harness.transport.last("sid-A", "trialsCompleted") is not None

        harness.connect("A", sid="sid-A2")

        assert harness.transport.messages("sid-A2", "error") == []
