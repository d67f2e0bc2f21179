"""Tests for ParticipantStateTracker transitions."""

from __future__ import annotations

from wagerlab.server.participant_state import ParticipantState, ParticipantStateTracker


class TestParticipantStateTracker:
    def test_unknown_participant_is_idle(self):
        tracker = ParticipantStateTracker()
        assert tracker.get_state("A") == ParticipantState.IDLE

    def test_full_lifecycle(self):
        tracker = ParticipantStateTracker()
        assert tracker.transition_to("A", ParticipantState.IN_WAITROOM)
        assert tracker.transition_to("A", ParticipantState.IN_SESSION)
        assert tracker.transition_to("A", ParticipantState.FINISHED)
        assert tracker.get_state("A") == ParticipantState.FINISHED

    def test_invalid_transition_is_rejected(self):
        tracker = ParticipantStateTracker()
        assert not tracker.transition_to("A", ParticipantState.FINISHED)
        assert tracker.get_state("A") == ParticipantState.IDLE

    def test_same_state_is_a_noop(self):
        tracker = ParticipantStateTracker()
        tracker.transition_to("A", ParticipantState.IN_SESSION)
        assert tracker.transition_to("A", ParticipantState.IN_SESSION)

    def test_finished_cannot_reenter_session(self):
        tracker = ParticipantStateTracker()
        tracker.transition_to("A", ParticipantState.IN_SESSION)
        tracker.transition_to("A", ParticipantState.FINISHED)

        assert not tracker.transition_to("A", ParticipantState.IN_WAITROOM)
        assert tracker.get_state("A") == ParticipantState.FINISHED

    def test_reset(self):
        tracker = ParticipantStateTracker()
        tracker.transition_to("A", ParticipantState.IN_SESSION)
        tracker.reset("A")
        assert tracker.get_state("A") == ParticipantState.IDLE
