"""Participant lifecycle state tracking.

LiveSession (in live_session.py): tracks a SESSION's trial/phase progress
ParticipantState (this file): tracks where a PARTICIPANT is in the experiment
"""

from __future__ import annotations

import logging
import threading
from enum import Enum, auto

logger = logging.getLogger(__name__)


class ParticipantState(Enum):
    """Participant lifecycle states.

    - IDLE: Connected (or not yet seen), not in any cohort or session
    - IN_WAITROOM: In a waiting cohort
    - IN_SESSION: Assigned to a running solo or group session
    - FINISHED: Completed the post-task step
    """
    IDLE = auto()
    IN_WAITROOM = auto()
    IN_SESSION = auto()
    FINISHED = auto()


VALID_TRANSITIONS = {
    ParticipantState.IDLE: {
        ParticipantState.IN_WAITROOM,  # New waiting cohort or joined one
        ParticipantState.IN_SESSION,   # Sent straight to a solo session
    },
    ParticipantState.IN_WAITROOM: {
        ParticipantState.IN_SESSION,   # Cohort promoted or split
        ParticipantState.IDLE,
    },
    ParticipantState.IN_SESSION: {
        ParticipantState.FINISHED,     # Post-task submitted
        ParticipantState.IDLE,         # Session aborted
    },
    ParticipantState.FINISHED: {ParticipantState.IDLE},
}


class ParticipantStateTracker:
    """Single source of truth for where each participant is."""

    def __init__(self):
        self._states: dict[str, ParticipantState] = {}
        self._lock = threading.Lock()

    def get_state(self, subject_id: str) -> ParticipantState:
        return self._states.get(subject_id, ParticipantState.IDLE)

    def transition_to(self, subject_id: str, new_state: ParticipantState) -> bool:
        """Validate and apply a state transition.

        Returns:
            True if the transition was applied, False if it is not allowed
        """
        with self._lock:
            current_state = self.get_state(subject_id)
            if current_state == new_state:
                return True

            valid_targets = VALID_TRANSITIONS.get(current_state, set())
            if new_state not in valid_targets:
                logger.error(
                    f"[ParticipantState] Invalid transition for {subject_id}: "
                    f"{current_state.name} -> {new_state.name}. "
                    f"Valid transitions: {[s.name for s in valid_targets]}"
                )
                return False

            self._states[subject_id] = new_state

        logger.info(
            f"[ParticipantState] {subject_id}: {current_state.name} -> {new_state.name}"
        )
        return True

    def reset(self, subject_id: str) -> None:
        """Forget a participant (returns to implicit IDLE)."""
        with self._lock:
            old_state = self._states.pop(subject_id, None)
        if old_state is not None:
            logger.info(
                f"[ParticipantState] {subject_id}: reset from {old_state.name} to IDLE"
            )
