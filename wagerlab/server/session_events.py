"""Notifications about session lifecycle changes.

Cohort, phase and persistence components publish to a SessionEventBus, which
fans each hook out to the subscribed listeners. The SessionManager and
ResultAggregator never talk to the transport directly.
"""

from __future__ import annotations

import dataclasses
import logging

from wagerlab.utils.typing import AIMode, SessionID, SubjectID, TrialNumber

logger = logging.getLogger(__name__)


@dataclasses.dataclass
class SessionUpdate:
    """A session was created, promoted or ended.

    Attributes:
        session_id: Session document id.
        status: One of SessionStatuses.
        mode: One of SessionModes.
        participants: Participant IDs in join order.
        ai_mode: Assigned AI mode, None while waiting.
        trials: Shuffled trial rows, only set when the session starts running.
        waiting_end_time: Epoch ms at which the waiting cohort expires.
    """

    session_id: SessionID
    status: str
    mode: str
    participants: list[SubjectID]
    ai_mode: AIMode | None = None
    trials: list[dict] | None = None
    waiting_end_time: int | None = None

    @property
    def trial_count(self) -> int:
        return len(self.trials) if self.trials is not None else 0

    def to_client(self) -> dict:
        """Fields sent to participants in a ``sessionUpdate`` message."""
        return {
            "sessionID": self.session_id,
            "status": self.status,
            "mode": self.mode,
            "participants": list(self.participants),
            "aiMode": self.ai_mode,
            "trialCount": self.trial_count,
            "waitingEndTime": self.waiting_end_time,
        }


class SessionListener:
    """Base listener interface for session lifecycle hooks."""

    def on_session_update(self, update: SessionUpdate):
        pass

    def on_trials_completed(self, session_id: SessionID, participants: list[SubjectID]):
        pass

    def on_session_aborted(self, session_id: SessionID, participants: list[SubjectID], reason: str):
        pass

    def on_chat_closed(self, session_id: SessionID, trial: TrialNumber, transcript: list[dict]):
        pass


class SessionEventBus(SessionListener):
    """Fans every hook out to the subscribed listeners, in subscription order.

    A failing listener is logged and does not stop delivery to the others.
    """

    def __init__(self, listeners: list[SessionListener] | None = None) -> None:
        self.listeners: list[SessionListener] = list(listeners or [])

    def subscribe(self, listener: SessionListener) -> None:
        self.listeners.append(listener)

    def on_session_update(self, update: SessionUpdate):
        for listener in self.listeners:
            try:
                listener.on_session_update(update)
            except Exception:
                logger.exception(
                    f"[EventBus] {type(listener).__name__} failed handling update "
                    f"for session {update.session_id}"
                )

    def on_trials_completed(self, session_id: SessionID, participants: list[SubjectID]):
        for listener in self.listeners:
            try:
                listener.on_trials_completed(session_id, participants)
            except Exception:
                logger.exception(
                    f"[EventBus] {type(listener).__name__} failed handling completion "
                    f"of session {session_id}"
                )

    def on_session_aborted(self, session_id: SessionID, participants: list[SubjectID], reason: str):
        for listener in self.listeners:
            try:
                listener.on_session_aborted(session_id, participants, reason)
            except Exception:
                logger.exception(
                    f"[EventBus] {type(listener).__name__} failed handling abort "
                    f"of session {session_id}"
                )

    def on_chat_closed(self, session_id: SessionID, trial: TrialNumber, transcript: list[dict]):
        for listener in self.listeners:
            try:
                listener.on_chat_closed(session_id, trial, transcript)
            except Exception:
                logger.exception(
                    f"[EventBus] {type(listener).__name__} failed handling chat transcript "
                    f"of session {session_id} trial {trial}"
                )
