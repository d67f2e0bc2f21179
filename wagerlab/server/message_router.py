"""Validation and dispatch of inbound participant messages.

Every inbound message is a JSON object with a ``type`` field. Errors are
reported to the sending connection only, as an ``error`` message; internal
failures are logged and reported with a generic message.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Callable

from wagerlab.configurations import configuration_constants
from wagerlab.configurations.experiment_config import ExperimentConfig
from wagerlab.server.connection_registry import ConnectionRegistry
from wagerlab.server.errors import RequestInvalidError
from wagerlab.server.participant_state import ParticipantState, ParticipantStateTracker
from wagerlab.server.phase_coordinator import SESSION_INACTIVE_MESSAGE, PhaseCoordinator
from wagerlab.server.result_aggregator import RecordOutcome, ResultAggregator, SurveyKinds
from wagerlab.server.session_events import SessionListener, SessionUpdate
from wagerlab.server.session_manager import SessionManager
from wagerlab.server.transport import SessionBroadcaster
from wagerlab.utils.typing import SessionID, SocketID, SubjectID

logger = logging.getLogger(__name__)

InboundMessages = configuration_constants.InboundMessages
OutboundMessages = configuration_constants.OutboundMessages
DataEvents = configuration_constants.DataEvents

GENERIC_FAILURE_MESSAGE = "Failed to process request"
UNKNOWN_MESSAGE = "Unknown message type or missing required fields"


class MessageRouter(SessionListener):
    def __init__(
        self,
        registry: ConnectionRegistry,
        broadcaster: SessionBroadcaster,
        session_manager: SessionManager,
        coordinator: PhaseCoordinator,
        aggregator: ResultAggregator,
        participant_state_tracker: ParticipantStateTracker,
        experiment_config: ExperimentConfig | None = None,
    ):
        self.registry = registry
        self.broadcaster = broadcaster
        self.session_manager = session_manager
        self.coordinator = coordinator
        self.aggregator = aggregator
        self.participant_state_tracker = participant_state_tracker
        self.experiment_config = experiment_config

        # Sessions whose trials are over but whose participants may still be on the post-task step
        self.completed_sessions: set[SessionID] = set()

        self._handlers: dict[str, Callable[[SocketID, dict], None]] = {
            InboundMessages.Register: self._on_register,
            InboundMessages.Chat: self._on_chat,
            InboundMessages.StartSession: self._on_start_session,
            InboundMessages.UpdateWager: self._on_update_wager,
            InboundMessages.ConfirmDecision: self._on_confirm_decision,
            InboundMessages.SendData: self._on_send_data,
        }

    # ------------------------------------------------------------------ #
    # Entry points
    # ------------------------------------------------------------------ #

    def handle_raw(self, sid: SocketID, raw: Any) -> None:
        """Handle a raw text frame (or already-decoded object) from the default channel."""
        if isinstance(raw, (str, bytes, bytearray)):
            try:
                data = json.loads(raw)
            except ValueError:
                logger.warning(f"[Router] Dropping malformed JSON from {sid}: {raw!r:.200}")
                return
        else:
            data = raw

        if not isinstance(data, dict):
            logger.warning(f"[Router] Dropping non-object message from {sid}: {data!r:.200}")
            return

        self.handle(sid, data.get("type"), data)

    def handle(self, sid: SocketID, message_type: str | None, data: Any) -> None:
        handler = self._handlers.get(message_type)
        if handler is None or not isinstance(data, dict):
            logger.warning(f"[Router] Unknown message type {message_type!r} from {sid}")
            self.broadcaster.send_error(sid, UNKNOWN_MESSAGE)
            return

        try:
            handler(sid, data)
        except RequestInvalidError as e:
            logger.info(f"[Router] Rejected {message_type} from {sid}: {e}")
            self.broadcaster.send_error(sid, str(e))
        except Exception:
            logger.exception(f"[Router] Failed to handle {message_type} from {sid}")
            self.broadcaster.send_error(sid, GENERIC_FAILURE_MESSAGE)

    def on_disconnect(self, sid: SocketID) -> None:
        subject_id = self.registry.unregister(sid)
        if subject_id is not None:
            self.broadcaster.broadcast_participant_count()

    # ------------------------------------------------------------------ #
    # Helpers
    # ------------------------------------------------------------------ #

    def _subject(self, sid: SocketID, data: dict) -> SubjectID:
        subject_id = data.get("clientID") or self.registry.participant_for(sid)
        if not isinstance(subject_id, str) or not subject_id:
            raise RequestInvalidError(UNKNOWN_MESSAGE)
        return subject_id

    def _session(self, subject_id: SubjectID, data: dict) -> SessionID:
        session_id = self.registry.session_for(subject_id) or data.get("sessionID")
        if not session_id:
            raise RequestInvalidError("You are not in a session. Please restart the experiment.")
        return session_id

    # ------------------------------------------------------------------ #
    # Handlers
    # ------------------------------------------------------------------ #

    def _on_register(self, sid: SocketID, data: dict) -> None:
        subject_id = data.get("clientID")
        if not isinstance(subject_id, str) or not subject_id:
            raise RequestInvalidError(UNKNOWN_MESSAGE)

        self.registry.register(sid, subject_id)
        self.broadcaster.broadcast_participant_count()

        if self.experiment_config is not None:
            self.broadcaster.transport.send(
                sid, OutboundMessages.ExperimentConfig, self.experiment_config.get_client_config()
            )

        snapshot = self.coordinator.rejoin_snapshot(subject_id)
        if snapshot is not None:
            self.broadcaster.transport.send(sid, OutboundMessages.RejoinSession, snapshot)
            return

        session_id = self.registry.session_for(subject_id)
        if (
            session_id is not None
            and session_id not in self.completed_sessions
            and self.participant_state_tracker.get_state(subject_id) == ParticipantState.IN_SESSION
        ):
            session = self.session_manager.get_session(session_id)
            if session is not None and session.get("status") == configuration_constants.SessionStatuses.Running:
                logger.warning(
                    f"[Router] {subject_id} registered for session {session_id} which is not live anymore."
                )
                self.broadcaster.send_error(sid, SESSION_INACTIVE_MESSAGE)

    def _on_chat(self, sid: SocketID, data: dict) -> None:
        subject_id = self._subject(sid, data)
        message = data.get("message")
        if not isinstance(message, str) or not message:
            raise RequestInvalidError(UNKNOWN_MESSAGE)
        timestamp = data.get("timestamp")
        self.coordinator.relay_chat(
            self._session(subject_id, data),
            subject_id,
            message,
            timestamp if isinstance(timestamp, (int, float, str)) else None,
        )

    def _on_start_session(self, sid: SocketID, data: dict) -> None:
        subject_id = self._subject(sid, data)
        result = self.session_manager.join(subject_id)
        self.broadcaster.transport.send(sid, OutboundMessages.SessionStarted, result.to_client())

    def _on_update_wager(self, sid: SocketID, data: dict) -> None:
        subject_id = self._subject(sid, data)
        wager_type = data.get("wagerType")
        value = data.get("value")
        self.coordinator.update_wager(self._session(subject_id, data), subject_id, wager_type, value)
        self.broadcaster.transport.send(
            sid,
            OutboundMessages.WagerUpdated,
            {"message": "Wager updated successfully", "wagerType": wager_type, "value": value},
        )

    def _on_confirm_decision(self, sid: SocketID, data: dict) -> None:
        subject_id = self._subject(sid, data)
        phase = data.get("phase")
        if not isinstance(phase, str) or not phase:
            raise RequestInvalidError(UNKNOWN_MESSAGE)
        sub_phase = data.get("subPhase")
        self.coordinator.confirm(self._session(subject_id, data), subject_id, phase, sub_phase)
        self.broadcaster.transport.send(
            sid,
            OutboundMessages.DecisionConfirmed,
            {"message": "Decision confirmed", "phase": phase, "subPhase": sub_phase},
        )

    def _on_send_data(self, sid: SocketID, data: dict) -> None:
        payload = data.get("payload")
        if not isinstance(payload, dict) or not isinstance(payload.get("data"), dict):
            raise RequestInvalidError(UNKNOWN_MESSAGE)

        event = payload.get("event")
        body = payload["data"]
        subject_id = self._subject(sid, body)
        session_id = self._session(subject_id, body)
        ack = {"message": "Data sent successfully", "event": event}

        if event == DataEvents.TrialData:
            outcome = self.aggregator.record_trial(session_id, {**body, "clientID": subject_id})
            ack["duplicate"] = outcome == RecordOutcome.Duplicate
        elif event == DataEvents.PreTaskSurvey:
            self.aggregator.record_survey(session_id, subject_id, SurveyKinds.PreTask, body)
        elif event == DataEvents.PostTaskSurvey:
            self.aggregator.record_survey(session_id, subject_id, SurveyKinds.PostTask, body)
        elif event == DataEvents.FinishSession:
            ack["sessionEnded"] = self.aggregator.finish(session_id, subject_id)
        else:
            raise RequestInvalidError(f"Unknown data event {event!r}.")

        self.broadcaster.transport.send(sid, OutboundMessages.DataSent, ack)

    # ------------------------------------------------------------------ #
    # SessionListener
    # ------------------------------------------------------------------ #

    def on_session_update(self, update: SessionUpdate):
        self.broadcaster.broadcast_to_session(
            update.participants, OutboundMessages.SessionUpdate, update.to_client()
        )
        if update.status == configuration_constants.SessionStatuses.Ended:
            self.completed_sessions.discard(update.session_id)

    def on_trials_completed(self, session_id: SessionID, participants: list[SubjectID]):
        self.completed_sessions.add(session_id)
