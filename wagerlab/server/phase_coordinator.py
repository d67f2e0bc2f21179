from __future__ import annotations

import logging

from wagerlab.configurations import configuration_constants
from wagerlab.server import thread_safe_collections
from wagerlab.server.connection_registry import ConnectionRegistry
from wagerlab.server.errors import RequestInvalidError, SessionFatalError
from wagerlab.server.live_session import LiveSession
from wagerlab.server.scheduler import TimerScheduler
from wagerlab.server.session_events import SessionListener, SessionUpdate
from wagerlab.server.transport import SessionBroadcaster
from wagerlab.utils.typing import SessionID, SubjectID

logger = logging.getLogger(__name__)

Phases = configuration_constants.Phases
SubPhases = configuration_constants.SubPhases
WagerTypes = configuration_constants.WagerTypes
OutboundMessages = configuration_constants.OutboundMessages

SESSION_INACTIVE_MESSAGE = "Your session is no longer active. Please restart the experiment."
SESSION_FAILED_MESSAGE = "A problem occurred with your session. Please restart the experiment."


class PhaseCoordinator(SessionListener):
    """
    Drives every running session through its trials in lockstep.

    Each trial is a fixed sequence of timed phases. A phase ends when all
    participants confirmed it or when its timer fires, whichever comes first.
    On a timeout, participants who did not act are confirmed on their behalf
    with an automatic wager. Exactly one phase timer is pending per live
    session; every timer carries the sequence number of the phase it was
    scheduled for, so a timer that fires after the phase moved on does nothing.
    """

    def __init__(
        self,
        broadcaster: SessionBroadcaster,
        scheduler: TimerScheduler,
        event_bus: SessionListener,
        registry: ConnectionRegistry,
        phase_duration_s: float = configuration_constants.DEFAULT_PHASE_DURATION_S,
        chat_duration_s: float = configuration_constants.DEFAULT_CHAT_DURATION_S,
        wager_min: int = configuration_constants.DEFAULT_WAGER_MIN,
        wager_max: int = configuration_constants.DEFAULT_WAGER_MAX,
        default_wager: int = configuration_constants.DEFAULT_WAGER,
    ):
        self.broadcaster = broadcaster
        self.scheduler = scheduler
        self.event_bus = event_bus
        self.registry = registry
        self.phase_duration_s = phase_duration_s
        self.chat_duration_s = chat_duration_s
        self.wager_min = wager_min
        self.wager_max = wager_max
        self.default_wager = default_wager

        self.live_sessions: dict[SessionID, LiveSession] = thread_safe_collections.ThreadSafeDict()

    # ------------------------------------------------------------------ #
    # Session lifecycle
    # ------------------------------------------------------------------ #

    def on_session_update(self, update: SessionUpdate):
        if update.status == configuration_constants.SessionStatuses.Running:
            self.start_session(update)

    def start_session(self, update: SessionUpdate) -> LiveSession | None:
        """Create the live state for a session that just started running and enter its first phase."""
        if update.session_id in self.live_sessions:
            logger.warning(f"[Phase:Start] Session {update.session_id} is already live; ignoring.")
            return None

        live = LiveSession(
            session_id=update.session_id,
            mode=update.mode,
            participants=update.participants,
            ai_mode=update.ai_mode,
            trials=update.trials or [],
        )
        self.live_sessions[live.session_id] = live
        logger.info(
            f"[Phase:Start] Session {live.session_id} ({live.mode}) with {live.participants}, "
            f"{live.total_trials} trials, aiMode={live.ai_mode}"
        )

        with live.lock:
            if live.total_trials == 0:
                logger.warning(
                    f"[Phase:Start] Session {live.session_id} has no trials; completing immediately."
                )
                self._complete(live)
            else:
                self._enter_phase(live, *live.first_step())
        return live

    def is_active(self, session_id: SessionID) -> bool:
        live = self.live_sessions.get(session_id)
        return live is not None and live.active

    def get_live(self, session_id: SessionID) -> LiveSession:
        """
        Raises:
            RequestInvalidError: if the session is not live in this process.
        """
        live = self.live_sessions.get(session_id)
        if live is None or not live.active:
            raise RequestInvalidError(SESSION_INACTIVE_MESSAGE)
        return live

    def shutdown(self) -> None:
        """Cancel every pending phase timer."""
        for _, live in self.live_sessions.snapshot():
            with live.lock:
                live.cancel_timer()

    # ------------------------------------------------------------------ #
    # Phase transitions
    # ------------------------------------------------------------------ #

    def _phase_duration_s(self, sub_phase: str | None) -> float:
        return self.chat_duration_s if sub_phase == SubPhases.Chat else self.phase_duration_s

    def _enter_phase(self, live: LiveSession, phase: str, sub_phase: str | None) -> None:
        live.cancel_timer()
        duration_s = self._phase_duration_s(sub_phase)
        now_ms = self.scheduler.now_ms()
        seq = live.begin_step(phase, sub_phase, now_ms, int(duration_s * 1000))

        try:
            trial_data = live.current_trial_data()
        except SessionFatalError as e:
            logger.error(f"[Phase:Enter] {e}")
            self._abort(live, str(e))
            return

        live.timer = self.scheduler.call_later(duration_s, self._on_phase_timeout, live.session_id, seq)
        logger.info(f"[Phase:Enter] {live.describe()} for {duration_s}s (seq={seq})")

        self.broadcaster.broadcast_to_session(
            live.participants,
            OutboundMessages.PhaseChange,
            {
                "sessionID": live.session_id,
                "phase": phase,
                "subPhase": sub_phase,
                "trial": live.current_trial,
                "totalTrials": live.total_trials,
                "startTime": live.phase_start_ms,
                "duration": live.phase_duration_ms,
                "deadline": live.deadline_ms,
                "chatDuration": (
                    int(self.chat_duration_s * 1000) if phase == Phases.GroupDelib else None
                ),
                "aiMode": live.ai_mode,
                "trialData": trial_data,
            },
        )

        if sub_phase == SubPhases.Chat:
            self._broadcast_all_wagers(live)

    def _on_phase_timeout(self, session_id: SessionID, seq: int) -> None:
        live = self.live_sessions.get(session_id)
        if live is None:
            logger.debug(f"[Phase:Timeout] Session {session_id} is gone; ignoring stale timer.")
            return

        with live.lock:
            if not live.active or live.phase_seq != seq:
                logger.debug(
                    f"[Phase:Timeout] Stale timer for session {session_id} "
                    f"(timer seq={seq}, current seq={live.phase_seq}); ignoring."
                )
                return

            live.timer = None
            try:
                unconfirmed = live.unconfirmed()
                if unconfirmed:
                    logger.info(
                        f"[Phase:Timeout] {live.describe()} timed out; auto-confirming {unconfirmed}"
                    )
                self._auto_confirm(live, unconfirmed)
                self._advance(live)
            except Exception:
                logger.exception(f"[Phase:Timeout] Failed to advance {live.describe()}")
                self._abort(live, "phase transition failed")

    def _auto_confirm(self, live: LiveSession, subject_ids: list[SubjectID]) -> None:
        wager_type = live.active_wager_type()
        for subject_id in subject_ids:
            if wager_type is not None and not live.has_wager(subject_id, wager_type):
                value = live.auto_wager(subject_id, wager_type, self.default_wager)
                live.record_wager(subject_id, wager_type, value)
                logger.info(
                    f"[Phase:AutoWager] {subject_id} in session {live.session_id} "
                    f"trial {live.current_trial}: {wager_type}={value}"
                )
            live.confirm(subject_id)

    def _advance(self, live: LiveSession) -> None:
        if live.is_group and (live.phase, live.sub_phase) == (Phases.GroupDelib, SubPhases.Chat):
            self._close_chat(live)

        next_step = live.next_step()
        if next_step is not None:
            self._enter_phase(live, *next_step)
        elif live.has_next_trial():
            live.current_trial += 1
            self._enter_phase(live, *live.first_step())
        else:
            self._complete(live)

    def _close_chat(self, live: LiveSession) -> None:
        transcript = list(live.chat_transcript.get(live.current_trial, []))
        logger.info(
            f"[Phase:Chat] Chat closed for {live.describe()} with {len(transcript)} messages"
        )
        self.event_bus.on_chat_closed(live.session_id, live.current_trial, transcript)

    def _discard(self, live: LiveSession) -> None:
        live.cancel_timer()
        live.active = False
        self.live_sessions.pop(live.session_id, None)

    def _complete(self, live: LiveSession) -> None:
        self._discard(live)
        logger.info(f"[Phase:Complete] Session {live.session_id} finished all {live.total_trials} trials")
        self.broadcaster.broadcast_to_session(
            live.participants,
            OutboundMessages.TrialsCompleted,
            {"sessionID": live.session_id, "totalTrials": live.total_trials},
        )
        self.event_bus.on_trials_completed(live.session_id, list(live.participants))

    def _abort(self, live: LiveSession, reason: str) -> None:
        self._discard(live)
        logger.error(f"[Phase:Abort] Session {live.session_id} discarded: {reason}")
        self.broadcaster.broadcast_to_session(
            live.participants,
            OutboundMessages.Error,
            {"sessionID": live.session_id, "message": SESSION_FAILED_MESSAGE},
        )
        self.event_bus.on_session_aborted(live.session_id, list(live.participants), reason)

    # ------------------------------------------------------------------ #
    # Participant actions
    # ------------------------------------------------------------------ #

    def _require_participant(self, live: LiveSession, subject_id: SubjectID) -> None:
        if not live.active:
            raise RequestInvalidError(SESSION_INACTIVE_MESSAGE)
        if not live.is_participant(subject_id):
            raise RequestInvalidError("You are not a participant of this session.")

    def confirm(
        self,
        session_id: SessionID,
        subject_id: SubjectID,
        phase: str,
        sub_phase: str | None = None,
    ) -> bool:
        """Confirm the current phase for a participant.

        Returns:
            False if the participant had already confirmed this phase.

        Raises:
            RequestInvalidError: if the session is not live, the participant is
                not in it, or ``phase`` is not the current phase.
        """
        live = self.get_live(session_id)
        with live.lock:
            self._require_participant(live, subject_id)
            if not live.matches_step(phase, sub_phase):
                raise RequestInvalidError(
                    f"Cannot confirm {phase} while the session is in {live.phase}."
                )

            wager_type = live.active_wager_type()
            if wager_type is not None and not live.has_wager(subject_id, wager_type):
                self._apply_wager(
                    live, subject_id, wager_type,
                    live.auto_wager(subject_id, wager_type, self.default_wager),
                )

            if not live.confirm(subject_id):
                logger.debug(f"[Phase:Confirm] {subject_id} already confirmed {live.describe()}")
                return False

            logger.info(f"[Phase:Confirm] {subject_id} confirmed {live.describe()}")
            if live.all_confirmed():
                self._advance(live)
            return True

    def validate_wager(self, wager_type: str, value) -> int:
        if wager_type not in (WagerTypes.Initial, WagerTypes.Final):
            raise RequestInvalidError(f"Unknown wager type {wager_type!r}.")
        if isinstance(value, bool) or not isinstance(value, int):
            raise RequestInvalidError(
                f"Wager must be a whole number between {self.wager_min} and {self.wager_max}."
            )
        if not self.wager_min <= value <= self.wager_max:
            raise RequestInvalidError(
                f"Wager must be between {self.wager_min} and {self.wager_max}."
            )
        return value

    def update_wager(
        self,
        session_id: SessionID,
        subject_id: SubjectID,
        wager_type: str,
        value: int,
    ) -> None:
        """Record a wager for the current trial.

        Raises:
            RequestInvalidError: for an out-of-range value, or a wager type that
                cannot be placed in the current phase.
        """
        value = self.validate_wager(wager_type, value)
        live = self.get_live(session_id)
        with live.lock:
            self._require_participant(live, subject_id)
            if not live.accepts_wager(wager_type):
                raise RequestInvalidError(
                    f"{wager_type} cannot be placed while the session is in {live.phase}."
                )
            self._apply_wager(live, subject_id, wager_type, value)

    def _apply_wager(self, live: LiveSession, subject_id: SubjectID, wager_type: str, value: int) -> None:
        live.record_wager(subject_id, wager_type, value)
        logger.info(
            f"[Phase:Wager] {subject_id} {wager_type}={value} in {live.describe()}"
        )

        in_group_wager = (
            live.is_group
            and wager_type == WagerTypes.Initial
            and (live.phase, live.sub_phase) == (Phases.GroupDelib, SubPhases.Wager)
        )
        if not in_group_wager:
            return

        self.broadcaster.broadcast_to_session(
            live.participants,
            OutboundMessages.IndividualWager,
            {
                "sessionID": live.session_id,
                "trial": live.current_trial,
                "clientID": subject_id,
                "wager": value,
                "timestamp": self.scheduler.now_ms(),
            },
        )
        if live.all_initial_wagers_submitted():
            self._broadcast_all_wagers(live)

    def _broadcast_all_wagers(self, live: LiveSession) -> None:
        if not live.is_group or live.current_trial in live.wagers_broadcast:
            return
        live.wagers_broadcast.add(live.current_trial)
        wagers = live.submitted_initial_wagers()
        logger.info(
            f"[Phase:Wagers] Broadcasting initial wagers for {live.describe()}: {wagers}"
        )
        self.broadcaster.broadcast_to_session(
            live.participants,
            OutboundMessages.AllWagersSubmitted,
            {"sessionID": live.session_id, "trial": live.current_trial, "wagers": wagers},
        )

    def relay_chat(
        self,
        session_id: SessionID,
        subject_id: SubjectID,
        message: str,
        timestamp: int | None = None,
    ) -> dict:
        """Add a chat message to the current trial transcript and relay it to the group."""
        live = self.get_live(session_id)
        with live.lock:
            self._require_participant(live, subject_id)
            if not live.is_group:
                raise RequestInvalidError("Chat is only available in group sessions.")

            entry = {
                "clientID": subject_id,
                "message": message,
                "timestamp": timestamp if timestamp is not None else self.scheduler.now_ms(),
            }
            live.append_chat(entry)
            self.broadcaster.broadcast_to_session(
                live.participants,
                OutboundMessages.Chat,
                {"sessionID": live.session_id, "trial": live.current_trial, **entry},
            )
            return entry

    # ------------------------------------------------------------------ #
    # Rejoin
    # ------------------------------------------------------------------ #

    def rejoin_snapshot(self, subject_id: SubjectID) -> dict | None:
        """State a reconnecting participant needs to resume, or None if they have no live session."""
        session_id = self.registry.session_for(subject_id)
        if session_id is None:
            return None
        live = self.live_sessions.get(session_id)
        if live is None:
            return None

        with live.lock:
            if not live.active or not live.is_participant(subject_id):
                return None

            try:
                trial_data = live.current_trial_data()
            except SessionFatalError:
                trial_data = None

            snapshot = {
                "sessionID": live.session_id,
                "mode": live.mode,
                "aiMode": live.ai_mode,
                "trial": live.current_trial,
                "totalTrials": live.total_trials,
                "phase": live.phase,
                "subPhase": live.sub_phase,
                "startTime": live.phase_start_ms,
                "duration": live.phase_duration_ms,
                "remainingTime": live.remaining_ms(self.scheduler.now_ms()),
                "trialData": trial_data,
            }
            if (live.phase, live.sub_phase) == (Phases.GroupDelib, SubPhases.Wager):
                snapshot["currentWagers"] = {
                    other: wager
                    for other, wager in live.submitted_initial_wagers().items()
                    if other != subject_id
                }

        logger.info(f"[Phase:Rejoin] {subject_id} rejoining {live.describe()}")
        return snapshot
