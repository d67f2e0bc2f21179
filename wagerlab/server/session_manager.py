from __future__ import annotations

import dataclasses
import logging

import eventlet
import numpy as np

from wagerlab.configurations import configuration_constants
from wagerlab.server import thread_safe_collections, trial_randomizer
from wagerlab.server.ai_mode_rotator import AIModeRotator
from wagerlab.server.connection_registry import ConnectionRegistry
from wagerlab.server.document_store import DocumentStore, Timestamp
from wagerlab.server.errors import RequestInvalidError
from wagerlab.server.matchmaker import Matchmaker, TriadMatchmaker
from wagerlab.server.participant_state import ParticipantState, ParticipantStateTracker
from wagerlab.server.scheduler import TimerScheduler
from wagerlab.server.session_events import SessionListener, SessionUpdate
from wagerlab.utils.typing import SessionID, SubjectID

logger = logging.getLogger(__name__)

SessionModes = configuration_constants.SessionModes
SessionStatuses = configuration_constants.SessionStatuses


@dataclasses.dataclass
class JoinResult:
    """Where a participant ended up after ``startSession``."""

    session_id: SessionID
    mode: str
    status: str
    participants: list[SubjectID]
    waiting_end_time: int | None = None

    def to_client(self) -> dict:
        return {
            "sessionID": self.session_id,
            "mode": self.mode,
            "status": self.status,
            "participants": list(self.participants),
            "waitingEndTime": self.waiting_end_time,
        }


class SessionManager(SessionListener):
    """
    The SessionManager pools participants into a waiting cohort and promotes
    cohorts to running solo or group sessions.

    Only one waiting cohort exists at a time. It becomes a group session as
    soon as it is full, or is split by the matchmaker when its wait timer
    expires. Every cohort decision is taken under ``matchmaker_lock`` from a
    fresh read of the cohort document; the resulting SessionUpdates are
    published on the event bus after the lock is released.
    """

    def __init__(
        self,
        store: DocumentStore,
        rotator: AIModeRotator,
        event_bus: SessionListener,
        scheduler: TimerScheduler,
        registry: ConnectionRegistry,
        participant_state_tracker: ParticipantStateTracker,
        matchmaker: Matchmaker | None = None,
        waiting_duration_s: float = configuration_constants.DEFAULT_WAITING_DURATION_S,
        group_size: int = configuration_constants.DEFAULT_GROUP_SIZE,
        rng: np.random.Generator | None = None,
    ):
        self.store = store
        self.rotator = rotator
        self.event_bus = event_bus
        self.scheduler = scheduler
        self.registry = registry
        self.participant_state_tracker = participant_state_tracker
        self.matchmaker = matchmaker or TriadMatchmaker()
        self.waiting_duration_s = waiting_duration_s
        self.group_size = group_size
        self.rng = rng if rng is not None else np.random.default_rng()

        self.matchmaker_lock = eventlet.semaphore.Semaphore()

        # Pending wait timers of waiting cohorts
        self.wait_timers = thread_safe_collections.ThreadSafeDict()

    # ------------------------------------------------------------------ #
    # Joining
    # ------------------------------------------------------------------ #

    def join(self, subject_id: SubjectID) -> JoinResult:
        """Place a participant into a waiting cohort or a running session.

        Raises:
            RequestInvalidError: if the participant already finished the experiment.
        """
        pending: list[SessionUpdate] = []
        try:
            with self.matchmaker_lock:
                result = self._join_locked(subject_id, pending)
        finally:
            self._publish(pending)

        logger.info(
            f"[Matchmaker:Join] {subject_id} -> session {result.session_id} "
            f"(mode={result.mode}, status={result.status}, participants={result.participants})"
        )
        return result

    def _join_locked(self, subject_id: SubjectID, pending: list[SessionUpdate]) -> JoinResult:
        if self.participant_state_tracker.get_state(subject_id) == ParticipantState.FINISHED:
            raise RequestInvalidError("You have already completed this experiment.")

        existing = self._existing_session(subject_id)
        if existing is not None:
            return existing

        cohort = self._find_waiting_cohort()
        if cohort is not None:
            cohort_id, cohort_doc = cohort
            participants = list(cohort_doc.get("participants", []))
            now_ms = self.scheduler.now_ms()
            expired = now_ms >= cohort_doc["waitingEndTime"].to_millis()

            if subject_id in participants:
                return self._result_from_doc(cohort_id, cohort_doc)

            if expired:
                logger.info(
                    f"[Matchmaker:Join] Cohort {cohort_id} expired before its timer fired; "
                    f"resolving it and sending {subject_id} to a solo session."
                )
                self._resolve_expired(cohort_id, cohort_doc, pending)
                solo_id = self._create_solo(subject_id, pending)
                return self._result_from_doc(solo_id, self.get_session(solo_id))

            if len(participants) < self.group_size:
                return self._add_to_cohort(cohort_id, cohort_doc, subject_id, pending)

            logger.warning(
                f"[Matchmaker:Join] Waiting cohort {cohort_id} is already full "
                f"({participants}); starting a new cohort for {subject_id}."
            )

        return self._create_cohort(subject_id, pending)

    def _existing_session(self, subject_id: SubjectID) -> JoinResult | None:
        session_id = self.registry.session_for(subject_id)
        if session_id is None:
            return None

        doc = self.get_session(session_id)
        if (
            doc is not None
            and doc.get("status") in (SessionStatuses.Waiting, SessionStatuses.Running)
            and subject_id in doc.get("participants", [])
        ):
            logger.info(
                f"[Matchmaker:Join] {subject_id} is already in session {session_id}; returning it."
            )
            return self._result_from_doc(session_id, doc)
        return None

    def _find_waiting_cohort(self) -> tuple[SessionID, dict] | None:
        cohorts = self.store.query(
            configuration_constants.SESSIONS_COLLECTION,
            "status",
            SessionStatuses.Waiting,
            order_by="createdAt",
        )
        for session_id, doc in cohorts:
            if doc.get("mode") == SessionModes.Waiting:
                return session_id, doc
        return None

    def _create_cohort(self, subject_id: SubjectID, pending: list[SessionUpdate]) -> JoinResult:
        now_ms = self.scheduler.now_ms()
        waiting_end_ms = now_ms + int(self.waiting_duration_s * 1000)
        doc = self._new_session_doc([subject_id], SessionModes.Waiting, now_ms, waiting_end_ms)
        session_id = self.store.add(configuration_constants.SESSIONS_COLLECTION, doc)

        self.registry.bind_session(subject_id, session_id)
        self.participant_state_tracker.transition_to(subject_id, ParticipantState.IN_WAITROOM)

        self.wait_timers[session_id] = self.scheduler.call_later(
            self.waiting_duration_s, self._on_wait_timeout, session_id
        )
        logger.info(
            f"[Matchmaker:Create] New waiting cohort {session_id} for {subject_id}; "
            f"expires in {self.waiting_duration_s}s"
        )

        pending.append(
            SessionUpdate(
                session_id=session_id,
                status=SessionStatuses.Waiting,
                mode=SessionModes.Waiting,
                participants=[subject_id],
                waiting_end_time=waiting_end_ms,
            )
        )
        return self._result_from_doc(session_id, doc)

    def _add_to_cohort(
        self,
        cohort_id: SessionID,
        cohort_doc: dict,
        subject_id: SubjectID,
        pending: list[SessionUpdate],
    ) -> JoinResult:
        participants = list(cohort_doc.get("participants", [])) + [subject_id]
        self.store.update(
            configuration_constants.SESSIONS_COLLECTION, cohort_id, {"participants": participants}
        )
        self.registry.bind_session(subject_id, cohort_id)
        self.participant_state_tracker.transition_to(subject_id, ParticipantState.IN_WAITROOM)
        logger.info(f"[Matchmaker:Join] {subject_id} joined cohort {cohort_id}: {participants}")

        if self.matchmaker.is_full(participants, self.group_size):
            self._promote(cohort_id, SessionModes.Group, participants, pending)
            self._cancel_wait_timer(cohort_id)
        else:
            pending.append(
                SessionUpdate(
                    session_id=cohort_id,
                    status=SessionStatuses.Waiting,
                    mode=SessionModes.Waiting,
                    participants=participants,
                    waiting_end_time=cohort_doc["waitingEndTime"].to_millis(),
                )
            )

        return self._result_from_doc(cohort_id, self.get_session(cohort_id))

    # ------------------------------------------------------------------ #
    # Wait-timer expiry
    # ------------------------------------------------------------------ #

    def _on_wait_timeout(self, session_id: SessionID) -> None:
        pending: list[SessionUpdate] = []
        try:
            with self.matchmaker_lock:
                self.wait_timers.pop(session_id, None)
                doc = self.get_session(session_id)
                if doc is None or doc.get("status") != SessionStatuses.Waiting:
                    logger.info(
                        f"[Matchmaker:Timeout] Cohort {session_id} is no longer waiting; nothing to do."
                    )
                else:
                    self._resolve_expired(session_id, doc, pending)
        except Exception:
            logger.exception(f"[Matchmaker:Timeout] Failed to resolve cohort {session_id}")
        finally:
            self._publish(pending)

    def _resolve_expired(self, cohort_id: SessionID, cohort_doc: dict, pending: list[SessionUpdate]) -> None:
        """Turn an expired cohort into a group and/or solo sessions."""
        cohort = list(cohort_doc.get("participants", []))
        split = self.matchmaker.split_expired(cohort, self.group_size)

        if split.group:
            self._promote(cohort_id, SessionModes.Group, split.group, pending)
            solos = split.solos
        elif len(split.solos) == 1:
            self._promote(cohort_id, SessionModes.Solo, split.solos, pending)
            solos = []
        else:
            now_ms = self.scheduler.now_ms()
            self.store.update(
                configuration_constants.SESSIONS_COLLECTION,
                cohort_id,
                {"status": SessionStatuses.Ended, "endedAt": Timestamp.from_millis(now_ms)},
            )
            self.registry.unbind_session(cohort_id)
            logger.info(
                f"[Matchmaker:Timeout] Cohort {cohort_id} ended; splitting {split.solos} into solo sessions."
            )
            pending.append(
                SessionUpdate(
                    session_id=cohort_id,
                    status=SessionStatuses.Ended,
                    mode=SessionModes.Waiting,
                    participants=cohort,
                )
            )
            solos = split.solos

        for subject_id in solos:
            self._create_solo(subject_id, pending)
        self._cancel_wait_timer(cohort_id)

    # ------------------------------------------------------------------ #
    # Promotion
    # ------------------------------------------------------------------ #

    def _create_solo(self, subject_id: SubjectID, pending: list[SessionUpdate]) -> SessionID:
        now_ms = self.scheduler.now_ms()
        doc = self._new_session_doc([subject_id], SessionModes.Solo, now_ms, now_ms)
        session_id = self.store.add(configuration_constants.SESSIONS_COLLECTION, doc)
        logger.info(f"[Matchmaker:Solo] Created solo session {session_id} for {subject_id}")
        self._promote(session_id, SessionModes.Solo, [subject_id], pending)
        return session_id

    def _promote(
        self,
        session_id: SessionID,
        mode: str,
        participants: list[SubjectID],
        pending: list[SessionUpdate],
    ) -> None:
        """Assign content and mark a session running.

        A content or order persistence failure still produces a running
        session, with no trials.
        """
        try:
            ai_mode, rows = self.rotator.load_content(self.rotator.determine_mode(mode))
        except Exception:
            logger.exception(
                f"[Matchmaker:Promote] Could not assign content to session {session_id}; "
                f"starting it without trials."
            )
            ai_mode, rows = configuration_constants.UNKNOWN_AI_MODE, []

        try:
            trials = trial_randomizer.shuffle_and_persist(self.store, session_id, rows, self.rng)
        except Exception:
            logger.exception(
                f"[Matchmaker:Promote] Could not persist trial order for session {session_id}; "
                f"starting it without trials."
            )
            trials = []

        now_ms = self.scheduler.now_ms()
        self.store.update(
            configuration_constants.SESSIONS_COLLECTION,
            session_id,
            {
                "status": SessionStatuses.Running,
                "mode": mode,
                "participants": list(participants),
                "aiMode": ai_mode,
                "trialCount": len(trials),
                "waitingEndTime": Timestamp.from_millis(now_ms),
            },
        )

        for subject_id in participants:
            self.registry.bind_session(subject_id, session_id)
            self.participant_state_tracker.transition_to(subject_id, ParticipantState.IN_SESSION)

        logger.info(
            f"[Matchmaker:Promote] Session {session_id} running as {mode} with "
            f"{participants}, aiMode={ai_mode}, trialCount={len(trials)}"
        )
        pending.append(
            SessionUpdate(
                session_id=session_id,
                status=SessionStatuses.Running,
                mode=mode,
                participants=list(participants),
                ai_mode=ai_mode,
                trials=trials,
                waiting_end_time=now_ms,
            )
        )

    # ------------------------------------------------------------------ #
    # Helpers
    # ------------------------------------------------------------------ #

    @staticmethod
    def _new_session_doc(
        participants: list[SubjectID], mode: str, created_ms: int, waiting_end_ms: int
    ) -> dict:
        return {
            "createdAt": Timestamp.from_millis(created_ms),
            "waitingEndTime": Timestamp.from_millis(waiting_end_ms),
            "endedAt": None,
            "participants": list(participants),
            "status": SessionStatuses.Waiting,
            "mode": mode,
            "aiMode": None,
            "trialOrder": [],
            "trialCount": 0,
            "finishedIDs": [],
        }

    def get_session(self, session_id: SessionID) -> dict | None:
        return self.store.get(configuration_constants.SESSIONS_COLLECTION, session_id)

    @staticmethod
    def _result_from_doc(session_id: SessionID, doc: dict) -> JoinResult:
        waiting_end = doc.get("waitingEndTime")
        return JoinResult(
            session_id=session_id,
            mode=doc.get("mode"),
            status=doc.get("status"),
            participants=list(doc.get("participants", [])),
            waiting_end_time=waiting_end.to_millis() if waiting_end is not None else None,
        )

    def _cancel_wait_timer(self, session_id: SessionID) -> None:
        timer = self.wait_timers.pop(session_id, None)
        if timer is not None:
            timer.cancel()

    def _publish(self, updates: list[SessionUpdate]) -> None:
        for update in updates:
            self.event_bus.on_session_update(update)

    def restore_wait_timers(self) -> int:
        """Re-arm the wait timers of cohorts still waiting in the store.

        Used after the store was loaded from a snapshot: a cohort whose
        ``waitingEndTime`` already passed is resolved on the next tick.

        Returns:
            The number of timers scheduled.
        """
        now_ms = self.scheduler.now_ms()
        restored = 0
        with self.matchmaker_lock:
            cohorts = self.store.query(
                configuration_constants.SESSIONS_COLLECTION, "status", SessionStatuses.Waiting
            )
            for session_id, doc in cohorts:
                if doc.get("mode") != SessionModes.Waiting or session_id in self.wait_timers:
                    continue
                waiting_end = doc.get("waitingEndTime")
                delay_s = max(0, waiting_end.to_millis() - now_ms) / 1000 if waiting_end else 0
                self.wait_timers[session_id] = self.scheduler.call_later(
                    delay_s, self._on_wait_timeout, session_id
                )
                for subject_id in doc.get("participants", []):
                    self.registry.bind_session(subject_id, session_id)
                    self.participant_state_tracker.transition_to(subject_id, ParticipantState.IN_WAITROOM)
                restored += 1
                logger.info(
                    f"[Matchmaker:Restore] Re-armed wait timer of cohort {session_id} "
                    f"({doc.get('participants')}); expires in {delay_s}s"
                )
        return restored

    def shutdown(self) -> None:
        """Cancel every pending wait timer."""
        for session_id, _ in self.wait_timers.snapshot():
            self._cancel_wait_timer(session_id)

    # ------------------------------------------------------------------ #
    # SessionListener
    # ------------------------------------------------------------------ #

    def on_session_aborted(self, session_id: SessionID, participants: list[SubjectID], reason: str):
        for subject_id in self.registry.unbind_session(session_id):
            self.participant_state_tracker.reset(subject_id)
        for subject_id in participants:
            self.participant_state_tracker.reset(subject_id)
        logger.info(
            f"[Matchmaker:Abort] Released participants {participants} of session {session_id}: {reason}"
        )
