"""Persistence of trial results, surveys and session completion.

Writes are idempotent per (session, trial, participant): a repeated delivery
of the same submission is acknowledged without touching what is stored.
"""

from __future__ import annotations

import dataclasses
import logging

from wagerlab.configurations import configuration_constants
from wagerlab.server.document_store import DocumentStore, Timestamp, Transaction, collection_path
from wagerlab.server.errors import RequestInvalidError
from wagerlab.server.participant_state import ParticipantState, ParticipantStateTracker
from wagerlab.server.scheduler import TimerScheduler
from wagerlab.server.session_events import SessionListener, SessionUpdate
from wagerlab.utils.typing import SessionID, SubjectID

logger = logging.getLogger(__name__)

SessionModes = configuration_constants.SessionModes
SessionStatuses = configuration_constants.SessionStatuses

SUBMISSION_FIELDS = (
    "initialWager",
    "finalWager",
    "walletBefore",
    "walletAfter",
    "aiCorrect",
    "timestamp",
)


@dataclasses.dataclass(frozen=True)
class RecordOutcome:
    Created = "created"
    Merged = "merged"
    Duplicate = "duplicate"


@dataclasses.dataclass(frozen=True)
class SurveyKinds:
    PreTask = "preTask"
    PostTask = "postTask"


class ResultAggregator(SessionListener):
    def __init__(
        self,
        store: DocumentStore,
        event_bus: SessionListener,
        scheduler: TimerScheduler,
        participant_state_tracker: ParticipantStateTracker,
    ):
        self.store = store
        self.event_bus = event_bus
        self.scheduler = scheduler
        self.participant_state_tracker = participant_state_tracker

    def _session_for_participant(self, session_id: SessionID, subject_id: SubjectID) -> dict:
        session = self.store.get(configuration_constants.SESSIONS_COLLECTION, session_id)
        if session is None:
            raise RequestInvalidError("Unknown session.")
        if subject_id not in session.get("participants", []):
            raise RequestInvalidError("You are not a participant of this session.")
        return session

    # ------------------------------------------------------------------ #
    # Trials
    # ------------------------------------------------------------------ #

    def record_trial(self, session_id: SessionID, submission: dict) -> str:
        """Store one participant's result for one trial.

        The session mode is read from the session document. Group trials share
        one document per trial, merged in a transaction; solo trials get one
        document per (trial, participant).

        Returns:
            One of RecordOutcome.

        Raises:
            RequestInvalidError: if the submission is malformed or the
                submitter is not a participant of the session.
        """
        subject_id = submission.get("clientID")
        trial_number = submission.get("trialNumber")
        if not isinstance(subject_id, str) or not subject_id:
            raise RequestInvalidError("Trial data must include a clientID.")
        if isinstance(trial_number, bool) or not isinstance(trial_number, int) or trial_number < 1:
            raise RequestInvalidError("Trial data must include a positive trialNumber.")

        session = self._session_for_participant(session_id, subject_id)
        trials_collection = collection_path(
            configuration_constants.SESSIONS_COLLECTION,
            session_id,
            configuration_constants.TRIALS_SUBCOLLECTION,
        )

        mode = session.get("mode")
        if mode == SessionModes.Group:
            outcome = self._record_group_trial(trials_collection, subject_id, trial_number, submission)
        elif mode == SessionModes.Solo:
            outcome = self._record_solo_trial(trials_collection, subject_id, trial_number, submission)
        else:
            raise RequestInvalidError("This session has not started yet.")

        if outcome == RecordOutcome.Duplicate:
            logger.info(
                f"[Aggregator:Duplicate] Trial {trial_number} from {subject_id} in session "
                f"{session_id} was already recorded; ignoring."
            )
        else:
            logger.info(
                f"[Aggregator:Trial] Trial {trial_number} from {subject_id} in {mode} session "
                f"{session_id}: {outcome}"
            )
        return outcome

    def _record_solo_trial(
        self,
        trials_collection: str,
        subject_id: SubjectID,
        trial_number: int,
        submission: dict,
    ) -> str:
        doc_id = f"trial_{trial_number}_{subject_id}"
        record = {**submission, "clientID": subject_id, "trialNumber": trial_number}

        def create_once(txn: Transaction) -> str:
            if txn.get(trials_collection, doc_id) is not None:
                return RecordOutcome.Duplicate
            txn.set(trials_collection, doc_id, record)
            return RecordOutcome.Created

        return self.store.transaction(create_once)

    def _record_group_trial(
        self,
        trials_collection: str,
        subject_id: SubjectID,
        trial_number: int,
        submission: dict,
    ) -> str:
        doc_id = f"trial_{trial_number}_group"
        fighter_data = submission.get("fighterData")
        if fighter_data is None:
            fighter_data = {}
        if not isinstance(fighter_data, dict):
            raise RequestInvalidError("fighterData must be an object.")

        entry = {field: submission.get(field) for field in SUBMISSION_FIELDS}
        chat_messages = _chat_entries(submission.get("chatMessages"), subject_id, self.scheduler.now_ms())

        def merge(txn: Transaction) -> str:
            existing = txn.get(trials_collection, doc_id) or {}
            submissions = dict(existing.get("submissions") or {})
            transcript = existing.get("chatTranscript") or []
            new_messages = _new_messages(transcript, chat_messages)

            if subject_id in submissions:
                if new_messages:
                    txn.update(trials_collection, doc_id, {"chatTranscript": transcript + new_messages})
                return RecordOutcome.Duplicate

            record = {
                **existing,
                "submissions": {**submissions, subject_id: entry},
                "chatTranscript": transcript + new_messages,
            }
            # The transcript may have been stored before the first submission arrived
            if "fighterData" not in existing:
                record.update(
                    {
                        "trialNumber": trial_number,
                        "mode": SessionModes.Group,
                        "fighterData": fighter_data,
                        "aiPrediction": submission.get("aiPrediction", fighter_data.get("aiPrediction")),
                        "aiRationale": submission.get("aiRationale", fighter_data.get("aiRationale")),
                    }
                )
            txn.set(trials_collection, doc_id, record)
            return RecordOutcome.Merged if submissions else RecordOutcome.Created

        return self.store.transaction(merge)

    def record_chat(self, session_id: SessionID, trial_number: int, messages: list[dict]) -> int:
        """Merge relayed chat messages into a group trial's transcript.

        Returns:
            The number of messages that were not stored yet.
        """
        session = self.store.get(configuration_constants.SESSIONS_COLLECTION, session_id)
        if session is None or session.get("mode") != SessionModes.Group:
            logger.warning(
                f"[Aggregator:Chat] Session {session_id} is not a stored group session; "
                f"dropping chat of trial {trial_number}."
            )
            return 0

        trials_collection = collection_path(
            configuration_constants.SESSIONS_COLLECTION,
            session_id,
            configuration_constants.TRIALS_SUBCOLLECTION,
        )
        doc_id = f"trial_{trial_number}_group"
        chat_messages = _chat_entries(messages, None, self.scheduler.now_ms())

        def append(txn: Transaction) -> int:
            existing = txn.get(trials_collection, doc_id)
            transcript = (existing or {}).get("chatTranscript") or []
            new_messages = _new_messages(transcript, chat_messages)
            if existing is None:
                txn.set(
                    trials_collection,
                    doc_id,
                    {"trialNumber": trial_number, "submissions": {}, "chatTranscript": new_messages},
                )
            elif new_messages:
                txn.update(trials_collection, doc_id, {"chatTranscript": transcript + new_messages})
            return len(new_messages)

        added = self.store.transaction(append)
        logger.info(
            f"[Aggregator:Chat] Stored {added} new chat messages for trial {trial_number} "
            f"of session {session_id}"
        )
        return added

    # ------------------------------------------------------------------ #
    # Surveys
    # ------------------------------------------------------------------ #

    def record_survey(self, session_id: SessionID, subject_id: SubjectID, kind: str, data: dict) -> None:
        """Write a pre-task or post-task survey. A later write replaces an earlier one."""
        if kind not in (SurveyKinds.PreTask, SurveyKinds.PostTask):
            raise RequestInvalidError(f"Unknown survey kind {kind!r}.")
        self._session_for_participant(session_id, subject_id)

        self.store.set(
            collection_path(
                configuration_constants.SESSIONS_COLLECTION,
                session_id,
                configuration_constants.PARTICIPANT_DATA_SUBCOLLECTION,
            ),
            f"{subject_id}_{kind}",
            {**data, "clientID": subject_id},
        )
        logger.info(f"[Aggregator:Survey] Stored {kind} survey of {subject_id} in session {session_id}")

    # ------------------------------------------------------------------ #
    # Completion
    # ------------------------------------------------------------------ #

    def finish(self, session_id: SessionID, subject_id: SubjectID) -> bool:
        """Mark a participant as finished.

        Returns:
            True if this call ended the session.
        """
        self._session_for_participant(session_id, subject_id)
        ended_ms = self.scheduler.now_ms()

        def add_finished(txn: Transaction) -> tuple[bool, dict]:
            session = txn.get(configuration_constants.SESSIONS_COLLECTION, session_id)
            finished = list(session.get("finishedIDs") or [])
            if subject_id not in finished:
                finished.append(subject_id)

            participants = session.get("participants") or []
            fields = {"finishedIDs": finished}
            ends_session = (
                session.get("status") != SessionStatuses.Ended
                and bool(participants)
                and all(p in finished for p in participants)
            )
            if ends_session:
                fields["status"] = SessionStatuses.Ended
                fields["endedAt"] = Timestamp.from_millis(ended_ms)
            txn.update(configuration_constants.SESSIONS_COLLECTION, session_id, fields)
            return ends_session, session

        ended, session = self.store.transaction(add_finished)

        if self.participant_state_tracker.get_state(subject_id) == ParticipantState.IN_SESSION:
            self.participant_state_tracker.transition_to(subject_id, ParticipantState.FINISHED)
        logger.info(f"[Aggregator:Finish] {subject_id} finished session {session_id}")

        if ended:
            logger.info(f"[Aggregator:Finish] All participants finished; session {session_id} ended.")
            self.event_bus.on_session_update(
                SessionUpdate(
                    session_id=session_id,
                    status=SessionStatuses.Ended,
                    mode=session.get("mode"),
                    participants=list(session.get("participants") or []),
                    ai_mode=session.get("aiMode"),
                )
            )
        return ended

    # ------------------------------------------------------------------ #
    # SessionListener
    # ------------------------------------------------------------------ #

    def on_chat_closed(self, session_id: SessionID, trial: int, transcript: list[dict]):
        if transcript:
            self.record_chat(session_id, trial, transcript)


def _chat_entries(messages, default_sender: SubjectID | None, now_ms: int) -> list[dict]:
    """Normalise chat messages; one without a timestamp is stamped with ``now_ms``."""
    if not isinstance(messages, list):
        return []
    entries = []
    for message in messages:
        if not isinstance(message, dict) or "message" not in message:
            continue
        entries.append(
            {
                "clientID": message.get("clientID", default_sender),
                "message": message["message"],
                "timestamp": message["timestamp"] if message.get("timestamp") is not None else now_ms,
            }
        )
    return entries


def _new_messages(transcript: list[dict], candidates: list[dict]) -> list[dict]:
    """Candidates whose (clientID, timestamp) is not in the transcript yet."""
    seen = {(m.get("clientID"), m.get("timestamp")) for m in transcript}
    fresh = []
    for message in candidates:
        key = (message.get("clientID"), message.get("timestamp"))
        if key in seen:
            continue
        seen.add(key)
        fresh.append(message)
    return fresh
