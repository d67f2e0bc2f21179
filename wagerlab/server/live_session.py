"""In-memory state of one running session.

A LiveSession is owned by the PhaseCoordinator and only mutated while its
``lock`` is held. Nothing here is persisted: the document store keeps the
session document and trial records, and a process restart simply evicts all
live sessions.
"""

from __future__ import annotations

import collections
import logging
import threading

from wagerlab.configurations import configuration_constants
from wagerlab.server.errors import SessionFatalError
from wagerlab.server.scheduler import TimerHandle
from wagerlab.utils.typing import AIMode, SessionID, SubjectID, TrialNumber, TrialRow

logger = logging.getLogger(__name__)

Phases = configuration_constants.Phases
SubPhases = configuration_constants.SubPhases
WagerTypes = configuration_constants.WagerTypes

# (phase, sub_phase) steps of a single trial, in order
SOLO_TRIAL_STEPS = [
    (Phases.Initial, None),
    (Phases.FinalDecision, None),
    (Phases.Result, None),
]
GROUP_TRIAL_STEPS = [
    (Phases.GroupDelib, SubPhases.Wager),
    (Phases.GroupDelib, SubPhases.Chat),
    (Phases.FinalDecision, None),
    (Phases.Result, None),
]

# Which wager type may be submitted in which step
WAGER_STEPS = {
    WagerTypes.Initial: {
        (Phases.Initial, None),
        (Phases.GroupDelib, SubPhases.Wager),
    },
    WagerTypes.Final: {
        (Phases.FinalDecision, None),
    },
}


class LiveSession:
    """Trial and phase progress of a running session."""

    def __init__(
        self,
        session_id: SessionID,
        mode: str,
        participants: list[SubjectID],
        ai_mode: AIMode,
        trials: list[TrialRow],
    ):
        self.session_id = session_id
        self.mode = mode
        self.participants = list(participants)
        self.ai_mode = ai_mode
        self.trials = list(trials)
        self.lock = threading.RLock()

        self.current_trial: TrialNumber = 1
        self.phase: str | None = None
        self.sub_phase: str | None = None

        # Incremented on every phase entry; timers carry the value they were scheduled for
        self.phase_seq: int = 0
        self.phase_start_ms: int = 0
        self.phase_duration_ms: int = 0
        self.timer: TimerHandle | None = None

        self.confirmed: dict[SubjectID, bool] = {p: False for p in self.participants}

        # Latest value a participant submitted per wager type, across trials
        self.last_values: dict[SubjectID, dict[str, int]] = collections.defaultdict(dict)

        # trial -> participant -> wager type -> value
        self.wagers: dict[TrialNumber, dict[SubjectID, dict[str, int]]] = (
            collections.defaultdict(lambda: collections.defaultdict(dict))
        )
        self.wagers_broadcast: set[TrialNumber] = set()

        # trial -> [{clientID, message, timestamp}]
        self.chat_transcript: dict[TrialNumber, list[dict]] = collections.defaultdict(list)

        self.active = True

    @property
    def is_group(self) -> bool:
        return self.mode == configuration_constants.SessionModes.Group

    @property
    def total_trials(self) -> int:
        return len(self.trials)

    @property
    def deadline_ms(self) -> int:
        return self.phase_start_ms + self.phase_duration_ms

    def remaining_ms(self, now_ms: int) -> int:
        return max(0, self.deadline_ms - now_ms)

    @property
    def trial_steps(self) -> list[tuple[str, str | None]]:
        return GROUP_TRIAL_STEPS if self.is_group else SOLO_TRIAL_STEPS

    def first_step(self) -> tuple[str, str | None]:
        return self.trial_steps[0]

    def next_step(self) -> tuple[str, str | None] | None:
        """The step after the current one within this trial, or None after ``result``."""
        steps = self.trial_steps
        idx = steps.index((self.phase, self.sub_phase))
        if idx + 1 < len(steps):
            return steps[idx + 1]
        return None

    def has_next_trial(self) -> bool:
        return self.current_trial < self.total_trials

    def current_trial_data(self) -> TrialRow:
        """Trial row shown in the current trial.

        Raises:
            SessionFatalError: if the current trial has no cached row.
        """
        idx = self.current_trial - 1
        if idx < 0 or idx >= len(self.trials):
            raise SessionFatalError(
                self.session_id,
                f"Trial {self.current_trial} is out of range for {len(self.trials)} cached trial rows",
            )
        return self.trials[idx]

    def cancel_timer(self) -> None:
        if self.timer is not None:
            self.timer.cancel()
            self.timer = None

    def begin_step(self, phase: str, sub_phase: str | None, start_ms: int, duration_ms: int) -> int:
        """Enter a phase and return its sequence number.

        The caller must cancel the previous timer first and schedule the new one
        with the returned sequence number.
        """
        self.phase = phase
        self.sub_phase = sub_phase
        self.phase_start_ms = start_ms
        self.phase_duration_ms = duration_ms
        self.confirmed = {p: False for p in self.participants}
        self.phase_seq += 1
        return self.phase_seq

    def matches_step(self, phase: str, sub_phase: str | None = None) -> bool:
        # Clients confirm group deliberation without a sub-phase once they placed their wager
        if sub_phase is None and phase == Phases.GroupDelib:
            sub_phase = SubPhases.Wager
        return (phase, sub_phase) == (self.phase, self.sub_phase)

    def is_participant(self, subject_id: SubjectID) -> bool:
        return subject_id in self.confirmed

    def confirm(self, subject_id: SubjectID) -> bool:
        """Mark a participant confirmed. Returns False if they already were."""
        if self.confirmed.get(subject_id):
            return False
        self.confirmed[subject_id] = True
        return True

    def all_confirmed(self) -> bool:
        return all(self.confirmed.values())

    def unconfirmed(self) -> list[SubjectID]:
        return [p for p in self.participants if not self.confirmed[p]]

    def accepts_wager(self, wager_type: str) -> bool:
        return (self.phase, self.sub_phase) in WAGER_STEPS.get(wager_type, set())

    def active_wager_type(self) -> str | None:
        for wager_type, steps in WAGER_STEPS.items():
            if (self.phase, self.sub_phase) in steps:
                return wager_type
        return None

    def record_wager(self, subject_id: SubjectID, wager_type: str, value: int) -> None:
        self.wagers[self.current_trial][subject_id][wager_type] = value
        self.last_values[subject_id][wager_type] = value

    def has_wager(self, subject_id: SubjectID, wager_type: str) -> bool:
        return wager_type in self.wagers[self.current_trial][subject_id]

    def auto_wager(self, subject_id: SubjectID, wager_type: str, default: int) -> int:
        """Value used for a participant who let the phase time out.

        Preference: their value of this type in the current trial, then (for a
        final wager) their initial wager of the current trial, then their
        last-known value of this type, then ``default``.
        """
        trial_wagers = self.wagers[self.current_trial][subject_id]
        if wager_type in trial_wagers:
            return trial_wagers[wager_type]
        if wager_type == WagerTypes.Final and WagerTypes.Initial in trial_wagers:
            return trial_wagers[WagerTypes.Initial]
        if wager_type in self.last_values[subject_id]:
            return self.last_values[subject_id][wager_type]
        return default

    def submitted_initial_wagers(self, trial: TrialNumber | None = None) -> dict[SubjectID, int]:
        trial = self.current_trial if trial is None else trial
        return {
            subject_id: values[WagerTypes.Initial]
            for subject_id, values in self.wagers[trial].items()
            if WagerTypes.Initial in values
        }

    def all_initial_wagers_submitted(self) -> bool:
        return len(self.submitted_initial_wagers()) == len(self.participants)

    def append_chat(self, message: dict) -> None:
        self.chat_transcript[self.current_trial].append(message)

    def describe(self) -> str:
        step = self.phase if self.sub_phase is None else f"{self.phase}{{{self.sub_phase}}}"
        return f"session {self.session_id} trial {self.current_trial}/{self.total_trials} {step}"
