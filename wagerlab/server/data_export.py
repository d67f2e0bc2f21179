"""CSV export of all sessions of one mode.

One row per participant per session. Trial columns are numbered by the
original (pre-shuffle) content row, so rows from different sessions line up
even though every session saw the trials in its own order.
"""

from __future__ import annotations

import csv
import logging

import pandas as pd
import flatten_dict

from wagerlab.configurations import configuration_constants
from wagerlab.server import trial_randomizer
from wagerlab.server.document_store import DocumentStore, collection_path
from wagerlab.server.errors import ExperimentError

logger = logging.getLogger(__name__)

SessionModes = configuration_constants.SessionModes

# Export column suffix -> field name used by the survey forms
FEATURE_KEY_MAP = {
    "CareerWins": "wins",
    "CareerLosses": "losses",
    "Age": "age",
    "Height": "height",
    "StrikesLandedPerMin": "slpm",
    "StrikeAccuracy": "accuracy",
    "StrikeDefense": "defense",
    "TakedownDefense": "tdDefense",
    "StrikesAvoidedPerMin": "sapm",
    "TakedownAccuracy": "tdAccuracy",
}


class ExportError(ExperimentError):
    """The export cannot be produced. ``status`` is the HTTP status to answer with."""

    def __init__(self, status: int, message: str):
        super().__init__(message)
        self.status = status


def export_columns(mode: str, trial_count: int) -> list[str]:
    columns = ["sessionID", "clientID", "aiMode"]
    columns += [f"pretask_{key}" for key in FEATURE_KEY_MAP]
    for i in range(1, trial_count + 1):
        columns += [f"trial{i}_initialWager", f"trial{i}_finalWager"]
        if mode == SessionModes.Group:
            columns += [f"trial{i}_groupAvgWager", f"trial{i}_changedDirection"]
        columns.append(f"wallet_after_trial{i}")
    columns += [f"posttask_{key}" for key in FEATURE_KEY_MAP]
    return columns


def _cell(value) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def survey_answer(survey: dict, prefix: str, key: str) -> str:
    """Look up a survey answer by its prefixed export name, then by its form field name.

    Nested answers are matched by the last segment of their flattened key.
    """
    prefixed = f"{prefix}_{key}"
    db_field = FEATURE_KEY_MAP[key]
    for name in (prefixed, db_field):
        if survey.get(name) is not None:
            return _cell(survey[name])

    flat = flatten_dict.flatten(survey, reducer="dot")
    for name in (prefixed, db_field):
        for flat_key, value in flat.items():
            if flat_key.split(".")[-1] == name and value is not None:
                return _cell(value)
    return ""


def original_order_slots(trial_order, trial_count: int) -> list[int]:
    """For each original row index, the 0-based slot it was presented in.

    Falls back to identity when the stored order is not a valid permutation.
    """
    if trial_order and trial_randomizer.is_permutation(trial_order, len(trial_order)):
        slots = trial_randomizer.presentation_slots([int(i) for i in trial_order])
    else:
        slots = []
    return slots + list(range(len(slots), trial_count))


def _to_number(value) -> float | None:
    if value is None or value == "" or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def group_trial_columns(submissions: dict, subject_id: str) -> tuple[str, str, str, str, str]:
    """(initial, final, group average, changed direction, wallet after) for one participant."""
    mine = submissions.get(subject_id) or {}
    initial = mine.get("initialWager")
    final = mine.get("finalWager")

    if not submissions:
        return _cell(initial), _cell(final), "", "", _cell(mine.get("walletAfter"))

    finals = [_to_number(s.get("finalWager")) or 0.0 for s in submissions.values()]
    avg = f"{sum(finals) / len(finals):.2f}"

    initial_num, final_num = _to_number(initial), _to_number(final)
    if initial_num is None or final_num is None:
        changed = ""
    else:
        avg_num = float(avg)
        changed = _cell(abs(final_num - avg_num) < abs(initial_num - avg_num))

    return _cell(initial), _cell(final), avg, changed, _cell(mine.get("walletAfter"))


def build_export_frame(store: DocumentStore, mode: str) -> pd.DataFrame:
    """Build the export table for ``mode``.

    Raises:
        ExportError: 400 for an unsupported mode, 404 if no session of that mode exists.
    """
    if mode not in (SessionModes.Solo, SessionModes.Group):
        raise ExportError(400, "Error: please request /exportCsv?mode=solo or ?mode=group")

    sessions = store.query(configuration_constants.SESSIONS_COLLECTION, "mode", mode, order_by="createdAt")
    if not sessions:
        raise ExportError(404, f"No sessions found for mode={mode}")

    trial_count = max(int(doc.get("trialCount") or 0) for _, doc in sessions)
    columns = export_columns(mode, trial_count)

    rows = []
    for session_id, session in sessions:
        slots = original_order_slots(session.get("trialOrder"), trial_count)
        trials_collection = collection_path(
            configuration_constants.SESSIONS_COLLECTION,
            session_id,
            configuration_constants.TRIALS_SUBCOLLECTION,
        )
        surveys_collection = collection_path(
            configuration_constants.SESSIONS_COLLECTION,
            session_id,
            configuration_constants.PARTICIPANT_DATA_SUBCOLLECTION,
        )

        if mode == SessionModes.Group:
            submissions_by_trial = {
                doc.get("trialNumber"): doc.get("submissions") or {}
                for _, doc in store.list(trials_collection)
            }

        for subject_id in session.get("participants") or []:
            row = {"sessionID": session_id, "clientID": subject_id, "aiMode": _cell(session.get("aiMode"))}

            pre = store.get(surveys_collection, f"{subject_id}_preTask") or {}
            for key in FEATURE_KEY_MAP:
                row[f"pretask_{key}"] = survey_answer(pre, "pretask", key)

            if mode == SessionModes.Solo:
                trials_by_number = {
                    doc.get("trialNumber"): doc
                    for _, doc in store.query(trials_collection, "clientID", subject_id)
                }

            for j in range(trial_count):
                trial_number = slots[j] + 1
                i = j + 1
                if mode == SessionModes.Solo:
                    trial = trials_by_number.get(trial_number) or {}
                    row[f"trial{i}_initialWager"] = _cell(trial.get("initialWager"))
                    row[f"trial{i}_finalWager"] = _cell(trial.get("finalWager"))
                    row[f"wallet_after_trial{i}"] = _cell(trial.get("walletAfter"))
                else:
                    (
                        row[f"trial{i}_initialWager"],
                        row[f"trial{i}_finalWager"],
                        row[f"trial{i}_groupAvgWager"],
                        row[f"trial{i}_changedDirection"],
                        row[f"wallet_after_trial{i}"],
                    ) = group_trial_columns(submissions_by_trial.get(trial_number) or {}, subject_id)

            post = store.get(surveys_collection, f"{subject_id}_postTask") or {}
            for key in FEATURE_KEY_MAP:
                row[f"posttask_{key}"] = survey_answer(post, "posttask", key)

            rows.append(row)

    logger.info(f"[Export] Built {mode} export: {len(rows)} rows, {trial_count} trials")
    return pd.DataFrame(rows, columns=columns, dtype=str)


def export_csv(store: DocumentStore, mode: str) -> str:
    frame = build_export_frame(store, mode)
    return frame.to_csv(index=False, quoting=csv.QUOTE_ALL, lineterminator="\n")
