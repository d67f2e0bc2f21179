"""Loading trial content rows for an AI mode.

Each AI mode owns a directory under the content root containing exactly one
delimited file. Every row of that file is one trial (one fight).
"""

from __future__ import annotations

import logging
import os

import pandas as pd

from wagerlab.configurations import configuration_constants
from wagerlab.server.errors import TrialContentError
from wagerlab.utils.typing import AIMode, TrialRow

logger = logging.getLogger(__name__)


def content_directory(content_root: str, ai_mode: AIMode) -> str:
    return os.path.join(content_root, ai_mode)


def find_content_file(content_root: str, ai_mode: AIMode) -> str:
    directory = content_directory(content_root, ai_mode)
    if not os.path.isdir(directory):
        raise TrialContentError(ai_mode, f"Content directory {directory} does not exist")

    candidates = sorted(
        name for name in os.listdir(directory)
        if name.lower().endswith(configuration_constants.CONTENT_FILE_SUFFIXES)
        and not name.startswith(".")
    )
    if len(candidates) != 1:
        raise TrialContentError(
            ai_mode,
            f"Expected exactly one delimited file in {directory}, found {candidates}",
        )
    return os.path.join(directory, candidates[0])


def load_trial_rows(content_root: str, ai_mode: AIMode) -> list[TrialRow]:
    """Read the trial rows for ``ai_mode`` in file order.

    Values are kept as strings (empty string for blanks) so the client
    receives exactly what the content author wrote.

    Raises:
        TrialContentError: if the directory or file is missing, ambiguous or
            cannot be parsed.
    """
    path = find_content_file(content_root, ai_mode)
    sep = "\t" if path.lower().endswith(".tsv") else ","
    try:
        df = pd.read_csv(path, sep=sep, dtype=str, keep_default_na=False)
    except (OSError, ValueError, pd.errors.ParserError) as e:
        raise TrialContentError(ai_mode, f"Could not parse {path}: {e}") from e

    rows = df.to_dict(orient="records")
    logger.info(f"[Content] Loaded {len(rows)} trial rows for AI mode {ai_mode} from {path}")
    return rows
