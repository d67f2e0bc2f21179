"""Round-robin assignment of AI modes (trial-content variants) to new sessions.

Solo and group sessions rotate independently so each pool sees every
variant in turn.
"""

from __future__ import annotations

import logging
import os

from wagerlab.configurations import configuration_constants
from wagerlab.server import trial_content
from wagerlab.server.document_store import DocumentStore
from wagerlab.server.errors import ConfigurationError, TrialContentError
from wagerlab.utils.typing import AIMode, TrialRow

logger = logging.getLogger(__name__)


class AIModeRotator:
    """Picks and loads the AI mode for each newly running session.

    Args:
        store: Document store holding the ``sessions`` collection.
        content_root: Directory with one sub-directory per AI mode.
        ai_modes: Configured modes in rotation order. If None, every
            sub-directory of ``content_root`` is used, sorted by name.

    Raises:
        ConfigurationError: if no configured mode has a content directory.
    """

    def __init__(
        self,
        store: DocumentStore,
        content_root: str | None,
        ai_modes: list[AIMode] | None = None,
    ):
        self.store = store
        self.content_root = content_root
        self.ai_modes = self._validate_modes(content_root, ai_modes)
        logger.info(f"[AIModeRotator] Available AI modes: {self.ai_modes}")

    @staticmethod
    def _validate_modes(content_root: str | None, ai_modes: list[AIMode] | None) -> list[AIMode]:
        if not content_root or not os.path.isdir(content_root):
            raise ConfigurationError(
                f"Content root {content_root!r} is not a directory. No AI modes are available."
            )

        if ai_modes is None:
            ai_modes = sorted(
                name for name in os.listdir(content_root)
                if os.path.isdir(os.path.join(content_root, name)) and not name.startswith(".")
            )

        available = []
        for mode in ai_modes:
            if os.path.isdir(trial_content.content_directory(content_root, mode)):
                available.append(mode)
            else:
                logger.warning(
                    f"[AIModeRotator] Dropping AI mode {mode}: no content directory under {content_root}"
                )

        if not available:
            raise ConfigurationError(
                f"No AI modes with content found under {content_root} (configured: {ai_modes})"
            )
        return available

    def determine_mode(self, pool_kind: str) -> AIMode:
        """Return the AI mode following the one used by the latest session of ``pool_kind``."""
        recent = self.store.query(
            configuration_constants.SESSIONS_COLLECTION,
            "mode",
            pool_kind,
            order_by="createdAt",
            descending=True,
        )

        last_mode = None
        for _, session in recent:
            if session.get("aiMode") in self.ai_modes:
                last_mode = session["aiMode"]
                break

        if last_mode is None:
            next_mode = self.ai_modes[0]
        else:
            next_mode = self.ai_modes[(self.ai_modes.index(last_mode) + 1) % len(self.ai_modes)]

        logger.info(
            f"[AIModeRotator] pool={pool_kind}, last_mode={last_mode}, next_mode={next_mode}"
        )
        return next_mode

    def fallback_order(self, ai_mode: AIMode) -> list[AIMode]:
        """``ai_mode`` first, then the remaining modes in configured order."""
        if ai_mode not in self.ai_modes:
            return list(self.ai_modes)
        start = self.ai_modes.index(ai_mode)
        return self.ai_modes[start:] + self.ai_modes[:start]

    def load_content(self, ai_mode: AIMode) -> tuple[AIMode, list[TrialRow]]:
        """Load the rows for ``ai_mode``, falling back through the other modes.

        Returns:
            The mode whose content was actually loaded together with its rows,
            or ``(UNKNOWN_AI_MODE, [])`` when no mode could be loaded.
        """
        for mode in self.fallback_order(ai_mode):
            try:
                rows = trial_content.load_trial_rows(self.content_root, mode)
            except TrialContentError as e:
                logger.error(f"[AIModeRotator] Failed to load content: {e}")
                continue

            if mode != ai_mode:
                logger.warning(f"[AIModeRotator] Fell back from AI mode {ai_mode} to {mode}")
            return mode, rows

        logger.error(
            f"[AIModeRotator] Content could not be loaded for any AI mode (requested {ai_mode})."
        )
        return configuration_constants.UNKNOWN_AI_MODE, []
