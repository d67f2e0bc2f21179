from __future__ import annotations

import logging
import os

from wagerlab.configurations import configuration_constants
from wagerlab.utils.sentinels import NotProvided

logger = logging.getLogger(__name__)


class ExperimentConfig:
    def __init__(self):

        # Experiment
        self.experiment_id: str = None

        # Hosting
        self.host = None
        self.port = 8080

        # Trial content: one sub-directory per AI mode under content_root
        self.content_root: str | None = None
        self.ai_modes: list[str] | None = None

        # Timing
        self.waiting_duration_s: float = configuration_constants.DEFAULT_WAITING_DURATION_S
        self.phase_duration_s: float = configuration_constants.DEFAULT_PHASE_DURATION_S
        self.chat_duration_s: float = configuration_constants.DEFAULT_CHAT_DURATION_S

        # Cohort
        self.group_size: int = configuration_constants.DEFAULT_GROUP_SIZE

        # Wagers
        self.wager_min: int = configuration_constants.DEFAULT_WAGER_MIN
        self.wager_max: int = configuration_constants.DEFAULT_WAGER_MAX
        self.default_wager: int = configuration_constants.DEFAULT_WAGER

        # Storage
        self.snapshot_path: str | None = None

        # Logging
        self.log_file: str = "./wagerlab.log"

    def experiment(
        self,
        experiment_id: str = NotProvided,
    ) -> ExperimentConfig:
        if experiment_id is not NotProvided:
            self.experiment_id = experiment_id

        return self

    def hosting(
        self,
        host: str | None = NotProvided,
        port: int | None = NotProvided,
    ) -> ExperimentConfig:
        if host is not NotProvided:
            self.host = host

        if port is not NotProvided:
            self.port = port

        return self

    def content(
        self,
        content_root: str = NotProvided,
        ai_modes: list[str] | None = NotProvided,
    ) -> ExperimentConfig:
        """Configure where trial content lives.

        :param content_root: Directory holding one sub-directory per AI mode. Each
            sub-directory must contain exactly one delimited file of trial rows.
            Falls back to the WAGERLAB_CONTENT_ROOT env var if not provided.
        :type content_root: str, optional
        :param ai_modes: Ordered AI-mode names used for round-robin assignment. If None,
            every sub-directory of content_root is used, in sorted order.
        :type ai_modes: list[str], optional
        :return: The ExperimentConfig instance (self)
        :rtype: ExperimentConfig
        """
        if content_root is not NotProvided:
            self.content_root = content_root
        elif self.content_root is None:
            self.content_root = os.environ.get("WAGERLAB_CONTENT_ROOT")

        if ai_modes is not NotProvided:
            assert ai_modes is None or (
                isinstance(ai_modes, list) and all(isinstance(m, str) for m in ai_modes)
            ), "ai_modes must be None or a list of mode names"
            self.ai_modes = ai_modes

        return self

    def timing(
        self,
        waiting_duration_s: float = NotProvided,
        phase_duration_s: float = NotProvided,
        chat_duration_s: float = NotProvided,
    ) -> ExperimentConfig:
        if waiting_duration_s is not NotProvided:
            assert waiting_duration_s > 0, "waiting_duration_s must be positive"
            self.waiting_duration_s = waiting_duration_s

        if phase_duration_s is not NotProvided:
            assert phase_duration_s > 0, "phase_duration_s must be positive"
            self.phase_duration_s = phase_duration_s

        if chat_duration_s is not NotProvided:
            assert chat_duration_s > 0, "chat_duration_s must be positive"
            self.chat_duration_s = chat_duration_s

        if self.chat_duration_s <= self.phase_duration_s:
            logger.warning(
                f"chat_duration_s ({self.chat_duration_s}) is not longer than "
                f"phase_duration_s ({self.phase_duration_s})."
            )

        return self

    def cohort(self, group_size: int = NotProvided) -> ExperimentConfig:
        if group_size is not NotProvided:
            assert isinstance(group_size, int) and group_size >= 2, \
                "group_size must be an integer >= 2"
            self.group_size = group_size

        return self

    def wagers(
        self,
        minimum: int = NotProvided,
        maximum: int = NotProvided,
        default: int = NotProvided,
    ) -> ExperimentConfig:
        if minimum is not NotProvided:
            self.wager_min = minimum

        if maximum is not NotProvided:
            self.wager_max = maximum

        if default is not NotProvided:
            self.default_wager = default

        assert self.wager_min <= self.default_wager <= self.wager_max, \
            "default wager must lie within [minimum, maximum]"

        return self

    def storage(self, snapshot_path: str | None = NotProvided) -> ExperimentConfig:
        """Set where the in-memory document store is snapshotted on exit.

        :param snapshot_path: msgpack file loaded at startup (if it exists) and
            written on shutdown. None disables snapshots.
        :type snapshot_path: str, optional
        """
        if snapshot_path is not NotProvided:
            self.snapshot_path = snapshot_path

        return self

    def logging(self, log_file: str = NotProvided) -> ExperimentConfig:
        if log_file is not NotProvided:
            self.log_file = log_file

        return self

    def get_client_config(self) -> dict:
        """Timing and wager settings the client needs to render countdowns and sliders."""
        return {
            "experiment_id": self.experiment_id,
            "phase_duration_ms": int(self.phase_duration_s * 1000),
            "chat_duration_ms": int(self.chat_duration_s * 1000),
            "waiting_duration_ms": int(self.waiting_duration_s * 1000),
            "wager_min": self.wager_min,
            "wager_max": self.wager_max,
            "default_wager": self.default_wager,
        }
