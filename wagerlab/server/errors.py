"""Exception taxonomy for the experiment server.

ConfigurationError aborts startup. SessionFatalError ends one live session.
RequestInvalidError is reported back to the offending connection only.
TrialContentError is recoverable by rotating to another AI mode.
"""

from __future__ import annotations


class ExperimentError(Exception):
    """Base class for experiment server errors."""


class ConfigurationError(ExperimentError):
    """The experiment cannot start with the current configuration."""


class SessionFatalError(ExperimentError):
    """A live session cannot continue and must be discarded."""

    def __init__(self, session_id: str, message: str):
        super().__init__(message)
        self.session_id = session_id


class RequestInvalidError(ExperimentError):
    """A client request cannot be applied. The message is shown to the participant."""


class TrialContentError(ExperimentError):
    """Trial content for an AI mode is missing or unreadable."""

    def __init__(self, ai_mode: str, message: str):
        super().__init__(f"[{ai_mode}] {message}")
        self.ai_mode = ai_mode
