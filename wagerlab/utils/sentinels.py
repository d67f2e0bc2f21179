"""Sentinel values used by the configuration builders."""

from __future__ import annotations


class _NotProvided:
    """Marks a builder argument the caller did not pass.

    ``None`` is a meaningful value for several settings (e.g. no snapshot
    path), so builders compare against this singleton instead.
    """

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "NotProvided"

    def __bool__(self) -> bool:
        return False


NotProvided = _NotProvided()
