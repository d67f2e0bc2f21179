"""Per-session trial order randomization.

The permutation is written to the session document before any trial content
is shown. Rejoining clients and the data export both depend on that exact
order, so it is never regenerated for a session once persisted.
"""

from __future__ import annotations

import logging
from typing import Sequence

import numpy as np

from wagerlab.configurations import configuration_constants
from wagerlab.server.document_store import DocumentStore
from wagerlab.utils.typing import SessionID, TrialRow

logger = logging.getLogger(__name__)


def fisher_yates_order(n: int, rng: np.random.Generator | None = None) -> list[int]:
    """Return a uniformly random permutation of range(n)."""
    rng = rng if rng is not None else np.random.default_rng()
    order = list(range(n))
    for i in range(n - 1, 0, -1):
        j = int(rng.integers(0, i + 1))
        order[i], order[j] = order[j], order[i]
    return order


def is_permutation(order: Sequence[int] | None, n: int) -> bool:
    if order is None or len(order) != n:
        return False
    return sorted(int(i) for i in order) == list(range(n))


def apply_order(rows: Sequence[TrialRow], order: Sequence[int]) -> list[TrialRow]:
    """Reorder rows so that ``reordered[j] == rows[order[j]]``."""
    return [rows[idx] for idx in order]


def presentation_slots(order: Sequence[int]) -> list[int]:
    """Invert a trial order.

    ``presentation_slots(order)[i]`` is the 0-based presentation slot at which
    original row ``i`` was shown.
    """
    slots = [0] * len(order)
    for slot, original_idx in enumerate(order):
        slots[original_idx] = slot
    return slots


def shuffle_and_persist(
    store: DocumentStore,
    session_id: SessionID,
    rows: Sequence[TrialRow],
    rng: np.random.Generator | None = None,
) -> list[TrialRow]:
    """Shuffle ``rows`` for a session, persist the order, and return the reordered rows."""
    order = fisher_yates_order(len(rows), rng)

    store.update(
        configuration_constants.SESSIONS_COLLECTION,
        session_id,
        {"trialOrder": order},
    )
    logger.info(f"[Randomizer] Persisted trial order of length {len(order)} for session {session_id}")

    return apply_order(rows, order)
