"""Tests for per-session trial order randomization."""

from __future__ import annotations

import collections
from unittest.mock import MagicMock

import numpy as np
import pytest

from wagerlab.server import trial_randomizer
from wagerlab.server.document_store import DocumentNotFound


class TestFisherYates:
    @pytest.mark.parametrize("n", [0, 1, 2, 7, 50])
    def test_is_permutation(self, n):
        order = trial_randomizer.fisher_yates_order(n, np.random.default_rng(n))
        assert trial_randomizer.is_permutation(order, n)

    def test_seeded_rng_is_reproducible(self):
        first = trial_randomizer.fisher_yates_order(10, np.random.default_rng(42))
        second = trial_randomizer.fisher_yates_order(10, np.random.default_rng(42))
        assert first == second

    def test_all_orders_reachable(self):
        """Every permutation of 3 items shows up, none of them wildly over-represented."""
        rng = np.random.default_rng(7)
        counts = collections.Counter(
            tuple(trial_randomizer.fisher_yates_order(3, rng)) for _ in range(6000)
        )
        assert len(counts) == 6
        assert all(800 < c < 1200 for c in counts.values())


class TestOrderHelpers:
    def test_is_permutation_rejects_bad_orders(self):
        assert not trial_randomizer.is_permutation(None, 2)
        assert not trial_randomizer.is_permutation([0, 0], 2)
        assert not trial_randomizer.is_permutation([0, 1], 3)

    def test_apply_order(self):
        rows = [{"id": "a"}, {"id": "b"}, {"id": "c"}]
        reordered = trial_randomizer.apply_order(rows, [2, 0, 1])
        assert [r["id"] for r in reordered] == ["c", "a", "b"]

    def test_presentation_slots_inverts_order(self):
        """Original row 2 shown first, row 0 second, row 1 third."""
        order = [2, 0, 1]
        slots = trial_randomizer.presentation_slots(order)

        assert slots == [1, 2, 0]
        assert all(order[slots[i]] == i for i in range(len(order)))


class TestShuffleAndPersist:
    def test_order_written_to_session(self, store):
        store.set("sessions", "s1", {"trialOrder": []})
        rows = [{"id": str(i)} for i in range(5)]

        shuffled = trial_randomizer.shuffle_and_persist(store, "s1", rows, np.random.default_rng(3))
        order = store.get("sessions", "s1")["trialOrder"]

        assert trial_randomizer.is_permutation(order, 5)
        assert shuffled == [rows[i] for i in order]

    def test_persists_before_returning(self):
        """If the write fails, no shuffled rows are handed out."""
        store = MagicMock()
        store.update.side_effect = DocumentNotFound("sessions", "s1")

        with pytest.raises(DocumentNotFound):
            trial_randomizer.shuffle_and_persist(store, "s1", [{"id": "0"}])
        store.update.assert_called_once()

    def test_empty_content(self, store):
        store.set("sessions", "s1", {})
        assert trial_randomizer.shuffle_and_persist(store, "s1", []) == []
        assert store.get("sessions", "s1")["trialOrder"] == []
