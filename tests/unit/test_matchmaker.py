"""Tests for TriadMatchmaker cohort split policy."""

from __future__ import annotations

import pytest

from wagerlab.server.matchmaker import CohortSplit, TriadMatchmaker


class TestTriadMatchmaker:
    @pytest.mark.parametrize(
        "cohort, expected",
        [
            (["A"], CohortSplit(group=[], solos=["A"])),
            (["A", "B"], CohortSplit(group=[], solos=["A", "B"])),
            (["A", "B", "C"], CohortSplit(group=["A", "B", "C"], solos=[])),
            (["A", "B", "C", "D"], CohortSplit(group=["A", "B", "C"], solos=["D"])),
        ],
    )
    def test_split_expired(self, cohort, expected):
        assert TriadMatchmaker().split_expired(cohort, 3) == expected

    def test_every_participant_placed_once(self):
        cohort = ["A", "B", "C", "D", "E"]
        split = TriadMatchmaker().split_expired(cohort, 3)
        assert sorted(split.group + split.solos) == cohort

    def test_is_full(self):
        matchmaker = TriadMatchmaker()
        assert not matchmaker.is_full(["A", "B"], 3)
        assert matchmaker.is_full(["A", "B", "C"], 3)

    def test_custom_group_size(self):
        split = TriadMatchmaker().split_expired(["A", "B"], 2)
        assert split == CohortSplit(group=["A", "B"], solos=[])
