"""Tests for loading trial content rows per AI mode."""

from __future__ import annotations

import pytest

from tests.fixtures.session_helpers import write_content
from wagerlab.server import trial_content
from wagerlab.server.errors import TrialContentError


class TestLoadTrialRows:
    def test_rows_in_file_order_as_strings(self, tmp_path):
        write_content(
            tmp_path,
            "goodAI",
            [
                {"fight_id": "f1", "r_age": "31", "note": ""},
                {"fight_id": "f2", "r_age": "28", "note": "rematch"},
            ],
        )

        rows = trial_content.load_trial_rows(str(tmp_path), "goodAI")

        assert rows == [
            {"fight_id": "f1", "r_age": "31", "note": ""},
            {"fight_id": "f2", "r_age": "28", "note": "rematch"},
        ]

    def test_tab_separated_file(self, tmp_path):
        write_content(tmp_path, "badAI", [{"fight_id": "f1", "winner": "1"}], filename="fights.tsv")
        assert trial_content.load_trial_rows(str(tmp_path), "badAI") == [{"fight_id": "f1", "winner": "1"}]

    def test_missing_directory(self, tmp_path):
        with pytest.raises(TrialContentError, match="does not exist"):
            trial_content.load_trial_rows(str(tmp_path), "goodAI")

    def test_ambiguous_directory(self, tmp_path):
        write_content(tmp_path, "goodAI", [{"a": "1"}], filename="one.csv")
        write_content(tmp_path, "goodAI", [{"a": "2"}], filename="two.csv")

        with pytest.raises(TrialContentError, match="exactly one"):
            trial_content.find_content_file(str(tmp_path), "goodAI")

    def test_error_names_the_mode(self, tmp_path):
        (tmp_path / "goodAI").mkdir()
        with pytest.raises(TrialContentError) as excinfo:
            trial_content.load_trial_rows(str(tmp_path), "goodAI")
        assert excinfo.value.ai_mode == "goodAI"
