"""Tests for wildcard identifier patterns."""

import pytest

from attendance_ledger.utils.patterns import (
    _REGEX_METACHARACTERS, compile_pattern, glob_to_regex, matches, matches_everything
)

METACHARACTERS = sorted(_REGEX_METACHARACTERS)


class TestPatterns:

    def test_star_translates_to_any_run(self):
        assert glob_to_regex("CSE2021*") == "^CSE2021.*$"

    def test_metacharacters_are_literal(self):
        assert glob_to_regex("CSE.2021*") == "^CSE\\.2021.*$"
        assert matches("CSE.2021*", "CSE.2021001")
        assert not matches("CSE.2021*", "CSEX2021001")
        assert matches("A+B(1)*", "A+B(1)-x")

    def test_anchored(self):
        assert not matches("2021*", "CSE2021001")
        assert not matches("CSE2021", "CSE2021001")

    def test_case_insensitive(self):
        assert compile_pattern("cse2021*").match("CSE2021001")

    def test_star_alone_matches_everything(self):
        assert matches_everything("*")
        assert matches_everything(" * ")
        assert matches("*", None)
        assert not matches("CSE*", None)


class TestMetacharacterEscaping:
    """Every regex metacharacter in a pattern stands for itself only."""

    @pytest.mark.parametrize("char", METACHARACTERS)
    def test_matches_only_itself(self, char):
        pattern = f"A{char}B"
        assert matches(pattern, f"A{char}B")
        assert not matches(pattern, "AXB")
        assert not matches(pattern, "AB")
        assert not matches(pattern, f"A{char}{char}B")

    @pytest.mark.parametrize("char", METACHARACTERS)
    def test_anchored_at_both_ends(self, char):
        pattern = f"A{char}B"
        assert not matches(pattern, f"xA{char}B")
        assert not matches(pattern, f"A{char}Bx")

    @pytest.mark.parametrize("char", METACHARACTERS)
    def test_star_still_wildcard_next_to_metacharacter(self, char):
        pattern = f"{char}*"
        assert matches(pattern, f"{char}")
        assert matches(pattern, f"{char}2021001")
        assert not matches(pattern, f"x{char}")
