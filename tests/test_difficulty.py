"""Tests for target/difficulty conversion."""

import pytest

from cryptonote_ws_proxy.proxy.difficulty import MAX_TARGET, parse_target, target_to_difficulty


class TestTargetToDifficulty:
    """Test target_to_difficulty."""

    def test_maximal_target_is_difficulty_one(self):
        """The all-ones 256-bit target has difficulty 1."""
        assert target_to_difficulty("f" * 64) == 1

    def test_short_target_uses_big_integer_division(self):
        """A 32-bit target divides the 256-bit maximum without overflowing."""
        assert target_to_difficulty("ffff0000") == MAX_TARGET // 0xFFFF0000
        assert target_to_difficulty("ffff0000") > 2**64

    def test_very_small_target_gives_large_difficulty(self):
        """Target 1 yields the maximum value itself."""
        assert target_to_difficulty("01") == MAX_TARGET

    @pytest.mark.parametrize("target", [None, "", "   ", "zz", "0x", "0", "0000"])
    def test_degenerate_input_is_minimum(self, target):
        """Missing, malformed or zero targets fall back to 1."""
        assert target_to_difficulty(target) == 1

    def test_accepts_0x_prefix_and_uppercase(self):
        """Hex prefix and case do not matter."""
        assert target_to_difficulty("0xFFFF0000") == target_to_difficulty("ffff0000")

    def test_monotonic_non_increasing(self):
        """Larger targets never give a larger difficulty, across hex lengths."""
        targets = ["01", "ff", "0fff", "ffff0000", "ffffffffffffffff", "f" * 40, "f" * 64]
        values = sorted(targets, key=lambda t: int(t, 16))
        difficulties = [target_to_difficulty(t) for t in values]
        assert difficulties == sorted(difficulties, reverse=True)


class TestParseTarget:
    """Test parse_target."""

    def test_valid(self):
        assert parse_target("ff") == 255

    def test_invalid(self):
        assert parse_target("not-hex") is None
