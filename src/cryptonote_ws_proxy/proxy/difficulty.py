"""Conversion between pool share targets and difficulty."""

from __future__ import annotations

from typing import Optional

# 256-bit all-ones; short (32/64-bit) CryptoNote targets divide into it too
MAX_TARGET = (1 << 256) - 1

MIN_DIFFICULTY = 1

# Sent to clients when a job carries no target
DEFAULT_TARGET = "ffffffffffffffff"


def parse_target(target_hex: Optional[str]) -> Optional[int]:
    """
    Parse a hex target into an integer.

    Returns:
        The target value, or None if it is missing, malformed or zero.
    """
    if not target_hex or not isinstance(target_hex, str):
        return None
    text = target_hex.strip().lower()
    if text.startswith("0x"):
        text = text[2:]
    if not text:
        return None
    try:
        value = int(text, 16)
    except ValueError:
        return None
    return value if value > 0 else None


def target_to_difficulty(target_hex: Optional[str]) -> int:
    """
    Convert a hex target to an integer difficulty.

    Targets are treated as arbitrary-width big integers, so a 32-bit
    compact target and a full 256-bit target are both handled. Anything
    unusable yields the minimum difficulty instead of raising.

    Args:
        target_hex: Target as a hex string, as sent by the pool.

    Returns:
        ``MAX_TARGET // target``, never less than 1.
    """
    value = parse_target(target_hex)
    if value is None:
        return MIN_DIFFICULTY
    return max(MIN_DIFFICULTY, MAX_TARGET // value)
