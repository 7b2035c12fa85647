"""Stable rule identifiers.

A rule's id is derived from the name of its source directory rather than
chosen by the ruleset author, so the same directory always maps to the same
id and user-set enable flags survive rebuilds.
"""

from pathlib import Path

_FNV32_OFFSET = 0x811C9DC5
_FNV32_PRIME = 0x01000193
_ID_LENGTH = 5


def fnv1_32(data: bytes) -> int:
    """32-bit FNV-1 hash (multiply, then xor)."""
    h = _FNV32_OFFSET
    for byte in data:
        h = (h * _FNV32_PRIME) & 0xFFFFFFFF
        h ^= byte
    return h


def rule_id(source_dir: Path | str) -> str:
    """Return the 5 hex character id for a rule source directory.

    Only the base name counts, so moving a ruleset repository does not
    change its rule ids.

    >>> rule_id("rules/no_foo") == rule_id("/elsewhere/no_foo")
    True
    """
    name = Path(source_dir).name
    return f"{fnv1_32(name.encode()):08x}"[:_ID_LENGTH]
