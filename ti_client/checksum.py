"""Checksums of callgraph chains.

A chain is the list of source paths a test touches. Its checksum combines the
checksums of the files on those paths, so a change to any of them changes the
chain checksum. Paths without a known file checksum are skipped.
"""

from __future__ import annotations

from typing import Iterable, Mapping

import xxhash


def _candidates(paths: Iterable[str], checksums: Mapping[str, int] | None) -> list[str]:
    if not checksums:
        return []
    return [f"{path}:{checksums[path]}" for path in paths if path in checksums]


def chain_checksum(paths: Iterable[str], checksums: Mapping[str, int] | None) -> int:
    """Order-sensitive checksum of a chain.

    Returns 0 when none of the paths has a checksum.

    Example:
        >>> chain_checksum(["a.py", "b.py"], {"a.py": 1, "b.py": 2}) != 0
        True
    """
    candidates = _candidates(paths, checksums)
    if not candidates:
        return 0
    return xxhash.xxh64_intdigest("|".join(candidates).encode("utf-8"))


def chain_checksum_xor(paths: Iterable[str], checksums: Mapping[str, int] | None) -> int:
    """Order-independent checksum of a chain: XOR of the per-path hashes."""
    result = 0
    for candidate in _candidates(paths, checksums):
        result ^= xxhash.xxh64_intdigest(candidate.encode("utf-8"))
    return result
