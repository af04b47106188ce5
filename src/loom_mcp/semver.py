"""Lenient version comparison for agent CLI version strings."""

from __future__ import annotations

import re

_VERSION_RE = re.compile(r"(\d+\.\d+\.\d+)")
_SUFFIX_RE = re.compile(r"[-+].*$")


def extract_version(text: str) -> str | None:
    """Return the first ``major.minor.patch`` found in freeform text."""

    match = _VERSION_RE.search(text or "")
    return match.group(1) if match else None


def _segments(version: str) -> list[int]:
    core = _SUFFIX_RE.sub("", version.strip().lstrip("vV"))
    segments: list[int] = []
    for part in core.split("."):
        digits = re.match(r"\d+", part)
        segments.append(int(digits.group(0)) if digits else 0)
    return segments


def compare_versions(left: str, right: str) -> int:
    """Compare two version strings numerically.

    Missing segments count as zero and pre-release or build metadata is
    ignored, so ``"2" == "2.0.0"`` and ``"2.0-beta" == "2.0"``.
    """

    a, b = _segments(left), _segments(right)
    width = max(len(a), len(b))
    a.extend([0] * (width - len(a)))
    b.extend([0] * (width - len(b)))
    if a == b:
        return 0
    return -1 if a < b else 1


__all__ = ["compare_versions", "extract_version"]
