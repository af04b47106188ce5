from __future__ import annotations

import pytest

from loom_mcp.semver import compare_versions, extract_version


@pytest.mark.parametrize(
    ("left", "right", "expected"),
    [
        ("2.0", "2.0", 0),
        ("1.0.0", "1.0.0", 0),
        ("1.0", "2.0", -1),
        ("1.9", "2.0", -1),
        ("2.1", "2.0", 1),
        ("2.10", "2.9", 1),
        ("1.100", "1.99", 1),
        ("2", "2.0.0", 0),
        ("2", "2.1", -1),
        ("2.0-beta", "2.0", 0),
        ("2.0+build123", "2.0", 0),
        ("2.0-alpha", "2.0-beta", 0),
        ("v1.2.3", "1.2.3", 0),
    ],
)
def test_compare_versions(left: str, right: str, expected: int) -> None:
    assert compare_versions(left, right) == expected


def test_extract_version_from_cli_banner() -> None:
    assert extract_version("codex-cli 0.46.0\n") == "0.46.0"
    assert extract_version("2.1.3 (Claude Code)") == "2.1.3"


def test_extract_version_without_match() -> None:
    assert extract_version("unknown build") is None
    assert extract_version("") is None
