"""Environment helpers for spawned agent processes."""

from __future__ import annotations

import fnmatch
import os
from typing import Iterable, Mapping

_SANITIZED_VARS = {
    "PYTHONHOME",
    "PYTHONPATH",
    "VIRTUAL_ENV",
    "PIP_RESPECT_VIRTUALENV",
}


def excluded_variables(names: Iterable[str], patterns: Iterable[str]) -> list[str]:
    """Return the variable names matched by any of the exclusion globs."""

    compiled = [pattern for pattern in patterns if pattern]
    return sorted(
        name for name in names if any(fnmatch.fnmatchcase(name, pattern) for pattern in compiled)
    )


def sanitize_environment(
    additional: Mapping[str, str] | None = None,
    *,
    exclude: Iterable[str] = (),
) -> dict[str, str]:
    """Return a copy of ``os.environ`` suitable for agent subprocesses.

    Interpreter and virtualenv variables are always dropped, then names matching
    any ``exclude`` glob (for example ``*_API_KEY``). ``additional`` is applied
    last and is never filtered.
    """

    env = dict(os.environ)
    for key in _SANITIZED_VARS:
        env.pop(key, None)
    for key in excluded_variables(list(env), exclude):
        env.pop(key, None)
    if additional:
        env.update(additional)
    return env


__all__ = ["excluded_variables", "sanitize_environment"]
