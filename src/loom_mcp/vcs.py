"""Git worktree management for isolated agent workspaces."""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Protocol, Sequence, runtime_checkable

from .process import ProcessResult, run_process

logger = logging.getLogger(__name__)

GIT_TIMEOUT_SECONDS = 60.0
_UNSAFE_PATH_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


class WorktreeError(RuntimeError):
    """Raised when a git operation on a worktree fails."""


@runtime_checkable
class WorktreeManager(Protocol):
    async def create_worktree(self, branch: str, base_path: Path) -> Path: ...

    async def remove_worktree(self, path: Path) -> None: ...

    async def commit_all(self, path: Path, message: str) -> str | None: ...


def worktree_dirname(branch: str) -> str:
    """Return a filesystem-safe directory name for ``branch``."""

    name = _UNSAFE_PATH_CHARS.sub("-", branch).strip("-.")
    return name or "worktree"


class GitWorktreeManager:
    """Creates one git worktree per branch beneath ``root``."""

    def __init__(
        self,
        root: Path,
        *,
        git: str = "git",
        author_name: str | None = None,
        author_email: str | None = None,
        timeout: float = GIT_TIMEOUT_SECONDS,
    ) -> None:
        self._root = Path(root)
        self._git = git
        self._author_name = author_name
        self._author_email = author_email
        self._timeout = timeout
        self._owners: dict[Path, Path] = {}

    @property
    def root(self) -> Path:
        return self._root

    async def create_worktree(self, branch: str, base_path: Path) -> Path:
        base = Path(base_path).resolve()
        if not self._root.is_absolute():
            root = base / self._root
        else:
            root = self._root
        root.mkdir(parents=True, exist_ok=True)
        target = root / worktree_dirname(branch)
        if target.exists():
            raise WorktreeError(f"Worktree path already exists: {target}")

        await self._git_checked(base, ["worktree", "add", "-b", branch, str(target)])
        self._owners[target] = base
        logger.info("Worktree created", extra={"branch": branch, "path": str(target)})
        return target

    async def remove_worktree(self, path: Path) -> None:
        target = Path(path)
        owner = self._owners.pop(target, None)
        if owner is None:
            common = await self._git_checked(
                target, ["rev-parse", "--path-format=absolute", "--git-common-dir"]
            )
            owner = Path(common.stdout.strip()).parent
        await self._git_checked(owner, ["worktree", "remove", "--force", str(target)])
        logger.info("Worktree removed", extra={"path": str(target)})

    async def commit_all(self, path: Path, message: str) -> str | None:
        """Stage and commit every change in ``path``; ``None`` if clean."""

        workspace = Path(path)
        await self._git_checked(workspace, ["add", "--all"])
        status = await self._git_checked(workspace, ["status", "--porcelain"])
        if not status.stdout.strip():
            return None

        await self._git_checked(
            workspace, [*self._identity_args(), "commit", "--no-verify", "-m", message]
        )
        head = await self._git_checked(workspace, ["rev-parse", "HEAD"])
        sha = head.stdout.strip()
        logger.info("Committed worktree changes", extra={"path": str(workspace), "sha": sha})
        return sha

    def _identity_args(self) -> list[str]:
        args: list[str] = []
        if self._author_name:
            args.extend(["-c", f"user.name={self._author_name}"])
        if self._author_email:
            args.extend(["-c", f"user.email={self._author_email}"])
        return args

    async def _git_checked(self, cwd: Path, args: Sequence[str]) -> ProcessResult:
        result = await run_process(self._git, args, cwd=cwd, timeout=self._timeout)
        if not result.success:
            detail = result.stderr.strip() or result.error or "unknown error"
            raise WorktreeError(f"git {' '.join(args[:2])} failed in {cwd}: {detail}")
        return result


__all__ = ["GitWorktreeManager", "WorktreeError", "WorktreeManager", "worktree_dirname"]
