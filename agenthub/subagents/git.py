"""Async wrappers around the ``git`` binary for worktree-mode workspaces."""

from __future__ import annotations

import asyncio
from pathlib import Path

import structlog

from agenthub.errors import GitError

logger = structlog.get_logger(__name__)

GIT_TIMEOUT_SECONDS = 60.0


async def run_git(*args: str, cwd: Path | None = None, check: bool = True) -> str:
    """Run ``git *args`` and return stdout. Raises GitError on failure."""
    try:
        proc = await asyncio.create_subprocess_exec(
            "git",
            *args,
            cwd=str(cwd) if cwd is not None else None,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as e:
        raise GitError("git executable not found") from e

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=GIT_TIMEOUT_SECONDS)
    except asyncio.TimeoutError as e:
        proc.kill()
        await proc.wait()
        raise GitError(f"git {args[0] if args else ''} timed out") from e

    out = stdout.decode("utf-8", errors="replace")
    err = stderr.decode("utf-8", errors="replace")
    if check and proc.returncode != 0:
        logger.warning("git.failed", args=list(args), returncode=proc.returncode, stderr=err[:500])
        raise GitError(f"git {' '.join(args[:3])} failed", returncode=proc.returncode, stderr=err)
    return out


async def worktree_add(repo: Path, path: Path, branch: str, base_branch: str) -> None:
    """Create ``branch`` from ``base_branch`` and check it out at ``path``."""
    await run_git("-C", str(repo), "worktree", "add", "-b", branch, str(path), base_branch)
    logger.info("git.worktree_added", repo=str(repo), path=str(path), branch=branch)


async def worktree_remove(repo: Path, path: Path) -> None:
    await run_git("-C", str(repo), "worktree", "remove", "--force", str(path))
    logger.info("git.worktree_removed", repo=str(repo), path=str(path))


async def worktree_move(repo: Path, src: Path, dst: Path) -> None:
    await run_git("-C", str(repo), "worktree", "move", str(src), str(dst))


async def worktree_prune(repo: Path) -> None:
    await run_git("-C", str(repo), "worktree", "prune", check=False)


async def branch_delete(repo: Path, branch: str) -> None:
    await run_git("-C", str(repo), "branch", "-D", branch)
    logger.info("git.branch_deleted", repo=str(repo), branch=branch)


async def list_branches(repo: Path) -> list[str]:
    out = await run_git("-C", str(repo), "branch", "--format=%(refname:short)")
    return [line.strip() for line in out.splitlines() if line.strip()]


async def find_worktree_repo(worktree: Path) -> Path | None:
    """Main repository of a linked worktree, from ``git rev-parse --git-common-dir``."""
    try:
        out = await run_git("-C", str(worktree), "rev-parse", "--path-format=absolute", "--git-common-dir")
    except GitError:
        return None
    common = Path(out.strip())
    return common.parent if common.name == ".git" else common
