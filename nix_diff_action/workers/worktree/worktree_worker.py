"""
Base Branch Worktree Worker

Creates a detached git worktree of the pull request's base branch and
guarantees its removal. The worktree is the trusted comparison root:
the base side of every diff is evaluated from it, and dix itself is
fetched through its flake inputs.

The path is also saved as action state so the post step can remove a
worktree left behind when the main step is killed on timeout.
"""

import asyncio
import os
import re
import tempfile
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import git

from nix_diff_action.shared.actions_runtime import ActionsStateStore, StateStore
from nix_diff_action.shared.errors import GitWorktreeError
from nix_diff_action.shared.logging_config import get_worker_logger
from nix_diff_action.shared.models import Checkout

logger = get_worker_logger("worktree")

WORKTREE_STATE_KEY = "worktreePath"


def sanitize_branch_name(ref: str) -> str:
    """Make a branch name usable as a path component."""
    return re.sub(r"[^a-zA-Z0-9-]", "-", ref)


def worktree_path_for(base_ref: str, run_id: str, temp_root: Optional[str] = None) -> str:
    """Deterministic worktree location for a base ref and run.

    The temp root is resolved first (e.g. /var -> /private/var on macOS)
    because nix rejects paths that contain symlinks.
    """
    root = os.path.realpath(temp_root or tempfile.gettempdir())
    return os.path.join(root, f"dix-base-{sanitize_branch_name(base_ref)}-{run_id}")


class WorktreeWorker:
    """Owns the lifecycle of the base branch worktree.

    ``git_cmd`` is anything exposing GitPython's ``Repo.git`` call style
    (``fetch(...)``, ``worktree(...)``); by default the repository that
    contains ``repo_path`` is opened on first use.
    """

    def __init__(
        self,
        repo_path: Optional[str] = None,
        state_store: Optional[StateStore] = None,
        git_cmd=None,
        temp_root: Optional[str] = None,
    ):
        self.repo_path = repo_path or os.getcwd()
        self.state_store = state_store if state_store is not None else ActionsStateStore()
        self.temp_root = temp_root
        self._git = git_cmd

    @property
    def git(self):
        if self._git is None:
            try:
                self._git = git.Repo(self.repo_path, search_parent_directories=True).git
            except (git.exc.InvalidGitRepositoryError, git.exc.NoSuchPathError) as e:
                raise GitWorktreeError("open", f"Not a git repository: {self.repo_path} ({e})") from e
        return self._git

    # ------------------------------------------------------------------
    # Existence probe and removal (never raise)
    # ------------------------------------------------------------------

    async def worktree_exists(self, path: str) -> bool:
        """Check ``git worktree list --porcelain``; a failed check reads as absent."""
        try:
            listing = await asyncio.to_thread(self.git.worktree, "list", "--porcelain")
        except Exception as e:
            logger.warning(f"Failed to check worktree existence: {e}")
            return False
        return f"worktree {path}" in listing.splitlines()

    async def remove_worktree(self, path: str) -> bool:
        """Force-remove the worktree at ``path`` if git still knows it.

        Safe to call any number of times, from the main run or from the
        post-step cleanup. Returns True when a worktree was removed.
        """
        if not await self.worktree_exists(path):
            return False
        try:
            await asyncio.to_thread(self.git.worktree, "remove", "--force", path)
        except Exception as e:
            logger.warning(f"Failed to remove worktree at {path}: {e}")
            return False
        return True

    # ------------------------------------------------------------------
    # Acquisition
    # ------------------------------------------------------------------

    async def _fetch_ref(self, base_ref: str) -> None:
        try:
            await asyncio.to_thread(
                self.git.fetch,
                "origin",
                f"+{base_ref}:refs/remotes/origin/{base_ref}",
                "--depth=1",
            )
        except git.exc.GitCommandError as e:
            raise GitWorktreeError("fetch", f"Failed to fetch {base_ref}: {_stderr_of(e)}") from e

    async def _add_worktree(self, path: str, base_ref: str) -> None:
        try:
            await asyncio.to_thread(self.git.worktree, "add", "--detach", path, f"origin/{base_ref}")
        except git.exc.GitCommandError as e:
            raise GitWorktreeError(
                "create", f"Failed to create worktree for {base_ref}: {_stderr_of(e)}"
            ) from e

    async def _add_worktree_to_completion(self, path: str, base_ref: str) -> None:
        """Create the worktree; on cancellation, wait for git to finish before re-raising.

        The git thread cannot be interrupted, so the worktree may appear
        after the cancellation. Waiting for it lets the caller's release
        step see and remove it.
        """
        add = asyncio.ensure_future(self._add_worktree(path, base_ref))
        try:
            await asyncio.shield(add)
        except asyncio.CancelledError:
            await asyncio.wait([add])
            if not add.cancelled() and add.exception() is not None:
                logger.warning(f"Worktree creation failed during cancellation: {add.exception()}")
            raise

    @asynccontextmanager
    async def checkout(self, base_ref: str, run_id: str) -> AsyncIterator[Checkout]:
        """Scoped worktree of ``base_ref``; removed when the scope exits for any reason."""
        path = worktree_path_for(base_ref, run_id, self.temp_root)

        # Leftover from an earlier failed run; remove_worktree only logs on failure
        await self.remove_worktree(path)
        await self._fetch_ref(base_ref)

        # Saved before creation so the post step can always find the path
        self.state_store.save(WORKTREE_STATE_KEY, path)
        try:
            await self._add_worktree_to_completion(path, base_ref)
            logger.info(f"Created worktree for base branch {base_ref} at {path}")
            yield Checkout(path=path, base_ref=base_ref)
        finally:
            # Shielded so a cancelled run still waits for the removal
            await asyncio.shield(self.remove_worktree(path))
            logger.info(f"Cleaned up worktree at {path}")


def _stderr_of(error: git.exc.GitCommandError) -> str:
    stderr = (error.stderr or "").strip()
    return stderr or f"git exited with status {error.status}"
