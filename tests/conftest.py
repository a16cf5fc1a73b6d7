"""
Shared fakes for the unit tests.

Nothing here touches git, nix or the network: the workers are driven
through the same seams they use in production (GitPython's ``Repo.git``
call style, the subprocess runner and a requests-like session).
"""

import asyncio
from typing import Dict, List, Optional

import git
import pytest
import requests

from nix_diff_action.shared.actions_runtime import MemoryStateStore
from nix_diff_action.shared.errors import NixDixError
from nix_diff_action.shared.models import ResolvedArtifact
from nix_diff_action.workers.worktree.worktree_worker import WorktreeWorker


class FakeGit:
    """Stands in for ``git.Repo(...).git`` and keeps a set of live worktrees."""

    def __init__(self, fail_on=(), existing=()):
        self.worktrees = set(existing)
        self.fail_on = set(fail_on)
        self.calls: List[tuple] = []

    def _maybe_fail(self, operation: str, *args):
        if operation in self.fail_on:
            raise git.exc.GitCommandError(["git", operation, *args], 128, stderr=f"fatal: {operation} failed")

    def fetch(self, *args):
        self.calls.append(("fetch", *args))
        self._maybe_fail("fetch", *args)
        return ""

    def worktree(self, command, *args):
        self.calls.append(("worktree", command, *args))
        self._maybe_fail(command, *args)

        if command == "list":
            blocks = [f"worktree {p}\nHEAD 0000000\ndetached\n" for p in sorted(self.worktrees)]
            return "worktree /repo\nHEAD 1111111\nbranch refs/heads/main\n\n" + "\n".join(blocks)
        if command == "add":
            # add --detach <path> <commit-ish>
            self.worktrees.add(args[1])
        elif command == "remove":
            # remove --force <path>
            self.worktrees.discard(args[1])
        return ""


class FakeNixWorker:
    """Records resolution order and returns canned store paths."""

    def __init__(self, prefetch_ok: bool = True, dix_output: str = "", fail_dix: bool = False):
        self.prefetch_ok = prefetch_ok
        self.dix_output = dix_output
        self.fail_dix = fail_dix
        self.prefetched: List[str] = []
        self.events: List[tuple] = []
        self.dix_calls: List[tuple] = []

    async def prefetch_flake_inputs(self, flake_ref: str) -> bool:
        self.prefetched.append(flake_ref)
        return self.prefetch_ok

    async def resolve(self, flake_ref: str, build: bool) -> ResolvedArtifact:
        self.events.append(("start", flake_ref))
        await asyncio.sleep(0)
        self.events.append(("end", flake_ref))
        side = "base" if flake_ref.startswith("path:") else "pr"
        attribute = flake_ref.rsplit("#", 1)[1]
        return ResolvedArtifact(reference=flake_ref, path=f"/nix/store/{side}-{attribute}.drv")

    async def get_dix_diff(self, base_path: str, pr_path: str, inputs_from_path: str) -> str:
        self.dix_calls.append((base_path, pr_path, inputs_from_path))
        if self.fail_dix:
            raise NixDixError(base_path, pr_path, "dix exploded")
        return self.dix_output


class FakeResponse:

    def __init__(self, status_code: int = 200, payload=None, links: Optional[Dict] = None):
        self.status_code = status_code
        self._payload = payload if payload is not None else {}
        self.links = links or {}
        self.text = str(self._payload)

    def json(self):
        return self._payload

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.exceptions.HTTPError(f"{self.status_code} Error", response=self)


class FakeSession:
    """Minimal ``requests.Session`` replacement answering from a route table."""

    def __init__(self, routes: Optional[Dict[tuple, FakeResponse]] = None):
        self.headers: Dict[str, str] = {}
        self.routes = routes or {}
        self.requests: List[dict] = []

    def request(self, method, url, timeout=None, **kwargs):
        self.requests.append({"method": method, "url": url, **kwargs})
        return self.routes.get((method, url), FakeResponse(payload={"id": 999}))


@pytest.fixture
def fake_git():
    return FakeGit()


@pytest.fixture
def state_store():
    return MemoryStateStore()


@pytest.fixture
def worktree_worker(fake_git, state_store, tmp_path):
    return WorktreeWorker(repo_path="/repo", state_store=state_store, git_cmd=fake_git, temp_root=str(tmp_path))
