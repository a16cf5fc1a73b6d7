"""
Unit tests for the diff pipeline orchestration and the mode runners.

The worktree worker runs against a fake git, the Nix worker is replaced
entirely, and GitHub is reached through a fake session.
"""

import asyncio
import json
import logging
import os

import pytest

from conftest import FakeGit, FakeNixWorker, FakeSession
from nix_diff_action.shared.actions_runtime import MemoryStateStore
from nix_diff_action.shared.config import Config
from nix_diff_action.shared.errors import (
    AttributeParseError,
    InvalidCommentStrategyError,
    InvalidDirectoryError,
    MissingTokenError,
    NixDixError,
    NixPathInfoError,
)
from nix_diff_action.shared.models import ComparisonTarget, DiffResult
from nix_diff_action.supervisor.supervisor import (
    PREFETCH_NOTICE,
    DiffPipeline,
    Supervisor,
    base_flake_ref,
    process_diff_results,
    set_diff_output,
)
from nix_diff_action.workers.artifacts.artifact_worker import ArtifactWorker
from nix_diff_action.workers.github.github_worker import GitHubWorker, load_repo_context
from nix_diff_action.workers.worktree.worktree_worker import WorktreeWorker, worktree_path_for


TARGETS = [
    ComparisonTarget(display_name="host1", attribute="nixosConfigurations.host1.config.system.build.toplevel"),
    ComparisonTarget(display_name="host2", attribute="nixosConfigurations.host2.config.system.build.toplevel"),
]


def _run_pipeline(worktree_worker, nix, directory="/workspace", cwd="/workspace", targets=TARGETS):
    return asyncio.run(process_diff_results(
        targets,
        build=False,
        directory=directory,
        base_ref="main",
        base_sha="b" * 40,
        head_sha="h" * 40,
        cwd=cwd,
        run_id="99",
        worktree_worker=worktree_worker,
        nix_worker=nix,
    ))


# ----------------- Flake references -----------------

def test_base_ref_for_workspace_root():
    assert base_flake_ref("/tmp/wt", "/workspace", "/workspace") == "path:/tmp/wt"


def test_base_ref_for_subdirectory():
    assert base_flake_ref("/tmp/wt", "/workspace/nix/hosts", "/workspace") == "path:/tmp/wt?dir=nix/hosts"


def test_refs_follow_directory_through_pipeline(worktree_worker, tmp_path):
    nix = FakeNixWorker()
    _run_pipeline(worktree_worker, nix, directory="/workspace/sub", targets=TARGETS[:1])
    wt = worktree_path_for("main", "99", str(tmp_path))

    assert nix.prefetched == [f"path:{wt}?dir=sub", "/workspace/sub"]
    refs = sorted(ref for kind, ref in nix.events if kind == "start")
    assert refs == sorted([
        f"/workspace/sub#{TARGETS[0].attribute}",
        f"path:{wt}?dir=sub#{TARGETS[0].attribute}",
    ])


# ----------------- Pipeline semantics -----------------

def test_results_carry_commit_shas_in_target_order(worktree_worker):
    nix = FakeNixWorker(dix_output="<<< /nix/store/a\n>>> /nix/store/b")
    results = _run_pipeline(worktree_worker, nix)

    assert [r.display_name for r in results] == ["host1", "host2"]
    assert all(r.base_ref == "b" * 40 and r.pr_ref == "h" * 40 for r in results)
    assert results[0].attribute_path == TARGETS[0].attribute
    assert results[0].diff == "<<< /nix/store/a\n>>> /nix/store/b"


def test_dix_runs_with_worktree_as_inputs_source(worktree_worker, tmp_path):
    nix = FakeNixWorker()
    _run_pipeline(worktree_worker, nix)
    wt = worktree_path_for("main", "99", str(tmp_path))

    assert [call[2] for call in nix.dix_calls] == [wt, wt]
    assert nix.dix_calls[0][:2] == (
        f"/nix/store/base-{TARGETS[0].attribute}.drv",
        f"/nix/store/pr-{TARGETS[0].attribute}.drv",
    )


def test_targets_are_processed_one_at_a_time(worktree_worker):
    nix = FakeNixWorker()
    _run_pipeline(worktree_worker, nix)

    first_target = [i for i, (_, ref) in enumerate(nix.events) if "host1" in ref]
    second_target = [i for i, (_, ref) in enumerate(nix.events) if "host2" in ref]
    assert max(first_target) < min(second_target)


def test_base_and_head_resolve_concurrently(worktree_worker):
    nix = FakeNixWorker()
    _run_pipeline(worktree_worker, nix, targets=TARGETS[:1])

    assert [kind for kind, _ in nix.events] == ["start", "start", "end", "end"]


def test_no_targets_still_cleans_up(worktree_worker, fake_git):
    assert _run_pipeline(worktree_worker, FakeNixWorker(), targets=[]) == []
    assert fake_git.worktrees == set()


def test_dix_failure_releases_worktree_and_propagates(worktree_worker, fake_git, tmp_path):
    nix = FakeNixWorker(fail_dix=True)

    with pytest.raises(NixDixError) as excinfo:
        _run_pipeline(worktree_worker, nix)

    wt = worktree_path_for("main", "99", str(tmp_path))
    assert excinfo.value.describe().startswith("Nix dix failed comparing")
    assert len(nix.dix_calls) == 1, "remaining targets must not run"
    assert fake_git.worktrees == set()
    assert asyncio.run(worktree_worker.worktree_exists(wt)) is False


class OneSideFailsNix(FakeNixWorker):
    """Base resolution fails at once; head resolution is slow and records how it ended."""

    def __init__(self):
        super().__init__()
        self.head_state = "pending"

    async def resolve(self, flake_ref, build):
        if flake_ref.startswith("path:"):
            raise NixPathInfoError(flake_ref, "attribute missing")
        try:
            await asyncio.sleep(0.2)
        except asyncio.CancelledError:
            self.head_state = "cancelled"
            raise
        self.head_state = "finished"
        return await super().resolve(flake_ref, build)


class RecordingGit(FakeGit):
    """Notes what the head resolution was doing when the worktree got removed."""

    def __init__(self, nix):
        super().__init__()
        self.nix = nix
        self.head_state_at_removal = None

    def worktree(self, command, *args):
        if command == "remove":
            self.head_state_at_removal = self.nix.head_state
        return super().worktree(command, *args)


def test_failed_side_stops_sibling_before_worktree_removal(tmp_path):
    nix = OneSideFailsNix()
    fake_git = RecordingGit(nix)
    worker = WorktreeWorker(state_store=MemoryStateStore(), git_cmd=fake_git, temp_root=str(tmp_path))

    with pytest.raises(NixPathInfoError):
        _run_pipeline(worker, nix, targets=TARGETS[:1])

    assert fake_git.head_state_at_removal == "cancelled", "head evaluation must not outlive the worktree"
    assert fake_git.worktrees == set()
    assert nix.dix_calls == []


def test_prefetch_notice_logged_once_per_run(worktree_worker, caplog):
    nix = FakeNixWorker(prefetch_ok=False)
    pipeline = DiffPipeline(worktree_worker, nix)

    async def run_twice():
        for _ in range(2):
            await pipeline.run(TARGETS, False, "/workspace", "main", "b", "h", "/workspace", "99")

    with caplog.at_level(logging.INFO):
        asyncio.run(run_twice())

    assert [r.message for r in caplog.records].count(PREFETCH_NOTICE) == 1


def test_prefetch_notice_is_not_shared_between_runs(worktree_worker, caplog):
    nix = FakeNixWorker(prefetch_ok=False)

    with caplog.at_level(logging.INFO):
        _run_pipeline(worktree_worker, nix)
        _run_pipeline(worktree_worker, nix)

    assert [r.message for r in caplog.records].count(PREFETCH_NOTICE) == 2


# ----------------- Outputs -----------------

def test_set_diff_output_writes_display_name_and_diff(tmp_path, monkeypatch):
    output = tmp_path / "output"
    monkeypatch.setenv("GITHUB_OUTPUT", str(output))

    set_diff_output([DiffResult(display_name="host1", attribute_path="a", base_ref="b", pr_ref="h", diff="x")])

    lines = output.read_text().splitlines()
    assert lines[0].startswith("diff<<ghadelimiter_")
    assert json.loads(lines[1]) == [{"displayName": "host1", "diff": "x"}]


def test_set_diff_output_skips_empty_results(tmp_path, monkeypatch):
    output = tmp_path / "output"
    monkeypatch.setenv("GITHUB_OUTPUT", str(output))

    set_diff_output([])

    assert not output.exists()


# ----------------- Modes -----------------

def _write_event(tmp_path):
    event = tmp_path / "event.json"
    event.write_text(json.dumps({
        "pull_request": {
            "number": 5,
            "base": {"ref": "main", "sha": "b" * 40},
            "head": {"ref": "feature", "sha": "h" * 40},
        }
    }))
    return str(event)


def _config(tmp_path, **overrides):
    values = dict(
        mode="full",
        attributes="- displayName: host1\n  attribute: nixosConfigurations.host1.config.system.build.toplevel\n",
        github_token="token",
        github_run_id="1234",
        github_repository="octo/repo",
        github_event_path=_write_event(tmp_path),
        workspace=str(tmp_path),
        artifact_directory=str(tmp_path / "artifacts"),
    )
    values.update(overrides)
    return Config(**values)


def _github_worker(session):
    return GitHubWorker("token", load_repo_context("octo/repo"), session=session)


def test_full_mode_uploads_comments_and_sets_output(worktree_worker, tmp_path, monkeypatch):
    monkeypatch.setenv("GITHUB_OUTPUT", str(tmp_path / "output"))
    session = FakeSession()
    supervisor = Supervisor(
        _config(tmp_path),
        worktree_worker=worktree_worker,
        nix_worker=FakeNixWorker(dix_output="<<< /nix/store/a\n>>> /nix/store/b"),
        github_worker=_github_worker(session),
    )

    asyncio.run(supervisor.run())

    assert len(session.requests) == 1
    posted = session.requests[0]
    assert posted["method"] == "POST"
    assert posted["url"].endswith("/repos/octo/repo/issues/5/comments")
    assert "<!-- nix-diff-action:host1 -->" in posted["json"]["body"]

    saved = ArtifactWorker(str(tmp_path / "artifacts")).download_diff_results()
    assert [r.display_name for r in saved] == ["host1"]
    assert "diff<<" in (tmp_path / "output").read_text()


def test_diff_only_mode_uploads_artifact_named_after_first_target(worktree_worker, tmp_path, monkeypatch):
    monkeypatch.setenv("GITHUB_OUTPUT", str(tmp_path / "output"))
    supervisor = Supervisor(
        _config(tmp_path, mode="diff-only", github_token=None),
        worktree_worker=worktree_worker,
        nix_worker=FakeNixWorker(),
    )

    asyncio.run(supervisor.run())

    names = os.listdir(tmp_path / "artifacts")
    assert len(names) == 1
    assert names[0].startswith("diff-result-host1-")


def test_comment_only_mode_posts_downloaded_results(tmp_path):
    artifacts = ArtifactWorker(str(tmp_path / "artifacts"))
    for name in ["host1", "host2"]:
        artifacts.upload_diff_results(
            [DiffResult(display_name=name, attribute_path="a", base_ref="b", pr_ref="h", diff="")], name
        )
    session = FakeSession()
    supervisor = Supervisor(_config(tmp_path, mode="comment-only", attributes=""), github_worker=_github_worker(session))

    asyncio.run(supervisor.run())

    body = session.requests[0]["json"]["body"]
    assert body.startswith("<!-- nix-diff-action -->")
    assert "<summary>host1</summary>" in body and "<summary>host2</summary>" in body


def test_invalid_inputs_fail_before_worktree_is_created(worktree_worker, fake_git, tmp_path):
    cases = [
        (dict(comment_strategy="sometimes"), InvalidCommentStrategyError),
        (dict(github_token=None), MissingTokenError),
        (dict(attributes="displayName: host1"), AttributeParseError),
        (dict(directory="../outside"), InvalidDirectoryError),
    ]
    for overrides, error in cases:
        supervisor = Supervisor(_config(tmp_path, **overrides), worktree_worker=worktree_worker, nix_worker=FakeNixWorker())
        with pytest.raises(error):
            asyncio.run(supervisor.run())

    assert fake_git.calls == []
