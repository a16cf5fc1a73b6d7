"""
Supervisor
Orchestrates one action invocation and coordinates the workers.

The supervisor:
1. Validates inputs before anything is acquired
2. Creates the base branch worktree (scoped)
3. Resolves base and head store paths with the Nix worker
4. Runs dix for every target, strictly one target at a time
5. Hands results to the artifact worker and the GitHub worker
"""

import asyncio
import json
import logging
import os
from typing import List, Optional, Sequence, Tuple

from nix_diff_action.shared.actions_runtime import set_output
from nix_diff_action.shared.config import (
    Config,
    parse_attributes,
    parse_comment_strategy,
    validate_directory,
)
from nix_diff_action.shared.models import (
    ComparisonTarget,
    DiffResult,
    FormatCommentOptions,
    Mode,
    PostCommentParams,
    PullRequestInfo,
)
from nix_diff_action.workers.artifacts.artifact_worker import ArtifactWorker
from nix_diff_action.workers.github.comment_format import check_if_any_diff_truncated
from nix_diff_action.workers.github.github_worker import (
    GitHubWorker,
    load_pull_request,
    load_repo_context,
)
from nix_diff_action.workers.nix.nix_worker import NixWorker
from nix_diff_action.workers.worktree.worktree_worker import WorktreeWorker

logger = logging.getLogger(__name__)

PREFETCH_NOTICE = "Skipping parallel input fetch: nix flake prefetch-inputs requires Nix 2.31.0+"
FULL_ARTIFACT_NAME = "full"


def base_flake_ref(worktree_path: str, directory: str, cwd: str) -> str:
    """Flake reference of ``directory`` inside the base worktree.

    ``path:`` is used so nix does not need the git history of the
    shallow worktree.
    """
    relative_path = os.path.relpath(directory, cwd)
    if relative_path in ("", "."):
        return f"path:{worktree_path}"
    return f"path:{worktree_path}?dir={relative_path}"


async def gather_or_cancel(*coros):
    """Like ``asyncio.gather``, but a failure cancels and awaits the siblings before re-raising.

    Plain ``gather`` leaves the other awaitables running, so a nix
    evaluation could outlive the worktree it reads from.
    """
    tasks = [asyncio.ensure_future(c) for c in coros]
    try:
        return await asyncio.gather(*tasks)
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise


class DiffPipeline:
    """One run of the diff pipeline.

    Holds its own prefetch notice flag so that pipelines running in the
    same process do not silence each other's log line.
    """

    def __init__(self, worktree_worker: WorktreeWorker, nix_worker: NixWorker):
        self.worktree_worker = worktree_worker
        self.nix_worker = nix_worker
        self.prefetch_notice_logged = False

    async def _prefetch(self, flake_ref: str) -> None:
        if await self.nix_worker.prefetch_flake_inputs(flake_ref):
            return
        if not self.prefetch_notice_logged:
            self.prefetch_notice_logged = True
            logger.info(PREFETCH_NOTICE)

    async def _process_target(
        self,
        target: ComparisonTarget,
        base_ref: str,
        pr_ref: str,
        base_sha: str,
        head_sha: str,
        build: bool,
        worktree_path: str,
    ) -> DiffResult:
        logger.info(
            f"Processing {target.display_name}: "
            f"{base_ref}#{target.attribute} vs {pr_ref}#{target.attribute}"
        )

        base, pr = await gather_or_cancel(
            self.nix_worker.resolve(f"{base_ref}#{target.attribute}", build),
            self.nix_worker.resolve(f"{pr_ref}#{target.attribute}", build),
        )
        logger.info(f"Base path: {base.path}")
        logger.info(f"PR path: {pr.path}")

        # dix must come from the base worktree, never from the PR checkout
        diff = await self.nix_worker.get_dix_diff(base.path, pr.path, worktree_path)

        return DiffResult(
            display_name=target.display_name,
            attribute_path=target.attribute,
            base_ref=base_sha,
            pr_ref=head_sha,
            diff=diff,
        )

    async def run(
        self,
        targets: Sequence[ComparisonTarget],
        build: bool,
        directory: str,
        base_ref: str,
        base_sha: str,
        head_sha: str,
        cwd: str,
        run_id: str,
    ) -> List[DiffResult]:
        """Diff every target between the base branch and the live checkout.

        Results keep the order of ``targets``. The first failure aborts the
        remaining targets; the worktree is removed in every case.
        """
        results: List[DiffResult] = []

        async with self.worktree_worker.checkout(base_ref, run_id) as checkout:
            base_root = base_flake_ref(checkout.path, directory, cwd)
            pr_root = directory

            await asyncio.gather(self._prefetch(base_root), self._prefetch(pr_root))

            # Sequential on purpose: concurrent evaluations contend on the nix store database lock
            for target in targets:
                results.append(await self._process_target(
                    target, base_root, pr_root, base_sha, head_sha, build, checkout.path
                ))

        return results


async def process_diff_results(
    targets: Sequence[ComparisonTarget],
    build: bool,
    directory: str,
    base_ref: str,
    base_sha: str,
    head_sha: str,
    cwd: str,
    run_id: str,
    worktree_worker: Optional[WorktreeWorker] = None,
    nix_worker: Optional[NixWorker] = None,
) -> List[DiffResult]:
    pipeline = DiffPipeline(
        worktree_worker or WorktreeWorker(repo_path=cwd),
        nix_worker or NixWorker(),
    )
    return await pipeline.run(targets, build, directory, base_ref, base_sha, head_sha, cwd, run_id)


def set_diff_output(results: Sequence[DiffResult]) -> None:
    """Expose ``[{displayName, diff}]`` as the ``diff`` step output."""
    if not results:
        return
    set_output("diff", json.dumps([r.to_output() for r in results]))


class Supervisor:
    """Runs the mode selected by the ``mode`` input.

    Workers are created from ``config`` unless given; tests pass fakes.
    """

    def __init__(
        self,
        config: Config,
        worktree_worker: Optional[WorktreeWorker] = None,
        nix_worker: Optional[NixWorker] = None,
        github_worker: Optional[GitHubWorker] = None,
        artifact_worker: Optional[ArtifactWorker] = None,
    ):
        self.config = config
        self.worktree_worker = worktree_worker
        self.nix_worker = nix_worker
        self.github_worker = github_worker
        self.artifact_worker = artifact_worker or ArtifactWorker(config.artifact_directory)

    async def run(self) -> None:
        mode = self.config.parsed_mode()
        logger.info(f"Running nix-diff-action in {mode.value} mode")

        if mode == Mode.FULL:
            await self.run_full()
        elif mode == Mode.DIFF_ONLY:
            await self.run_diff_only()
        else:
            await self.run_comment_only()

    # ------------------------------------------------------------------
    # Modes
    # ------------------------------------------------------------------

    async def run_full(self) -> None:
        params = self._comment_params_without_results()
        targets, results = await self.run_diff_pipeline()

        self.artifact_worker.upload_diff_results(results, FULL_ARTIFACT_NAME)
        await self.post_comment(params.model_copy(update={"results": results}))
        set_diff_output(results)
        logger.info(f"Compared {len(targets)} attribute(s)")

    async def run_diff_only(self) -> None:
        targets, results = await self.run_diff_pipeline()

        set_diff_output(results)
        # One artifact per matrix job, named after its first target
        self.artifact_worker.upload_diff_results(results, targets[0].display_name)

    async def run_comment_only(self) -> None:
        params = self._comment_params_without_results()
        results = self.artifact_worker.download_diff_results()
        await self.post_comment(params.model_copy(update={"results": results}))

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _comment_params_without_results(self) -> PostCommentParams:
        """Validate the comment inputs up front, before any diff work."""
        return PostCommentParams(
            results=[],
            run_id=self.config.run_id,
            skip_no_change=self.config.skip_no_change,
            comment_strategy=parse_comment_strategy(self.config.comment_strategy),
            token=self.config.require_token(),
            show_artifact_link_when_truncated=self.config.has_workflow_run,
        )

    def _pull_request(self) -> PullRequestInfo:
        return load_pull_request(self.config.github_event_path)

    async def run_diff_pipeline(self) -> Tuple[List[ComparisonTarget], List[DiffResult]]:
        pr = self._pull_request()

        cwd = self.config.workspace
        targets = parse_attributes(self.config.attributes)
        directory = validate_directory(self.config.directory, cwd)

        logger.info(
            f"Comparing {len(targets)} attribute(s) of PR #{pr.number}: "
            f"{pr.base.ref} ({pr.base.sha[:7]}) vs {pr.head.ref} ({pr.head.sha[:7]})"
        )
        results = await process_diff_results(
            targets,
            build=self.config.build,
            directory=directory,
            base_ref=pr.base.ref,
            base_sha=pr.base.sha,
            head_sha=pr.head.sha,
            cwd=cwd,
            run_id=self.config.run_id,
            worktree_worker=self.worktree_worker,
            nix_worker=self.nix_worker,
        )
        return targets, results

    async def post_comment(self, params: PostCommentParams) -> str:
        pr = self._pull_request()
        repo_context = load_repo_context(
            self.config.github_repository,
            self.config.github_server_url,
            self.config.github_api_url,
        )
        github_worker = self.github_worker or GitHubWorker(params.token, repo_context)

        show_artifact_link = (
            params.show_artifact_link_when_truncated and check_if_any_diff_truncated(params.results)
        )
        options = FormatCommentOptions(
            run_id=params.run_id if show_artifact_link else None,
            repo_url=repo_context.html_url,
        )

        return await asyncio.to_thread(
            github_worker.post_aggregated_comment,
            pr,
            params.results,
            params.comment_strategy,
            params.skip_no_change,
            options,
        )
