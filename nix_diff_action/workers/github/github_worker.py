"""
GitHub Worker

Pull request context from the runner environment and the issue-comment
REST calls used to publish the aggregated report.
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import requests

from nix_diff_action.shared.diff_filters import (
    filter_nixpkgs_minor_updates,
    has_dix_changes,
    has_package_changes,
)
from nix_diff_action.shared.errors import GitHubApiError, NotPullRequestContextError
from nix_diff_action.shared.models import (
    CommentStrategy,
    DiffResult,
    FormatCommentOptions,
    GitRef,
    PullRequestInfo,
    RepoContext,
)
from .comment_format import comment_marker, footer_sha, format_aggregated_comment

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT_SECONDS = 30


def load_repo_context(
    repository: Optional[str],
    server_url: str = "https://github.com",
    api_url: str = "https://api.github.com",
) -> RepoContext:
    """Split ``GITHUB_REPOSITORY`` (``owner/repo``)."""
    if not repository or "/" not in repository:
        raise NotPullRequestContextError(f"GITHUB_REPOSITORY is not set or malformed: {repository!r}")
    owner, repo = repository.split("/", 1)
    return RepoContext(
        owner=owner,
        repo=repo,
        server_url=server_url.rstrip("/"),
        api_url=api_url.rstrip("/"),
    )


def load_pull_request(event_path: Optional[str]) -> PullRequestInfo:
    """Read base/head refs and SHAs from the workflow event payload."""
    if not event_path or not Path(event_path).exists():
        raise NotPullRequestContextError("This action must be run in a pull request context")

    with open(event_path, 'r', encoding='utf-8') as f:
        event = json.load(f)

    pr = event.get("pull_request")
    if not pr:
        raise NotPullRequestContextError("This action must be run in a pull request context")

    return PullRequestInfo(
        number=pr["number"],
        base=GitRef(ref=pr["base"]["ref"], sha=pr["base"]["sha"]),
        head=GitRef(ref=pr["head"]["ref"], sha=pr["head"]["sha"]),
    )


def select_results_for_comment(results: Sequence[DiffResult], skip_no_change: bool) -> List[DiffResult]:
    """Results worth showing.

    With ``skip_no_change``, nixpkgs point-release noise is filtered out
    first and results that then show no change are dropped.
    """
    if not skip_no_change:
        return list(results)

    selected = []
    for result in results:
        diff = filter_nixpkgs_minor_updates(result.diff)
        if not has_dix_changes(diff) or not has_package_changes(diff):
            logger.info(f"Skipping {result.display_name}: no changes")
            continue
        selected.append(result.model_copy(update={"diff": diff}))
    return selected


class GitHubWorker:
    """Issue-comment client for one repository."""

    def __init__(self, token: str, repo_context: RepoContext, session: Optional[requests.Session] = None):
        self.repo_context = repo_context
        self.session = session or requests.Session()
        self.session.headers.update({
            'Authorization': f'Bearer {token}',
            'Accept': 'application/vnd.github+json',
            'X-GitHub-Api-Version': '2022-11-28',
        })

    @property
    def _repo_api(self) -> str:
        return f"{self.repo_context.api_url}/repos/{self.repo_context.owner}/{self.repo_context.repo}"

    def _request(self, operation: str, method: str, url: str, **kwargs) -> requests.Response:
        try:
            response = self.session.request(method, url, timeout=REQUEST_TIMEOUT_SECONDS, **kwargs)
            response.raise_for_status()
        except requests.exceptions.HTTPError as e:
            status = e.response.status_code if e.response is not None else None
            text = e.response.text[:200] if e.response is not None else str(e)
            raise GitHubApiError(operation, f"HTTP {status}: {text}", status_code=status) from e
        except requests.exceptions.RequestException as e:
            raise GitHubApiError(operation, str(e)) from e
        return response

    def list_comments(self, pr_number: int) -> List[Dict[str, Any]]:
        comments: List[Dict[str, Any]] = []
        url: Optional[str] = f"{self._repo_api}/issues/{pr_number}/comments"
        params: Optional[Dict[str, Any]] = {"per_page": 100}
        while url:
            response = self._request("listComments", "GET", url, params=params)
            comments.extend(response.json())
            url = response.links.get("next", {}).get("url")
            params = None  # the next link already carries the query
        return comments

    def create_comment(self, pr_number: int, body: str) -> Dict[str, Any]:
        response = self._request(
            "createComment", "POST", f"{self._repo_api}/issues/{pr_number}/comments", json={"body": body}
        )
        return response.json()

    def update_comment(self, comment_id: int, body: str) -> Dict[str, Any]:
        response = self._request(
            "updateComment", "PATCH", f"{self._repo_api}/issues/comments/{comment_id}", json={"body": body}
        )
        return response.json()

    def find_comment(self, pr_number: int, marker: str) -> Optional[Dict[str, Any]]:
        """Most recent comment carrying ``marker``."""
        matching = [c for c in self.list_comments(pr_number) if marker in (c.get("body") or "")]
        return matching[-1] if matching else None

    def post_aggregated_comment(
        self,
        pr: PullRequestInfo,
        results: Sequence[DiffResult],
        comment_strategy: CommentStrategy,
        skip_no_change: bool = False,
        options: Optional[FormatCommentOptions] = None,
    ) -> str:
        """Create or update the report comment. Returns what was done."""
        selected = select_results_for_comment(results, skip_no_change)
        if skip_no_change and not selected:
            logger.info("No changes detected in any attribute, skipping comment")
            return "skipped"

        # Marker follows the full target set so updates keep hitting the same comment
        marker = comment_marker(results)
        body = format_aggregated_comment(selected, pr.head.sha, options, marker=marker)

        if comment_strategy == CommentStrategy.UPDATE:
            existing = self.find_comment(pr.number, marker)
            if existing is not None:
                if existing.get("body") == body:
                    logger.info(f"Comment {existing['id']} is already up to date")
                    return "unchanged"
                previous_sha = footer_sha(existing.get("body") or "") or "unknown"
                self.update_comment(existing["id"], body)
                logger.info(f"Updated comment {existing['id']} (previous report for {previous_sha})")
                return "updated"

        created = self.create_comment(pr.number, body)
        logger.info(f"Created comment {created.get('id')} on PR #{pr.number}")
        return "created"
