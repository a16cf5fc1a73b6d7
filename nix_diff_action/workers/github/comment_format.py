"""
PR Comment Format

Builds the aggregated pull request comment from a list of diff results.

The comment must fit GitHub's 65536 character limit. Diff bodies share a
fixed budget split evenly between results, so one huge closure cannot
push every other target out of the comment.
"""

import re
from typing import List, Optional, Sequence, Tuple

from nix_diff_action.shared.models import DiffResult, FormatCommentOptions, TruncateResult

MAX_COMMENT_LENGTH = 65536
MAX_TOTAL_DIFF_LENGTH = 60000

MARKER_PREFIX = "nix-diff-action"
FOOTER_MARKER_PREFIX = "nix-diff-action-footer"
ACTION_URL = "https://github.com/natsukium/nix-diff-action"
DIX_URL = "https://github.com/faukah/dix"

NO_DIFFERENCES = "No differences found"

_MARKDOWN_SPECIAL_RE = re.compile(r"[\\`*_{}\[\]()#+!|<>~]")
_FOOTER_SHA_RE = re.compile(r"<!-- nix-diff-action-footer sha=([0-9a-zA-Z]+) -->")


def sanitize_display_name(name: str) -> str:
    """Strip characters that markdown or HTML would interpret."""
    return _MARKDOWN_SPECIAL_RE.sub("", name)


def truncate_diff(diff: str, max_length: int = MAX_TOTAL_DIFF_LENGTH) -> TruncateResult:
    """Cut ``diff`` to ``max_length`` characters; lengths equal to the limit are kept whole."""
    if len(diff) <= max_length:
        return TruncateResult(text=diff, truncated=False)
    return TruncateResult(
        text=f"{diff[:max_length]}\n... (truncated, {len(diff)} chars total)",
        truncated=True,
    )


def per_result_budget(result_count: int, total_budget: int = MAX_TOTAL_DIFF_LENGTH) -> int:
    if result_count <= 0:
        return total_budget
    return total_budget // result_count


def check_if_any_diff_truncated(results: Sequence[DiffResult]) -> bool:
    budget = per_result_budget(len(results))
    return any(len(r.diff) > budget for r in results)


def comment_marker(results: Sequence[DiffResult]) -> str:
    """Hidden marker used to find our previous comment.

    A single-target report gets a marker of its own so that matrix jobs
    posting one comment per target do not overwrite each other.
    """
    if len(results) == 1:
        return f"<!-- {MARKER_PREFIX}:{sanitize_display_name(results[0].display_name)} -->"
    return f"<!-- {MARKER_PREFIX} -->"


def footer_sha(comment_body: str) -> Optional[str]:
    """Commit SHA recorded in a previously posted comment, if any."""
    match = _FOOTER_SHA_RE.search(comment_body)
    return match.group(1) if match else None


def _code_fence(body: str) -> str:
    longest = max((len(run) for run in re.findall(r"`+", body)), default=0)
    return "`" * max(3, longest + 1)


def _format_section(result: DiffResult, budget: int) -> Tuple[str, bool]:
    name = sanitize_display_name(result.display_name)
    if not result.diff:
        body, truncated = NO_DIFFERENCES, False
    else:
        truncate_result = truncate_diff(result.diff, budget)
        fence = _code_fence(truncate_result.text)
        body = f"{fence}\n{truncate_result.text}\n{fence}"
        truncated = truncate_result.truncated

    return (
        "<details>\n"
        f"<summary>{name}</summary>\n"
        "\n"
        f"{body}\n"
        "\n"
        "</details>\n"
    ), truncated


def _format_footer(commit_sha: str, repo_url: Optional[str]) -> str:
    short_sha = commit_sha[:7]
    commit = f"[`{short_sha}`]({repo_url}/commit/{commit_sha})" if repo_url else f"`{short_sha}`"
    return (
        "---\n"
        f"Compared at {commit} · Generated by [nix-diff-action]({ACTION_URL}) using [dix]({DIX_URL})\n"
        f"<!-- {FOOTER_MARKER_PREFIX} sha={commit_sha} -->\n"
    )


def _render(
    results: Sequence[DiffResult],
    commit_sha: str,
    options: FormatCommentOptions,
    budget: int,
    marker: str,
    omitted: int = 0,
) -> str:
    parts: List[str] = [marker, "## Nix Diff", ""]

    any_truncated = False
    for result in results:
        section, truncated = _format_section(result, budget)
        any_truncated = any_truncated or truncated
        parts.append(section)

    if any_truncated and options.run_id and options.repo_url:
        parts.append(
            "> [!NOTE]\n"
            "> Some diffs were truncated. "
            f"[View full diff in artifacts]({options.repo_url}/actions/runs/{options.run_id})\n"
        )

    if omitted:
        parts.append(
            "> [!WARNING]\n"
            f"> {omitted} more result(s) not shown: the comment size limit was reached.\n"
        )

    parts.append(_format_footer(commit_sha, options.repo_url))
    return "\n".join(parts)


def format_aggregated_comment(
    results: Sequence[DiffResult],
    commit_sha: str,
    options: Optional[FormatCommentOptions] = None,
    marker: Optional[str] = None,
) -> str:
    """Render every result into one comment no longer than :data:`MAX_COMMENT_LENGTH`.

    ``marker`` overrides the marker derived from ``results``.
    """
    options = options or FormatCommentOptions()
    marker = marker or comment_marker(results)
    total_budget = MAX_TOTAL_DIFF_LENGTH

    comment = _render(results, commit_sha, options, per_result_budget(len(results), total_budget), marker)
    # Markup overhead grows with the number of results; shrink the shared budget until it fits
    while len(comment) > MAX_COMMENT_LENGTH and total_budget > 0:
        total_budget = max(0, total_budget - (len(comment) - MAX_COMMENT_LENGTH) - len(results))
        comment = _render(results, commit_sha, options, per_result_budget(len(results), total_budget), marker)
    if len(comment) <= MAX_COMMENT_LENGTH:
        return comment

    # Even bare sections do not fit: keep as many leading results as possible
    low, high = 0, len(results)
    while low < high:
        kept = (low + high + 1) // 2
        if len(_render(results[:kept], commit_sha, options, 0, marker, len(results) - kept)) <= MAX_COMMENT_LENGTH:
            low = kept
        else:
            high = kept - 1
    return _render(results[:low], commit_sha, options, 0, marker, len(results) - low)
