"""Shared data models for nix-diff-action."""

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class Mode(str, Enum):
    """What a single invocation of the action does."""
    FULL = "full"
    DIFF_ONLY = "diff-only"
    COMMENT_ONLY = "comment-only"


class CommentStrategy(str, Enum):
    """How the report is posted on the pull request."""
    CREATE = "create"
    UPDATE = "update"


# Pipeline models

class ComparisonTarget(BaseModel):
    """One build-graph attribute to compare between base and head."""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    display_name: str = Field(..., alias="displayName", min_length=1,
                              description="Unique, user-facing label")
    attribute: str = Field(..., min_length=1,
                           description="Flake attribute path, e.g. nixosConfigurations.host.config.system.build.toplevel")


class Checkout(BaseModel):
    """Detached worktree of the base branch used as the comparison root."""
    model_config = ConfigDict(frozen=True)

    path: str = Field(..., description="Absolute path of the worktree")
    base_ref: str = Field(..., description="Branch the worktree was created from")


class ResolvedArtifact(BaseModel):
    """A flake reference resolved to a store path or derivation path."""
    model_config = ConfigDict(frozen=True)

    reference: str = Field(..., description="Flake reference that was resolved")
    path: str = Field(..., description="Content-addressed store or .drv path")


class DiffResult(BaseModel):
    """Outcome of comparing one target between base and head."""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    display_name: str = Field(..., alias="displayName")
    attribute_path: str = Field(..., alias="attributePath")
    base_ref: str = Field(..., alias="baseRef", description="Commit SHA of the base side")
    pr_ref: str = Field(..., alias="prRef", description="Commit SHA of the head side")
    diff: str = Field(default="", description="Raw dix output; empty means no difference")

    def to_output(self) -> dict:
        """Compact form used for the ``diff`` step output."""
        return {"displayName": self.display_name, "diff": self.diff}


# Platform models

class GitRef(BaseModel):
    """A resolved ref/sha pair of one side of a pull request."""
    model_config = ConfigDict(frozen=True)

    ref: str
    sha: str


class PullRequestInfo(BaseModel):
    """Pull request the action is running for."""
    model_config = ConfigDict(frozen=True)

    number: int
    base: GitRef
    head: GitRef


class RepoContext(BaseModel):
    """Repository coordinates from the runner environment."""
    model_config = ConfigDict(frozen=True)

    owner: str
    repo: str
    server_url: str = "https://github.com"
    api_url: str = "https://api.github.com"

    @property
    def html_url(self) -> str:
        return f"{self.server_url}/{self.owner}/{self.repo}"


class FormatCommentOptions(BaseModel):
    """Optional extras for the aggregated report."""
    run_id: Optional[str] = Field(None, description="Workflow run holding the untruncated artifact")
    repo_url: Optional[str] = Field(None, description="Repository web URL for links")


class TruncateResult(BaseModel):
    text: str
    truncated: bool


class PostCommentParams(BaseModel):
    """Everything needed to post the aggregated report."""
    results: List[DiffResult]
    run_id: str
    skip_no_change: bool = False
    comment_strategy: CommentStrategy = CommentStrategy.CREATE
    token: str
    show_artifact_link_when_truncated: bool = False
