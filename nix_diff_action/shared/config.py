"""Configuration management for nix-diff-action."""

import os
import tempfile
import uuid
from dataclasses import dataclass, field
from typing import List, Mapping, Optional

import yaml
from pydantic import ValidationError

from .actions_runtime import get_bool_input, get_input
from .errors import (
    AttributeParseError,
    InvalidCommentStrategyError,
    InvalidDirectoryError,
    InvalidModeError,
    MissingAttributesError,
    MissingTokenError,
)
from .models import CommentStrategy, ComparisonTarget, Mode


@dataclass
class Config:
    """Inputs of one action invocation plus the runner environment it needs."""

    # Action inputs
    mode: str = "full"
    attributes: str = ""
    directory: str = "."
    build: bool = False
    skip_no_change: bool = False
    comment_strategy: str = "create"
    github_token: Optional[str] = None
    artifact_directory: str = ""

    # Runner environment
    github_run_id: Optional[str] = None
    github_repository: Optional[str] = None
    github_event_path: Optional[str] = None
    github_server_url: str = "https://github.com"
    github_api_url: str = "https://api.github.com"
    workspace: str = field(default_factory=os.getcwd)
    log_level: str = "INFO"

    # Falls back to a random id when not running inside a workflow run
    run_id: str = ""

    def __post_init__(self):
        if not self.run_id:
            self.run_id = self.github_run_id or str(uuid.uuid4())
        if not self.artifact_directory:
            runner_temp = os.getenv("RUNNER_TEMP") or tempfile.gettempdir()
            self.artifact_directory = os.path.join(runner_temp, "nix-diff-results")

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Config":
        """Build the configuration from ``INPUT_*`` and ``GITHUB_*`` variables."""
        env = os.environ if environ is None else environ
        return cls(
            mode=get_input("mode", environ=env) or "full",
            attributes=get_input("attributes", environ=env),
            directory=get_input("directory", environ=env) or ".",
            build=get_bool_input("build", environ=env),
            skip_no_change=get_bool_input("skip-no-change", environ=env),
            comment_strategy=get_input("comment-strategy", environ=env) or "create",
            github_token=get_input("github-token", environ=env) or env.get("GITHUB_TOKEN") or None,
            artifact_directory=get_input("artifact-directory", environ=env),
            github_run_id=env.get("GITHUB_RUN_ID") or None,
            github_repository=env.get("GITHUB_REPOSITORY") or None,
            github_event_path=env.get("GITHUB_EVENT_PATH") or None,
            github_server_url=env.get("GITHUB_SERVER_URL", "https://github.com"),
            github_api_url=env.get("GITHUB_API_URL", "https://api.github.com"),
            workspace=env.get("GITHUB_WORKSPACE") or os.getcwd(),
            log_level=env.get("LOG_LEVEL", "INFO"),
        )

    @property
    def has_workflow_run(self) -> bool:
        """Artifact links only make sense for a real workflow run."""
        return bool(self.github_run_id)

    def parsed_mode(self) -> Mode:
        return parse_mode(self.mode)

    def require_token(self) -> str:
        if not self.github_token:
            raise MissingTokenError("github-token input is required to post comments")
        return self.github_token


def parse_mode(value: str) -> Mode:
    try:
        return Mode(value)
    except ValueError:
        raise InvalidModeError(value) from None


def parse_comment_strategy(value: str) -> CommentStrategy:
    """Validate a non-empty comment strategy. Empty input is defaulted by :class:`Config`."""
    try:
        return CommentStrategy(value)
    except ValueError:
        raise InvalidCommentStrategyError(value) from None


def parse_attributes(text: str) -> List[ComparisonTarget]:
    """Parse the ``attributes`` input: a YAML list of ``displayName``/``attribute`` pairs."""
    if not text or not text.strip():
        raise MissingAttributesError("attributes input is required")

    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise AttributeParseError(f"Invalid YAML in attributes: {e}") from e

    if not isinstance(data, list):
        raise AttributeParseError("attributes must be a YAML array")

    targets = []
    for index, item in enumerate(data):
        if not isinstance(item, dict):
            raise AttributeParseError(f"Invalid attributes format: item {index} is not a mapping")
        try:
            targets.append(ComparisonTarget.model_validate(item))
        except ValidationError as e:
            details = "; ".join(
                f"item {index} {'.'.join(str(p) for p in err['loc'])}: {err['msg']}"
                for err in e.errors()
            )
            raise AttributeParseError(f"Invalid attributes format: {details}") from e

    return targets


def validate_directory(directory: str, workspace_root: str) -> str:
    """Resolve ``directory`` against the workspace and reject anything outside it."""
    root = os.path.normpath(workspace_root)
    resolved = os.path.normpath(os.path.join(root, directory))

    if resolved != root and not resolved.startswith(root.rstrip(os.sep) + os.sep):
        raise InvalidDirectoryError(
            f"directory must be within the workspace: {directory} resolves to {resolved}"
        )
    return resolved
