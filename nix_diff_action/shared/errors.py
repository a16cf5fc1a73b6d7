"""Error taxonomy for nix-diff-action.

Every failure the action can report is an :class:`ActionError` subclass
carrying the fields that identify what went wrong. ``describe()`` renders
the single line shown to the user when the run fails.
"""

from typing import Optional


class ActionError(Exception):
    """Base class for all expected failures."""

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message

    def describe(self) -> str:
        return self.message


# Configuration / validation errors (raised before any resource is acquired)

class NotPullRequestContextError(ActionError):
    pass


class MissingAttributesError(ActionError):
    pass


class AttributeParseError(ActionError):
    pass


class InvalidDirectoryError(ActionError):
    pass


class InvalidModeError(ActionError):

    def __init__(self, mode: str):
        super().__init__(f"Invalid mode: {mode}")
        self.mode = mode


class InvalidCommentStrategyError(ActionError):

    def __init__(self, value: str):
        super().__init__(f"Invalid comment strategy: {value}")
        self.value = value


class MissingTokenError(ActionError):
    pass


# Pipeline errors

class GitWorktreeError(ActionError):

    def __init__(self, operation: str, message: str):
        super().__init__(message)
        self.operation = operation

    def describe(self) -> str:
        return f"Git {self.operation} failed: {self.message}"


class NixPathInfoError(ActionError):

    def __init__(self, flake_ref: str, message: str):
        super().__init__(message)
        self.flake_ref = flake_ref

    def describe(self) -> str:
        return f"Nix path-info failed for {self.flake_ref}: {self.message}"


class NixBuildError(ActionError):

    def __init__(self, flake_ref: str, message: str):
        super().__init__(message)
        self.flake_ref = flake_ref

    def describe(self) -> str:
        return f"Nix build failed for {self.flake_ref}: {self.message}"


class NixDixError(ActionError):

    def __init__(self, base_path: str, pr_path: str, message: str):
        super().__init__(message)
        self.base_path = base_path
        self.pr_path = pr_path

    def describe(self) -> str:
        return f"Nix dix failed comparing {self.base_path} vs {self.pr_path}: {self.message}"


# Boundary collaborator errors

class GitHubApiError(ActionError):

    def __init__(self, operation: str, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.operation = operation
        self.status_code = status_code

    def describe(self) -> str:
        return f"GitHub {self.operation} failed: {self.message}"


class ArtifactError(ActionError):

    def __init__(self, name: str, message: str):
        super().__init__(message)
        self.name = name

    def describe(self) -> str:
        return f"Artifact {self.name} failed: {self.message}"
