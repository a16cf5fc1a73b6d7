"""
GitHub Actions runtime I/O.

Inputs arrive as ``INPUT_<NAME>`` environment variables; outputs and
saved state are appended to the files named by ``GITHUB_OUTPUT`` and
``GITHUB_STATE``. Saved state is exposed to the post step of the same
job as ``STATE_<name>`` environment variables, which is how the cleanup
entry point finds a worktree created by an earlier process.
"""

import os
import sys
import uuid
from typing import Dict, Mapping, Optional


def _input_env_name(name: str) -> str:
    return f"INPUT_{name.replace(' ', '_').upper()}"


def get_input(name: str, environ: Optional[Mapping[str, str]] = None) -> str:
    """Read an action input, trimmed. Missing inputs read as empty strings.

    Required inputs are enforced by the config layer, which raises the
    matching ActionError.
    """
    env = os.environ if environ is None else environ
    return env.get(_input_env_name(name), "").strip()


def get_bool_input(name: str, default: bool = False, environ: Optional[Mapping[str, str]] = None) -> bool:
    """Read a YAML 1.2 core-schema boolean input."""
    value = get_input(name, environ=environ)
    if not value:
        return default
    if value in ("true", "True", "TRUE"):
        return True
    if value in ("false", "False", "FALSE"):
        return False
    raise ValueError(
        f"Input does not meet YAML 1.2 \"Core Schema\" specification: {name}\n"
        "Support boolean input list: `true | True | TRUE | false | False | FALSE`"
    )


def _append_file_command(env_var: str, name: str, value: str) -> bool:
    """Append ``name<<delimiter`` block to a runner file command. Returns False when unset."""
    file_path = os.environ.get(env_var)
    if not file_path:
        return False

    delimiter = f"ghadelimiter_{uuid.uuid4()}"
    if delimiter in name or delimiter in value:
        raise ValueError(f"Unexpected input: delimiter collides with {env_var} content")

    with open(file_path, 'a', encoding='utf-8') as f:
        f.write(f"{name}<<{delimiter}\n{value}\n{delimiter}\n")
    return True


def set_output(name: str, value: str) -> None:
    """Set a step output."""
    if not _append_file_command("GITHUB_OUTPUT", name, value):
        # Local runs have no runner files; fall back to the legacy command
        sys.stdout.write(f"::set-output name={name}::{value}\n")


def warning(message: str) -> None:
    sys.stdout.write(f"::warning::{_escape_data(message)}\n")


def error(message: str) -> None:
    sys.stdout.write(f"::error::{_escape_data(message)}\n")


def set_failed(message: str) -> int:
    """Report a failed run. Returns the process exit code to use."""
    error(message)
    return 1


def _escape_data(value: str) -> str:
    return value.replace('%', '%25').replace('\r', '%0D').replace('\n', '%0A')


# ---------------------------------------------------------------------------
# Cross-invocation state
# ---------------------------------------------------------------------------

class StateStore:
    """Key/value state that survives from the main step to its post step."""

    def save(self, name: str, value: str) -> None:
        raise NotImplementedError

    def get(self, name: str) -> str:
        raise NotImplementedError


class ActionsStateStore(StateStore):
    """State persisted through the runner's ``GITHUB_STATE`` file."""

    def __init__(self, environ: Optional[Mapping[str, str]] = None):
        self._environ = os.environ if environ is None else environ

    def save(self, name: str, value: str) -> None:
        if not _append_file_command("GITHUB_STATE", name, value):
            sys.stdout.write(f"::save-state name={name}::{value}\n")

    def get(self, name: str) -> str:
        return self._environ.get(f"STATE_{name}", "")


class MemoryStateStore(StateStore):
    """In-process state, for local runs and tests."""

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self.values: Dict[str, str] = dict(initial or {})

    def save(self, name: str, value: str) -> None:
        self.values[name] = value

    def get(self, name: str) -> str:
        return self.values.get(name, "")

