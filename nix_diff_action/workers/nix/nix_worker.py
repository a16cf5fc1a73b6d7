"""
Nix Worker

Resolves flake references to store paths and runs dix between two of
them. Every call is a separate ``nix`` subprocess; nothing is retried,
since a failing evaluation or build fails the same way on a second try.
"""

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, List

from nix_diff_action.shared.errors import NixBuildError, NixDixError, NixPathInfoError
from nix_diff_action.shared.logging_config import get_worker_logger
from nix_diff_action.shared.models import ResolvedArtifact

logger = get_worker_logger("nix")

DIX_INSTALLABLE = "nixpkgs#dix"


@dataclass(frozen=True)
class ExecResult:
    exit_code: int
    stdout: str
    stderr: str


Runner = Callable[[List[str]], Awaitable[ExecResult]]


async def exec_command(cmd: List[str]) -> ExecResult:
    """Run a command and capture its trimmed output.

    A command that cannot be started at all (e.g. nix not installed) is
    reported with exit code -1 instead of raising, so callers only ever
    look at the exit code.
    """
    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        logger.warning(f"{cmd[0]} exec failed unexpectedly: {e}")
        return ExecResult(exit_code=-1, stdout="", stderr=str(e))

    try:
        stdout, stderr = await proc.communicate()
    except asyncio.CancelledError:
        proc.kill()
        await proc.wait()
        raise

    return ExecResult(
        exit_code=proc.returncode,
        stdout=stdout.decode("utf-8", errors="replace").strip(),
        stderr=stderr.decode("utf-8", errors="replace").strip(),
    )


class NixWorker:
    """Thin async facade over the nix CLI."""

    def __init__(self, nix_bin: str = "nix", runner: Runner = exec_command):
        self.nix_bin = nix_bin
        self._runner = runner

    async def _nix(self, args: List[str]) -> ExecResult:
        logger.debug(f"Running {self.nix_bin} {' '.join(args)}")
        return await self._runner([self.nix_bin, *args])

    async def prefetch_flake_inputs(self, flake_ref: str) -> bool:
        """Fetch all flake inputs up front. Advisory: returns False instead of raising.

        ``nix flake prefetch-inputs`` only exists in Nix 2.31.0+.
        """
        try:
            result = await self._nix(["flake", "prefetch-inputs", flake_ref])
        except Exception as e:
            logger.debug(f"Prefetch of {flake_ref} raised: {e}")
            return False
        return result.exit_code == 0

    async def get_nix_path(self, flake_ref: str, build: bool) -> str:
        """Resolve ``flake_ref`` to its output path, or its .drv path when not building."""
        # nix path-info neither builds nor substitutes, so realise first in build mode
        if build:
            build_result = await self._nix(["build", flake_ref, "--no-link"])
            if build_result.exit_code != 0:
                raise NixBuildError(flake_ref, build_result.stderr or "unknown error")

        args = ["path-info", flake_ref] if build else ["path-info", "--derivation", flake_ref]
        result = await self._nix(args)

        if result.exit_code != 0:
            raise NixPathInfoError(flake_ref, result.stderr or "unknown error")
        if not result.stdout:
            raise NixPathInfoError(flake_ref, "nix path-info returned empty output")

        return result.stdout

    async def resolve(self, flake_ref: str, build: bool) -> ResolvedArtifact:
        path = await self.get_nix_path(flake_ref, build)
        return ResolvedArtifact(reference=flake_ref, path=path)

    async def get_dix_diff(self, base_path: str, pr_path: str, inputs_from_path: str) -> str:
        """Run dix between two store paths.

        ``inputs_from_path`` must be the base branch worktree. dix is taken
        from that flake's nixpkgs; taking it from the PR checkout would let
        a pull request swap in an arbitrary dix and run it with the job's
        credentials.
        """
        result = await self._nix([
            "run",
            DIX_INSTALLABLE,
            "--inputs-from",
            f"path:{inputs_from_path}",  # path: avoids needing git history
            "--",
            base_path,
            pr_path,
        ])

        if result.exit_code != 0:
            raise NixDixError(base_path, pr_path, result.stderr or "dix failed with no error message")

        if result.stderr:
            logger.info(f"dix stderr: {result.stderr}")
        return result.stdout
