#!/usr/bin/env python3
"""
nix-diff-action - Main Entry Point

Compares nix build outputs between the base branch and the head of a
pull request with dix, and reports the result on the pull request.

Inputs arrive the way GitHub Actions passes them (``INPUT_*``
environment variables); a local ``.env`` file is honoured for manual
runs.
"""

import asyncio
import logging
import signal
import sys

from dotenv import load_dotenv

from nix_diff_action.shared.actions_runtime import set_failed
from nix_diff_action.shared.config import Config
from nix_diff_action.shared.errors import ActionError
from nix_diff_action.shared.logging_config import setup_logging
from nix_diff_action.supervisor.supervisor import Supervisor

logger = logging.getLogger("nix_diff_action")


async def run(config: Config) -> None:
    """Run the supervisor, turning SIGTERM/SIGINT into task cancellation.

    Cancellation unwinds the worktree scope, so the base worktree is
    removed even when the runner stops the step.
    """
    loop = asyncio.get_running_loop()
    task = asyncio.current_task()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, task.cancel)

    try:
        await Supervisor(config).run()
    finally:
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.remove_signal_handler(sig)


def main() -> int:
    load_dotenv()
    setup_logging()

    try:
        config = Config.from_env()
        asyncio.run(run(config))
    except ActionError as e:
        logger.error(f"Action failed: {type(e).__name__}")
        return set_failed(e.describe())
    except asyncio.CancelledError:
        return set_failed("Action was cancelled")
    except Exception as e:
        logger.exception("Unexpected error")
        return set_failed(f"Unexpected error: {e}")

    return 0


if __name__ == "__main__":
    sys.exit(main())
