"""
Post-step cleanup.

Runs after the main step has ended, including when it was killed on
timeout, and removes the base worktree whose path the main step saved.
Never fails the job.
"""

import asyncio
import logging
import sys
from typing import Optional

from dotenv import load_dotenv

from nix_diff_action.shared.actions_runtime import ActionsStateStore, StateStore, warning
from nix_diff_action.shared.logging_config import setup_logging
from nix_diff_action.workers.worktree.worktree_worker import WORKTREE_STATE_KEY, WorktreeWorker

logger = logging.getLogger("nix_diff_action.cleanup")


async def cleanup(state_store: StateStore, worktree_worker: Optional[WorktreeWorker] = None) -> None:
    worktree_path = state_store.get(WORKTREE_STATE_KEY)
    if not worktree_path:
        logger.info("No worktree path saved, skipping cleanup")
        return

    worker = worktree_worker or WorktreeWorker(state_store=state_store)
    await worker.remove_worktree(worktree_path)
    logger.info(f"Cleaned up worktree at {worktree_path}")


def run_cleanup(state_store: Optional[StateStore] = None, worktree_worker: Optional[WorktreeWorker] = None) -> int:
    try:
        asyncio.run(cleanup(state_store or ActionsStateStore(), worktree_worker))
    except Exception as e:
        warning(f"Cleanup failed: {e}")
    return 0


def main() -> int:
    load_dotenv()
    setup_logging()
    return run_cleanup()


if __name__ == "__main__":
    sys.exit(main())
