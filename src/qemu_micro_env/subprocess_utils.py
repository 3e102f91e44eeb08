"""Helpers for long-lived helper processes (ssh tunnels).

- drain_stderr: feed a child's stderr into the log so its pipe never fills
- log_task_exception: done-callback that surfaces background task failures
- wait_for_socket: poll until a child creates its UNIX socket
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

from qemu_micro_env._logging import get_logger

if TYPE_CHECKING:
    from collections.abc import Callable
    from pathlib import Path

    from qemu_micro_env.platform_utils import ProcessWrapper

logger = get_logger(__name__)


async def drain_stderr(process: ProcessWrapper, *, process_name: str, context_id: str) -> None:
    """Log each stderr line at WARNING until EOF."""
    if process.stderr is None:
        return
    async for raw in process.stderr:
        line = raw.decode(errors="replace").rstrip()
        if line:
            logger.warning(f"[{process_name}] {line}", extra={"context_id": context_id, "output": line})


def log_task_exception(task: asyncio.Task[None]) -> None:
    """Done-callback: log what a background task died of."""
    if task.cancelled() or task.exception() is None:
        return
    logger.error("Background task failed", extra={"task_name": task.get_name()}, exc_info=task.exception())


async def wait_for_socket(
    path: Path,
    *,
    poll_interval: float = 0.01,
    abort_check: Callable[[], None] | None = None,
) -> None:
    """Return once *path* exists.

    There is no timeout: callers bound the wait by cancelling, or by raising
    from *abort_check* (called every poll) when the creating process dies.
    """
    while not path.exists():
        if abort_check is not None:
            abort_check()
        await asyncio.sleep(poll_interval)
