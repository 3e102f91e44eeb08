"""Asynchronous open of a named pipe's write end.

Opening a FIFO for writing blocks until a reader opens the other end. For
the authorized_keys pipe that reader is QEMU, which opens it at startup,
and the guest then blocks on the virtio port until the key arrives. The
blocking open is kept, but it runs in a worker thread behind a task, so
the caller awaits it or races it against cancellation and never stalls
the event loop.
"""

from __future__ import annotations

import asyncio
import contextlib
import os
import stat
from pathlib import Path

from qemu_micro_env._logging import get_logger

logger = get_logger(__name__)


def ensure_fifo(path: Path, mode: int = 0o600) -> None:
    """Create the FIFO if it's missing.

    Raises:
        FileExistsError: If something other than a FIFO occupies the path.
    """
    try:
        st = path.lstat()
    except FileNotFoundError:
        os.mkfifo(path, mode)
        return
    if not stat.S_ISFIFO(st.st_mode):
        raise FileExistsError(f"not a fifo: {path}")


def _release_late_open(fut: asyncio.Future[int], unblock_fd: int) -> None:
    with contextlib.suppress(OSError):
        os.close(unblock_fd)
    if not fut.cancelled() and fut.exception() is None:
        with contextlib.suppress(OSError):
            os.close(fut.result())


async def _open_write_end(path: Path) -> int:
    loop = asyncio.get_running_loop()
    fut = loop.run_in_executor(None, os.open, path, os.O_WRONLY | os.O_CLOEXEC)
    try:
        return await asyncio.shield(fut)
    except asyncio.CancelledError:
        if fut.done():
            _release_late_open(fut, -1)
            raise
        # Opening the read end ourselves lets the blocked thread's open
        # return; the fd it gets back is closed right away.
        try:
            unblock_fd = os.open(path, os.O_RDONLY | os.O_NONBLOCK | os.O_CLOEXEC)
        except OSError:
            unblock_fd = -1
        fut.add_done_callback(lambda f: _release_late_open(f, unblock_fd))
        raise


def open_fifo_writer(path: Path, mode: int = 0o600) -> asyncio.Task[int]:
    """Create ``path`` as a FIFO if needed and start opening it for writing.

    Returns a task that resolves to the writable fd once a reader has
    attached. Cancelling the task releases the worker thread and closes
    any fd it opened.

    Raises:
        OSError: If the FIFO can't be created, or the path holds something else.
    """
    ensure_fifo(path, mode)
    return asyncio.create_task(_open_write_end(path), name=f"fifo-open:{path}")


async def write_line(path: Path, data: bytes) -> None:
    """Wait for a reader on the FIFO (creating it if missing), write ``data`` plus a newline, close.

    Raises:
        OSError: If the open or the write fails.
    """
    fd = await open_fifo_writer(path)
    try:
        payload = data + b"\n"
        view = memoryview(payload)
        while view:
            written = await asyncio.to_thread(os.write, fd, view)
            view = view[written:]
    finally:
        os.close(fd)
    logger.debug("Wrote line to fifo", extra={"path": str(path), "bytes": len(data) + 1})
