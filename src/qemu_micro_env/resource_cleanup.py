"""Teardown helpers for the hypervisor, ssh children and host sockets.

Both helpers log and report failure instead of raising, so one stuck
step doesn't keep the rest of the launcher's resources alive.
"""

import asyncio
from pathlib import Path

from qemu_micro_env._logging import get_logger
from qemu_micro_env.platform_utils import ProcessWrapper

logger = get_logger(__name__)


async def _stop_with(proc: ProcessWrapper, sig_name: str, timeout: float, name: str, context_id: str) -> bool:
    """Deliver SIGTERM or SIGKILL and wait. Returns True once the process is gone."""
    logger.debug(f"Sending {sig_name} to {name}", extra={"context_id": context_id, "pid": proc.pid})
    if sig_name == "SIGTERM":
        await proc.terminate()
    else:
        await proc.kill()
    try:
        await proc.wait_with_timeout(timeout=timeout)
    except TimeoutError:
        return False
    return True


async def cleanup_process(
    proc: ProcessWrapper | None,
    name: str,
    context_id: str,
    term_timeout: float = 3.0,
    kill_timeout: float = 2.0,
) -> bool:
    """SIGTERM, wait *term_timeout*, then SIGKILL and wait *kill_timeout*.

    Args:
        proc: Process to stop; None is a no-op
        name: Short process name for logs ("qemu", "ssh")
        context_id: What the process served, for log correlation

    Returns:
        False if the process outlived SIGKILL or stopping it failed
    """
    if proc is None or proc.returncode is not None:
        return True

    try:
        if await _stop_with(proc, "SIGTERM", term_timeout, name, context_id):
            logger.debug(f"{name} exited", extra={"context_id": context_id, "returncode": proc.returncode})
            return True
        logger.warning(
            f"{name} ignored SIGTERM for {term_timeout}s, killing",
            extra={"context_id": context_id, "pid": proc.pid},
        )
        if await _stop_with(proc, "SIGKILL", kill_timeout, name, context_id):
            return True
        logger.error(f"{name} survived SIGKILL", extra={"context_id": context_id, "pid": proc.pid})
        return False
    except ProcessLookupError:
        return True
    except asyncio.CancelledError:
        raise
    except Exception as e:
        logger.error(
            f"Error stopping {name}",
            extra={"context_id": context_id, "error": str(e), "error_type": type(e).__name__},
            exc_info=True,
        )
        return False


def cleanup_file(file_path: Path | None, context_id: str, description: str = "file") -> bool:
    """Unlink a host-side socket or file; a missing path counts as removed."""
    if file_path is None:
        return True
    try:
        file_path.unlink(missing_ok=True)
    except OSError as e:
        logger.error(
            f"Error removing {description}",
            extra={"context_id": context_id, "path": str(file_path), "error": str(e)},
        )
        return False
    logger.debug(f"Removed {description}", extra={"context_id": context_id, "path": str(file_path)})
    return True
