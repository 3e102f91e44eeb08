"""Host architecture detection and process management wrappers.

Uses psutil for process handling so PID reuse can't redirect a signal
to an unrelated process.
"""

import asyncio
import contextlib
import platform
import signal
from enum import StrEnum
from functools import cache

import psutil

from qemu_micro_env.exceptions import VmConfigError


class QemuArch(StrEnum):
    """CPU architectures a guest can be launched for (QEMU naming)."""

    X86_64 = "x86_64"
    AARCH64 = "aarch64"
    ARM = "arm"


_ARCH_ALIASES: dict[str, QemuArch] = {
    "amd64": QemuArch.X86_64,
    "x86_64": QemuArch.X86_64,
    "arm64": QemuArch.AARCH64,
    "aarch64": QemuArch.AARCH64,
    "arm": QemuArch.ARM,
}


def normalize_arch(arch: str) -> QemuArch:
    """Map Go/Docker/uname architecture names onto QEMU's naming.

    Raises:
        VmConfigError: If the architecture is not one we can launch.
    """
    try:
        return _ARCH_ALIASES[arch.strip().lower()]
    except KeyError:
        raise VmConfigError(f"unsupported architecture: {arch!r}", context={"arch": arch}) from None


@cache
def detect_host_arch() -> QemuArch:
    """Detect the host CPU architecture.

    Example:
        >>> detect_host_arch()
        <QemuArch.X86_64: 'x86_64'>
    """
    return normalize_arch(platform.machine())


def signal_name(returncode: int | None) -> str | None:
    """Name of the signal encoded in a negative asyncio return code."""
    if returncode is None or returncode >= 0:
        return None
    try:
        return signal.Signals(-returncode).name
    except ValueError:
        return f"SIG{-returncode}"


class ProcessWrapper:
    """An asyncio child paired with its psutil handle.

    Signals go through psutil, which checks the process creation time, so
    a recycled PID never receives them.
    """

    def __init__(self, async_proc: asyncio.subprocess.Process) -> None:
        self.async_proc = async_proc
        self.psutil_proc: psutil.Process | None = None
        with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
            self.psutil_proc = psutil.Process(async_proc.pid)

    @property
    def pid(self) -> int:
        return self.async_proc.pid

    @property
    def returncode(self) -> int | None:
        return self.async_proc.returncode

    @property
    def stderr(self) -> asyncio.StreamReader | None:
        return self.async_proc.stderr

    async def wait(self) -> int:
        return await self.async_proc.wait()

    def send_signal(self, sig: int) -> None:
        """Deliver *sig* verbatim; a process that already exited is ignored."""
        if self.async_proc.returncode is not None:
            return
        if self.psutil_proc is None:
            with contextlib.suppress(ProcessLookupError):
                self.async_proc.send_signal(sig)
            return
        with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
            self.psutil_proc.send_signal(sig)

    async def terminate(self) -> None:
        self.send_signal(signal.SIGTERM)

    async def kill(self) -> None:
        self.send_signal(signal.SIGKILL)

    async def wait_with_timeout(self, timeout: float) -> int:
        """Wait for exit.

        Raises:
            TimeoutError: If the process is still running after *timeout* seconds.
        """
        async with asyncio.timeout(timeout):
            return await self.async_proc.wait()
