"""Host capability probes for KVM acceleration and machine-type support.

A failing probe means the capability is absent. Probes never raise for a
missing /dev/kvm or an unreadable /proc/cpuinfo. The exceptions are
``require_kvm`` when acceleration is unusable, and a QEMU binary that
cannot list its machine types at all.
"""

import asyncio
import os
import re
import stat
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path

import aiofiles
import aiofiles.os

from qemu_micro_env import constants
from qemu_micro_env._logging import get_logger
from qemu_micro_env.config import VmConfig
from qemu_micro_env.exceptions import VmConfigError, VmDependencyError
from qemu_micro_env.platform_utils import QemuArch, detect_host_arch
from qemu_micro_env.settings import Settings

logger = get_logger(__name__)

_VMX_RE = re.compile(r"flags.*:.*(vmx|svm)")

_MACHINE_HELP_TIMEOUT_SECONDS = 10


@dataclass(frozen=True, slots=True)
class HostCapabilities:
    """Resolved probe results that feed argument construction.

    Attributes:
        kvm: Hardware acceleration will be used.
        microvm: The microvm machine type will be used.
    """

    kvm: bool
    microvm: bool


def can_virtualize(arch: QemuArch, host_arch: QemuArch | None = None) -> bool:
    """Whether ``arch`` can run natively on the host CPU.

    Same architecture always works. 32-bit arm on an aarch64 host usually
    does, though the ISA doesn't guarantee it.
    """
    host = host_arch if host_arch is not None else detect_host_arch()
    if arch == host:
        return True
    return host == QemuArch.AARCH64 and arch == QemuArch.ARM


async def _ensure_kvm_device(kvm_device: Path) -> bool:
    """Make sure the KVM node exists, creating it if the module is loaded.

    Containers frequently get the module but not the node.
    """
    if await aiofiles.os.path.exists(kvm_device):
        return True
    try:
        await asyncio.to_thread(
            os.mknod,
            kvm_device,
            stat.S_IFCHR | 0o666,
            os.makedev(constants.KVM_DEVICE_MAJOR, constants.KVM_DEVICE_MINOR),
        )
    except OSError as e:
        logger.debug("Cannot create KVM device node", extra={"path": str(kvm_device), "error": str(e)})
        return False
    logger.debug("Created KVM device node", extra={"path": str(kvm_device)})
    return True


async def _cpu_has_virt_flags(cpuinfo_path: Path) -> bool:
    try:
        async with aiofiles.open(cpuinfo_path) as f:
            async for line in f:
                if _VMX_RE.search(line):
                    return True
    except OSError as e:
        logger.debug("Failed to read cpuinfo", extra={"path": str(cpuinfo_path), "error": str(e)})
    return False


async def check_kvm_usable(
    arch: QemuArch,
    settings: Settings,
    host_arch: QemuArch | None = None,
) -> bool:
    """Whether KVM can accelerate a guest of ``arch`` on this host."""
    if not can_virtualize(arch, host_arch):
        logger.debug("Target arch differs from host, KVM unusable", extra={"arch": arch.value})
        return False
    if not await _ensure_kvm_device(settings.kvm_device):
        return False
    return await _cpu_has_virt_flags(settings.cpuinfo_path)


async def check_microvm_supported(arch: QemuArch, settings: Settings) -> bool:
    """Ask the emulator whether it knows the microvm machine type.

    Raises:
        VmDependencyError: If the emulator is missing or ``-M help`` fails.
    """
    qemu_bin = settings.qemu_bin(arch.value)
    try:
        proc = await asyncio.create_subprocess_exec(
            str(qemu_bin),
            "-M",
            "help",
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
        stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=_MACHINE_HELP_TIMEOUT_SECONDS)
    except FileNotFoundError as e:
        raise VmDependencyError(f"QEMU binary not found: {qemu_bin}", context={"qemu_bin": str(qemu_bin)}) from e
    except TimeoutError as e:
        raise VmDependencyError(
            f"timed out listing machine types with {qemu_bin}", context={"qemu_bin": str(qemu_bin)}
        ) from e

    output = stdout.decode(errors="replace")
    if proc.returncode != 0:
        raise VmDependencyError(
            f"error getting machine types: exit {proc.returncode}: {output.strip()}",
            context={"qemu_bin": str(qemu_bin), "returncode": proc.returncode},
        )

    supported = constants.MICROVM_MACHINE in output
    if not supported:
        logger.debug("QEMU machine type 'microvm' not supported, falling back to 'virt'", extra={"arch": arch.value})
    return supported


async def resolve_capabilities(
    config: VmConfig,
    settings: Settings,
    *,
    kvm_probe: Callable[[], Awaitable[bool]] | None = None,
    microvm_probe: Callable[[], Awaitable[bool]] | None = None,
) -> HostCapabilities:
    """Decide acceleration and machine type for a launch.

    Runs before any process is spawned, so a ``require_kvm`` failure never
    leaves a hypervisor behind.

    Args:
        config: Validated VM configuration
        settings: Host layout
        kvm_probe: Override the KVM probe (for testing)
        microvm_probe: Override the machine-type probe (for testing)

    Raises:
        VmConfigError: KVM required but unusable for the architecture.
        VmDependencyError: The emulator can't list machine types.
    """
    if config.no_kvm:
        kvm = False
    else:
        kvm = await (kvm_probe() if kvm_probe else check_kvm_usable(config.cpu_arch, settings))

    if not kvm and config.require_kvm:
        raise VmConfigError(
            f"kvm is required by user but not available on this system for arch {config.cpu_arch.value}",
            context={"arch": config.cpu_arch.value},
        )

    if config.no_micro:
        microvm = False
    else:
        microvm = await (microvm_probe() if microvm_probe else check_microvm_supported(config.cpu_arch, settings))

    caps = HostCapabilities(kvm=kvm, microvm=microvm)
    logger.info(
        "Resolved host capabilities",
        extra={"arch": config.cpu_arch.value, "kvm": caps.kvm, "microvm": caps.microvm},
    )
    return caps
