"""qemu-micro-env: run a container runtime inside a QEMU microVM.

The host side launches QEMU, forwards guest TCP ports and exposes the
guest's container socket on the host (over SSH or vsock). The guest side
is a small PID 1 and a serial agent.

Quick Start:
    ```python
    import asyncio
    from qemu_micro_env import ProcessSupervisor, VmConfig

    config = VmConfig.build(port_forwards=(8080,), socket_forwards=("/run/docker.sock",))
    asyncio.run(ProcessSupervisor(config).run())
    ```

Requirements:
    - Linux host with qemu-system-<arch>, ssh, ssh-agent and ssh-add
    - A bootable root filesystem, kernel and initrd (see Settings)
    - Python 3.12+
"""

from importlib.metadata import PackageNotFoundError, version

from qemu_micro_env.config import VmConfig
from qemu_micro_env.exceptions import (
    GuestAgentDeviceError,
    GuestInitError,
    HypervisorExitError,
    KeyInjectionError,
    MicroEnvError,
    PermanentError,
    TransientError,
    TunnelError,
    TunnelTransientError,
    VmConfigError,
    VmDependencyError,
    VmLaunchError,
    VsockDialError,
)
from qemu_micro_env.platform_utils import QemuArch
from qemu_micro_env.settings import Settings
from qemu_micro_env.supervisor import ProcessSupervisor, launch
from qemu_micro_env.system_probes import HostCapabilities

try:
    __version__ = version("qemu-micro-env")
except PackageNotFoundError:
    __version__ = "0.0.0.dev0"

__all__ = [
    "GuestAgentDeviceError",
    "GuestInitError",
    "HostCapabilities",
    "HypervisorExitError",
    "KeyInjectionError",
    "MicroEnvError",
    "PermanentError",
    "ProcessSupervisor",
    "QemuArch",
    "Settings",
    "TransientError",
    "TunnelError",
    "TunnelTransientError",
    "VmConfig",
    "VmConfigError",
    "VmDependencyError",
    "VmLaunchError",
    "VsockDialError",
    "__version__",
    "launch",
]
