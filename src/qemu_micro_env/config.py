"""VM launch configuration.

VmConfig is validated once and is read-only afterwards. The launcher,
the argument builder and every tunnel receive the same instance.

Example:
    ```python
    from qemu_micro_env import VmConfig

    config = VmConfig.build(cpu_arch="amd64", port_forwards=[2375], use_vsock=False)
    config = config.with_ssh_forward()  # guest port 22 reachable for tunnels
    ```
"""

from __future__ import annotations

import os
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from qemu_micro_env import constants
from qemu_micro_env.exceptions import VmConfigError
from qemu_micro_env.platform_utils import QemuArch, detect_host_arch, normalize_arch


class VmConfig(BaseModel):
    """Configuration for one VM launch.

    Attributes:
        cpu_arch: Target architecture. Aliases (amd64, arm64) are normalized
            to QEMU naming. Determines the emulator binary and whether KVM
            is possible at all.
        num_cpus: Passed to ``-smp``.
        memory: Passed verbatim to ``-m`` (e.g. "4G", "512M").
        no_kvm: Disable hardware acceleration.
        require_kvm: Fail instead of falling back to TCG. Cannot be combined
            with no_kvm.
        no_micro: Use the full "virt" machine type instead of microvm.
            Always True when use_vsock is set.
        cgroup_version: cgroup hierarchy GuestInit mounts (1 or 2).
        port_forwards: Guest TCP ports to make reachable from the host, in order.
        socket_forwards: Guest UNIX socket paths to tunnel over SSH.
        use_vsock: Reach the guest container socket over AF_VSOCK instead of SSH.
        uid: Owner for the hypervisor process and host-side sockets.
        gid: Group for the hypervisor process and host-side sockets.
        debug_console: Drop into a shell in the guest before setup.
        init_cmd: Workload GuestInit runs once the guest is set up.
        qemu_extra_args: Extra hypervisor arguments, appended verbatim.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    cpu_arch: QemuArch = Field(default_factory=detect_host_arch)
    num_cpus: int = Field(default=constants.DEFAULT_NUM_CPUS, ge=1)
    memory: str = Field(default=constants.DEFAULT_MEMORY, min_length=1)
    no_kvm: bool = False
    require_kvm: bool = False
    no_micro: bool = False
    cgroup_version: int = constants.DEFAULT_CGROUP_VERSION
    port_forwards: tuple[int, ...] = ()
    socket_forwards: tuple[str, ...] = ()
    use_vsock: bool = False
    uid: int = Field(default_factory=os.getuid, ge=0)
    gid: int = Field(default_factory=os.getgid, ge=0)
    debug_console: bool = False
    init_cmd: str = Field(default=constants.DEFAULT_INIT_CMD, min_length=1)
    qemu_extra_args: tuple[str, ...] = ()

    @field_validator("cpu_arch", mode="before")
    @classmethod
    def _normalize_arch(cls, v: Any) -> Any:
        if isinstance(v, str) and not isinstance(v, QemuArch):
            try:
                return normalize_arch(v)
            except VmConfigError as e:
                raise ValueError(e.message) from None
        return v

    @field_validator("cgroup_version")
    @classmethod
    def _check_cgroup_version(cls, v: int) -> int:
        if v not in constants.SUPPORTED_CGROUP_VERSIONS:
            raise ValueError(f"invalid cgroup version: {v}")
        return v

    @field_validator("port_forwards")
    @classmethod
    def _check_ports(cls, v: tuple[int, ...]) -> tuple[int, ...]:
        for port in v:
            if not 1 <= port <= 65535:
                raise ValueError(f"invalid port forward: {port}")
        return v

    @field_validator("socket_forwards")
    @classmethod
    def _check_socket_forwards(cls, v: tuple[str, ...]) -> tuple[str, ...]:
        for path in v:
            if not path.startswith("/"):
                raise ValueError(f"socket forward must be an absolute guest path: {path!r}")
        return v

    @model_validator(mode="before")
    @classmethod
    def _vsock_implies_full_machine(cls, data: Any) -> Any:
        # microvm has no PCI bus for vhost-vsock-pci
        if isinstance(data, dict) and data.get("use_vsock"):
            return {**data, "no_micro": True}
        return data

    @model_validator(mode="after")
    def _check_kvm_flags(self) -> VmConfig:
        if self.require_kvm and self.no_kvm:
            raise ValueError("require_kvm and no_kvm are mutually exclusive")
        return self

    @classmethod
    def build(cls, **options: Any) -> VmConfig:
        """Validate options, raising VmConfigError instead of ValidationError."""
        try:
            return cls(**options)
        except ValidationError as e:
            problems = "; ".join(err["msg"].removeprefix("Value error, ") for err in e.errors())
            raise VmConfigError(
                f"invalid VM configuration: {problems}",
                context={"errors": e.errors(include_url=False)},
            ) from e

    def with_ssh_forward(self) -> VmConfig:
        """Ensure guest port 22 is forwarded when tunnels go over SSH."""
        if self.use_vsock or constants.GUEST_SSH_PORT in self.port_forwards:
            return self
        return self.model_copy(update={"port_forwards": (constants.GUEST_SSH_PORT, *self.port_forwards)})

    def as_flags(self) -> list[str]:
        """Serialize to ``qemu-micro-env run`` flags.

        Used to re-invoke the launcher inside another container with the
        same configuration.
        """
        flags = [
            f"--cgroup-version={self.cgroup_version}",
            f"--num-cpus={self.num_cpus}",
            f"--memory={self.memory}",
            f"--cpu-arch={self.cpu_arch.value}",
            f"--uid={self.uid}",
            f"--gid={self.gid}",
            "--init-cmd",
            self.init_cmd,
        ]
        for enabled, flag in (
            (self.no_kvm, "--no-kvm"),
            (self.require_kvm, "--require-kvm"),
            (self.no_micro, "--no-micro"),
            (self.use_vsock, "--use-vsock"),
            (self.debug_console, "--debug-console"),
        ):
            if enabled:
                flags.append(flag)
        if self.port_forwards:
            flags.append("--vm-port-forward=" + ",".join(str(p) for p in self.port_forwards))
        if self.socket_forwards:
            flags.append("--vm-socket-forward=" + ",".join(self.socket_forwards))
        for arg in self.qemu_extra_args:
            flags.append(f"--qemu-arg={arg}")
        return flags
