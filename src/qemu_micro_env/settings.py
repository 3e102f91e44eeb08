"""Runtime configuration from environment variables."""

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from qemu_micro_env import constants


class Settings(BaseSettings):
    """Host layout for the launcher.

    The defaults match the launcher container image. Everything can be
    overridden with a QEMU_MICRO_ENV_ prefixed env var.
    Example: QEMU_MICRO_ENV_SOCKET_DIR=/run/micro-env
    """

    model_config = SettingsConfigDict(
        env_prefix="QEMU_MICRO_ENV_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    # QEMU and guest artifacts
    qemu_bin_dir: Path = Path("/usr/bin")
    rootfs_path: Path = Path("/tmp/rootfs.qcow2")  # noqa: S108
    kernel_path: Path = Path("/boot/vmlinuz")
    initrd_path: Path = Path("/boot/initrd.img")

    # Host sockets shared with the caller (bind-mounted from the outside)
    socket_dir: Path = Path("/tmp/sockets")  # noqa: S108

    # Host probes
    kvm_device: Path = Path("/dev/kvm")
    cpuinfo_path: Path = Path("/proc/cpuinfo")
    ip_local_port_range: Path = Path("/proc/sys/net/ipv4/ip_local_port_range")

    # SSH tooling
    ssh_bin: str = "/usr/bin/ssh"
    ssh_agent_bin: str = "ssh-agent"
    ssh_add_bin: str = "ssh-add"

    # vsock
    guest_cid: int = constants.GUEST_CID
    vsock_port: int = constants.VSOCK_PORT

    # Retry cadence
    ssh_retry_interval: float = Field(default=constants.SSH_RETRY_INTERVAL_SECONDS, gt=0)
    ssh_retry_warn_every: int = Field(default=constants.SSH_RETRY_WARN_EVERY, ge=1)
    vsock_retry_interval: float = Field(default=constants.VSOCK_RETRY_INTERVAL_SECONDS, gt=0)
    vsock_retry_warn_every: int = Field(default=constants.VSOCK_RETRY_WARN_EVERY, ge=1)

    def qemu_bin(self, arch: str) -> Path:
        """Path of the system emulator for a normalized architecture."""
        return self.qemu_bin_dir / f"qemu-system-{arch}"

    @property
    def authorized_keys_fifo(self) -> Path:
        return self.socket_dir / constants.AUTHORIZED_KEYS_CHANNEL

    @property
    def agent_socket(self) -> Path:
        return self.socket_dir / "agent.sock"

    @property
    def docker_socket(self) -> Path:
        return self.socket_dir / "docker.sock"

    def forwarded_socket(self, guest_path: str) -> Path:
        """Host path for a tunneled guest socket: <socket_dir>/s/<guest path>."""
        return self.socket_dir / "s" / guest_path.lstrip("/")
