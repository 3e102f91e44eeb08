"""Constants for qemu-micro-env: guest layout, wire formats and retry cadence."""

from typing import Final

# ============================================================================
# VM Defaults
# ============================================================================

DEFAULT_CGROUP_VERSION: Final[int] = 2
DEFAULT_NUM_CPUS: Final[int] = 2
DEFAULT_MEMORY: Final[str] = "4G"
"""Passed verbatim to ``qemu -m``; any suffix QEMU accepts is fine."""

DEFAULT_INIT_CMD: Final[str] = "/usr/local/bin/dockerd-init"
"""Workload GuestInit runs after setup (the container runtime daemon)."""

SUPPORTED_CGROUP_VERSIONS: Final[frozenset[int]] = frozenset({1, 2})

# ============================================================================
# Hypervisor Command Line
# ============================================================================

MICROVM_MACHINE: Final[str] = "microvm"
FULL_MACHINE: Final[str] = "virt"

MICROVM_KVM_OPTS: Final[str] = ",x-option-roms=off,isa-serial=off,rtc=off"
"""Only valid together with KVM; TCG microvm needs the legacy ROMs and RTC."""

KVM_ACCEL_ARGS: Final[tuple[str, ...]] = ("-enable-kvm", "-cpu", "host")

BASE_KERNEL_ARGS: Final[tuple[str, ...]] = ("root=/dev/vda", "rw", "reboot=t", "panic=-1", "ip=dhcp")

KERNEL_INIT_ARGS: Final[tuple[str, ...]] = ("init=/sbin/init", "console=hvc0")

INIT_ARGS_SEPARATOR: Final[str] = "-"
"""Kernel hands everything after a bare ``-`` to init as argv."""

GUEST_NETWORK: Final[str] = "192.168.76.0/24"
GUEST_DHCP_START: Final[str] = "192.168.76.9"

AUTHORIZED_KEYS_CHANNEL: Final[str] = "authorized_keys"
"""virtserialport name; shows up in the guest as /dev/virtio-ports/authorized_keys."""

# ============================================================================
# Host <-> Guest Transports
# ============================================================================

GUEST_CID: Final[int] = 10
VSOCK_PORT: Final[int] = 2375
"""Port the in-guest container runtime listens on over vsock."""

GUEST_SSH_PORT: Final[int] = 22
LOOPBACK_HOST: Final[str] = "127.0.0.1"
FORWARD_BIND_HOST: Final[str] = "0.0.0.0"  # noqa: S104

SSH_RETRYABLE_MARKERS: Final[tuple[str, ...]] = ("Connection refused", "Connection reset by peer")

SSH_RETRY_INTERVAL_SECONDS: Final[float] = 0.1
SSH_RETRY_WARN_EVERY: Final[int] = 100
VSOCK_RETRY_INTERVAL_SECONDS: Final[float] = 0.25
VSOCK_RETRY_WARN_EVERY: Final[int] = 10

PROXY_CHUNK_SIZE: Final[int] = 64 * 1024

# ============================================================================
# Guest Paths
# ============================================================================

GUEST_PATH_ENV: Final[str] = "/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin"
GUEST_HOME: Final[str] = "/root"

GUEST_AGENT_DEVICE: Final[str] = "/dev/virtio-ports/org.qemu.guest_agent.0"
GUEST_AUTHORIZED_KEYS_PIPE: Final[str] = "/dev/virtio-ports/authorized_keys"

GUEST_EOF_POLL_SECONDS: Final[float] = 0.1
"""Sleep between reads when a virtio port has no peer yet and returns EOF."""

CGROUP_ROOT: Final[str] = "/sys/fs/cgroup"
PROC_CGROUPS: Final[str] = "/proc/cgroups"

SSHD_BIN: Final[str] = "/usr/sbin/sshd"
SSHD_RUN_DIR: Final[str] = "/run/sshd"
GUEST_DEBUG_SHELL: Final[str] = "/bin/sh"
GUEST_RESOLV_CONF: Final[str] = "/etc/resolv.conf"

# ============================================================================
# Host Devices
# ============================================================================

KVM_DEVICE_MAJOR: Final[int] = 10
KVM_DEVICE_MINOR: Final[int] = 232

RANDOM_DEVICES: Final[tuple[tuple[str, int, int], ...]] = (
    ("/dev/random", 1, 8),
    ("/dev/urandom", 1, 9),
)
"""(path, major, minor) of the entropy nodes GuestInit creates when absent."""

RSA_KEY_BITS: Final[int] = 4096
