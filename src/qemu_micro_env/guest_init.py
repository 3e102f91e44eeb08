"""Guest PID 1.

Boot sequence, one shot, any failure is fatal:

    env ─> [debug shell] ─> /dev/random ─> cgroups ─> network (DHCP)
        ─> reaper ─> sshd ─> guest agent ─> [authorized_keys] ─> workload

The workload's exit is the guest's terminal event: the reaper sees it
and powers the VM off.
"""

from __future__ import annotations

import ctypes
import os
import signal
import stat
import subprocess
import threading
import time
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO

import psutil
from pyroute2 import IPRoute, NetlinkError

from qemu_micro_env import constants
from qemu_micro_env._logging import flush_logging, get_logger
from qemu_micro_env.dhcp import DhcpClient, Lease
from qemu_micro_env.exceptions import GuestInitError
from qemu_micro_env.guest_agent import GuestAgent, start_agent_thread

logger = get_logger(__name__)

_LINUX_REBOOT_CMD_POWER_OFF = 0x4321FEDC

Mounter = Callable[[str, str, str, str], None]


def strip_kernel_separator(args: Sequence[str]) -> list[str]:
    """Drop the bare ``-`` the kernel leaves between its own args and init's."""
    if len(args) > 1 and args[0] == "-":
        return list(args[1:])
    return list(args)


@dataclass(frozen=True)
class InitOptions:
    cgroup_version: int = constants.DEFAULT_CGROUP_VERSION
    debug: bool = False
    debug_console: bool = False
    vsock: bool = False
    authorized_keys_pipe: str = constants.GUEST_AUTHORIZED_KEYS_PIPE
    command: tuple[str, ...] = (constants.DEFAULT_INIT_CMD,)


def setup_environment() -> None:
    os.environ["PATH"] = constants.GUEST_PATH_ENV
    os.environ["HOME"] = constants.GUEST_HOME
    os.chdir("/")
    os.environ["PWD"] = "/"


# ============================================================================
# Devices and mounts
# ============================================================================


def ensure_random_devices(
    devices: Iterable[tuple[str, int, int]] = constants.RANDOM_DEVICES,
    mknod: Callable[[str, int, int], None] = os.mknod,
) -> list[str]:
    """Create missing entropy device nodes. Returns the paths created.

    Raises:
        GuestInitError: If a node can't be created.
    """
    created = []
    for path, major, minor in devices:
        if os.path.exists(path):
            continue
        try:
            mknod(path, stat.S_IFCHR | 0o666, os.makedev(major, minor))
        except OSError as e:
            raise GuestInitError(f"error creating {path}: {e}", context={"path": path}) from e
        created.append(path)
    return created


def _libc_mount(source: str, target: str, fstype: str, data: str) -> None:
    libc = ctypes.CDLL(None, use_errno=True)
    mount = libc.mount
    mount.argtypes = [ctypes.c_char_p, ctypes.c_char_p, ctypes.c_char_p, ctypes.c_ulong, ctypes.c_char_p]
    mount.restype = ctypes.c_int
    if mount(source.encode(), target.encode(), fstype.encode(), 0, data.encode() if data else None) != 0:
        err = ctypes.get_errno()
        raise OSError(err, os.strerror(err), target)


def mount(source: str, target: str, fstype: str, data: str = "", *, mounter: Mounter = _libc_mount) -> None:
    """Mount, creating a missing target directory and retrying once.

    Raises:
        GuestInitError: If the mount fails.
    """
    try:
        mounter(source, target, fstype, data)
        return
    except FileNotFoundError:
        pass
    except OSError as e:
        raise GuestInitError(f"error mounting {target}: {e}", context={"fstype": fstype}) from e

    try:
        os.makedirs(target, mode=0o755, exist_ok=True)
        mounter(source, target, fstype, data)
    except OSError as e:
        raise GuestInitError(f"error mounting {target}: {e}", context={"fstype": fstype}) from e


def enabled_cgroup_controllers(text: str) -> list[str]:
    """Controllers marked enabled in /proc/cgroups (last column)."""
    controllers = []
    for line in text.splitlines():
        fields = line.split()
        if not fields or fields[0].startswith("#"):
            continue
        if fields[-1] not in ("0", "1"):
            raise GuestInitError(f"unexpected /proc/cgroups line: {line!r}")
        if fields[-1] == "1":
            controllers.append(fields[0])
    return controllers


def mount_cgroups(
    version: int,
    *,
    root: str = constants.CGROUP_ROOT,
    proc_cgroups: str = constants.PROC_CGROUPS,
    mounter: Mounter = _libc_mount,
) -> list[str]:
    """Mount the cgroup hierarchy. Returns the mounted targets.

    Raises:
        GuestInitError: Unsupported version, unreadable /proc/cgroups or mount failure.
    """
    if version == 2:
        mount("cgroup2", root, "cgroup2", mounter=mounter)
        return [root]
    if version != 1:
        raise GuestInitError(f"invalid cgroup version: {version}", context={"version": version})

    mount("tmpfs", root, "tmpfs", mounter=mounter)
    try:
        text = Path(proc_cgroups).read_text()
    except OSError as e:
        raise GuestInitError(f"error reading {proc_cgroups}: {e}") from e

    targets = [root]
    for controller in enabled_cgroup_controllers(text):
        target = f"{root}/{controller}"
        mount("cgroup", target, "cgroup", controller, mounter=mounter)
        targets.append(target)
    return targets


# ============================================================================
# Network
# ============================================================================


def primary_interface(stats: dict[str, object] | None = None) -> str:
    """eth0 if present, else the first non-loopback interface.

    Raises:
        GuestInitError: No candidate; the message lists what exists.
    """
    names = sorted(stats if stats is not None else psutil.net_if_stats())
    if "eth0" in names:
        return "eth0"
    for name in names:
        if name != "lo":
            return name
    raise GuestInitError(f"no network interface found, available: {', '.join(names) or 'none'}")


def _link_index(ipr: IPRoute, name: str) -> int:
    indexes = ipr.link_lookup(ifname=name)
    if not indexes:
        raise GuestInitError(f"interface {name} not found", context={"interface": name})
    return indexes[0]


def apply_lease(ipr: IPRoute, index: int, lease: Lease) -> None:
    """Address with broadcast, then the default route via the DHCP server."""
    ipr.addr(
        "add",
        index=index,
        address=str(lease.interface.ip),
        prefixlen=lease.interface.network.prefixlen,
        broadcast=str(lease.broadcast),
    )
    ipr.route("add", gateway=str(lease.gateway), oif=index)


def render_resolv_conf(lease: Lease) -> str:
    return "".join(f"nameserver {addr}\n" for addr in lease.dns)


def setup_network(
    *,
    interface: str | None = None,
    netlink: Callable[[], IPRoute] = IPRoute,
    dhcp: Callable[[str], Lease] | None = None,
    resolv_conf: str = constants.GUEST_RESOLV_CONF,
) -> Lease:
    """Bring up lo and the primary interface, then apply a DHCP lease.

    Raises:
        GuestInitError: Missing interface, DHCP failure or a netlink error.
    """
    iface = interface or primary_interface()
    try:
        with netlink() as ipr:
            ipr.link("set", index=_link_index(ipr, "lo"), state="up")
            index = _link_index(ipr, iface)
            ipr.link("set", index=index, state="up")

            lease = (dhcp or (lambda name: DhcpClient(name).request()))(iface)
            apply_lease(ipr, index, lease)
    except NetlinkError as e:
        raise GuestInitError(f"error configuring {iface}: {e}", context={"interface": iface}) from e

    if lease.dns:
        try:
            Path(resolv_conf).write_text(render_resolv_conf(lease))
        except OSError as e:
            raise GuestInitError(f"error writing {resolv_conf}: {e}") from e
    logger.info("Network configured", extra={"interface": iface, "address": str(lease.interface)})
    return lease


# ============================================================================
# Processes
# ============================================================================


def power_off() -> None:
    flush_logging()
    os.sync()
    libc = ctypes.CDLL(None, use_errno=True)
    libc.reboot(_LINUX_REBOOT_CMD_POWER_OFF)


class Reaper:
    """SIGCHLD handler that collects every exited child.

    When the workload (or pid 1, should it ever show up) is reaped,
    ``on_main_exit`` is called with its exit status.
    """

    def __init__(self, on_main_exit: Callable[[int], None] = lambda _status: power_off()) -> None:
        self.on_main_exit = on_main_exit
        self.main_pid: int | None = None
        self.exited: dict[int, int] = {}

    def install(self) -> None:
        signal.signal(signal.SIGCHLD, self._on_sigchld)

    def _on_sigchld(self, _signum: int, _frame: object) -> None:
        self.reap()

    def watch(self, pid: int) -> None:
        """Mark *pid* as the workload. Covers it having exited already."""
        self.main_pid = pid
        if pid in self.exited:
            self._main_exited(self.exited[pid])

    def _main_exited(self, status: int) -> None:
        logger.info("Workload exited, powering off", extra={"status": status})
        self.on_main_exit(status)

    def reap(self) -> list[tuple[int, int]]:
        """Collect all exited children without blocking.

        Raises:
            OSError: wait4 failed for a reason other than ECHILD.
        """
        reaped = []
        while True:
            try:
                pid, status, _ = os.wait4(-1, os.WNOHANG)
            except ChildProcessError:
                break
            if pid == 0:
                break
            code = os.waitstatus_to_exitcode(status)
            self.exited[pid] = code
            reaped.append((pid, code))
            if pid == 1 or pid == self.main_pid:
                self._main_exited(code)
        return reaped


def _log_stream(stream: IO[bytes], component: str) -> None:
    for raw in stream:
        line = raw.decode(errors="replace").rstrip()
        if line:
            logger.info(line, extra={"component": component})


def start_sshd(run_dir: str = constants.SSHD_RUN_DIR, sshd: str = constants.SSHD_BIN) -> subprocess.Popen[bytes]:
    """Start ``sshd -D`` with its stderr fed into the log.

    Raises:
        GuestInitError: If the run directory or the daemon can't be created.
    """
    try:
        os.makedirs(run_dir, mode=0o755, exist_ok=True)
        proc = subprocess.Popen([sshd, "-D"], stdin=subprocess.DEVNULL, stderr=subprocess.PIPE)
    except OSError as e:
        raise GuestInitError(f"error starting sshd: {e}") from e
    if proc.stderr is not None:
        threading.Thread(target=_log_stream, args=(proc.stderr, "sshd"), name="sshd-log", daemon=True).start()
    return proc


def read_authorized_key(
    pipe: str = constants.GUEST_AUTHORIZED_KEYS_PIPE,
    home: str = constants.GUEST_HOME,
    poll_interval: float = constants.GUEST_EOF_POLL_SECONDS,
) -> bytes:
    """Block until the host sends one line on *pipe* and install it as authorized_keys.

    Raises:
        GuestInitError: On any I/O error other than an empty read.
    """
    try:
        fd = os.open(pipe, os.O_RDONLY | os.O_CLOEXEC)
    except OSError as e:
        raise GuestInitError(f"error opening ssh key pipe {pipe}: {e}") from e

    line = b""
    try:
        logger.info("Waiting for ssh key", extra={"pipe": pipe})
        while b"\n" not in line:
            try:
                chunk = os.read(fd, 4096)
            except OSError as e:
                raise GuestInitError(f"error reading ssh key: {e}") from e
            if not chunk:
                time.sleep(poll_interval)
                continue
            line += chunk
    finally:
        os.close(fd)
    line = line[: line.index(b"\n") + 1]

    ssh_dir = Path(home) / ".ssh"
    try:
        ssh_dir.mkdir(mode=0o700, parents=True, exist_ok=True)
        keys = ssh_dir / "authorized_keys"
        fd = os.open(keys, os.O_WRONLY | os.O_CREAT | os.O_TRUNC | os.O_CLOEXEC, 0o600)
        os.fchmod(fd, 0o600)
        with os.fdopen(fd, "wb") as f:
            f.write(line)
    except OSError as e:
        raise GuestInitError(f"error writing authorized_keys: {e}") from e
    logger.info("Wrote authorized_keys")
    return line


def _run_debug_shell() -> None:
    logger.info("Debug console: init continues when the shell exits")
    try:
        subprocess.run([constants.GUEST_DEBUG_SHELL], check=False)
    except OSError as e:
        logger.error("Debug shell failed", extra={"error": str(e)})


@dataclass
class GuestInit:
    """The boot sequence with its side-effecting steps swappable for tests."""

    options: InitOptions
    reaper: Reaper = field(default_factory=Reaper)
    mounter: Mounter = _libc_mount
    network: Callable[[], object] = setup_network
    sshd: Callable[[], object] = start_sshd
    agent: Callable[[], object] = lambda: start_agent_thread(GuestAgent())
    debug_shell: Callable[[], None] = _run_debug_shell
    workload: subprocess.Popen[bytes] | None = None

    def boot(self) -> int:
        """Run every step up to and including spawning the workload. Returns its pid."""
        opts = self.options
        setup_environment()
        logger.info("init starting", extra={"options": opts})

        if opts.debug_console:
            self.debug_shell()

        ensure_random_devices()
        mount_cgroups(opts.cgroup_version, mounter=self.mounter)
        self.network()

        self.reaper.install()
        self.sshd()
        self.agent()
        if not opts.vsock:
            read_authorized_key(opts.authorized_keys_pipe)

        logger.info("Welcome to the vm!")
        try:
            self.workload = subprocess.Popen(list(opts.command), env={**os.environ, "PATH": constants.GUEST_PATH_ENV})
        except OSError as e:
            raise GuestInitError(f"error starting {opts.command[0]}: {e}") from e
        self.reaper.watch(self.workload.pid)
        return self.workload.pid

    def run(self) -> None:
        """Boot, then sleep forever; the reaper ends the VM."""
        self.boot()
        while True:
            signal.pause()
