"""Tests for the guest PID 1 boot steps.

Every privileged step (mknod, mount, netlink, DHCP, sshd) is injected, so
these run unprivileged on the host. The reaper and the authorized_keys
reader use real child processes and FIFOs.
"""

import os
import threading
import time
from ipaddress import IPv4Address, IPv4Interface
from pathlib import Path
from unittest.mock import MagicMock, call

import pytest
from pyroute2 import NetlinkError

from qemu_micro_env import constants
from qemu_micro_env.dhcp import Lease
from qemu_micro_env.exceptions import GuestInitError
from qemu_micro_env.guest_init import (
    GuestInit,
    InitOptions,
    Reaper,
    apply_lease,
    enabled_cgroup_controllers,
    ensure_random_devices,
    mount,
    mount_cgroups,
    power_off,
    primary_interface,
    read_authorized_key,
    render_resolv_conf,
    setup_network,
    strip_kernel_separator,
)
from tests.conftest import skip_unless_linux

PROC_CGROUPS = (
    "#subsys_name\thierarchy\tnum_cgroups\tenabled\n"
    "cpuset\t0\t1\t1\n"
    "cpu\t0\t1\t1\n"
    "memory\t0\t1\t0\n"
    "pids\t0\t1\t1\n"
)

LEASE = Lease(
    interface=IPv4Interface("192.168.76.9/24"),
    broadcast=IPv4Address("192.168.76.255"),
    server=IPv4Address("192.168.76.2"),
    routers=(IPv4Address("192.168.76.1"),),
    dns=(IPv4Address("192.168.76.3"),),
)


@pytest.fixture
def restore_process_state(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """setup_environment() rewrites PATH, HOME, PWD and cwd; put them back afterwards."""
    for key in ("PATH", "HOME", "PWD"):
        monkeypatch.setenv(key, os.environ.get(key, ""))
    monkeypatch.chdir(tmp_path)


class FakeIPRoute:
    """Records netlink requests; ``fail_on`` makes that request kind raise like the kernel would."""

    def __init__(self, links: dict[str, int] | None = None, fail_on: str | None = None) -> None:
        self.links = {"lo": 1, "eth0": 2} if links is None else links
        self.fail_on = fail_on
        self.calls: list[tuple[str, str, dict]] = []
        self.closed = False

    def __enter__(self) -> "FakeIPRoute":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.closed = True

    def link_lookup(self, *, ifname: str) -> list[int]:
        return [self.links[ifname]] if ifname in self.links else []

    def _record(self, kind: str, command: str, kwargs: dict) -> None:
        if kind == self.fail_on:
            raise NetlinkError(17, "File exists")
        self.calls.append((kind, command, kwargs))

    def link(self, command: str, **kwargs: object) -> None:
        self._record("link", command, kwargs)

    def addr(self, command: str, **kwargs: object) -> None:
        self._record("addr", command, kwargs)

    def route(self, command: str, **kwargs: object) -> None:
        self._record("route", command, kwargs)


# ============================================================================
# Arguments
# ============================================================================


class TestStripKernelSeparator:
    """Tests for the kernel's leading '-'."""

    def test_stripped(self) -> None:
        """Everything after the bare dash is init's."""
        assert strip_kernel_separator(["-", "--cgroup-version", "2", "/bin/true"]) == [
            "--cgroup-version",
            "2",
            "/bin/true",
        ]

    def test_absent(self) -> None:
        """No dash, nothing removed."""
        assert strip_kernel_separator(["--debug", "/bin/true"]) == ["--debug", "/bin/true"]


# ============================================================================
# Devices and mounts
# ============================================================================


class TestRandomDevices:
    """Tests for entropy node creation."""

    def test_creates_only_missing(self, tmp_path: Path) -> None:
        """Existing nodes are left alone."""
        (tmp_path / "random").touch()
        mknod = MagicMock()
        devices = ((str(tmp_path / "random"), 1, 8), (str(tmp_path / "urandom"), 1, 9))
        assert ensure_random_devices(devices, mknod=mknod) == [str(tmp_path / "urandom")]
        mknod.assert_called_once()
        assert mknod.call_args.args[2] == os.makedev(1, 9)

    def test_failure_is_fatal(self, tmp_path: Path) -> None:
        """A node that can't be created stops the boot."""
        mknod = MagicMock(side_effect=PermissionError("EPERM"))
        with pytest.raises(GuestInitError, match="error creating"):
            ensure_random_devices(((str(tmp_path / "urandom"), 1, 9),), mknod=mknod)


class TestMount:
    """Tests for mount with target creation."""

    def test_creates_missing_target(self, tmp_path: Path) -> None:
        """ENOENT creates the directory and retries once."""
        target = tmp_path / "sys" / "fs" / "cgroup"
        mounter = MagicMock(side_effect=[FileNotFoundError(2, "No such file or directory"), None])
        mount("cgroup2", str(target), "cgroup2", mounter=mounter)
        assert target.is_dir()
        assert mounter.call_count == 2

    def test_other_errors_fatal(self, tmp_path: Path) -> None:
        """Anything but ENOENT is not retried."""
        mounter = MagicMock(side_effect=PermissionError(1, "Operation not permitted"))
        with pytest.raises(GuestInitError, match="error mounting"):
            mount("cgroup2", str(tmp_path), "cgroup2", mounter=mounter)
        mounter.assert_called_once()

    def test_retry_failure_fatal(self, tmp_path: Path) -> None:
        """A second failure after creating the target is fatal."""
        mounter = MagicMock(side_effect=FileNotFoundError(2, "No such file or directory"))
        with pytest.raises(GuestInitError):
            mount("cgroup2", str(tmp_path / "x"), "cgroup2", mounter=mounter)
        assert mounter.call_count == 2


class TestCgroups:
    """Tests for cgroup hierarchy setup."""

    def test_enabled_controllers(self) -> None:
        """Only controllers with enabled=1 are returned; the header is skipped."""
        assert enabled_cgroup_controllers(PROC_CGROUPS) == ["cpuset", "cpu", "pids"]

    def test_malformed_proc_cgroups(self) -> None:
        """An unexpected enabled column is an error."""
        with pytest.raises(GuestInitError, match="unexpected"):
            enabled_cgroup_controllers("cpu\t0\t1\tmaybe\n")

    def test_v2(self, tmp_path: Path) -> None:
        """v2 is a single unified mount."""
        mounter = MagicMock()
        root = str(tmp_path / "cgroup")
        assert mount_cgroups(2, root=root, mounter=mounter) == [root]
        mounter.assert_called_once_with("cgroup2", root, "cgroup2", "")

    def test_v1(self, tmp_path: Path) -> None:
        """v1 is a tmpfs plus one mount per enabled controller."""
        proc = tmp_path / "cgroups"
        proc.write_text(PROC_CGROUPS)
        mounter = MagicMock()
        root = str(tmp_path / "cgroup")
        targets = mount_cgroups(1, root=root, proc_cgroups=str(proc), mounter=mounter)
        assert targets == [root, f"{root}/cpuset", f"{root}/cpu", f"{root}/pids"]
        assert mounter.call_args_list == [
            call("tmpfs", root, "tmpfs", ""),
            call("cgroup", f"{root}/cpuset", "cgroup", "cpuset"),
            call("cgroup", f"{root}/cpu", "cgroup", "cpu"),
            call("cgroup", f"{root}/pids", "cgroup", "pids"),
        ]

    def test_v1_unreadable_proc(self, tmp_path: Path) -> None:
        """Missing /proc/cgroups is fatal."""
        with pytest.raises(GuestInitError, match="error reading"):
            mount_cgroups(1, root=str(tmp_path), proc_cgroups=str(tmp_path / "missing"), mounter=MagicMock())

    @pytest.mark.parametrize("version", [0, 3])
    def test_invalid_version(self, version: int) -> None:
        """Only 1 and 2 exist."""
        with pytest.raises(GuestInitError, match="invalid cgroup version"):
            mount_cgroups(version, mounter=MagicMock())


# ============================================================================
# Network
# ============================================================================


class TestNetwork:
    """Tests for interface selection and lease application."""

    def test_prefers_eth0(self) -> None:
        """eth0 wins when present."""
        assert primary_interface({"lo": None, "enp1s0": None, "eth0": None}) == "eth0"

    def test_first_non_loopback(self) -> None:
        """Otherwise the first non-lo interface in name order."""
        assert primary_interface({"lo": None, "enp2s0": None, "enp1s0": None}) == "enp1s0"

    def test_none_found(self) -> None:
        """Loopback only is fatal, and the message lists what exists."""
        with pytest.raises(GuestInitError, match="available: lo"):
            primary_interface({"lo": None})

    def test_resolv_conf(self) -> None:
        """One nameserver line per DNS server."""
        assert render_resolv_conf(LEASE) == "nameserver 192.168.76.3\n"

    def test_apply_lease(self) -> None:
        """Address with prefix and broadcast, then a default route via the DHCP server."""
        ipr = FakeIPRoute()
        apply_lease(ipr, 2, LEASE)
        assert ipr.calls == [
            (
                "addr",
                "add",
                {"index": 2, "address": "192.168.76.9", "prefixlen": 24, "broadcast": "192.168.76.255"},
            ),
            ("route", "add", {"gateway": "192.168.76.2", "oif": 2}),
        ]

    def test_setup_network(self, tmp_path: Path) -> None:
        """Links come up before DHCP runs; the lease is applied and DNS written."""
        ipr = FakeIPRoute()
        resolv = tmp_path / "resolv.conf"

        def dhcp(name: str) -> Lease:
            assert ("link", "set", {"index": 2, "state": "up"}) in ipr.calls
            return LEASE

        lease = setup_network(interface="eth0", netlink=lambda: ipr, dhcp=dhcp, resolv_conf=str(resolv))
        assert lease is LEASE
        assert ipr.calls[:2] == [
            ("link", "set", {"index": 1, "state": "up"}),
            ("link", "set", {"index": 2, "state": "up"}),
        ]
        assert [c[0] for c in ipr.calls[2:]] == ["addr", "route"]
        assert ipr.closed
        assert resolv.read_text() == "nameserver 192.168.76.3\n"

    def test_no_dns_leaves_resolv_conf(self, tmp_path: Path) -> None:
        """A lease without DNS servers doesn't touch resolv.conf."""
        resolv = tmp_path / "resolv.conf"
        lease = Lease(interface=LEASE.interface, broadcast=LEASE.broadcast, server=LEASE.server)
        setup_network(interface="eth0", netlink=FakeIPRoute, dhcp=lambda name: lease, resolv_conf=str(resolv))
        assert not resolv.exists()

    def test_missing_link(self) -> None:
        """An interface netlink doesn't know is fatal."""
        with pytest.raises(GuestInitError, match="interface eth1 not found"):
            setup_network(interface="eth1", netlink=FakeIPRoute, dhcp=lambda name: LEASE)

    def test_netlink_failure(self) -> None:
        """A kernel refusal stops the boot."""
        ipr = FakeIPRoute(fail_on="route")
        with pytest.raises(GuestInitError, match="error configuring eth0") as exc_info:
            setup_network(interface="eth0", netlink=lambda: ipr, dhcp=lambda name: LEASE)
        assert isinstance(exc_info.value.__cause__, NetlinkError)
        assert ipr.closed


# ============================================================================
# Processes
# ============================================================================


@skip_unless_linux
class TestReaper:
    """Tests for child reaping and the power-off trigger."""

    def _spawn(self, script: str) -> int:
        return os.posix_spawnp("sh", ["sh", "-c", script], os.environ)

    def _reap_until(self, reaper: Reaper, pid: int) -> None:
        deadline = time.monotonic() + 5
        while pid not in reaper.exited:
            assert time.monotonic() < deadline, "child never reaped"
            reaper.reap()
            time.sleep(0.01)

    def test_workload_exit_triggers(self) -> None:
        """Reaping the watched pid reports its exit status."""
        statuses: list[int] = []
        reaper = Reaper(on_main_exit=statuses.append)
        pid = self._spawn("exit 5")
        reaper.watch(pid)
        self._reap_until(reaper, pid)
        assert statuses == [5]

    def test_other_children_reaped_silently(self) -> None:
        """Orphans are collected without powering off."""
        statuses: list[int] = []
        reaper = Reaper(on_main_exit=statuses.append)
        main = self._spawn("sleep 5")
        reaper.watch(main)
        orphan = self._spawn("exit 0")
        try:
            self._reap_until(reaper, orphan)
            assert statuses == []
        finally:
            os.kill(main, 9)
            self._reap_until(reaper, main)
        assert statuses == [-9]

    def test_exit_before_watch(self) -> None:
        """A workload that died before watch() still triggers."""
        statuses: list[int] = []
        reaper = Reaper(on_main_exit=statuses.append)
        pid = self._spawn("exit 3")
        self._reap_until(reaper, pid)
        assert statuses == []
        reaper.watch(pid)
        assert statuses == [3]


@skip_unless_linux
class TestPowerOff:
    """Tests for the final shutdown."""

    def test_flushes_console_before_reboot(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Queued log lines reach the console before the disks sync and the VM halts."""
        steps = MagicMock()
        monkeypatch.setattr("qemu_micro_env.guest_init.flush_logging", steps.flush_logging)
        monkeypatch.setattr("qemu_micro_env.guest_init.os.sync", steps.sync)
        monkeypatch.setattr("qemu_micro_env.guest_init.ctypes.CDLL", steps.CDLL)
        power_off()
        assert steps.mock_calls == [
            call.flush_logging(),
            call.sync(),
            call.CDLL(None, use_errno=True),
            call.CDLL().reboot(0x4321FEDC),
        ]


@skip_unless_linux
class TestReadAuthorizedKey:
    """Tests for installing the host's key from the virtio port."""

    def test_reads_one_line(self, tmp_path: Path) -> None:
        """The first line is installed with mode 0600; a partial read keeps waiting."""
        pipe = tmp_path / "authorized_keys"
        os.mkfifo(pipe)

        def host() -> None:
            fd = os.open(pipe, os.O_WRONLY)
            os.write(fd, b"ssh-rsa AAAA")
            time.sleep(0.05)
            os.write(fd, b"B3 launch\ntrailing")
            os.close(fd)

        writer = threading.Thread(target=host, daemon=True)
        writer.start()
        line = read_authorized_key(str(pipe), home=str(tmp_path / "root"), poll_interval=0.01)
        writer.join(timeout=5)

        keys = tmp_path / "root" / ".ssh" / "authorized_keys"
        assert line == b"ssh-rsa AAAAB3 launch\n"
        assert keys.read_bytes() == b"ssh-rsa AAAAB3 launch\n"
        assert keys.stat().st_mode & 0o777 == 0o600
        assert keys.parent.stat().st_mode & 0o777 == 0o700

    def test_existing_file_tightened(self, tmp_path: Path) -> None:
        """A world-readable authorized_keys left by the image ends up 0600."""
        pipe = tmp_path / "authorized_keys"
        os.mkfifo(pipe)
        keys = tmp_path / "root" / ".ssh" / "authorized_keys"
        keys.parent.mkdir(parents=True)
        keys.write_bytes(b"ssh-ed25519 stale\n")
        keys.chmod(0o644)

        def host() -> None:
            fd = os.open(pipe, os.O_WRONLY)
            os.write(fd, b"ssh-rsa fresh\n")
            os.close(fd)

        writer = threading.Thread(target=host, daemon=True)
        writer.start()
        read_authorized_key(str(pipe), home=str(tmp_path / "root"), poll_interval=0.01)
        writer.join(timeout=5)

        assert keys.read_bytes() == b"ssh-rsa fresh\n"
        assert keys.stat().st_mode & 0o777 == 0o600

    def test_missing_pipe(self, tmp_path: Path) -> None:
        """No port means no key: fatal."""
        with pytest.raises(GuestInitError, match="error opening ssh key pipe"):
            read_authorized_key(str(tmp_path / "missing"), home=str(tmp_path))


# ============================================================================
# Boot sequence
# ============================================================================


@skip_unless_linux
class TestGuestInitBoot:
    """Tests for the ordered boot with stubbed steps."""

    def _init(self, options: InitOptions, order: list[str]) -> GuestInit:
        reaper = MagicMock(spec=Reaper)
        reaper.install.side_effect = lambda: order.append("reaper")
        reaper.watch.side_effect = lambda pid: order.append("watch")
        mounter = MagicMock(side_effect=lambda *a: order.append("mount"))
        return GuestInit(
            options=options,
            reaper=reaper,
            mounter=mounter,
            network=lambda: order.append("network"),
            sshd=lambda: order.append("sshd"),
            agent=lambda: order.append("agent"),
            debug_shell=lambda: order.append("shell"),
        )

    @pytest.mark.usefixtures("restore_process_state")
    def test_order_vsock(self) -> None:
        """Steps run in order and the workload is handed to the reaper."""
        order: list[str] = []
        init = self._init(InitOptions(vsock=True, command=("sh", "-c", "exit 0")), order)
        pid = init.boot()
        assert init.workload is not None
        init.workload.wait()

        assert order == ["mount", "network", "reaper", "sshd", "agent", "watch"]
        init.reaper.watch.assert_called_once_with(pid)
        assert os.environ["PATH"] == constants.GUEST_PATH_ENV
        assert os.environ["HOME"] == constants.GUEST_HOME
        assert os.getcwd() == "/"

    @pytest.mark.usefixtures("restore_process_state")
    def test_debug_console_first(self) -> None:
        """The debug shell runs before any other setup."""
        order: list[str] = []
        init = self._init(InitOptions(vsock=True, debug_console=True, command=("true",)), order)
        init.boot()
        init.workload.wait()
        assert order[0] == "shell"

    @pytest.mark.usefixtures("restore_process_state")
    def test_missing_workload(self) -> None:
        """An unstartable workload is fatal."""
        init = self._init(InitOptions(vsock=True, command=("/nonexistent/dockerd",)), [])
        with pytest.raises(GuestInitError, match="/nonexistent/dockerd"):
            init.boot()

    @pytest.mark.usefixtures("restore_process_state")
    def test_step_failure_stops_boot(self) -> None:
        """A failing step prevents everything after it."""
        order: list[str] = []
        init = self._init(InitOptions(vsock=True), order)

        def network() -> None:
            raise GuestInitError("DHCP failed on eth0")

        init.network = network
        with pytest.raises(GuestInitError, match="DHCP"):
            init.boot()
        assert "sshd" not in order
        assert init.workload is None


def test_init_options_defaults() -> None:
    """Defaults match the launcher's kernel command line."""
    opts = InitOptions()
    assert opts.cgroup_version == 2
    assert opts.command == ("/usr/local/bin/dockerd-init",)
    assert opts.authorized_keys_pipe == "/dev/virtio-ports/authorized_keys"
