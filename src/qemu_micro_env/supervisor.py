"""Hypervisor process supervision.

ProcessSupervisor.run() is the launcher's single blocking call:

    resolve capabilities ──> allocate forward ports ──> build argv
            │ (require_kvm fails here, nothing spawned yet)
            v
    bind port forwarders, vsock bridge / authorized_keys fifo
            v
    spawn QEMU (stdio inherited, SIGKILL on parent death)
            v
    race:  QEMU exit  <──>  guest access (key injection, ssh tunnels)
            v
    teardown: stop QEMU, tunnels, bridge, forwarders, ssh-agent

Host signals received while QEMU runs are forwarded to it verbatim. A
failure while setting up guest access ends the launch and takes QEMU down
with it. A non-zero QEMU exit is raised as HypervisorExitError.
"""

from __future__ import annotations

import asyncio
import contextlib
import ctypes
import signal
from collections.abc import Awaitable, Callable

import psutil

from qemu_micro_env import constants
from qemu_micro_env._logging import get_logger
from qemu_micro_env.config import VmConfig
from qemu_micro_env.exceptions import HypervisorExitError, TunnelError, VmDependencyError, VmLaunchError
from qemu_micro_env.key_injector import KeyInjector
from qemu_micro_env.permission_utils import mkdir_as
from qemu_micro_env.platform_utils import ProcessWrapper, signal_name
from qemu_micro_env.port_forward import PortForwarder, PortForwardRule, allocate_forward_rules
from qemu_micro_env.qemu_cmd import build_qemu_cmd
from qemu_micro_env.resource_cleanup import cleanup_process
from qemu_micro_env.settings import Settings
from qemu_micro_env.socket_tunnel import SshSocketTunnel, VsockBridge
from qemu_micro_env.system_probes import HostCapabilities, resolve_capabilities

logger = get_logger(__name__)

_PR_SET_PDEATHSIG = 1

# Not deliverable by kill(2) handlers, owned by asyncio, or synchronous faults
_UNFORWARDED_SIGNALS = frozenset(
    {
        signal.SIGKILL,
        signal.SIGSTOP,
        signal.SIGCHLD,
        signal.SIGSEGV,
        signal.SIGBUS,
        signal.SIGFPE,
        signal.SIGILL,
        signal.SIGPIPE,
    }
)

Spawner = Callable[[list[str]], Awaitable[asyncio.subprocess.Process]]


def _set_parent_death_signal() -> None:
    """preexec_fn: have the kernel SIGKILL the child when we die."""
    libc = ctypes.CDLL(None, use_errno=True)
    if libc.prctl(_PR_SET_PDEATHSIG, signal.SIGKILL, 0, 0, 0) != 0:
        raise OSError(ctypes.get_errno(), "prctl(PR_SET_PDEATHSIG) failed")


async def _spawn_hypervisor(cmd: list[str]) -> asyncio.subprocess.Process:
    return await asyncio.create_subprocess_exec(
        *cmd,
        stdin=None,
        stdout=None,
        stderr=None,
        preexec_fn=_set_parent_death_signal if psutil.LINUX else None,
    )


def _first_leaf(group: BaseExceptionGroup) -> BaseException:
    exc: BaseException = group
    while isinstance(exc, BaseExceptionGroup):
        exc = exc.exceptions[0]
    return exc


class ProcessSupervisor:
    """Launches one hypervisor and everything that connects the host to it.

    Args:
        config: Validated VM configuration
        settings: Host layout (default: from environment)
        debug: Verbose guest boot and init
        forward_signals: Install host signal handlers that relay to QEMU
        kvm_probe: Override the KVM probe (for testing)
        microvm_probe: Override the machine-type probe (for testing)
        spawn: Override how the argv is executed (for testing)
    """

    def __init__(
        self,
        config: VmConfig,
        settings: Settings | None = None,
        *,
        debug: bool = False,
        forward_signals: bool = True,
        kvm_probe: Callable[[], Awaitable[bool]] | None = None,
        microvm_probe: Callable[[], Awaitable[bool]] | None = None,
        spawn: Spawner | None = None,
    ) -> None:
        self.config = config.with_ssh_forward()
        self.settings = settings or Settings()
        self.debug = debug
        self.forward_signals = forward_signals
        self._kvm_probe = kvm_probe
        self._microvm_probe = microvm_probe
        self._spawn = spawn or _spawn_hypervisor

        self.capabilities: HostCapabilities | None = None
        self.forward_rules: list[PortForwardRule] = []
        self.cmd: list[str] = []
        self.process: ProcessWrapper | None = None

        self._forwarders: list[PortForwarder] = []
        self._tunnels: list[SshSocketTunnel] = []
        self._bridge: VsockBridge | None = None
        self._injector: KeyInjector | None = None
        self._signals: list[int] = []

    async def prepare(self) -> list[str]:
        """Probe the host and build the argument vector. Spawns nothing.

        Raises:
            VmConfigError: KVM required but unavailable, or bad port range.
            VmDependencyError: QEMU can't be probed.
        """
        self.capabilities = await resolve_capabilities(
            self.config,
            self.settings,
            kvm_probe=self._kvm_probe,
            microvm_probe=self._microvm_probe,
        )
        self.forward_rules = await allocate_forward_rules(self.config.port_forwards, self.settings.ip_local_port_range)
        self.cmd = build_qemu_cmd(self.config, self.capabilities, self.settings, self.forward_rules, debug=self.debug)
        return self.cmd

    @property
    def ssh_port(self) -> int | None:
        """Loopback port QEMU forwards to the guest's sshd."""
        for rule in self.forward_rules:
            if rule.guest_port == constants.GUEST_SSH_PORT:
                return rule.local_port
        return None

    async def _bind_host_endpoints(self) -> None:
        cfg = self.config
        await asyncio.to_thread(mkdir_as, self.settings.socket_dir, 0o750, cfg.uid, cfg.gid)

        for rule in self.forward_rules:
            forwarder = PortForwarder(rule.guest_port, rule.local_port)
            await forwarder.start()
            self._forwarders.append(forwarder)

        if cfg.use_vsock:
            self._bridge = VsockBridge(self.settings, cfg.uid, cfg.gid)
            await self._bridge.start()
        else:
            self._injector = KeyInjector(self.settings, cfg.uid, cfg.gid)
            self._injector.prepare()

    async def _open_guest_access(self) -> None:
        """Inject the key, then bring up every socket tunnel concurrently."""
        if self._injector is None:
            return
        agent = await self._injector.inject()

        if not self.config.socket_forwards:
            return
        ssh_port = self.ssh_port
        if ssh_port is None:
            raise TunnelError("socket forwards need guest port 22 forwarded")

        self._tunnels = [
            SshSocketTunnel(self.settings, path, ssh_port, agent.env, self.config.uid, self.config.gid)
            for path in self.config.socket_forwards
        ]
        try:
            async with asyncio.TaskGroup() as tg:
                for tunnel in self._tunnels:
                    tg.create_task(tunnel.establish(), name=f"tunnel:{tunnel.guest_path}")
        except BaseExceptionGroup as eg:
            raise _first_leaf(eg) from None

    def _install_signal_forwarding(self, proc: ProcessWrapper) -> None:
        if not self.forward_signals:
            return
        loop = asyncio.get_running_loop()
        for sig in signal.valid_signals():
            if sig in _UNFORWARDED_SIGNALS:
                continue
            try:
                loop.add_signal_handler(sig, self._relay_signal, proc, sig)
            except (ValueError, RuntimeError, OSError):
                continue
            self._signals.append(sig)

    def _relay_signal(self, proc: ProcessWrapper, sig: int) -> None:
        logger.debug("Forwarding signal to qemu", extra={"signal": signal_name(-sig)})
        try:
            proc.send_signal(sig)
        except OSError as e:
            logger.warning("Failed to forward signal to qemu", extra={"signal": int(sig), "error": str(e)})

    def _remove_signal_forwarding(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in self._signals:
            loop.remove_signal_handler(sig)
        self._signals.clear()

    async def _teardown(self) -> None:
        self._remove_signal_forwarding()
        await cleanup_process(self.process, "qemu", "supervisor")
        for tunnel in self._tunnels:
            await tunnel.close()
        if self._bridge is not None:
            await self._bridge.close()
        for forwarder in self._forwarders:
            await forwarder.close()
        if self._injector is not None:
            await self._injector.close()

    async def run(self) -> int:
        """Launch and supervise the hypervisor until it exits.

        Returns:
            0 when QEMU exits cleanly.

        Raises:
            VmConfigError: Invalid or unsatisfiable configuration (nothing spawned).
            VmDependencyError: QEMU binary missing.
            VmLaunchError: QEMU could not be started.
            KeyInjectionError: Key generation, publication or agent setup failed.
            TunnelError: A socket tunnel failed permanently.
            HypervisorExitError: QEMU exited non-zero or by signal.
        """
        if not self.cmd:
            await self.prepare()

        access_task: asyncio.Task[None] | None = None
        wait_task: asyncio.Task[int] | None = None
        try:
            await self._bind_host_endpoints()

            logger.debug("Executing qemu", extra={"args": self.cmd})
            try:
                self.process = ProcessWrapper(await self._spawn(self.cmd))
            except FileNotFoundError as e:
                raise VmDependencyError(f"error starting qemu: {e}", context={"cmd": self.cmd[0]}) from e
            except OSError as e:
                raise VmLaunchError(f"error starting qemu: {e}", context={"cmd": self.cmd[0]}) from e
            self._install_signal_forwarding(self.process)
            logger.info("qemu started", extra={"pid": self.process.pid})

            wait_task = asyncio.create_task(self.process.wait(), name="qemu-wait")
            access_task = asyncio.create_task(self._open_guest_access(), name="guest-access")
            done, _ = await asyncio.wait({wait_task, access_task}, return_when=asyncio.FIRST_COMPLETED)
            if access_task in done:
                exc = access_task.exception()
                if exc is not None:
                    logger.error("Guest access setup failed, stopping qemu", extra={"error": str(exc)})
                    raise exc
                logger.info("Guest access ready")
            returncode = await wait_task
        finally:
            for task in (access_task, wait_task):
                if task is not None and not task.done():
                    task.cancel()
                    with contextlib.suppress(asyncio.CancelledError):
                        await task
            await self._teardown()

        if returncode != 0:
            sig = signal_name(returncode)
            raise HypervisorExitError(
                f"qemu exited with {'signal ' + sig if sig else f'status {returncode}'}",
                returncode=returncode,
                signal_name=sig,
            )
        logger.info("qemu exited cleanly")
        return 0


async def launch(config: VmConfig, settings: Settings | None = None, *, debug: bool = False) -> int:
    """Convenience wrapper: ``ProcessSupervisor(config, settings).run()``."""
    return await ProcessSupervisor(config, settings, debug=debug).run()
