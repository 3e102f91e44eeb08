"""Expose guest UNIX sockets (the container runtime's control socket) on the host.

Two transports, picked by ``VmConfig.use_vsock``:

SshSocketTunnel
    Runs ``ssh -nNT -L <host sock>:<guest sock>`` against the forwarded SSH
    port, authenticating through the launch ssh-agent. While the guest is
    still booting ssh fails with "Connection refused" or "Connection reset
    by peer", and those attempts are retried every 100ms. Any other
    failure is fatal. Once the host socket appears it is chowned to
    uid:gid, and the ssh process is kept until the tunnel is closed.

VsockBridge
    Listens on <socket_dir>/docker.sock. Each connection dials the guest
    over AF_VSOCK (CID 10, port 2375), retrying every 250ms, and then
    splices the two streams.
"""

from __future__ import annotations

import asyncio
import contextlib
import errno
import os
import socket
from collections.abc import Awaitable, Callable
from pathlib import Path

from qemu_micro_env import constants
from qemu_micro_env._logging import get_logger
from qemu_micro_env.exceptions import TunnelError, TunnelTransientError, VsockDialError
from qemu_micro_env.permission_utils import chown_if_needed, mkdir_as
from qemu_micro_env.platform_utils import ProcessWrapper
from qemu_micro_env.port_forward import splice_streams
from qemu_micro_env.resource_cleanup import cleanup_file, cleanup_process
from qemu_micro_env.retry import RetryPolicy
from qemu_micro_env.settings import Settings
from qemu_micro_env.subprocess_utils import drain_stderr, log_task_exception, wait_for_socket

logger = get_logger(__name__)

StreamPair = tuple[asyncio.StreamReader, asyncio.StreamWriter]


def is_retryable_ssh_output(output: str) -> bool:
    """Whether ssh failed only because the guest isn't accepting yet."""
    return any(marker in output for marker in constants.SSH_RETRYABLE_MARKERS)


class _SshExited(Exception):
    pass


class SshSocketTunnel:
    """One ``ssh -L`` forward of a guest UNIX socket to a host path.

    Args:
        settings: Host layout and retry cadence
        guest_path: Absolute socket path inside the guest
        ssh_port: Host port forwarded to guest port 22
        agent_env: Environment carrying SSH_AUTH_SOCK
        uid: Owner for the host socket and its directory
        gid: Group for the host socket and its directory
    """

    def __init__(
        self,
        settings: Settings,
        guest_path: str,
        ssh_port: int,
        agent_env: dict[str, str],
        uid: int,
        gid: int,
    ) -> None:
        self.settings = settings
        self.guest_path = guest_path
        self.ssh_port = ssh_port
        self.agent_env = agent_env
        self.uid = uid
        self.gid = gid
        self.local_path = settings.forwarded_socket(guest_path)
        self.attempts = 0
        self._proc: ProcessWrapper | None = None
        self._drain_task: asyncio.Task[None] | None = None
        self.policy = RetryPolicy(
            f"ssh tunnel {guest_path}",
            interval=settings.ssh_retry_interval,
            retryable=lambda e: isinstance(e, TunnelTransientError),
            warn_every=settings.ssh_retry_warn_every,
        )

    def ssh_command(self) -> list[str]:
        return [
            self.settings.ssh_bin,
            "-nNT",
            "-o",
            "BatchMode=yes",
            "-o",
            "StrictHostKeyChecking=no",
            "-o",
            "UserKnownHostsFile=/dev/null",
            "-o",
            "ExitOnForwardFailure=yes",
            "-o",
            "ConnectTimeout=10",
            "-L",
            f"{self.local_path}:{self.guest_path}",
            "-l",
            "root",
            "-p",
            str(self.ssh_port),
            constants.LOOPBACK_HOST,
        ]

    async def _attempt(self) -> None:
        self.attempts += 1
        self.local_path.unlink(missing_ok=True)
        proc = ProcessWrapper(
            await asyncio.create_subprocess_exec(
                *self.ssh_command(),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
                env={**os.environ, **self.agent_env},
            )
        )

        def abort_if_exited() -> None:
            if proc.returncode is not None:
                raise _SshExited

        exit_task = asyncio.create_task(proc.wait())
        ready_task = asyncio.create_task(
            wait_for_socket(self.local_path, abort_check=abort_if_exited)
        )
        try:
            done, _ = await asyncio.wait({exit_task, ready_task}, return_when=asyncio.FIRST_COMPLETED)
            if ready_task in done:
                exc = ready_task.exception()
                if exc is None:
                    self._proc = proc
                    return
                if not isinstance(exc, _SshExited):
                    raise exc
        except BaseException:
            await cleanup_process(proc, "ssh", self.guest_path)
            raise
        finally:
            for task in (exit_task, ready_task):
                if not task.done():
                    task.cancel()
                with contextlib.suppress(BaseException):
                    await task

        await proc.wait()
        stderr = (await proc.stderr.read()).decode(errors="replace") if proc.stderr else ""
        if is_retryable_ssh_output(stderr):
            raise TunnelTransientError(stderr.strip(), context={"guest_path": self.guest_path})
        raise TunnelError(
            f"error starting ssh tunnel for {self.guest_path}: exit {proc.returncode}",
            output=stderr.strip(),
            context={"guest_path": self.guest_path, "returncode": proc.returncode},
        )

    async def establish(self) -> Path:
        """Retry until the forward is up, then hand the host socket to uid:gid.

        Returns:
            Host socket path

        Raises:
            TunnelError: On a non-retryable ssh failure or filesystem error.
        """
        try:
            await asyncio.to_thread(mkdir_as, self.local_path.parent, 0o750, self.uid, self.gid)
        except OSError as e:
            raise TunnelError(f"error creating socket directory: {e}", context={"path": str(self.local_path)}) from e

        await self.policy.call(self._attempt)

        try:
            chown_if_needed(self.local_path, self.uid, self.gid)
        except OSError as e:
            raise TunnelError(f"error chowning socket: {e}", context={"path": str(self.local_path)}) from e

        if self._proc is not None:
            self._drain_task = asyncio.create_task(
                drain_stderr(self._proc, process_name="ssh", context_id=self.guest_path),
                name=f"ssh-drain:{self.guest_path}",
            )
            self._drain_task.add_done_callback(log_task_exception)

        logger.info(
            "Socket tunnel established",
            extra={"guest_path": self.guest_path, "local_path": str(self.local_path), "attempts": self.attempts},
        )
        return self.local_path

    async def close(self) -> None:
        proc, self._proc = self._proc, None
        await cleanup_process(proc, "ssh", self.guest_path)
        if self._drain_task is not None:
            self._drain_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._drain_task
            self._drain_task = None
        cleanup_file(self.local_path, self.guest_path, "tunnel socket")


async def dial_vsock(cid: int, port: int) -> StreamPair:
    """Connect to ``cid:port`` over AF_VSOCK.

    Raises:
        VsockDialError: If the socket can't be created or the connect fails.
    """
    try:
        sock = socket.socket(socket.AF_VSOCK, socket.SOCK_STREAM)
    except (AttributeError, OSError) as e:
        raise VsockDialError(f"error creating vsock socket: {e}", context={"cid": cid, "port": port}) from e
    try:
        sock.setblocking(False)
        await asyncio.get_running_loop().sock_connect(sock, (cid, port))
        return await asyncio.open_connection(sock=sock)
    except OSError as e:
        sock.close()
        raise VsockDialError(f"error dialing vsock {cid}:{port}: {e}", context={"cid": cid, "port": port}) from e
    except BaseException:
        sock.close()
        raise


class VsockBridge:
    """UNIX socket on the host whose connections are spliced to a guest vsock port.

    Args:
        settings: Host layout, CID/port and retry cadence
        uid: Owner for the listening socket
        gid: Group for the listening socket
        socket_path: Listening path (default: <socket_dir>/docker.sock)
        dialer: Override the vsock dial (for testing)
    """

    def __init__(
        self,
        settings: Settings,
        uid: int,
        gid: int,
        socket_path: Path | None = None,
        dialer: Callable[[], Awaitable[StreamPair]] | None = None,
    ) -> None:
        self.settings = settings
        self.uid = uid
        self.gid = gid
        self.socket_path = socket_path or settings.docker_socket
        self._dialer = dialer or (lambda: dial_vsock(settings.guest_cid, settings.vsock_port))
        self._server: asyncio.Server | None = None
        self._connections: set[asyncio.Task[None]] = set()
        self.policy = RetryPolicy(
            "vsock dial",
            interval=settings.vsock_retry_interval,
            retryable=lambda e: isinstance(e, VsockDialError),
            warn_every=settings.vsock_retry_warn_every,
        )

    async def _listen(self) -> asyncio.Server:
        try:
            return await asyncio.start_unix_server(self._handle, path=str(self.socket_path))
        except OSError as e:
            if e.errno != errno.EADDRINUSE:
                raise
        # Stale socket from a previous run
        self.socket_path.unlink(missing_ok=True)
        return await asyncio.start_unix_server(self._handle, path=str(self.socket_path))

    async def start(self) -> None:
        """Bind the host socket and hand it to uid:gid.

        Raises:
            TunnelError: If the socket can't be bound or chowned.
        """
        try:
            self.socket_path.parent.mkdir(parents=True, exist_ok=True)
            self._server = await self._listen()
            chown_if_needed(self.socket_path, self.uid, self.gid)
        except OSError as e:
            if self._server is not None:
                self._server.close()
                self._server = None
            raise TunnelError(
                f"error listening on {self.socket_path}: {e}", context={"path": str(self.socket_path)}
            ) from e
        logger.info(
            "vsock bridge listening",
            extra={"path": str(self.socket_path), "cid": self.settings.guest_cid, "port": self.settings.vsock_port},
        )

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        task = asyncio.current_task()
        if task is not None:
            self._connections.add(task)
        try:
            try:
                upstream = await self.policy.call(self._dialer)
            except Exception as e:
                logger.error("Error dialing guest vsock", extra={"error": str(e)})
                writer.close()
                return
            await splice_streams((reader, writer), upstream)
        finally:
            if task is not None:
                self._connections.discard(task)

    async def close(self) -> None:
        if self._server is not None:
            self._server.close()
        for task in list(self._connections):
            task.cancel()
        if self._connections:
            await asyncio.gather(*self._connections, return_exceptions=True)
        if self._server is not None:
            await self._server.wait_closed()
            self._server = None
        cleanup_file(self.socket_path, "vsock", "bridge socket")
