"""TCP port forwarding between the host and the guest.

QEMU user-mode networking does not interoperate with docker-published
ports when the launcher itself runs in a container: connections to the
``hostfwd`` port just hang. So QEMU forwards each guest port to an
ephemeral loopback port, and a PortForwarder here listens on the guest's
port number and proxies into that ephemeral port.

    client -> 0.0.0.0:<guest port> -> 127.0.0.1:<local port> -> QEMU hostfwd -> guest:<guest port>
"""

from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass
from pathlib import Path

import aiofiles

from qemu_micro_env import constants
from qemu_micro_env._logging import get_logger
from qemu_micro_env.exceptions import VmConfigError

logger = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class PortForwardRule:
    """One forwarded guest port.

    Attributes:
        local_port: Loopback port QEMU's hostfwd binds.
        guest_port: Port inside the guest; also the port the host-side
            forwarder listens on.
    """

    local_port: int
    guest_port: int

    @property
    def hostfwd(self) -> str:
        return f"hostfwd=tcp::{self.local_port}-:{self.guest_port}"


async def read_local_port_range(range_path: Path) -> tuple[int, int]:
    """Read the kernel's ephemeral port range (``ip_local_port_range``).

    Raises:
        VmConfigError: If the file is unreadable or malformed.
    """
    try:
        async with aiofiles.open(range_path) as f:
            content = await f.read()
    except OSError as e:
        raise VmConfigError(f"error reading local port range: {e}", context={"path": str(range_path)}) from e

    fields = content.split()
    try:
        low, high = int(fields[0]), int(fields[1])
    except (IndexError, ValueError) as e:
        raise VmConfigError(
            f"malformed local port range: {content.strip()!r}", context={"path": str(range_path)}
        ) from e
    return low, high


async def allocate_forward_rules(guest_ports: tuple[int, ...] | list[int], range_path: Path) -> list[PortForwardRule]:
    """Assign a loopback port to each guest port, in order.

    Candidates are taken from the start of the ephemeral range by index,
    skipping any number that is itself one of the guest ports (the
    forwarder listens on those).

    Raises:
        VmConfigError: If the range is unreadable or too small.
    """
    if not guest_ports:
        return []

    low, high = await read_local_port_range(range_path)
    taken = set(guest_ports)
    rules: list[PortForwardRule] = []
    candidate = low
    for guest_port in guest_ports:
        while candidate in taken:
            candidate += 1
        if candidate > high:
            raise VmConfigError(
                f"local port range {low}-{high} too small for {len(guest_ports)} forwards",
                context={"low": low, "high": high},
            )
        rules.append(PortForwardRule(local_port=candidate, guest_port=guest_port))
        candidate += 1

    logger.debug(
        "Allocated local ports for forwards",
        extra={"rules": [(r.local_port, r.guest_port) for r in rules]},
    )
    return rules


def hostfwd_options(rules: list[PortForwardRule]) -> str:
    """Render rules as comma-joined ``-netdev user`` hostfwd sub-options."""
    return ",".join(rule.hostfwd for rule in rules)


async def _pump(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
    """Copy one direction until EOF, then half-close the destination."""
    try:
        while data := await reader.read(constants.PROXY_CHUNK_SIZE):
            writer.write(data)
            await writer.drain()
        if writer.can_write_eof():
            writer.write_eof()
        else:
            writer.close()
    except OSError as e:
        # Peer reset: tear the destination down so the other direction ends too
        logger.debug("Proxy stream error", extra={"error": str(e)})
        writer.close()


async def splice_streams(
    a: tuple[asyncio.StreamReader, asyncio.StreamWriter],
    b: tuple[asyncio.StreamReader, asyncio.StreamWriter],
) -> None:
    """Pump bytes both ways between two connections until both sides finish.

    Each direction half-closes its destination on EOF, so a client that
    shuts down its write side is seen as EOF by the other end while the
    reply can still flow back. Both connections are closed on return.
    """
    a_reader, a_writer = a
    b_reader, b_writer = b
    try:
        async with asyncio.TaskGroup() as tg:
            tg.create_task(_pump(a_reader, b_writer))
            tg.create_task(_pump(b_reader, a_writer))
    finally:
        for w in (a_writer, b_writer):
            w.close()
        for w in (a_writer, b_writer):
            with contextlib.suppress(OSError):
                await w.wait_closed()


class PortForwarder:
    """Listen on a TCP port and proxy every connection to another TCP port.

    ``start()`` returns as soon as the listener is bound. Connections are
    served in the background until ``close()``, which also tears down any
    connection still in flight.
    """

    def __init__(
        self,
        listen_port: int,
        target_port: int,
        *,
        listen_host: str = constants.FORWARD_BIND_HOST,
        target_host: str = constants.LOOPBACK_HOST,
    ) -> None:
        self.listen_port = listen_port
        self.target_port = target_port
        self.listen_host = listen_host
        self.target_host = target_host
        self._server: asyncio.Server | None = None
        self._connections: set[asyncio.Task[None]] = set()

    @property
    def bound_port(self) -> int | None:
        """Actual listening port (useful when listen_port is 0)."""
        if self._server is None or not self._server.sockets:
            return None
        return self._server.sockets[0].getsockname()[1]

    async def start(self) -> None:
        """Bind the listener.

        Raises:
            OSError: If the port can't be bound.
        """
        self._server = await asyncio.start_server(
            self._handle, host=self.listen_host, port=self.listen_port, reuse_address=True
        )
        logger.info(
            "Forwarding port",
            extra={
                "listen": f"{self.listen_host}:{self.bound_port}",
                "target": f"{self.target_host}:{self.target_port}",
            },
        )

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        task = asyncio.current_task()
        if task is not None:
            self._connections.add(task)
        try:
            try:
                upstream = await asyncio.open_connection(self.target_host, self.target_port)
            except OSError as e:
                logger.warning(
                    "Error dialing forward target",
                    extra={"target": f"{self.target_host}:{self.target_port}", "error": str(e)},
                )
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

    async def __aenter__(self) -> PortForwarder:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()


async def forward_port(listen_port: int, target_port: int, **kwargs: str) -> PortForwarder:
    """Start forwarding ``0.0.0.0:listen_port`` to ``127.0.0.1:target_port``.

    Returns once bound; the caller owns the returned forwarder and closes it.
    """
    forwarder = PortForwarder(listen_port, target_port, **kwargs)
    await forwarder.start()
    return forwarder
