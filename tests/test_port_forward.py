"""Tests for forward rule allocation and the TCP proxy."""

import asyncio
from pathlib import Path

import pytest

from qemu_micro_env.exceptions import VmConfigError
from qemu_micro_env.port_forward import (
    PortForwarder,
    PortForwardRule,
    allocate_forward_rules,
    forward_port,
    hostfwd_options,
    read_local_port_range,
)

# ============================================================================
# Allocation
# ============================================================================


class TestReadLocalPortRange:
    """Tests for parsing ip_local_port_range."""

    async def test_tab_separated(self, port_range_file: Path) -> None:
        """The kernel's tab-separated format parses."""
        assert await read_local_port_range(port_range_file) == (41000, 41999)

    async def test_missing_file(self, tmp_path: Path) -> None:
        """An unreadable range is a configuration error."""
        with pytest.raises(VmConfigError, match="error reading local port range"):
            await read_local_port_range(tmp_path / "missing")

    async def test_malformed(self, tmp_path: Path) -> None:
        """Garbage in the file is a configuration error."""
        path = tmp_path / "range"
        path.write_text("lots of ports\n")
        with pytest.raises(VmConfigError, match="malformed"):
            await read_local_port_range(path)


class TestAllocateForwardRules:
    """Tests for mapping guest ports to loopback ports."""

    async def test_in_order_from_range_start(self, port_range_file: Path) -> None:
        """Ports are assigned by index from the bottom of the range."""
        rules = await allocate_forward_rules((22, 8080, 9090), port_range_file)
        assert rules == [
            PortForwardRule(41000, 22),
            PortForwardRule(41001, 8080),
            PortForwardRule(41002, 9090),
        ]

    async def test_skips_guest_port_numbers(self, port_range_file: Path) -> None:
        """A candidate equal to a forwarded guest port is skipped."""
        rules = await allocate_forward_rules((41000, 41001, 80), port_range_file)
        local_ports = [r.local_port for r in rules]
        assert local_ports == [41002, 41003, 41004]
        assert not set(local_ports) & {41000, 41001, 80}

    async def test_empty(self, tmp_path: Path) -> None:
        """No guest ports means no file read at all."""
        assert await allocate_forward_rules((), tmp_path / "missing") == []

    async def test_range_too_small(self, tmp_path: Path) -> None:
        """Running out of candidates is an error."""
        path = tmp_path / "range"
        path.write_text("50000 50001\n")
        with pytest.raises(VmConfigError, match="too small"):
            await allocate_forward_rules((1, 2, 3), path)

    def test_hostfwd_options(self) -> None:
        """Rules render as comma-joined hostfwd sub-options."""
        rules = [PortForwardRule(41000, 22), PortForwardRule(41001, 80)]
        assert hostfwd_options(rules) == "hostfwd=tcp::41000-:22,hostfwd=tcp::41001-:80"


# ============================================================================
# Proxy
# ============================================================================


class TestPortForwarder:
    """Tests for the TCP proxy against a local echo server."""

    async def test_round_trip(self, echo_server: int) -> None:
        """Bytes sent through the forwarder come back unchanged."""
        async with PortForwarder(0, echo_server, listen_host="127.0.0.1") as forwarder:
            assert forwarder.bound_port is not None
            reader, writer = await asyncio.open_connection("127.0.0.1", forwarder.bound_port)
            writer.write(b"hello through qemu\n")
            await writer.drain()
            assert await asyncio.wait_for(reader.readline(), timeout=5) == b"hello through qemu\n"
            writer.close()
            await writer.wait_closed()

    async def test_half_close_propagates(self, echo_server: int) -> None:
        """Client EOF reaches the target while the reply still flows back."""
        forwarder = await forward_port(0, echo_server, listen_host="127.0.0.1")
        try:
            reader, writer = await asyncio.open_connection("127.0.0.1", forwarder.bound_port)
            payload = b"x" * 200_000
            writer.write(payload)
            writer.write_eof()
            data = await asyncio.wait_for(reader.read(), timeout=5)
            assert data == payload
            writer.close()
            await writer.wait_closed()
        finally:
            await forwarder.close()

    async def test_concurrent_connections(self, echo_server: int) -> None:
        """Each connection is proxied independently."""

        async def one(port: int, tag: bytes) -> bytes:
            reader, writer = await asyncio.open_connection("127.0.0.1", port)
            writer.write(tag)
            writer.write_eof()
            data = await reader.read()
            writer.close()
            await writer.wait_closed()
            return data

        async with PortForwarder(0, echo_server, listen_host="127.0.0.1") as forwarder:
            port = forwarder.bound_port
            assert port is not None
            jobs = asyncio.gather(*(one(port, f"c{i}".encode()) for i in range(10)))
            results = await asyncio.wait_for(jobs, timeout=5)
        assert results == [f"c{i}".encode() for i in range(10)]

    async def test_unreachable_target_closes_client(self) -> None:
        """A refused upstream dial closes the client connection."""
        closed_server = await asyncio.start_server(lambda r, w: None, "127.0.0.1", 0)
        dead_port = closed_server.sockets[0].getsockname()[1]
        closed_server.close()
        await closed_server.wait_closed()

        async with PortForwarder(0, dead_port, listen_host="127.0.0.1") as forwarder:
            reader, writer = await asyncio.open_connection("127.0.0.1", forwarder.bound_port)
            assert await asyncio.wait_for(reader.read(), timeout=5) == b""
            writer.close()

    async def test_close_tears_down_live_connections(self, echo_server: int) -> None:
        """close() ends in-flight connections and unbinds."""
        forwarder = await forward_port(0, echo_server, listen_host="127.0.0.1")
        port = forwarder.bound_port
        reader, writer = await asyncio.open_connection("127.0.0.1", port)
        writer.write(b"ping")
        await writer.drain()
        assert await asyncio.wait_for(reader.readexactly(4), timeout=5) == b"ping"

        await asyncio.wait_for(forwarder.close(), timeout=5)
        assert forwarder.bound_port is None
        assert await asyncio.wait_for(reader.read(), timeout=5) == b""
        writer.close()
        with pytest.raises(OSError):
            await asyncio.open_connection("127.0.0.1", port)

    async def test_bind_conflict_raises(self, echo_server: int) -> None:
        """A port already in use surfaces as OSError from start()."""
        blocker = await asyncio.start_server(lambda r, w: None, "127.0.0.1", 0)
        port = blocker.sockets[0].getsockname()[1]
        try:
            with pytest.raises(OSError):
                await PortForwarder(port, echo_server, listen_host="127.0.0.1").start()
        finally:
            blocker.close()
            await blocker.wait_closed()
