"""Minimal DHCPv4 client for the guest's primary interface.

Only what a QEMU user-mode network needs: DISCOVER, OFFER, REQUEST, ACK
over a broadcast UDP socket bound to the interface (RFC 2131 / 2132).
No renewal. The lease lives as long as the VM does.
"""

from __future__ import annotations

import os
import socket
import struct
import time
from dataclasses import dataclass, field
from enum import IntEnum
from ipaddress import IPv4Address, IPv4Interface

import psutil

from qemu_micro_env._logging import get_logger
from qemu_micro_env.exceptions import GuestInitError

logger = get_logger(__name__)

CLIENT_PORT = 68
SERVER_PORT = 67
MAGIC_COOKIE = b"\x63\x82\x53\x63"

OP_REQUEST = 1
OP_REPLY = 2
HTYPE_ETHERNET = 1
FLAG_BROADCAST = 0x8000

# op htype hlen hops xid secs flags ciaddr yiaddr siaddr giaddr chaddr(16) sname(64) file(128)
_HEADER = struct.Struct("!BBBBIHH4s4s4s4s16s64s128s")


class MessageType(IntEnum):
    DISCOVER = 1
    OFFER = 2
    REQUEST = 3
    DECLINE = 4
    ACK = 5
    NAK = 6
    RELEASE = 7


class Option(IntEnum):
    PAD = 0
    SUBNET_MASK = 1
    ROUTER = 3
    DNS = 6
    BROADCAST = 28
    REQUESTED_IP = 50
    LEASE_TIME = 51
    MESSAGE_TYPE = 53
    SERVER_ID = 54
    PARAMETER_REQUEST = 55
    END = 255


_ZERO = IPv4Address(0)


@dataclass
class DhcpMessage:
    """One BOOTP/DHCP packet. Options are kept as raw bytes keyed by code."""

    op: int
    xid: int
    chaddr: bytes
    flags: int = 0
    ciaddr: IPv4Address = _ZERO
    yiaddr: IPv4Address = _ZERO
    siaddr: IPv4Address = _ZERO
    giaddr: IPv4Address = _ZERO
    options: dict[int, bytes] = field(default_factory=dict)

    @property
    def message_type(self) -> MessageType | None:
        raw = self.options.get(Option.MESSAGE_TYPE)
        if not raw:
            return None
        try:
            return MessageType(raw[0])
        except ValueError:
            return None

    def address_option(self, code: int) -> list[IPv4Address]:
        raw = self.options.get(code, b"")
        return [IPv4Address(raw[i : i + 4]) for i in range(0, len(raw) - len(raw) % 4, 4)]

    def encode(self) -> bytes:
        header = _HEADER.pack(
            self.op,
            HTYPE_ETHERNET,
            len(self.chaddr),
            0,
            self.xid,
            0,
            self.flags,
            self.ciaddr.packed,
            self.yiaddr.packed,
            self.siaddr.packed,
            self.giaddr.packed,
            self.chaddr.ljust(16, b"\x00"),
            b"",
            b"",
        )
        out = bytearray(header + MAGIC_COOKIE)
        for code, value in self.options.items():
            if len(value) > 255:
                raise ValueError(f"DHCP option {code} too long: {len(value)} bytes")
            out += bytes((code, len(value))) + value
        out.append(Option.END)
        return bytes(out)

    @classmethod
    def decode(cls, data: bytes) -> DhcpMessage:
        """Parse a packet.

        Raises:
            ValueError: Truncated packet, bad magic cookie or malformed options.
        """
        if len(data) < _HEADER.size + len(MAGIC_COOKIE):
            raise ValueError(f"DHCP packet too short: {len(data)} bytes")
        op, _htype, hlen, _hops, xid, _secs, flags, ciaddr, yiaddr, siaddr, giaddr, chaddr, _sname, _file = (
            _HEADER.unpack_from(data)
        )
        cookie_end = _HEADER.size + len(MAGIC_COOKIE)
        if data[_HEADER.size : cookie_end] != MAGIC_COOKIE:
            raise ValueError("bad DHCP magic cookie")

        options: dict[int, bytes] = {}
        i = cookie_end
        while i < len(data):
            code = data[i]
            if code == Option.END:
                break
            if code == Option.PAD:
                i += 1
                continue
            if i + 1 >= len(data):
                raise ValueError("truncated DHCP option")
            length = data[i + 1]
            value = data[i + 2 : i + 2 + length]
            if len(value) != length:
                raise ValueError(f"truncated DHCP option {code}")
            # RFC 3396: repeated options concatenate
            options[code] = options.get(code, b"") + value
            i += 2 + length

        return cls(
            op=op,
            xid=xid,
            chaddr=chaddr[: min(hlen, 16)],
            flags=flags,
            ciaddr=IPv4Address(ciaddr),
            yiaddr=IPv4Address(yiaddr),
            siaddr=IPv4Address(siaddr),
            giaddr=IPv4Address(giaddr),
            options=options,
        )


@dataclass(frozen=True)
class Lease:
    """Acknowledged address plus the options the guest applies."""

    interface: IPv4Interface
    broadcast: IPv4Address
    server: IPv4Address
    routers: tuple[IPv4Address, ...] = ()
    dns: tuple[IPv4Address, ...] = ()
    lease_seconds: int | None = None

    @property
    def gateway(self) -> IPv4Address:
        """Next hop for the default route: the DHCP server (slirp answers both roles)."""
        return self.server

    @classmethod
    def from_ack(cls, ack: DhcpMessage) -> Lease:
        masks = ack.address_option(Option.SUBNET_MASK)
        mask = masks[0] if masks else IPv4Address("255.255.255.0")
        iface = IPv4Interface(f"{ack.yiaddr}/{mask}")
        broadcasts = ack.address_option(Option.BROADCAST)
        servers = ack.address_option(Option.SERVER_ID)
        server = ack.siaddr if ack.siaddr != _ZERO else (servers[0] if servers else _ZERO)
        lease_raw = ack.options.get(Option.LEASE_TIME)
        return cls(
            interface=iface,
            broadcast=broadcasts[0] if broadcasts else iface.network.broadcast_address,
            server=server,
            routers=tuple(ack.address_option(Option.ROUTER)),
            dns=tuple(ack.address_option(Option.DNS)),
            lease_seconds=struct.unpack("!I", lease_raw)[0] if lease_raw and len(lease_raw) == 4 else None,
        )


def discover_message(xid: int, mac: bytes) -> DhcpMessage:
    return DhcpMessage(
        op=OP_REQUEST,
        xid=xid,
        chaddr=mac,
        flags=FLAG_BROADCAST,
        options={
            Option.MESSAGE_TYPE: bytes((MessageType.DISCOVER,)),
            Option.PARAMETER_REQUEST: bytes(
                (Option.SUBNET_MASK, Option.ROUTER, Option.DNS, Option.BROADCAST, Option.LEASE_TIME)
            ),
        },
    )


def request_message(offer: DhcpMessage, mac: bytes) -> DhcpMessage:
    options = {
        Option.MESSAGE_TYPE: bytes((MessageType.REQUEST,)),
        Option.REQUESTED_IP: offer.yiaddr.packed,
    }
    server_id = offer.options.get(Option.SERVER_ID)
    if server_id:
        options[Option.SERVER_ID] = server_id
    return DhcpMessage(op=OP_REQUEST, xid=offer.xid, chaddr=mac, flags=FLAG_BROADCAST, options=options)


def interface_mac(name: str) -> bytes:
    """Hardware address of *name*.

    Raises:
        GuestInitError: Interface missing or without a link-layer address.
    """
    for addr in psutil.net_if_addrs().get(name, []):
        if addr.family == psutil.AF_LINK and addr.address:
            return bytes.fromhex(addr.address.replace(":", "").replace("-", ""))
    raise GuestInitError(f"no hardware address for interface {name}", context={"interface": name})


class DhcpClient:
    """Blocking DISCOVER/REQUEST exchange on one interface.

    Args:
        interface: Interface to bind the socket to
        mac: Hardware address (default: looked up with psutil)
        timeout: Seconds to wait for each reply
        attempts: How many times to retry the whole exchange
    """

    def __init__(self, interface: str, mac: bytes | None = None, timeout: float = 5.0, attempts: int = 3) -> None:
        self.interface = interface
        self.mac = mac if mac is not None else interface_mac(interface)
        self.timeout = timeout
        self.attempts = attempts

    def _open_socket(self) -> socket.socket:
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_BINDTODEVICE, self.interface.encode() + b"\x00")
            sock.bind(("", CLIENT_PORT))
        except OSError:
            sock.close()
            raise
        return sock

    def _receive(self, sock: socket.socket, xid: int, expected: set[MessageType]) -> DhcpMessage:
        deadline = time.monotonic() + self.timeout
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise TimeoutError(f"no DHCP {'/'.join(t.name for t in expected)} within {self.timeout}s")
            sock.settimeout(remaining)
            data, _ = sock.recvfrom(4096)
            try:
                msg = DhcpMessage.decode(data)
            except ValueError as e:
                logger.debug("Ignoring malformed DHCP packet", extra={"error": str(e)})
                continue
            if msg.op != OP_REPLY or msg.xid != xid or msg.message_type not in expected:
                continue
            return msg

    def _exchange(self, sock: socket.socket) -> DhcpMessage:
        xid = struct.unpack("!I", os.urandom(4))[0]
        broadcast = ("255.255.255.255", SERVER_PORT)

        sock.sendto(discover_message(xid, self.mac).encode(), broadcast)
        offer = self._receive(sock, xid, {MessageType.OFFER})
        logger.debug("DHCP offer", extra={"address": str(offer.yiaddr), "server": str(offer.siaddr)})

        sock.sendto(request_message(offer, self.mac).encode(), broadcast)
        reply = self._receive(sock, xid, {MessageType.ACK, MessageType.NAK})
        if reply.message_type is MessageType.NAK:
            raise GuestInitError("DHCP server refused the offered address", context={"address": str(offer.yiaddr)})
        return reply

    def request(self) -> Lease:
        """Obtain a lease.

        Raises:
            GuestInitError: Socket failure, NAK, or no answer after all attempts.
        """
        try:
            sock = self._open_socket()
        except OSError as e:
            raise GuestInitError(f"error opening DHCP socket on {self.interface}: {e}") from e

        with sock:
            last: Exception | None = None
            for attempt in range(1, self.attempts + 1):
                try:
                    lease = Lease.from_ack(self._exchange(sock))
                except (TimeoutError, OSError) as e:
                    last = e
                    logger.warning("DHCP attempt failed", extra={"attempt": attempt, "error": str(e)})
                    continue
                logger.info(
                    "DHCP lease acquired",
                    extra={"interface": self.interface, "address": str(lease.interface), "gateway": str(lease.gateway)},
                )
                return lease
        raise GuestInitError(f"DHCP failed on {self.interface}: {last}", context={"interface": self.interface})
