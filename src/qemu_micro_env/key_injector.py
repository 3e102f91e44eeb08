"""Ephemeral SSH key pair for authenticating the host to the guest.

No secret is baked into the guest image. Each launch does this:
    1. Generate an RSA-4096 pair.
    2. Write the OpenSSH public key into the authorized_keys FIFO. QEMU
       exposes it to the guest as a virtio serial port, and GuestInit
       installs it as /root/.ssh/authorized_keys.
    3. Start ssh-agent on <socket_dir>/agent.sock and load the PEM
       private key with ``ssh-add -``.
Every later ssh invocation authenticates via SSH_AUTH_SOCK.
"""

from __future__ import annotations

import asyncio
import contextlib
import os
import re
from dataclasses import dataclass, field
from pathlib import Path

import psutil
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from qemu_micro_env import constants
from qemu_micro_env._logging import get_logger
from qemu_micro_env.exceptions import KeyInjectionError
from qemu_micro_env.fifo import ensure_fifo, write_line
from qemu_micro_env.permission_utils import chown_if_needed, subprocess_identity
from qemu_micro_env.settings import Settings

logger = get_logger(__name__)

_AUTH_SOCK_RE = re.compile(r"SSH_AUTH_SOCK=([^;\s]+)")
_AGENT_PID_RE = re.compile(r"SSH_AGENT_PID=(\d+)")

_AGENT_START_TIMEOUT_SECONDS = 10


@dataclass(frozen=True, slots=True, repr=False)
class KeyPair:
    """PEM (PKCS#1) private key and OpenSSH public key line."""

    private_pem: bytes
    public_openssh: bytes

    def __repr__(self) -> str:
        return f"KeyPair(public_openssh={self.public_openssh[:40]!r}...)"


def _generate_keypair_sync(bits: int) -> KeyPair:
    key = rsa.generate_private_key(public_exponent=65537, key_size=bits)
    private_pem = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    )
    public_openssh = key.public_key().public_bytes(
        encoding=serialization.Encoding.OpenSSH,
        format=serialization.PublicFormat.OpenSSH,
    )
    return KeyPair(private_pem=private_pem, public_openssh=public_openssh)


async def generate_keypair(bits: int = constants.RSA_KEY_BITS) -> KeyPair:
    """Generate a fresh RSA key pair off the event loop.

    Raises:
        KeyInjectionError: If key generation fails.
    """
    try:
        return await asyncio.to_thread(_generate_keypair_sync, bits)
    except (ValueError, TypeError) as e:
        raise KeyInjectionError(f"error generating ssh key: {e}") from e


def parse_agent_output(output: str) -> tuple[str, int | None]:
    """Extract SSH_AUTH_SOCK (and the agent pid, if present) from ssh-agent output.

    Raises:
        KeyInjectionError: If no SSH_AUTH_SOCK assignment is present.
    """
    sock = _AUTH_SOCK_RE.search(output)
    if sock is None:
        raise KeyInjectionError(f"error parsing ssh-agent output: {output!r}")
    pid = _AGENT_PID_RE.search(output)
    return sock.group(1), int(pid.group(1)) if pid else None


@dataclass
class SshAgent:
    """A running ssh-agent daemon holding the launch key."""

    auth_sock: Path
    pid: int | None = None
    _proc: psutil.Process | None = field(default=None, init=False, repr=False)

    def __post_init__(self) -> None:
        if self.pid is not None:
            with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
                self._proc = psutil.Process(self.pid)

    @property
    def env(self) -> dict[str, str]:
        return {"SSH_AUTH_SOCK": str(self.auth_sock)}

    async def stop(self) -> None:
        """Terminate the agent daemon (no-op if already gone)."""
        if self._proc is None:
            return
        proc, self._proc = self._proc, None
        with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
            await asyncio.to_thread(proc.terminate)
            await asyncio.to_thread(proc.wait, 2)
        logger.debug("ssh-agent stopped", extra={"pid": self.pid})


async def _run(cmd: list[str], *, stdin: bytes | None = None, **kwargs) -> tuple[int, str]:
    proc = await asyncio.create_subprocess_exec(
        *cmd,
        stdin=asyncio.subprocess.PIPE if stdin is not None else asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.STDOUT,
        **kwargs,
    )
    try:
        out, _ = await asyncio.wait_for(proc.communicate(stdin), timeout=_AGENT_START_TIMEOUT_SECONDS)
    except BaseException:
        with contextlib.suppress(ProcessLookupError):
            proc.kill()
        await proc.wait()
        raise
    return proc.returncode or 0, out.decode(errors="replace")


async def start_agent(settings: Settings, uid: int, gid: int) -> SshAgent:
    """Start ssh-agent bound to ``settings.agent_socket`` as uid:gid.

    Raises:
        KeyInjectionError: If the agent fails to start or prints nothing usable.
    """
    sock = settings.agent_socket
    sock.unlink(missing_ok=True)
    try:
        rc, out = await _run([settings.ssh_agent_bin, "-s", "-a", str(sock)], **subprocess_identity(uid, gid))
    except (OSError, TimeoutError) as e:
        raise KeyInjectionError(f"error starting ssh-agent: {e}", context={"socket": str(sock)}) from e
    if rc != 0:
        raise KeyInjectionError(f"error starting ssh-agent: exit {rc}: {out.strip()}", context={"socket": str(sock)})

    auth_sock, pid = parse_agent_output(out)
    logger.debug("ssh-agent started", extra={"socket": auth_sock, "pid": pid})
    return SshAgent(auth_sock=Path(auth_sock), pid=pid)


async def add_key(agent: SshAgent, private_pem: bytes, settings: Settings) -> None:
    """Load a PEM private key into the agent via ``ssh-add -``.

    Raises:
        KeyInjectionError: If ssh-add fails.
    """
    try:
        rc, out = await _run([settings.ssh_add_bin, "-"], stdin=private_pem, env={**os.environ, **agent.env})
    except (OSError, TimeoutError) as e:
        raise KeyInjectionError(f"error adding private key to ssh-agent: {e}") from e
    if rc != 0:
        raise KeyInjectionError(f"error adding private key to ssh-agent: {out.strip()}")
    logger.debug("Private key added to ssh-agent", extra={"output": out.strip()})


class KeyInjector:
    """Publishes a fresh public key to the guest and loads the private half locally.

    ``prepare()`` must run before QEMU starts, since QEMU opens the FIFO
    at startup. ``inject()`` can run concurrently with the hypervisor: it
    blocks on the FIFO until QEMU has it open.
    """

    def __init__(self, settings: Settings, uid: int, gid: int) -> None:
        self.settings = settings
        self.uid = uid
        self.gid = gid
        self.agent: SshAgent | None = None

    def prepare(self) -> None:
        """Create the authorized_keys FIFO.

        Raises:
            KeyInjectionError: If the FIFO can't be created.
        """
        fifo = self.settings.authorized_keys_fifo
        try:
            fifo.parent.mkdir(parents=True, exist_ok=True)
            ensure_fifo(fifo)
        except OSError as e:
            raise KeyInjectionError(f"error creating authorized_keys fifo: {e}", context={"path": str(fifo)}) from e

    async def inject(self) -> SshAgent:
        """Generate keys, publish the public key, start and load the agent.

        Raises:
            KeyInjectionError: On any failure; the launch should be aborted.
        """
        keys = await generate_keypair()

        fifo = self.settings.authorized_keys_fifo
        try:
            await write_line(fifo, keys.public_openssh)
        except OSError as e:
            raise KeyInjectionError(
                f"error writing public key to authorized_keys: {e}", context={"path": str(fifo)}
            ) from e
        logger.debug("Public key written to authorized_keys fifo", extra={"path": str(fifo)})

        agent = await start_agent(self.settings, self.uid, self.gid)
        self.agent = agent
        await add_key(agent, keys.private_pem, self.settings)
        with contextlib.suppress(OSError):
            chown_if_needed(agent.auth_sock, self.uid, self.gid)
        return agent

    async def close(self) -> None:
        if self.agent is not None:
            await self.agent.stop()
