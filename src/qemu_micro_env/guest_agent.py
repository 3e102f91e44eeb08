"""Guest-side serial agent.

Reads newline-delimited JSON commands from the QEMU guest agent port and
answers each with one JSON line on the same device. The port has no
"host connected" signal, so an empty read means "nothing yet" and is
polled. Any other device error ends the agent.
"""

from __future__ import annotations

import os
import threading
import time
from pathlib import Path

from pydantic import ValidationError

from qemu_micro_env import constants
from qemu_micro_env._logging import get_logger
from qemu_micro_env.exceptions import GuestAgentDeviceError
from qemu_micro_env.guest_agent_protocol import (
    SSH_ADD_AUTHORIZED_KEYS,
    ErrorKind,
    GuestCommand,
    GuestError,
    GuestErrorResponse,
    GuestResponse,
    GuestReturn,
    SshAddAuthorizedKeysArgs,
    encode_response,
)

logger = get_logger(__name__)

_READ_SIZE = 4096


def _error(kind: ErrorKind, message: str) -> GuestErrorResponse:
    return GuestErrorResponse(error=GuestError.from_message(kind, message))


class GuestAgent:
    """Serial protocol responder.

    Args:
        device: Character device to serve
        home: Home directory whose .ssh/authorized_keys is managed
        poll_interval: Sleep after an empty read
    """

    def __init__(
        self,
        device: str | Path = constants.GUEST_AGENT_DEVICE,
        home: str | Path = constants.GUEST_HOME,
        poll_interval: float = constants.GUEST_EOF_POLL_SECONDS,
    ) -> None:
        self.device = Path(device)
        self.home = Path(home)
        self.poll_interval = poll_interval

    @property
    def authorized_keys(self) -> Path:
        return self.home / ".ssh" / "authorized_keys"

    def handle_line(self, line: bytes) -> GuestResponse:
        """Execute one request line and build its response. Never raises."""
        try:
            cmd = GuestCommand.model_validate_json(line)
        except ValidationError as e:
            logger.error("Failed to parse guest agent command", extra={"error": str(e)})
            return _error(ErrorKind.INVALID_REQUEST, f"invalid command: {e}")

        if cmd.execute != SSH_ADD_AUTHORIZED_KEYS:
            logger.warning("Unsupported guest agent command", extra={"execute": cmd.execute})
            return _error(ErrorKind.UNSUPPORTED, "unsupported")

        try:
            args = SshAddAuthorizedKeysArgs.model_validate(cmd.arguments)
        except ValidationError as e:
            return _error(ErrorKind.INVALID_REQUEST, f"invalid arguments: {e}")

        try:
            self._add_authorized_keys(args)
        except OSError as e:
            logger.error("Failed to update authorized_keys", extra={"error": str(e)})
            return _error(ErrorKind.IO_ERROR, f"could not update authorized_keys: {e}")
        return GuestReturn()

    def _add_authorized_keys(self, args: SshAddAuthorizedKeysArgs) -> None:
        path = self.authorized_keys
        path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)

        if args.reset:
            fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC | os.O_CLOEXEC, 0o600)
            os.fchmod(fd, 0o600)
            with os.fdopen(fd, "w") as f:
                f.write("".join(f"{key}\n" for key in args.keys))
            logger.info("authorized_keys replaced", extra={"count": len(args.keys)})
            return

        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_APPEND | os.O_CLOEXEC, 0o600)
        os.fchmod(fd, 0o600)
        with os.fdopen(fd, "a") as f:
            for key in args.keys:
                f.write(f"{key}\n")
        logger.info("authorized_keys appended", extra={"count": len(args.keys)})

    def serve(self, stop: threading.Event | None = None) -> None:
        """Serve requests until *stop* is set.

        Raises:
            GuestAgentDeviceError: If the device can't be opened, read or written.
        """
        try:
            fd = os.open(self.device, os.O_RDWR | os.O_CLOEXEC)
        except OSError as e:
            raise GuestAgentDeviceError(
                f"error opening {self.device}: {e}", context={"device": str(self.device)}
            ) from e

        logger.info("Guest agent listening", extra={"device": str(self.device)})
        pending = b""
        try:
            while stop is None or not stop.is_set():
                try:
                    chunk = os.read(fd, _READ_SIZE)
                except OSError as e:
                    raise GuestAgentDeviceError(f"error reading {self.device}: {e}") from e
                if not chunk:
                    time.sleep(self.poll_interval)
                    continue

                pending += chunk
                while b"\n" in pending:
                    line, pending = pending.split(b"\n", 1)
                    if not line.strip():
                        continue
                    self._reply(fd, encode_response(self.handle_line(line)))
        finally:
            os.close(fd)

    def _reply(self, fd: int, data: bytes) -> None:
        view = memoryview(data)
        while view:
            try:
                written = os.write(fd, view)
            except OSError as e:
                raise GuestAgentDeviceError(f"error writing {self.device}: {e}") from e
            view = view[written:]


def start_agent_thread(agent: GuestAgent) -> threading.Thread:
    """Run the agent on a daemon thread. A device failure only disables the agent."""

    def run() -> None:
        try:
            agent.serve()
        except GuestAgentDeviceError as e:
            logger.error("Guest agent stopped", extra={"error": e.message})

    thread = threading.Thread(target=run, name="guest-agent", daemon=True)
    thread.start()
    return thread
