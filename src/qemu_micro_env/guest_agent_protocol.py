"""Guest agent serial protocol models.

Newline-delimited JSON over a virtio serial port, one request then one
response, no multiplexing:

    -> {"execute": "guest-ssh-add-authorized-keys", "arguments": {"keys": [...], "reset": true}}
    <- {"return": null}
    <- {"error": {"bufb64": "<base64 message>", "code": -1, "tag": "unsupported"}}

``code`` is always -1. ``tag`` names the failure class.
"""

from __future__ import annotations

import base64
import json
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

SSH_ADD_AUTHORIZED_KEYS = "guest-ssh-add-authorized-keys"
ERROR_CODE = -1

# ============================================================================
# Requests
# ============================================================================


class GuestCommand(BaseModel):
    """One inbound line. ``arguments`` is kept raw until the command is known."""

    execute: str = Field(description="Command name")
    arguments: Any = Field(default=None, description="Command-specific JSON payload")

    @classmethod
    def ssh_add_authorized_keys(cls, keys: list[str], *, reset: bool = False) -> GuestCommand:
        return cls(execute=SSH_ADD_AUTHORIZED_KEYS, arguments={"keys": keys, "reset": reset})

    def encode(self) -> bytes:
        return self.model_dump_json().encode() + b"\n"


class SshAddAuthorizedKeysArgs(BaseModel):
    """Arguments of ``guest-ssh-add-authorized-keys``.

    ``reset=True`` replaces authorized_keys with exactly these keys,
    otherwise each key is appended on its own line.
    """

    model_config = ConfigDict(extra="forbid")

    keys: list[str] = Field(description="OpenSSH public key lines")
    reset: bool = Field(default=False, description="Replace instead of append")


# ============================================================================
# Responses
# ============================================================================


class ErrorKind(StrEnum):
    UNSUPPORTED = "unsupported"
    INVALID_REQUEST = "invalid-request"
    IO_ERROR = "io-error"


class GuestError(BaseModel):
    """Error body. The message is base64 so any bytes survive JSON escaping."""

    bufb64: str
    code: int = ERROR_CODE
    tag: ErrorKind

    @classmethod
    def from_message(cls, kind: ErrorKind, message: str) -> GuestError:
        return cls(bufb64=base64.b64encode(message.encode()).decode("ascii"), tag=kind)

    @property
    def message(self) -> str:
        return base64.b64decode(self.bufb64).decode(errors="replace")


class GuestReturn(BaseModel):
    """Success body: ``{"return": <value>}``."""

    model_config = ConfigDict(populate_by_name=True)

    return_: Any = Field(default=None, alias="return")


class GuestErrorResponse(BaseModel):
    error: GuestError


GuestResponse = GuestReturn | GuestErrorResponse


def encode_response(response: GuestResponse) -> bytes:
    """Serialise a response as one compact JSON line."""
    return response.model_dump_json(by_alias=True).encode() + b"\n"


def decode_response(line: bytes | str) -> GuestResponse:
    """Parse a response line (host side).

    Raises:
        ValueError: If the line is not JSON, or is neither a return nor an error.
    """
    data = json.loads(line)
    if isinstance(data, dict) and "error" in data:
        return GuestErrorResponse.model_validate(data)
    return GuestReturn.model_validate(data)
