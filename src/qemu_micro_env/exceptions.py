"""Exception hierarchy for qemu-micro-env.

All exceptions inherit from MicroEnvError.

Hierarchy:
    MicroEnvError (base)
    ├── TransientError (retryable marker base)
    │   ├── TunnelTransientError     ← ssh refused/reset while guest boots
    │   └── VsockDialError           ← guest vsock listener not up yet
    ├── PermanentError (non-retryable marker base)
    │   ├── VmConfigError            ← bad cgroup version, KVM required but absent
    │   ├── VmDependencyError        ← missing binary, qemu probe failure
    │   └── VmLaunchError            ← hypervisor could not be spawned
    ├── HypervisorExitError          ← child exited non-zero or by signal
    ├── KeyInjectionError            ← keygen, fifo, ssh-agent, ssh-add
    ├── TunnelError                  ← non-retryable ssh tunnel failure
    ├── GuestInitError               ← fatal guest boot step
    └── GuestAgentDeviceError        ← serial device I/O failure
"""

from __future__ import annotations

from typing import Any


class MicroEnvError(Exception):
    """Base exception for all launcher and guest errors with structured context.

    Attributes:
        message: Human-readable error message
        context: Dictionary of structured error context for logging/debugging
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}


# =============================================================================
# Transient vs Permanent Error Base Classes
# =============================================================================


class TransientError(MicroEnvError):
    """Base for errors that may succeed on retry (guest still booting)."""


class PermanentError(MicroEnvError):
    """Base for errors that won't succeed on retry.

    Raised before any subprocess is spawned wherever possible.
    """


# =============================================================================
# Host-side launch errors
# =============================================================================


class VmConfigError(PermanentError):
    """Invalid VM configuration.

    Raised for unsupported architectures, cgroup versions other than 1 or 2,
    mutually exclusive options, or when KVM is required but unusable.
    """


class VmDependencyError(PermanentError):
    """Required binary missing or a QEMU capability probe failed outright."""


class VmLaunchError(PermanentError):
    """The hypervisor process could not be started."""


class HypervisorExitError(MicroEnvError):
    """Hypervisor exited with a non-zero status.

    Attributes:
        returncode: Raw asyncio return code (negative for signals)
        signal_name: Name of the terminating signal, if any
    """

    def __init__(self, message: str, returncode: int, signal_name: str | None = None):
        super().__init__(message, context={"returncode": returncode, "signal": signal_name})
        self.returncode = returncode
        self.signal_name = signal_name

    @property
    def exit_status(self) -> int:
        """Shell-style exit status (128 + signal number for signals)."""
        if self.returncode < 0:
            return 128 - self.returncode
        return self.returncode


# =============================================================================
# Communication Errors
# =============================================================================


class KeyInjectionError(MicroEnvError):
    """Key generation, authorized_keys publication or agent loading failed."""


class TunnelTransientError(TransientError):
    """SSH could not reach the guest yet (connection refused or reset)."""


class TunnelError(MicroEnvError):
    """SSH tunnel failed for a reason other than the guest still booting.

    Attributes:
        output: Combined ssh stdout/stderr
    """

    def __init__(self, message: str, output: str = "", context: dict[str, Any] | None = None):
        ctx = context or {}
        ctx.setdefault("output", output)
        super().__init__(message, ctx)
        self.output = output


class VsockDialError(TransientError):
    """Dialing the guest over AF_VSOCK failed."""


# =============================================================================
# Guest-side errors
# =============================================================================


class GuestInitError(MicroEnvError):
    """A guest boot step failed; the guest must not continue."""


class GuestAgentDeviceError(MicroEnvError):
    """The guest agent character device could not be read or written."""
