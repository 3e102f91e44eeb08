"""Command-line interface for qemu-micro-env.

Usage:
    qemu-micro-env run --vm-port-forward 8080 --vm-socket-forward /run/docker.sock
    qemu-micro-env run --use-vsock --require-kvm
    qemu-micro-env checkvmx
    qemu-micro-env init - --cgroup-version 2 /usr/local/bin/dockerd-init     # guest PID 1
    qemu-micro-env agent                                                     # guest serial agent

Installed as the guest's /sbin/init, the binary behaves as ``init``.
"""

from __future__ import annotations

import asyncio
import logging
import sys
from collections.abc import Sequence
from pathlib import Path
from typing import Any, NoReturn

import click

from qemu_micro_env import __version__, constants
from qemu_micro_env._logging import configure_logging
from qemu_micro_env.config import VmConfig
from qemu_micro_env.exceptions import (
    GuestAgentDeviceError,
    GuestInitError,
    HypervisorExitError,
    KeyInjectionError,
    MicroEnvError,
    TunnelError,
    VmConfigError,
    VmDependencyError,
)
from qemu_micro_env.guest_agent import GuestAgent
from qemu_micro_env.guest_init import GuestInit, InitOptions, strip_kernel_separator
from qemu_micro_env.platform_utils import detect_host_arch, normalize_arch
from qemu_micro_env.settings import Settings
from qemu_micro_env.supervisor import ProcessSupervisor
from qemu_micro_env.system_probes import check_kvm_usable

# Launcher failures, as `docker run` reports its own errors
EXIT_LAUNCHER_ERROR = 125


def format_error(title: str, message: str, suggestions: list[str] | None = None) -> str:
    """Format an error message following What → Why → Fix pattern.

    Args:
        title: Short error title
        message: Detailed explanation
        suggestions: Optional list of suggestions to fix the issue

    Returns:
        Formatted error string
    """
    lines = [
        click.style(f"Error: {title}", fg="red", bold=True),
        "",
        f"  {message}",
    ]

    if suggestions:
        lines.extend(["", "  Suggestions:"])
        lines.extend(f"    • {suggestion}" for suggestion in suggestions)

    return "\n".join(lines)


def split_list(values: Sequence[str]) -> list[str]:
    """Flatten repeated and comma-separated option values."""
    return [item.strip() for value in values for item in value.split(",") if item.strip()]


def parse_ports(values: Sequence[str]) -> tuple[int, ...]:
    """Parse ``--vm-port-forward`` values.

    Raises:
        click.BadParameter: If a value isn't an integer.
    """
    ports = []
    for item in split_list(values):
        try:
            ports.append(int(item))
        except ValueError:
            raise click.BadParameter(f"invalid port: {item!r}", param_hint="'--vm-port-forward'") from None
    return tuple(ports)


def _describe(exc: MicroEnvError) -> tuple[str, list[str]]:
    """Title and suggestions for a launcher error."""
    if isinstance(exc, VmConfigError):
        return "Invalid configuration", ["Run 'qemu-micro-env checkvmx' to see whether KVM is usable here"]
    if isinstance(exc, VmDependencyError):
        return "Missing dependency", ["Install QEMU or set QEMU_MICRO_ENV_QEMU_BIN_DIR"]
    if isinstance(exc, KeyInjectionError):
        return "SSH key setup failed", ["Check that ssh-agent and ssh-add are installed"]
    if isinstance(exc, TunnelError):
        suggestions = ["Check that sshd in the guest is running"]
        if exc.output:
            suggestions.append(f"ssh said: {exc.output}")
        return "Socket tunnel failed", suggestions
    return "Launch failed", []


def _report(exc: MicroEnvError) -> None:
    title, suggestions = _describe(exc)
    click.echo(format_error(title, exc.message, suggestions), err=True)


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.version_option(__version__, "-V", "--version", prog_name="qemu-micro-env")
def cli() -> None:
    """Run a container runtime inside a QEMU micro VM."""


@cli.command("run")
@click.option("--cpu-arch", default=None, help="Guest CPU architecture (default: host)")
@click.option("--num-cpus", default=constants.DEFAULT_NUM_CPUS, show_default=True, help="Guest vCPUs")
@click.option("--memory", default=constants.DEFAULT_MEMORY, show_default=True, help="Guest memory (QEMU -m syntax)")
@click.option("--no-kvm", is_flag=True, help="Disable KVM acceleration")
@click.option("--require-kvm", is_flag=True, help="Fail if KVM is unavailable")
@click.option("--no-micro", is_flag=True, help="Use the full machine type instead of microvm")
@click.option(
    "--cgroup-version",
    default=constants.DEFAULT_CGROUP_VERSION,
    show_default=True,
    type=int,
    help="cgroup version mounted in the guest (1 or 2)",
)
@click.option(
    "--vm-port-forward", "port_forwards", multiple=True, help="Guest TCP port to expose (repeatable, comma list)"
)
@click.option(
    "--vm-socket-forward", "socket_forwards", multiple=True, help="Guest UNIX socket to tunnel (repeatable, comma list)"
)
@click.option("--use-vsock", is_flag=True, help="Bridge the container socket over vsock instead of SSH")
@click.option("--uid", type=int, default=None, help="Owner of the hypervisor and host sockets (default: current)")
@click.option("--gid", type=int, default=None, help="Group of the hypervisor and host sockets (default: current)")
@click.option("--debug-console", is_flag=True, help="Open a shell in the guest before init continues")
@click.option("--init-cmd", default=constants.DEFAULT_INIT_CMD, show_default=True, help="Guest workload")
@click.option("--qemu-arg", "qemu_args", multiple=True, help="Extra QEMU argument (repeatable)")
@click.option("--debug", is_flag=True, help="Verbose host logs and guest boot")
def run_cmd(
    cpu_arch: str | None,
    num_cpus: int,
    memory: str,
    no_kvm: bool,
    require_kvm: bool,
    no_micro: bool,
    cgroup_version: int,
    port_forwards: tuple[str, ...],
    socket_forwards: tuple[str, ...],
    use_vsock: bool,
    uid: int | None,
    gid: int | None,
    debug_console: bool,
    init_cmd: str,
    qemu_args: tuple[str, ...],
    debug: bool,
) -> NoReturn:
    """Launch the VM and supervise it until it exits.

    Exits with QEMU's status, 125 on launcher errors.
    """
    configure_logging(level=logging.DEBUG if debug else None)

    options: dict[str, Any] = {
        "num_cpus": num_cpus,
        "memory": memory,
        "no_kvm": no_kvm,
        "require_kvm": require_kvm,
        "no_micro": no_micro,
        "cgroup_version": cgroup_version,
        "port_forwards": parse_ports(port_forwards),
        "socket_forwards": tuple(split_list(socket_forwards)),
        "use_vsock": use_vsock,
        "debug_console": debug_console,
        "init_cmd": init_cmd,
        "qemu_extra_args": qemu_args,
    }
    if cpu_arch is not None:
        options["cpu_arch"] = cpu_arch
    if uid is not None:
        options["uid"] = uid
    if gid is not None:
        options["gid"] = gid

    try:
        config = VmConfig.build(**options)
        exit_code = asyncio.run(ProcessSupervisor(config, debug=debug).run())
    except HypervisorExitError as e:
        click.echo(f"qemu-micro-env: {e.message}", err=True)
        sys.exit(e.exit_status)
    except MicroEnvError as e:
        _report(e)
        sys.exit(EXIT_LAUNCHER_ERROR)
    sys.exit(exit_code)


@cli.command("checkvmx")
@click.option("--cpu-arch", default=None, help="Architecture to check (default: host)")
def checkvmx_cmd(cpu_arch: str | None) -> None:
    """Print whether KVM acceleration is usable: true or false."""
    try:
        arch = normalize_arch(cpu_arch) if cpu_arch else detect_host_arch()
    except VmConfigError as e:
        raise click.BadParameter(e.message, param_hint="'--cpu-arch'") from None
    usable = asyncio.run(check_kvm_usable(arch, Settings()))
    click.echo("true" if usable else "false")


@click.command("_check")
@click.option("--text", default="yes this is it!", help="Text to print back")
def _check_cmd(text: str) -> None:
    click.echo(text)


@cli.command("init", context_settings={"allow_interspersed_args": False})
@click.option("--cgroup-version", default=constants.DEFAULT_CGROUP_VERSION, show_default=True, type=int)
@click.option("--debug", is_flag=True, help="Verbose init logs")
@click.option("--debug-console", is_flag=True, help="Open a shell before init continues")
@click.option("--vsock", is_flag=True, help="Host reaches the guest over vsock; skip the authorized_keys pipe")
@click.option("--authorized-keys-pipe", default=constants.GUEST_AUTHORIZED_KEYS_PIPE, show_default=True)
@click.argument("command", nargs=-1, type=click.UNPROCESSED)
def init_cmd(
    cgroup_version: int,
    debug: bool,
    debug_console: bool,
    vsock: bool,
    authorized_keys_pipe: str,
    command: tuple[str, ...],
) -> None:
    """Guest PID 1: set up the VM, then run COMMAND."""
    if command and command[0] == "_check":
        _check_cmd.main(args=list(command[1:]), prog_name="_check", standalone_mode=False)
        return

    configure_logging(level=logging.DEBUG if debug else logging.INFO)
    options = InitOptions(
        cgroup_version=cgroup_version,
        debug=debug,
        debug_console=debug_console,
        vsock=vsock,
        authorized_keys_pipe=authorized_keys_pipe,
        command=command or (constants.DEFAULT_INIT_CMD,),
    )
    try:
        GuestInit(options).run()
    except GuestInitError as e:
        click.echo(format_error("Guest init failed", e.message), err=True)
        sys.exit(EXIT_LAUNCHER_ERROR)


@cli.command("agent")
@click.option("--device", default=constants.GUEST_AGENT_DEVICE, show_default=True, help="Serial device to serve")
@click.option("--home", default=constants.GUEST_HOME, show_default=True, help="Home holding .ssh/authorized_keys")
def agent_cmd(device: str, home: str) -> None:
    """Guest serial agent: answer commands on the QEMU guest agent port."""
    configure_logging(level=logging.INFO)
    try:
        GuestAgent(device=device, home=home).serve()
    except GuestAgentDeviceError as e:
        click.echo(format_error("Guest agent device failed", e.message), err=True)
        sys.exit(EXIT_LAUNCHER_ERROR)


def main(argv: Sequence[str] | None = None) -> None:
    """Console entry point."""
    prog = Path(sys.argv[0]).name
    args = list(sys.argv[1:] if argv is None else argv)
    if prog == "init" and argv is None:
        args = ["init", *args]
    if args and args[0] == "init":
        args = ["init", *strip_kernel_separator(args[1:])]
    cli.main(args=args, prog_name="qemu-micro-env")


if __name__ == "__main__":
    main()
