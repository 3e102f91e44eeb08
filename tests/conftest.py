"""Shared pytest fixtures for qemu-micro-env tests."""

import asyncio
import os
from collections.abc import AsyncGenerator, Callable
from pathlib import Path
from typing import Any

import psutil
import pytest

from qemu_micro_env.config import VmConfig
from qemu_micro_env.platform_utils import QemuArch
from qemu_micro_env.settings import Settings

# ============================================================================
# Shared Skip Markers
# ============================================================================

# FIFOs, AF_VSOCK, prctl and mknod semantics used here are Linux-specific
skip_unless_linux = pytest.mark.skipif(
    not psutil.LINUX,
    reason="This test requires Linux",
)

skip_unless_root = pytest.mark.skipif(
    os.geteuid() != 0,
    reason="This test requires root (chown to another uid, binding port 22)",
)


# ============================================================================
# Settings and configuration
# ============================================================================


@pytest.fixture
def port_range_file(tmp_path: Path) -> Path:
    """Fake ip_local_port_range with a high, narrow range."""
    path = tmp_path / "ip_local_port_range"
    path.write_text("41000\t41999\n")
    return path


@pytest.fixture
def unit_test_settings(tmp_path: Path, port_range_file: Path) -> Settings:
    """Settings rooted in tmp_path with fast retries.

    Uses nonexistent image paths since unit tests don't boot actual VMs.
    """
    return Settings(
        qemu_bin_dir=tmp_path / "bin",
        rootfs_path=Path("/nonexistent/rootfs.qcow2"),
        kernel_path=Path("/nonexistent/vmlinuz"),
        initrd_path=Path("/nonexistent/initrd.img"),
        socket_dir=tmp_path / "sockets",
        kvm_device=tmp_path / "kvm",
        cpuinfo_path=tmp_path / "cpuinfo",
        ip_local_port_range=port_range_file,
        ssh_retry_interval=0.01,
        vsock_retry_interval=0.01,
    )


@pytest.fixture
def make_config() -> Callable[..., VmConfig]:
    """Factory for VmConfig with a fixed arch and the current uid/gid.

    Usage:
        def test_something(make_config):
            config = make_config(use_vsock=True)
    """

    def _make(**overrides: Any) -> VmConfig:
        options: dict[str, Any] = {"cpu_arch": QemuArch.X86_64, "uid": os.getuid(), "gid": os.getgid()}
        options.update(overrides)
        return VmConfig.build(**options)

    return _make


# ============================================================================
# Network helpers
# ============================================================================


@pytest.fixture
async def echo_server() -> AsyncGenerator[int, None]:
    """TCP echo server on 127.0.0.1; yields its port.

    Echoes until the client half-closes, then closes its side.
    """

    async def handle(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        try:
            while data := await reader.read(65536):
                writer.write(data)
                await writer.drain()
        finally:
            writer.close()

    server = await asyncio.start_server(handle, "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    try:
        yield port
    finally:
        server.close()
        await server.wait_closed()


# ============================================================================
# Test Utilities
# ============================================================================


@pytest.fixture(autouse=True)
def setup_test_environment(monkeypatch: pytest.MonkeyPatch):
    """Keep host env overrides from leaking into Settings()."""
    for key in list(os.environ):
        if key.startswith("QEMU_MICRO_ENV_") and key != "QEMU_MICRO_ENV_LOG_LEVEL":
            monkeypatch.delenv(key)
    monkeypatch.setenv("QEMU_MICRO_ENV_LOG_LEVEL", "DEBUG")
    yield
