"""QEMU command line builder for the microVM launcher.

The argument vector is a pure function of the VM configuration, the
resolved host capabilities and the allocated forward rules. Probing
happens earlier (system_probes.resolve_capabilities) so building twice
gives identical output.
"""

from qemu_micro_env import constants
from qemu_micro_env._logging import get_logger
from qemu_micro_env.config import VmConfig
from qemu_micro_env.port_forward import PortForwardRule, hostfwd_options
from qemu_micro_env.settings import Settings
from qemu_micro_env.system_probes import HostCapabilities

logger = get_logger(__name__)


def machine_type(caps: HostCapabilities) -> str:
    """``-M`` value: microvm (tuned when accelerated) or the full virt machine."""
    if not caps.microvm:
        return constants.FULL_MACHINE
    if caps.kvm:
        return constants.MICROVM_MACHINE + constants.MICROVM_KVM_OPTS
    return constants.MICROVM_MACHINE


def init_args(config: VmConfig, *, debug: bool = False) -> list[str]:
    """Arguments GuestInit receives after the kernel's ``-`` separator."""
    args = ["--cgroup-version", str(config.cgroup_version)]
    if config.debug_console:
        args.append("--debug-console")
    if debug:
        args.append("--debug")
    if config.use_vsock:
        args.append("--vsock")
    args.append(config.init_cmd)
    return args


def build_kernel_args(config: VmConfig, caps: HostCapabilities, *, debug: bool = False) -> str:
    """Kernel command line, including init's own flags.

    Format:
        root=/dev/vda rw reboot=t panic=-1 ip=dhcp [acpi=off] [earlyprintk=ttyS0]
        [quiet] init=/sbin/init console=hvc0 - --cgroup-version <n>
        [--debug-console] [--debug] [--vsock] <init cmd>
    """
    args = list(constants.BASE_KERNEL_ARGS)
    if caps.microvm:
        args.append("acpi=off")
    args.append("earlyprintk=ttyS0" if debug else "quiet")
    args.extend(constants.KERNEL_INIT_ARGS)
    args.append(constants.INIT_ARGS_SEPARATOR)
    args.extend(init_args(config, debug=debug))
    return " ".join(args)


def build_qemu_cmd(
    config: VmConfig,
    caps: HostCapabilities,
    settings: Settings,
    forwards: list[PortForwardRule] | None = None,
    *,
    debug: bool = False,
) -> list[str]:
    """Build the hypervisor argument vector.

    Args:
        config: Validated VM configuration
        caps: Resolved acceleration and machine-type decision
        settings: Host layout (binary, image and socket paths)
        forwards: hostfwd rules for ``-netdev user``
        debug: Verbose guest boot (earlyprintk, init --debug)

    Returns:
        Argument vector, binary first
    """
    # microvm exposes virtio-mmio devices only, named "<model>-device";
    # on virt the bare model name aliases to the PCI variant.
    suffix = "-device" if caps.microvm else ""

    def device(name: str, *opts: str) -> str:
        return ",".join([name + suffix, *opts])

    cmd = [
        str(settings.qemu_bin(config.cpu_arch.value)),
        "-m",
        config.memory,
        "-smp",
        str(config.num_cpus),
        "-no-reboot",
        "-nodefaults",
        "-no-user-config",
        "-nographic",
        # Guest console on hvc0, wired to our stdio
        "-device",
        device("virtio-serial"),
        "-chardev",
        "stdio,id=virtiocon0",
        "-device",
        "virtconsole,chardev=virtiocon0",
        "-M",
        machine_type(caps),
        "-drive",
        f"id=root,file={settings.rootfs_path},format=qcow2,if=none",
        "-device",
        device("virtio-blk", "drive=root"),
        "-kernel",
        str(settings.kernel_path),
        "-initrd",
        str(settings.initrd_path),
        # Host entropy for the guest
        "-object",
        "rng-random,id=rng0,filename=/dev/urandom",
        "-device",
        device("virtio-rng", "rng=rng0"),
        "-append",
        build_kernel_args(config, caps, debug=debug),
    ]

    if caps.microvm:
        cmd.append("-no-acpi")

    cmd.extend(config.qemu_extra_args)

    netdev = f"user,id=net0,net={constants.GUEST_NETWORK},dhcpstart={constants.GUEST_DHCP_START}"
    if forwards:
        netdev += "," + hostfwd_options(forwards)
    cmd.extend(["-netdev", netdev, "-device", device("virtio-net", "netdev=net0")])

    if config.use_vsock:
        cmd.extend(["-device", f"vhost-vsock-pci,guest-cid={settings.guest_cid}"])
    else:
        # Host writes the public key into this pipe; guest reads it from
        # /dev/virtio-ports/authorized_keys
        cmd.extend(
            [
                "-chardev",
                f"pipe,id=ssh_keys,path={settings.authorized_keys_fifo}",
                "-device",
                device("virtio-serial"),
                "-device",
                f"virtserialport,chardev=ssh_keys,name={constants.AUTHORIZED_KEYS_CHANNEL}",
            ]
        )

    cmd.extend(["-runas", f"{config.uid}:{config.gid}"])

    if caps.kvm:
        cmd.extend(constants.KVM_ACCEL_ARGS)

    logger.debug("Built QEMU command", extra={"cmd": cmd})
    return cmd
