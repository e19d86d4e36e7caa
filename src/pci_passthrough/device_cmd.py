"""QEMU ``-device`` argument builder for host PCI passthrough.

Turns resolved, validated hostpci entries plus their allocated bus
addresses into vfio-pci device strings. Field order is part of the output
contract: identity/source, id, bus/addr, then optional flags.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

from pci_passthrough import constants
from pci_passthrough._logging import get_logger
from pci_passthrough.address_map import express_address, legacy_address, root_port
from pci_passthrough.hostpci import parse_hostpci, resolve_hostpci, validate_hostpci
from pci_passthrough.mdev_identity import generate_mdev_uuid, substitute_identity

if TYPE_CHECKING:
    from pci_passthrough.models import AddressBinding, HostPciConfig, ResolvedHostDevice
    from pci_passthrough.pci_inventory import PciInventory
    from pci_passthrough.settings import Settings

logger = get_logger(__name__)


@dataclass(frozen=True)
class MdevRequest:
    """Mediated device that must exist before QEMU starts."""

    slot: str
    index: int
    pci_id: str
    mdev_type: str
    uuid: str


@dataclass
class HostPciAssembly:
    """Everything the launcher needs from the hostpci entries of one VM."""

    devices: list[str] = field(default_factory=list)
    """Flat ``["-device", "<spec>", ...]`` argument list."""
    bridges: set[int] = field(default_factory=set)
    """Legacy PCI bus numbers in use (bridges the launcher must create)."""
    kvm_hidden: bool = False
    gpu_passthrough: bool = False
    legacy_igd: bool = False
    vga_override: str | None = None
    """Display adapter to use when the VM had none configured."""
    mdev_requests: list[MdevRequest] = field(default_factory=list)
    host_ids: list[str] = field(default_factory=list)
    """Every host function passed through, for reservation."""
    warnings: list[str] = field(default_factory=list)


def build_hostpci_device(
    slot: str,
    index: int,
    resolved: ResolvedHostDevice,
    binding: AddressBinding | None,
    *,
    vm_id: int,
    boot_index: int | None = None,
    mdev_enabled: bool = False,
    x_vga: bool = False,
    rom_dir: Path = Path(constants.DEFAULT_ROM_DIR),
) -> list[str]:
    """Build the vfio-pci device strings for one hostpci entry.

    Args:
        slot: Logical slot, e.g. "hostpci3"
        index: Slot index (3 for hostpci3), used for the mdev uuid
        resolved: Resolved and validated device
        binding: Allocated address, None if the slot has no fixed address
        vm_id: Owning VM
        boot_index: bootindex for the first function
        mdev_enabled: Effective mdev flag from validation
        x_vga: Emit x-vga=on on the first function
        rom_dir: Directory custom ROM files are loaded from

    Returns:
        One string per function, or a single string for a mediated device
    """
    addr = binding.render() if binding is not None else ""
    spec = resolved.spec

    if mdev_enabled and spec.mdev is not None and not resolved.is_multifunction:
        return [_build_mdev_device(slot, index, resolved, addr, vm_id=vm_id)]

    multifunction = resolved.is_multifunction
    devices = []
    for j, function in enumerate(resolved.functions):
        mf_addr = f".{j}" if multifunction else ""
        device = f"vfio-pci,host={function.id},id={slot}{mf_addr}{addr}{mf_addr}"

        if j == 0:
            if not spec.rombar:
                device += ",rombar=0"
            if x_vga:
                device += ",x-vga=on"
            if multifunction:
                device += ",multifunction=on"
            if spec.romfile:
                device += f",romfile={rom_dir}/{spec.romfile}"
            if boot_index:
                device += f",bootindex={boot_index}"

        devices.append(device)
    return devices


def _build_mdev_device(slot: str, index: int, resolved: ResolvedHostDevice, addr: str, *, vm_id: int) -> str:
    function = resolved.primary
    uuid = generate_mdev_uuid(vm_id, index)
    identity = substitute_identity(function)

    if identity is None:
        logger.debug(
            "No identity substitution for mediated device, attaching unmodified",
            extra={"vm_id": vm_id, "slot": slot, "pci_id": function.id, "device": function.device},
        )
        return f"vfio-pci,sysfsdev={constants.SYSFS_PCI_DEVICES_ABS}/{function.id}/{uuid},id={slot}{addr}"

    # Spoofed devices always sit behind the slot's dedicated root port
    port = express_address(slot)
    bus = port.bus if port is not None else ""
    logger.info(
        "Substituting mediated device identity",
        extra={"vm_id": vm_id, "slot": slot, "pci_id": function.id, "from": function.device, "to": identity.device},
    )
    return (
        f"vfio-pci,sysfsdev={constants.SYSFS_MDEV_DEVICES}/{uuid}"
        f",id={slot}.0,bus={bus},addr={constants.MDEV_FUNCTION_ADDR}"
        f",display={constants.MDEV_DISPLAY},{identity.render()}"
    )


async def assemble_hostpci_devices(
    config: HostPciConfig,
    inventory: PciInventory,
    settings: Settings,
) -> HostPciAssembly:
    """Parse, resolve, validate, address and build every hostpciN entry.

    Raises:
        FormatError: Malformed entry
        DeviceNotFoundError: Listed id not present on the host
        ConstraintViolation: Compatibility rule failed
    """
    assembly = HostPciAssembly()

    for i in range(constants.MAX_HOSTPCI_DEVICES):
        slot = f"hostpci{i}"
        spec = parse_hostpci(config.hostpci.get(slot))
        if spec is None:
            continue

        resolved = await resolve_hostpci(spec, inventory)
        validation = validate_hostpci(
            resolved,
            config.vga,
            config.is_q35,
            legacy_igd_claimed=assembly.legacy_igd,
            slot=slot,
        )
        assembly.warnings.extend(validation.warnings)

        if spec.pcie:
            if config.win_version == 7:
                # Windows 7 wants the devices directly on the root complex
                binding = express_address(f"{slot}bus0")
            else:
                if i >= constants.PREPROVISIONED_ROOT_PORTS:
                    port = root_port(i)
                    if port is not None:
                        assembly.devices.extend(["-device", port.render()])
                binding = express_address(slot)
        else:
            name = "legacy-igd" if spec.legacy_igd else slot
            binding = legacy_address(name, config.arch, config.machine, assembly.bridges)

        if spec.legacy_igd:
            assembly.legacy_igd = True

        x_vga = False
        if spec.x_vga:
            x_vga = config.bios != "ovmf"
            assembly.kvm_hidden = True
            assembly.gpu_passthrough = True
            if config.vga is None:
                assembly.vga_override = "none"

        for device in build_hostpci_device(
            slot,
            i,
            resolved,
            binding,
            vm_id=config.vm_id,
            boot_index=config.boot_order.get(slot),
            mdev_enabled=validation.mdev_enabled,
            x_vga=x_vga,
            rom_dir=settings.rom_dir,
        ):
            assembly.devices.extend(["-device", device])

        if validation.mdev_enabled and spec.mdev is not None:
            assembly.mdev_requests.append(
                MdevRequest(
                    slot=slot,
                    index=i,
                    pci_id=resolved.primary.id,
                    mdev_type=spec.mdev,
                    uuid=generate_mdev_uuid(config.vm_id, i),
                )
            )
        assembly.host_ids.extend(function.id for function in resolved.functions)

        logger.debug(
            "hostpci device assembled",
            extra={"vm_id": config.vm_id, "slot": slot, "functions": len(resolved.functions), "pcie": spec.pcie},
        )

    return assembly
