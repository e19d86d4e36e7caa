"""Static bus/slot tables for the legacy PCI and PCI Express topologies.

Every logical device slot (``hostpci3``, ``net0``, ``vga`` ...) has a fixed
position so guests see stable addresses across restarts and config edits.
The tables are immutable module-level state built once at import.

Some slots share an address on purpose (``CONFLICT_OK``): for example the
default display adapter and a legacy IGD passthrough device both sit on
0:2, because legacy IGD requires vga=none. That relation is metadata only;
callers guarantee at most one occupant is active.
"""

from __future__ import annotations

from types import MappingProxyType
from typing import Final

from pci_passthrough.exceptions import ConstraintViolation
from pci_passthrough.models import AddressBinding, RootPortDescriptor, Topology


def _legacy_table() -> dict[str, tuple[int, int]]:
    table: dict[str, tuple[int, int]] = {
        "piix3": (0, 1),
        "ehci": (0, 1),  # instead of piix3 on arm
        "vga": (0, 2),
        "legacy-igd": (0, 2),  # legacy-igd requires vga=none
        "balloon0": (0, 3),
        "watchdog": (0, 4),
        "scsihw0": (0, 5),
        "pci.3": (0, 5),  # also used for virtio-scsi-single bridge
        "scsihw1": (0, 6),
        "ahci0": (0, 7),
        "qga0": (0, 8),
        "spice": (0, 9),
        "hostpci0": (0, 16),
        "hostpci1": (0, 17),
        "vga1": (0, 24),
        "vga2": (0, 25),
        "vga3": (0, 26),
        "hostpci2": (0, 27),
        "hostpci3": (0, 28),
        # addr 29: usb-host
        "pci.1": (0, 30),
        "pci.2": (0, 31),
        "xhci": (1, 27),
        "pci.4": (1, 28),
        "rng0": (1, 29),
        "pci.2-igd": (1, 30),  # replaces pci.2 when a legacy IGD device is passed through
        "ivshmem": (2, 11),
        "audio0": (2, 12),
        "scsihw2": (4, 1),
        "scsihw3": (4, 2),
        "scsihw4": (4, 3),
    }
    # Regular runs, generated to keep the table readable
    table.update({f"virtio{i}": (0, 10 + i) for i in range(6)})
    table.update({f"net{i}": (0, 18 + i) for i in range(6)})
    table.update({f"net{i}": (1, i - 5) for i in range(6, 32)})
    table.update({f"virtio{i}": (2, i - 5) for i in range(6, 16)})
    table.update({f"hostpci{i}": (2, i + 9) for i in range(4, 16)})
    table.update({f"virtioscsi{i}": (3, i + 1) for i in range(31)})
    return table


def _express_table() -> dict[str, tuple[str, int]]:
    table: dict[str, tuple[str, int]] = {
        "vga": ("pcie.0", 1),
        "ivshmem": ("pcie.0", 20),
    }
    table.update({f"hostpci{i}": (f"ich9-pcie-port-{i + 1}", 0) for i in range(16)})
    # Windows 7 is picky about pcie assignments: devices sit directly on the
    # root complex instead of behind a root port
    direct_attach = (16, 17, 18, 19, 9, 10, 11, 12, 13, 14, 15, 21, 22, 23, 24, 25)
    table.update({f"hostpci{i}bus0": ("pcie.0", addr) for i, addr in enumerate(direct_attach)})
    return table


LEGACY_ADDRESSES: Final = MappingProxyType(_legacy_table())
"""slot -> (bus number, slot number) for the conventional PCI topology."""

EXPRESS_ADDRESSES: Final = MappingProxyType(_express_table())
"""slot -> (bus id, slot number) for the PCI Express topology."""

ROOT_PORT_ADDRESSES: Final = MappingProxyType(
    {
        4: "10.0",
        5: "10.1",
        6: "10.2",
        7: "10.3",
        8: "10.4",
        9: "10.5",
        10: "10.6",
        11: "10.7",
        12: "11.0",
        13: "11.1",
        14: "11.2",
        15: "11.3",
    }
)
"""Root port index -> function address on pcie.0 (ports 0-3 come from the machine config)."""

CONFLICT_OK: Final = MappingProxyType(
    {
        "piix3": "ehci",
        "ehci": "piix3",
        "vga": "legacy-igd",
        "legacy-igd": "vga",
        "scsihw0": "pci.3",
        "pci.3": "scsihw0",
    }
)
"""Slots sharing an address by design; never occupied at the same time."""


def conflicts_with(slot: str) -> str | None:
    """Slot that shares ``slot``'s legacy address by design, if any."""
    return CONFLICT_OK.get(slot)


def _format_addr(slot_number: int) -> str:
    return f"0x{slot_number:x}"


def legacy_address(
    slot: str,
    arch: str = "x86_64",
    machine: str = "pc",
    bridges: set[int] | None = None,
) -> AddressBinding | None:
    """Look up a slot in the conventional PCI table.

    The same slot numbers are used on every architecture; aarch64 ``virt``
    machines name their buses ``pcie.N`` and have no IDE controller.

    Args:
        slot: Logical slot name (e.g. "hostpci2", "net0", "legacy-igd")
        arch: Guest architecture
        machine: Machine type (e.g. "pc-i440fx-8.1", "virt")
        bridges: If given, the slot's bus number is added so the caller
            knows which PCI bridges to create

    Returns:
        AddressBinding, or None when the slot has no fixed position

    Raises:
        ConstraintViolation: IDE slot requested on aarch64/virt
    """
    bus_name = "pci"
    if arch == "aarch64" and machine.startswith("virt"):
        if slot.startswith("ide"):
            raise ConstraintViolation("aarch64/virt cannot use IDE devices", rule="ide-on-virt", context={"slot": slot})
        bus_name = "pcie"

    entry = LEGACY_ADDRESSES.get(slot)
    if entry is None:
        return None

    bus_number, slot_number = entry
    if bridges is not None:
        bridges.add(bus_number)
    return AddressBinding(
        topology=Topology.LEGACY,
        bus=f"{bus_name}.{bus_number}",
        addr=_format_addr(slot_number),
        bus_number=bus_number,
    )


def express_address(slot: str) -> AddressBinding | None:
    """Look up a slot in the PCI Express table.

    ``hostpciN`` maps to its dedicated root port; ``hostpciNbus0`` maps to a
    direct-attach address on the root complex.
    """
    entry = EXPRESS_ADDRESSES.get(slot)
    if entry is None:
        return None

    bus, slot_number = entry
    return AddressBinding(topology=Topology.EXPRESS, bus=bus, addr=_format_addr(slot_number))


def root_port(index: int) -> RootPortDescriptor | None:
    """Root port for hostpci slot ``index`` (4-15), None outside that range.

    Ports 1-4 are pre-provisioned by the q35 machine config, so only higher
    slots need one generated. Port and chassis numbers are index + 1.
    """
    addr = ROOT_PORT_ADDRESSES.get(index)
    if addr is None:
        return None

    number = index + 1
    return RootPortDescriptor(index=index, addr=addr, port=number, chassis=number)
