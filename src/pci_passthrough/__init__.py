"""pci-passthrough: host PCI device assignment for QEMU guests.

Places host passthrough devices on stable virtual bus positions and
arbitrates exclusive ownership of the physical devices between independent
VM launcher processes.

Assembling the device arguments of one VM:
    ```python
    from pci_passthrough import HostPciConfig, Settings, SysfsPciInventory, assemble_hostpci_devices

    config = HostPciConfig(
        vm_id=100,
        machine="q35",
        hostpci={"hostpci0": "0000:01:00,pcie=1,x-vga=1"},
    )
    assembly = await assemble_hostpci_devices(config, SysfsPciInventory(), Settings())
    qemu_args.extend(assembly.devices)
    ```

Reserving the devices around a launch:
    ```python
    from pci_passthrough import ReservationManager, Settings

    reservations = ReservationManager.from_settings(Settings())
    await reservations.reserve(assembly.host_ids, vm_id=100, timeout=30)
    pid = start_vm()
    await reservations.reserve(assembly.host_ids, vm_id=100, pid=pid)
    ...
    await reservations.release(assembly.host_ids)
    ```

Requirements:
    - Linux with IOMMU enabled for actual passthrough
    - Python 3.12+
"""

from pci_passthrough._logging import configure_logging
from pci_passthrough.address_map import express_address, legacy_address, root_port
from pci_passthrough.device_cmd import HostPciAssembly, MdevRequest, assemble_hostpci_devices, build_hostpci_device
from pci_passthrough.device_prepare import DeviceBinder, prepare_assembly, prepare_pci_device
from pci_passthrough.exceptions import (
    Conflict,
    ConstraintViolation,
    DeviceNotFoundError,
    DevicePrepareError,
    FormatError,
    IommuUnavailableError,
    LockTimeout,
    LockTimeoutError,
    NotFoundError,
    PassthroughError,
    PermanentError,
    ReservationConflictError,
    TransientError,
)
from pci_passthrough.hostpci import HOSTPCI_RULES, parse_hostpci, resolve_hostpci, validate_hostpci
from pci_passthrough.mdev_identity import generate_mdev_uuid, substitute_identity
from pci_passthrough.models import (
    AddressBinding,
    HostDeviceSpec,
    HostPciConfig,
    PhysicalFunction,
    Reservation,
    ReservationState,
    ResolvedHostDevice,
    RootPortDescriptor,
    Topology,
)
from pci_passthrough.pci_inventory import PciInventory, SysfsPciInventory
from pci_passthrough.process_probe import PidFileLiveness, ProcessLiveness
from pci_passthrough.reservation import (
    FileReservationStore,
    MemoryReservationStore,
    ReservationManager,
    ReservationStore,
)
from pci_passthrough.settings import Settings

__all__ = [
    "HOSTPCI_RULES",
    "AddressBinding",
    "Conflict",
    "ConstraintViolation",
    "DeviceBinder",
    "DeviceNotFoundError",
    "DevicePrepareError",
    "FileReservationStore",
    "FormatError",
    "HostDeviceSpec",
    "HostPciAssembly",
    "HostPciConfig",
    "IommuUnavailableError",
    "LockTimeout",
    "LockTimeoutError",
    "MdevRequest",
    "MemoryReservationStore",
    "NotFoundError",
    "PassthroughError",
    "PciInventory",
    "PermanentError",
    "PhysicalFunction",
    "PidFileLiveness",
    "ProcessLiveness",
    "Reservation",
    "ReservationConflictError",
    "ReservationManager",
    "ReservationState",
    "ReservationStore",
    "ResolvedHostDevice",
    "RootPortDescriptor",
    "Settings",
    "SysfsPciInventory",
    "Topology",
    "TransientError",
    "assemble_hostpci_devices",
    "build_hostpci_device",
    "configure_logging",
    "express_address",
    "generate_mdev_uuid",
    "legacy_address",
    "parse_hostpci",
    "prepare_assembly",
    "prepare_pci_device",
    "resolve_hostpci",
    "root_port",
    "substitute_identity",
    "validate_hostpci",
]

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("pci-passthrough")
except PackageNotFoundError:
    __version__ = "0.0.0.dev0"
