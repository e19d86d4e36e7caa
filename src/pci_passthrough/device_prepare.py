"""Host-side preparation of passthrough devices before QEMU starts.

Either creates the mediated device a hostpci entry asked for, or hands the
whole IOMMU group to vfio-pci and resets the function. The kernel-facing
work is done by a DeviceBinder; this module only decides what to ask for
and turns failures into passthrough errors.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol

from pci_passthrough._logging import get_logger
from pci_passthrough.exceptions import DeviceNotFoundError, DevicePrepareError, IommuUnavailableError
from pci_passthrough.mdev_identity import generate_mdev_uuid

if TYPE_CHECKING:
    from pci_passthrough.device_cmd import HostPciAssembly
    from pci_passthrough.pci_inventory import PciInventory

logger = get_logger(__name__)


class DeviceBinder(Protocol):
    """Device-binding collaborator (sysfs driver and mdev operations)."""

    async def iommu_present(self) -> bool: ...

    async def bind_group_to_vfio(self, pci_id: str) -> bool:
        """Unbind every function of the IOMMU group and bind it to vfio-pci."""
        ...

    async def reset(self, pci_id: str) -> bool:
        """Function level reset."""
        ...

    async def create_mdev(self, pci_id: str, uuid: str, mdev_type: str) -> None: ...


async def prepare_pci_device(
    vm_id: int,
    pci_id: str,
    index: int,
    binder: DeviceBinder,
    inventory: PciInventory,
    mdev: str | None = None,
) -> str | None:
    """Make one host function ready for passthrough.

    Args:
        vm_id: Owning VM
        pci_id: Host function address
        index: hostpci slot index (selects the mdev uuid)
        binder: Kernel-facing device operations
        inventory: Host bus inventory
        mdev: Mediated device type to create instead of binding the function

    Returns:
        The mdev uuid when a mediated device was created, else None

    Raises:
        IommuUnavailableError: Host IOMMU not enabled
        DeviceNotFoundError: Function not present on the host
        DevicePrepareError: Bind, reset or mdev creation failed
    """
    info = await inventory.lookup_detailed(pci_id)
    if not await binder.iommu_present():
        raise IommuUnavailableError("cannot prepare PCI pass-through, IOMMU not present", context={"pci_id": pci_id})
    if info is None:
        raise DeviceNotFoundError(f"no pci device info for device '{pci_id}'", pci_id=pci_id)

    if mdev:
        uuid = generate_mdev_uuid(vm_id, index)
        try:
            await binder.create_mdev(pci_id, uuid, mdev)
        except OSError as e:
            raise DevicePrepareError(
                f"can't create mediated device '{mdev}' on '{pci_id}': {e}",
                context={"pci_id": pci_id, "mdev": mdev, "uuid": uuid},
            ) from e
        logger.info(
            "Mediated device created",
            extra={"vm_id": vm_id, "pci_id": pci_id, "uuid": uuid, "mdev": mdev, "device_name": info.device_name},
        )
        return uuid

    if not await binder.bind_group_to_vfio(pci_id):
        raise DevicePrepareError(f"can't unbind/bind PCI group to VFIO '{pci_id}'", context={"pci_id": pci_id})
    if info.resettable and not await binder.reset(pci_id):
        raise DevicePrepareError(f"can't reset PCI device '{pci_id}'", context={"pci_id": pci_id})

    logger.info(
        "PCI device bound to vfio",
        extra={"vm_id": vm_id, "pci_id": pci_id, "device_name": info.device_name, "reset": info.resettable},
    )
    return None


async def prepare_assembly(
    vm_id: int,
    assembly: HostPciAssembly,
    binder: DeviceBinder,
    inventory: PciInventory,
) -> list[str]:
    """Prepare every device of an assembled VM.

    Mediated devices are created from their parent function; every other
    function is bound to vfio.

    Returns:
        uuids of the mediated devices created
    """
    mdev_parents = {request.pci_id for request in assembly.mdev_requests}
    uuids = []
    for request in assembly.mdev_requests:
        uuid = await prepare_pci_device(vm_id, request.pci_id, request.index, binder, inventory, mdev=request.mdev_type)
        if uuid is not None:
            uuids.append(uuid)

    for pci_id in assembly.host_ids:
        if pci_id in mdev_parents:
            continue
        await prepare_pci_device(vm_id, pci_id, 0, binder, inventory)
    return uuids
