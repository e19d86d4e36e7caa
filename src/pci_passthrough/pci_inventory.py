"""Host PCI bus inventory backed by sysfs.

Resolves hostpci ids (``01:00.0``, ``0000:01:00``) to the concrete host
functions behind them. An id without a function number expands to every
function of the device, which is how a whole multi-function GPU (video +
audio) is passed with a single entry.

Zero matches is a normal answer here; the resolver decides whether that
is fatal.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Protocol

import aiofiles
import aiofiles.os

from pci_passthrough import constants
from pci_passthrough._logging import get_logger
from pci_passthrough.models import PhysicalFunction

logger = get_logger(__name__)


class PciInventory(Protocol):
    """Host-bus inventory collaborator."""

    async def lookup(self, id_or_pattern: str) -> list[PhysicalFunction]:
        """All functions whose address starts with ``id_or_pattern``, sorted."""
        ...

    async def lookup_detailed(self, pci_id: str) -> PhysicalFunction | None:
        """One function including its human-readable device name."""
        ...


def normalize_pci_id(pci_id: str) -> str:
    """Add the default ``0000:`` domain when it was omitted."""
    pci_id = pci_id.lower()
    if pci_id.count(":") == 1:
        return f"0000:{pci_id}"
    return pci_id


class _PciIdsCache:
    """Lazily parsed pci.ids database (vendor and device names)."""

    __slots__ = ("_lock", "devices", "vendors")

    def __init__(self) -> None:
        self.vendors: dict[str, str] | None = None
        self.devices: dict[tuple[str, str], str] = {}
        self._lock: asyncio.Lock | None = None

    def get_lock(self) -> asyncio.Lock:
        # Created lazily so it binds to the running event loop
        if self._lock is None:
            self._lock = asyncio.Lock()
        return self._lock


class SysfsPciInventory:
    """PciInventory reading ``<sysfs_root>/bus/pci/devices``.

    Args:
        sysfs_root: sysfs mount point (tests point this at a fake tree)
        pci_ids_path: pci.ids database used for device names
    """

    def __init__(
        self,
        sysfs_root: Path = Path(constants.DEFAULT_SYSFS_ROOT),
        pci_ids_path: Path = Path(constants.DEFAULT_PCI_IDS_PATH),
    ) -> None:
        self.devices_dir = sysfs_root / constants.SYSFS_PCI_DEVICES
        self.pci_ids_path = pci_ids_path
        self._names = _PciIdsCache()

    async def lookup(self, id_or_pattern: str) -> list[PhysicalFunction]:
        prefix = normalize_pci_id(id_or_pattern)
        try:
            entries = await aiofiles.os.listdir(self.devices_dir)
        except FileNotFoundError:
            logger.warning("PCI sysfs directory missing", extra={"path": str(self.devices_dir)})
            return []

        functions = []
        for name in sorted(entries):
            if not name.startswith(prefix):
                continue
            functions.append(await self._read_function(name))

        logger.debug("PCI lookup", extra={"pattern": id_or_pattern, "matches": len(functions)})
        return functions

    async def lookup_detailed(self, pci_id: str) -> PhysicalFunction | None:
        pci_id = normalize_pci_id(pci_id)
        if not await aiofiles.os.path.isdir(self.devices_dir / pci_id):
            return None
        function = await self._read_function(pci_id)
        name = await self._device_name(function.vendor, function.device)
        return function.model_copy(update={"device_name": name})

    async def _read_function(self, name: str) -> PhysicalFunction:
        device_dir = self.devices_dir / name
        return PhysicalFunction(
            id=name,
            vendor=await _read_attr(device_dir / "vendor") or "0x0000",
            device=await _read_attr(device_dir / "device") or "0x0000",
            subsystem_vendor=await _read_attr(device_dir / "subsystem_vendor"),
            subsystem_device=await _read_attr(device_dir / "subsystem_device"),
            resettable=await aiofiles.os.path.exists(device_dir / "reset"),
            iommu_group=await _read_iommu_group(device_dir),
        )

    async def _device_name(self, vendor: str, device: str) -> str:
        vendor_key = vendor.removeprefix("0x").lower()
        device_key = device.removeprefix("0x").lower()
        await self._load_names()
        vendor_name = (self._names.vendors or {}).get(vendor_key)
        device_name = self._names.devices.get((vendor_key, device_key))
        if vendor_name and device_name:
            return f"{vendor_name} {device_name}"
        return f"{vendor_key}:{device_key}"

    async def _load_names(self) -> None:
        # Fast path: already parsed
        if self._names.vendors is not None:
            return

        async with self._names.get_lock():
            if self._names.vendors is not None:
                return

            vendors: dict[str, str] = {}
            try:
                async with aiofiles.open(self.pci_ids_path, encoding="utf-8", errors="replace") as f:
                    current_vendor = None
                    async for line in f:
                        # Format: "vvvv  Vendor" / "\tdddd  Device" / "\t\tssss ssss  Subsystem"
                        if not line.strip() or line.startswith("#"):
                            continue
                        if line.startswith("C "):
                            break  # device classes follow the vendor list
                        if not line.startswith("\t"):
                            current_vendor, _, name = line.strip().partition("  ")
                            vendors[current_vendor] = name.strip()
                        elif not line.startswith("\t\t") and current_vendor is not None:
                            device_id, _, name = line.strip().partition("  ")
                            self._names.devices[(current_vendor, device_id)] = name.strip()
            except FileNotFoundError:
                logger.debug("pci.ids not available, using numeric names", extra={"path": str(self.pci_ids_path)})
            self._names.vendors = vendors


async def _read_attr(path: Path) -> str | None:
    try:
        async with aiofiles.open(path) as f:
            value = (await f.read()).strip().lower()
    except FileNotFoundError:
        return None
    return value or None


async def _read_iommu_group(device_dir: Path) -> int | None:
    try:
        target = await aiofiles.os.readlink(str(device_dir / "iommu_group"))
    except OSError:
        return None
    try:
        return int(Path(target).name)
    except ValueError:
        return None
