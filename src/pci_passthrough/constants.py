"""Constants for PCI passthrough addressing and reservations."""

from typing import Final

# ============================================================================
# Device slots
# ============================================================================

MAX_HOSTPCI_DEVICES: Final[int] = 16
"""Number of hostpciN slots a VM may use (hostpci0..hostpci15)."""

PREPROVISIONED_ROOT_PORTS: Final[int] = 4
"""PCIe root ports already present in the q35 machine config (ports 1-4).
Slots hostpci4 and above get a root port generated on demand."""

LEGACY_IGD_HOST_SLOT_SUFFIX: Final[str] = "02.0"
"""Host address suffix of the primary integrated graphics function."""

MDEV_DISPLAY: Final[str] = "off"
"""display= value for spoofed mediated devices."""

MDEV_FUNCTION_ADDR: Final[str] = "0x0.0"
"""addr= value for spoofed mediated devices on their root port."""

# ============================================================================
# Reservation lease file
# ============================================================================

RESERVATION_FILE_NAME: Final[str] = "pci-id-reservations"
"""Lease file name under the run directory."""

LOCK_SUFFIX: Final[str] = ".lock"
"""Sentinel lock path = lease file path + this suffix."""

RESERVE_LOCK_TIMEOUT_SECONDS: Final[float] = 5.0
"""Bounded wait for the lock during reserve()."""

RELEASE_LOCK_TIMEOUT_SECONDS: Final[float] = 2.0
"""Bounded wait for the lock during release()."""

RESERVATION_GRACE_SECONDS: Final[int] = 5
"""Added to a time-based lease on top of the requested timeout."""

LOCK_POLL_INTERVAL_SECONDS: Final[float] = 0.05
"""Interval between non-blocking flock attempts while waiting."""

# ============================================================================
# Host paths
# ============================================================================

DEFAULT_RUN_DIR: Final[str] = "/run/qemu-server"
DEFAULT_ROM_DIR: Final[str] = "/usr/share/kvm"
DEFAULT_SYSFS_ROOT: Final[str] = "/sys"
DEFAULT_PCI_IDS_PATH: Final[str] = "/usr/share/misc/pci.ids"

SYSFS_PCI_DEVICES: Final[str] = "bus/pci/devices"
"""Relative to the sysfs root."""

SYSFS_MDEV_DEVICES: Final[str] = "/sys/bus/mdev/devices"
"""Absolute guest-visible sysfsdev prefix for spoofed mediated devices."""

SYSFS_PCI_DEVICES_ABS: Final[str] = "/sys/bus/pci/devices"
"""Absolute sysfsdev prefix for plain mediated devices."""
