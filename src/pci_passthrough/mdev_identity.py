"""Mediated device identity substitution.

Consumer GPUs that are sliced into mediated devices only get a working guest
driver when the guest sees a supported datacenter device id. The table maps
the host's reported device id to the id presented to the guest; vendor and
subsystem ids are passed through from the physical function.

Ids missing from the table are not an error: the device is attached as a
plain mediated device without identity overrides.
"""

from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType
from typing import TYPE_CHECKING, Final

if TYPE_CHECKING:
    from pci_passthrough.models import PhysicalFunction

_SPOOF_TARGETS: Final[dict[str, tuple[str, ...]]] = {
    # Turing (TU102 family)
    "0x1e3c": (
        "0x21c4", "0x21d1", "0x21c2", "0x2182", "0x2183", "0x2184", "0x2187", "0x2188", "0x2191",
        "0x2192", "0x21ae", "0x21bf", "0x2189", "0x1fbf", "0x1fbb", "0x1fd9", "0x1ff9", "0x1fdd",
        "0x1f96", "0x1f99", "0x1fae", "0x1fb8", "0x1fb9", "0x1f97", "0x1f98", "0x1f9c", "0x1f9d",
        "0x1fb0", "0x1fb1", "0x1fb2", "0x1fba", "0x1f42", "0x1f47", "0x1f50", "0x1f51", "0x1f54",
        "0x1f55", "0x1f81", "0x1f82", "0x1f91", "0x1f92", "0x1f94", "0x1f95", "0x1f76", "0x1f07",
        "0x1f08", "0x1f09", "0x1f0a", "0x1f10", "0x1f11", "0x1f12", "0x1f14", "0x1f15", "0x1f2e",
        "0x1f36", "0x1f0b", "0x1eb5", "0x1eb6", "0x1eb8", "0x1eb9", "0x1ebe", "0x1ec2", "0x1ec7",
        "0x1ed0", "0x1ed1", "0x1ed3", "0x1f02", "0x1f04", "0x1f06", "0x1ef5", "0x1e81", "0x1e82",
        "0x1e84", "0x1e87", "0x1e89", "0x1e90", "0x1e91", "0x1e93", "0x1eab", "0x1eae", "0x1eb0",
        "0x1eb1", "0x1eb4", "0x1e04", "0x1e07", "0x1e2d", "0x1e2e", "0x1e30", "0x1e36", "0x1e37",
        "0x1e38", "0x1e3c", "0x1e3d", "0x1e3e", "0x1e78", "0x1e09", "0x1e02",
    ),
    # Volta
    "0x1db6": ("0x1dba", "0x1d81"),
    "0x1bb0": ("0x1b80",),
    # Pascal
    "0x1b38": (
        "0x1cfa", "0x1cfb", "0x1d01", "0x1d10", "0x1d11", "0x1d12", "0x1d13", "0x1d16", "0x1d33",
        "0x1d34", "0x1d52", "0x1d56", "0x1cb6", "0x1cba", "0x1cbb", "0x1cbc", "0x1cbd", "0x1ccc",
        "0x1ccd", "0x1ca8", "0x1caa", "0x1cb1", "0x1cb2", "0x1cb3", "0x1c70", "0x1c81", "0x1c82",
        "0x1c83", "0x1c8c", "0x1c8d", "0x1c8e", "0x1c8f", "0x1c90", "0x1c91", "0x1c92", "0x1c94",
        "0x1c96", "0x1ca7", "0x1c36", "0x1c07", "0x1c09", "0x1c20", "0x1c21", "0x1c22", "0x1c23",
        "0x1c2d", "0x1c30", "0x1c31", "0x1c35", "0x1c60", "0x1c61", "0x1c62", "0x1bb8", "0x1bb9",
        "0x1bbb", "0x1bc7", "0x1be0", "0x1be1", "0x1c00", "0x1c01", "0x1c02", "0x1c03", "0x1c04",
        "0x1c06", "0x1b87", "0x1ba0", "0x1ba1", "0x1ba2", "0x1ba9", "0x1baa", "0x1bad", "0x1bb0",
        "0x1bb1", "0x1bb3", "0x1bb4", "0x1bb5", "0x1bb6", "0x1bb7", "0x1b06", "0x1b07", "0x1b30",
        "0x1b38", "0x1b70", "0x1b78", "0x1b81", "0x1b82", "0x1b83", "0x1b84", "0x1b39", "0x1b00",
        "0x1b01", "0x1b02", "0x1b04", "0x1725", "0x172e", "0x172f", "0x15f0", "0x15f1",
    ),
}  # fmt: skip

DEVICE_ID_SUBSTITUTIONS: Final = MappingProxyType(
    {source: target for target, sources in _SPOOF_TARGETS.items() for source in sources}
)
"""Reported device id -> device id presented to the guest."""


@dataclass(frozen=True)
class SpoofedIdentity:
    """PCI identity presented to the guest for a mediated device."""

    vendor: str
    device: str
    sub_vendor: str
    sub_device: str

    def render(self) -> str:
        return (
            f"x-pci-vendor-id={self.vendor},x-pci-device-id={self.device}"
            f",x-pci-sub-vendor-id={self.sub_vendor},x-pci-sub-device-id={self.sub_device}"
        )


def normalize_device_id(device_id: str) -> str:
    """Lower-case, 0x-prefixed form used as the table key."""
    value = device_id.strip().lower()
    if not value.startswith("0x"):
        value = f"0x{value}"
    return value


def substitute_identity(function: PhysicalFunction) -> SpoofedIdentity | None:
    """Identity to present for ``function``, or None when its id is unmapped."""
    mapped = DEVICE_ID_SUBSTITUTIONS.get(normalize_device_id(function.device))
    if mapped is None:
        return None
    return SpoofedIdentity(
        vendor=function.vendor,
        device=mapped,
        sub_vendor=function.subsystem_vendor or function.vendor,
        sub_device=function.subsystem_device or mapped,
    )


def generate_mdev_uuid(vm_id: int, index: int) -> str:
    """Deterministic mdev uuid for hostpci slot ``index`` of VM ``vm_id``.

    Decimal, zero padded, so the owning VM and slot can be read back from
    the sysfs path.
    """
    return f"{index:08d}-0000-0000-0000-{vm_id:012d}"
