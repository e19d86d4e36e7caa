"""hostpciN entry parsing, resolution and compatibility validation.

A hostpci entry is a property string::

    [host=]<id>[;<id>...][,rombar=<bool>][,romfile=<file>][,pcie=<bool>]
        [,x-vga=<bool>][,legacy-igd=<bool>][,mdev=<type>]

Flow per entry: parse_hostpci() -> resolve_hostpci() -> validate_hostpci().
Validation runs HOSTPCI_RULES in order and stops at the first failing rule,
so the error always names the same rule for the same input.
"""

from __future__ import annotations

import re
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Final

from pci_passthrough import constants
from pci_passthrough._logging import get_logger
from pci_passthrough.exceptions import ConstraintViolation, DeviceNotFoundError, FormatError
from pci_passthrough.models import PCI_ID_PATTERN, ROMFILE_PATTERN, HostDeviceSpec, ResolvedHostDevice

if TYPE_CHECKING:
    from pci_passthrough.pci_inventory import PciInventory

logger = get_logger(__name__)

_HOST_RE = re.compile(rf"^{PCI_ID_PATTERN}(?:;{PCI_ID_PATTERN})*$")
_ROMFILE_RE = re.compile(ROMFILE_PATTERN)
_MDEV_RE = re.compile(r"^[^/\.:]+$")

_TRUE_VALUES: Final = frozenset({"1", "on", "yes", "true"})
_FALSE_VALUES: Final = frozenset({"0", "off", "no", "false"})

_BOOLEAN_KEYS: Final = {"rombar": "rombar", "pcie": "pcie", "x-vga": "x_vga", "legacy-igd": "legacy_igd"}
_STRING_KEYS: Final = {"romfile": ("romfile", _ROMFILE_RE), "mdev": ("mdev", _MDEV_RE)}


# ============================================================================
# Parsing
# ============================================================================


def _parse_bool(key: str, value: str) -> bool:
    lowered = value.lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise FormatError(f"invalid boolean for '{key}': '{value}'", context={"key": key, "value": value})


def parse_hostpci(text: str | None) -> HostDeviceSpec | None:
    """Parse a hostpci option string.

    Args:
        text: Raw config value, e.g. "0000:01:00.0;0000:01:00.1,pcie=1,x-vga=1"

    Returns:
        HostDeviceSpec, or None for an empty/unset entry

    Raises:
        FormatError: Malformed id, unknown/duplicate key or invalid value
    """
    if not text:
        return None

    options: dict[str, object] = {}
    host: str | None = None
    seen: set[str] = set()

    for position, item in enumerate(text.split(",")):
        if not item:
            raise FormatError("empty option in hostpci entry", context={"value": text})

        key, sep, value = item.partition("=")
        if not sep:
            # Only the first item may omit its key (host is the default key)
            if position != 0:
                raise FormatError(f"missing key in option '{item}'", context={"value": text})
            key, value = "host", item

        if key in seen:
            raise FormatError(f"duplicate key '{key}'", context={"value": text})
        seen.add(key)

        if key == "host":
            if not _HOST_RE.match(value):
                raise FormatError(f"invalid PCI id list '{value}'", context={"key": key, "value": value})
            host = value
        elif key in _BOOLEAN_KEYS:
            options[_BOOLEAN_KEYS[key]] = _parse_bool(key, value)
        elif key in _STRING_KEYS:
            attr, pattern = _STRING_KEYS[key]
            if not pattern.match(value):
                raise FormatError(f"invalid value for '{key}': '{value}'", context={"key": key, "value": value})
            options[attr] = value
        else:
            raise FormatError(f"unknown option '{key}'", context={"key": key, "value": text})

    if host is None:
        raise FormatError("hostpci entry has no host id", context={"value": text})

    return HostDeviceSpec(host_ids=tuple(host.split(";")), **options)  # type: ignore[arg-type]


# ============================================================================
# Resolution
# ============================================================================


async def resolve_hostpci(spec: HostDeviceSpec, inventory: PciInventory) -> ResolvedHostDevice:
    """Expand every listed id to its host functions, preserving order.

    Raises:
        DeviceNotFoundError: An id matched no host function
    """
    functions = []
    for pci_id in spec.host_ids:
        found = await inventory.lookup(pci_id)
        if not found:
            raise DeviceNotFoundError(f"no PCI device found for '{pci_id}'", pci_id=pci_id)
        functions.extend(found)
    return ResolvedHostDevice(spec=spec, functions=tuple(functions))


# ============================================================================
# Validation
# ============================================================================


@dataclass(frozen=True)
class RuleContext:
    """Inputs every compatibility rule can inspect."""

    resolved: ResolvedHostDevice
    vga: str | None
    q35: bool
    legacy_igd_claimed: bool

    @property
    def spec(self) -> HostDeviceSpec:
        return self.resolved.spec


@dataclass(frozen=True)
class HostPciRule:
    """Named predicate; ``check`` returns True when the device passes."""

    name: str
    message: str
    check: Callable[[RuleContext], bool]
    applies: Callable[[RuleContext], bool] = lambda ctx: True


@dataclass(frozen=True)
class HostPciValidation:
    """Outcome of a passing validation."""

    mdev_enabled: bool
    warnings: list[str] = field(default_factory=list)


def _is_legacy_igd(ctx: RuleContext) -> bool:
    return ctx.spec.legacy_igd


HOSTPCI_RULES: Final[tuple[HostPciRule, ...]] = (
    HostPciRule(
        "legacy-igd-single-function",
        "legacy IGD assignment is not compatible with multifunction devices",
        lambda ctx: not ctx.resolved.is_multifunction,
        _is_legacy_igd,
    ),
    HostPciRule(
        "legacy-igd-vga-none",
        "legacy IGD assignment requires VGA mode to be 'none'",
        lambda ctx: ctx.vga == "none",
        _is_legacy_igd,
    ),
    HostPciRule(
        "legacy-igd-rombar",
        "legacy IGD assignment requires rombar to be enabled",
        lambda ctx: ctx.spec.rombar,
        _is_legacy_igd,
    ),
    HostPciRule(
        "legacy-igd-x-vga",
        "legacy IGD assignment is not compatible with x-vga",
        lambda ctx: not ctx.spec.x_vga,
        _is_legacy_igd,
    ),
    HostPciRule(
        "legacy-igd-mdev",
        "legacy IGD assignment is not compatible with mdev",
        lambda ctx: ctx.spec.mdev is None,
        _is_legacy_igd,
    ),
    HostPciRule(
        "legacy-igd-pcie",
        "legacy IGD assignment is not compatible with pcie",
        lambda ctx: not ctx.spec.pcie,
        _is_legacy_igd,
    ),
    HostPciRule(
        "legacy-igd-q35",
        "legacy IGD assignment is not compatible with q35",
        lambda ctx: not ctx.q35,
        _is_legacy_igd,
    ),
    HostPciRule(
        "legacy-igd-host-slot",
        f"legacy IGD assignment only works for devices on host bus 00:{constants.LEGACY_IGD_HOST_SLOT_SUFFIX}",
        lambda ctx: ctx.resolved.primary.id.endswith(constants.LEGACY_IGD_HOST_SLOT_SUFFIX),
        _is_legacy_igd,
    ),
    HostPciRule(
        "legacy-igd-unique",
        "only one device can be assigned in legacy-igd mode",
        lambda ctx: not ctx.legacy_igd_claimed,
        _is_legacy_igd,
    ),
    HostPciRule(
        "pcie-requires-q35",
        "q35 machine model is not enabled",
        lambda ctx: ctx.q35,
        lambda ctx: ctx.spec.pcie,
    ),
)


def validate_hostpci(
    resolved: ResolvedHostDevice,
    vga: str | None,
    q35: bool,
    *,
    legacy_igd_claimed: bool = False,
    slot: str | None = None,
) -> HostPciValidation:
    """Check a resolved device against the compatibility rules.

    Args:
        resolved: Device to check
        vga: VM display adapter setting (None when unset)
        q35: Whether the VM uses the q35 (express) machine
        legacy_igd_claimed: Another entry already uses legacy-igd mode
        slot: Slot name, only used in diagnostics

    Returns:
        HostPciValidation with the effective mdev flag and any warnings

    Raises:
        ConstraintViolation: First failing rule, named in ``.rule``
    """
    ctx = RuleContext(resolved=resolved, vga=vga, q35=q35, legacy_igd_claimed=legacy_igd_claimed)
    for rule in HOSTPCI_RULES:
        if rule.applies(ctx) and not rule.check(ctx):
            raise ConstraintViolation(
                rule.message,
                rule=rule.name,
                context={"slot": slot, "host_ids": list(resolved.spec.host_ids)},
            )

    warnings = []
    mdev_enabled = resolved.spec.mdev is not None
    if mdev_enabled and resolved.is_multifunction:
        message = f"ignoring mediated device '{slot or resolved.primary.id}' with multifunction device"
        logger.warning(message, extra={"slot": slot, "functions": len(resolved.functions)})
        warnings.append(message)
        mdev_enabled = False

    return HostPciValidation(mdev_enabled=mdev_enabled, warnings=warnings)
