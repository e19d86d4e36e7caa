"""Exception hierarchy for pci-passthrough.

All exceptions inherit from PassthroughError.

Hierarchy:
    PassthroughError (base)
    ├── PermanentError (caller must change config or host state)
    │   ├── FormatError                ← malformed PCI id or hostpci option
    │   ├── DeviceNotFoundError        ← PCI id resolves to zero functions
    │   ├── ConstraintViolation        ← compatibility rule failed (.rule)
    │   ├── IommuUnavailableError      ← host has no IOMMU enabled
    │   └── DevicePrepareError         ← vfio bind / reset / mdev create failed
    └── TransientError (may succeed later, never retried internally)
        ├── LockTimeoutError           ← reservation lock not acquired in time
        └── ReservationConflictError   ← device owned by another live VM

Short aliases:
    NotFoundError = DeviceNotFoundError
    LockTimeout = LockTimeoutError
    Conflict = ReservationConflictError
"""

from __future__ import annotations

from typing import Any


class PassthroughError(Exception):
    """Base exception for all passthrough errors with structured context.

    Attributes:
        message: Human-readable error message
        context: Dictionary of structured error context for logging/debugging
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}


class PermanentError(PassthroughError):
    """Base for errors that won't go away by trying again.

    The VM configuration or the host setup has to change first.
    """


class TransientError(PassthroughError):
    """Base for errors caused by other launchers holding shared state.

    These may succeed on a later launch attempt, but this library never
    retries them on its own.
    """


# =============================================================================
# Request parsing / resolution
# =============================================================================


class FormatError(PermanentError):
    """hostpci entry is malformed.

    Raised for an invalid PCI id, an unknown or duplicated option key, or an
    option value that fails its declared type or pattern.
    """


class DeviceNotFoundError(PermanentError):
    """A listed PCI id matched no function on the host.

    Attributes:
        pci_id: The id (or pattern) that resolved to nothing
    """

    def __init__(self, message: str, pci_id: str, context: dict[str, Any] | None = None):
        ctx = context or {}
        ctx["pci_id"] = pci_id
        super().__init__(message, ctx)
        self.pci_id = pci_id


class ConstraintViolation(PermanentError):
    """A device compatibility rule failed.

    Attributes:
        rule: Name of the failing rule (e.g. "legacy-igd-vga-none")
    """

    def __init__(self, message: str, rule: str, context: dict[str, Any] | None = None):
        ctx = context or {}
        ctx["rule"] = rule
        super().__init__(message, ctx)
        self.rule = rule


# =============================================================================
# Device preparation
# =============================================================================


class IommuUnavailableError(PermanentError):
    """PCI passthrough requested but the host IOMMU is not enabled."""


class DevicePrepareError(PermanentError):
    """Binding a device to vfio, resetting it, or creating an mdev failed."""


# =============================================================================
# Reservations
# =============================================================================


class LockTimeoutError(TransientError):
    """Reservation lock could not be acquired within the bound.

    Attributes:
        lock_path: Sentinel path that stayed locked
        timeout: Seconds waited before giving up
    """

    def __init__(self, message: str, lock_path: str, timeout: float, context: dict[str, Any] | None = None):
        ctx = context or {}
        ctx.update({"lock_path": lock_path, "timeout": timeout})
        super().__init__(message, ctx)
        self.lock_path = lock_path
        self.timeout = timeout


class ReservationConflictError(TransientError):
    """PCI device is reserved by, or in use by, a different VM.

    Attributes:
        pci_id: Contended PCI id
        owner_vm_id: VM currently holding the reservation
    """

    def __init__(self, message: str, pci_id: str, owner_vm_id: int, context: dict[str, Any] | None = None):
        ctx = context or {}
        ctx.update({"pci_id": pci_id, "owner_vm_id": owner_vm_id})
        super().__init__(message, ctx)
        self.pci_id = pci_id
        self.owner_vm_id = owner_vm_id


NotFoundError = DeviceNotFoundError
LockTimeout = LockTimeoutError
Conflict = ReservationConflictError
