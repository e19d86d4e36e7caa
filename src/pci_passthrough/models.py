"""Data models for pci-passthrough."""

from __future__ import annotations

import re
from enum import Enum
from typing import Self

from pydantic import BaseModel, ConfigDict, Field, model_validator

PCI_ID_PATTERN = r"(?:[a-f0-9]{4}:)?[a-f0-9]{2}:[a-f0-9]{2}(?:\.[a-f0-9])?"
"""Host PCI id: optional domain, bus and device required, optional function."""

PCI_ID_RE = re.compile(rf"^{PCI_ID_PATTERN}$")

ROMFILE_PATTERN = r"^[^,;/]*[^,;/.][^,;/]*$"
"""ROM file name: a plain name inside the ROM directory, never a path."""

_LEASE_LINE_RE = re.compile(rf"^({PCI_ID_PATTERN})\s(\d+)(?:\s(time|pid):(\d+))?$")


class Topology(str, Enum):
    """Virtual bus model a device is attached to."""

    LEGACY = "legacy"
    """Conventional PCI (i440fx, or the pcie.N buses of aarch64 virt)."""

    EXPRESS = "express"
    """PCI Express (q35 root complex and root ports)."""


class AddressBinding(BaseModel):
    """Bus position of one logical slot in one topology."""

    model_config = ConfigDict(frozen=True)

    topology: Topology
    bus: str = Field(description="Bus id as QEMU knows it, e.g. pci.0 or ich9-pcie-port-3")
    addr: str = Field(description="Slot address, hex formatted (0x10) or 0 for root ports")
    bus_number: int | None = Field(default=None, description="Legacy bus index (bridge bookkeeping)")

    def render(self) -> str:
        """Device-model suffix: ``,bus=<bus>,addr=<addr>``."""
        return f",bus={self.bus},addr={self.addr}"


class RootPortDescriptor(BaseModel):
    """PCIe root port generated for express slots past the pre-provisioned ones."""

    model_config = ConfigDict(frozen=True)

    index: int
    addr: str
    port: int
    chassis: int
    bus: str = "pcie.0"
    speed: int = 16
    width: int = 32
    multifunction: bool = True

    @property
    def id(self) -> str:
        return f"ich9-pcie-port-{self.port}"

    def render(self) -> str:
        """``pcie-root-port`` device string, field order fixed by QEMU consumers."""
        multifunction = "on" if self.multifunction else "off"
        return (
            f"pcie-root-port,id={self.id},addr={self.addr}"
            f",x-speed={self.speed},x-width={self.width},multifunction={multifunction},bus={self.bus}"
            f",port={self.port},chassis={self.chassis}"
        )


class PhysicalFunction(BaseModel):
    """One host PCI function as reported by the bus inventory."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(description="Full host address, dddd:bb:dd.f")
    vendor: str = Field(description="Vendor id, 0x-prefixed hex")
    device: str = Field(description="Device id, 0x-prefixed hex")
    subsystem_vendor: str | None = None
    subsystem_device: str | None = None
    resettable: bool = Field(default=False, description="Function level reset supported")
    iommu_group: int | None = None
    device_name: str | None = Field(default=None, description="Only set by detailed lookups")


class HostDeviceSpec(BaseModel):
    """Parsed hostpciN entry."""

    model_config = ConfigDict(frozen=True)

    host_ids: tuple[str, ...] = Field(min_length=1)
    pcie: bool = False
    rombar: bool = True
    romfile: str | None = Field(default=None, pattern=ROMFILE_PATTERN)
    x_vga: bool = False
    legacy_igd: bool = False
    mdev: str | None = None


class ResolvedHostDevice(BaseModel):
    """HostDeviceSpec plus the host functions each listed id expanded to."""

    model_config = ConfigDict(frozen=True)

    spec: HostDeviceSpec
    functions: tuple[PhysicalFunction, ...] = Field(min_length=1)

    @property
    def is_multifunction(self) -> bool:
        return len(self.functions) > 1

    @property
    def primary(self) -> PhysicalFunction:
        return self.functions[0]


class ReservationState(str, Enum):
    """Ownership claim carried by a reservation record."""

    TIME_LEASED = "time"
    PID_OWNED = "pid"
    UNBOUNDED = "unbounded"


class Reservation(BaseModel):
    """One lease file record.

    Time leases and pid ownership are mutually exclusive; promoting a lease
    to pid ownership replaces the record.
    """

    model_config = ConfigDict(frozen=True)

    pci_id: str = Field(pattern=rf"^{PCI_ID_PATTERN}$")
    vm_id: int = Field(ge=0)
    expires_at: int | None = Field(default=None, description="Epoch seconds")
    pid: int | None = None

    @model_validator(mode="after")
    def _check_single_claim(self) -> Self:
        if self.expires_at is not None and self.pid is not None:
            raise ValueError("reservation cannot be both time-leased and pid-owned")
        return self

    @property
    def state(self) -> ReservationState:
        if self.pid is not None:
            return ReservationState.PID_OWNED
        if self.expires_at is not None:
            return ReservationState.TIME_LEASED
        return ReservationState.UNBOUNDED

    def to_line(self) -> str:
        """Serialize as a lease file line (without newline)."""
        if self.pid is not None:
            return f"{self.pci_id} {self.vm_id} pid:{self.pid}"
        if self.expires_at is not None:
            return f"{self.pci_id} {self.vm_id} time:{self.expires_at}"
        return f"{self.pci_id} {self.vm_id}"

    @classmethod
    def from_line(cls, line: str) -> Reservation | None:
        """Parse a lease file line, returning None for anything unrecognized."""
        match = _LEASE_LINE_RE.match(line.strip())
        if match is None:
            return None
        pci_id, vm_id, kind, value = match.groups()
        if kind == "pid":
            return cls(pci_id=pci_id, vm_id=int(vm_id), pid=int(value))
        if kind == "time":
            return cls(pci_id=pci_id, vm_id=int(vm_id), expires_at=int(value))
        return cls(pci_id=pci_id, vm_id=int(vm_id))


class HostPciConfig(BaseModel):
    """VM-level inputs needed to assemble the hostpci device arguments."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    vm_id: int = Field(ge=0)
    hostpci: dict[str, str] = Field(default_factory=dict, description="hostpciN -> option string")
    vga: str | None = Field(default=None, description="Display adapter setting, None if unset")
    bios: str | None = Field(default=None, description="seabios or ovmf")
    machine: str = "pc"
    arch: str = "x86_64"
    win_version: int | None = None
    boot_order: dict[str, int] = Field(default_factory=dict, description="slot -> bootindex")

    @property
    def is_q35(self) -> bool:
        return "q35" in self.machine
