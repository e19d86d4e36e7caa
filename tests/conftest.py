"""Shared pytest fixtures for pci-passthrough tests."""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

from pci_passthrough.models import PhysicalFunction
from pci_passthrough.reservation import MemoryReservationStore, ReservationManager
from pci_passthrough.settings import Settings

skip_unless_linux = pytest.mark.skipif(
    not sys.platform.startswith("linux"),
    reason="Requires Linux (fcntl flock semantics, sysfs layout)",
)


# ============================================================================
# Collaborator fakes
# ============================================================================


def make_function(pci_id: str, device: str = "0x1e04", **kwargs: object) -> PhysicalFunction:
    """PhysicalFunction with NVIDIA-ish defaults."""
    defaults: dict[str, object] = {
        "vendor": "0x10de",
        "subsystem_vendor": "0x1462",
        "subsystem_device": "0x3711",
        "resettable": True,
    }
    defaults.update(kwargs)
    return PhysicalFunction(id=pci_id, device=device, **defaults)  # type: ignore[arg-type]


class FakeInventory:
    """PciInventory over a fixed list of functions, with prefix matching."""

    def __init__(self, functions: list[PhysicalFunction]) -> None:
        self.functions = functions
        self.lookups: list[str] = []

    async def lookup(self, id_or_pattern: str) -> list[PhysicalFunction]:
        self.lookups.append(id_or_pattern)
        prefix = id_or_pattern if id_or_pattern.count(":") == 2 else f"0000:{id_or_pattern}"
        return [f for f in self.functions if f.id.startswith(prefix)]

    async def lookup_detailed(self, pci_id: str) -> PhysicalFunction | None:
        for function in self.functions:
            if function.id == pci_id:
                return function.model_copy(update={"device_name": f"Device {function.device}"})
        return None


class FakeLiveness:
    """ProcessLiveness answering from a vm_id -> pid dict."""

    def __init__(self, running: dict[int, int] | None = None) -> None:
        self.running = running or {}
        self.queries: list[int] = []

    async def current_pid(self, vm_id: int) -> int | None:
        self.queries.append(vm_id)
        return self.running.get(vm_id)


class FakeClock:
    """Manually advanced epoch clock."""

    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def gpu_functions() -> list[PhysicalFunction]:
    """Two-function GPU (video + audio), an IGD and a NIC with two VFs."""
    return [
        make_function("0000:00:02.0", device="0x3e92", vendor="0x8086", subsystem_vendor="0x8086"),
        make_function("0000:01:00.0", device="0x1e04"),
        make_function("0000:01:00.1", device="0x10f7"),
        make_function("0000:02:00.0", device="0x1b81"),
        make_function("0000:03:10.0", device="0x10ed", vendor="0x8086", resettable=False),
        make_function("0000:03:10.2", device="0x10ed", vendor="0x8086", resettable=False),
        make_function("0000:04:00.0", device="0x2204"),
    ]


@pytest.fixture
def inventory(gpu_functions: list[PhysicalFunction]) -> FakeInventory:
    return FakeInventory(gpu_functions)


@pytest.fixture
def liveness() -> FakeLiveness:
    return FakeLiveness()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def memory_store() -> MemoryReservationStore:
    return MemoryReservationStore()


@pytest.fixture
def manager(memory_store: MemoryReservationStore, liveness: FakeLiveness, clock: FakeClock) -> ReservationManager:
    return ReservationManager(memory_store, liveness, clock=clock)


@pytest.fixture
def unit_test_settings(tmp_path: Path) -> Settings:
    """Settings pointing every host path into tmp_path."""
    return Settings(
        run_dir=tmp_path / "run",
        rom_dir=Path("/usr/share/kvm"),
        sysfs_root=tmp_path / "sys",
        pci_ids_path=tmp_path / "pci.ids",
    )
