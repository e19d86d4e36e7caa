"""Tests for the static PCI / PCIe address tables (address_map.py)."""

import pytest
from hypothesis import given
from hypothesis.strategies import integers, lists, permutations, sampled_from

from pci_passthrough.address_map import (
    CONFLICT_OK,
    EXPRESS_ADDRESSES,
    LEGACY_ADDRESSES,
    conflicts_with,
    express_address,
    legacy_address,
    root_port,
)
from pci_passthrough.exceptions import ConstraintViolation
from pci_passthrough.models import Topology

LEGACY_SLOTS = sorted(LEGACY_ADDRESSES)

# ============================================================================
# Legacy topology
# ============================================================================


class TestLegacyAddress:
    """Tests for legacy_address()."""

    def test_hostpci0(self) -> None:
        binding = legacy_address("hostpci0")
        assert binding is not None
        assert binding.topology == Topology.LEGACY
        assert binding.bus == "pci.0"
        assert binding.addr == "0x10"
        assert binding.render() == ",bus=pci.0,addr=0x10"

    @pytest.mark.parametrize(
        ("slot", "bus", "addr"),
        [
            ("hostpci1", "pci.0", "0x11"),
            ("hostpci2", "pci.0", "0x1b"),
            ("hostpci3", "pci.0", "0x1c"),
            ("hostpci4", "pci.2", "0xd"),
            ("hostpci15", "pci.2", "0x18"),
            ("net0", "pci.0", "0x12"),
            ("net6", "pci.1", "0x1"),
            ("net31", "pci.1", "0x1a"),
            ("virtio5", "pci.0", "0xf"),
            ("virtio6", "pci.2", "0x1"),
            ("virtioscsi30", "pci.3", "0x1f"),
            ("scsihw4", "pci.4", "0x3"),
            ("pci.2-igd", "pci.1", "0x1e"),
        ],
    )
    def test_table_entries(self, slot: str, bus: str, addr: str) -> None:
        binding = legacy_address(slot)
        assert binding is not None
        assert (binding.bus, binding.addr) == (bus, addr)

    def test_unknown_slot_returns_none(self) -> None:
        assert legacy_address("hostpci16") is None
        assert legacy_address("does-not-exist") is None

    def test_bridges_collects_bus_numbers(self) -> None:
        bridges: set[int] = set()
        legacy_address("hostpci0", bridges=bridges)
        legacy_address("hostpci5", bridges=bridges)
        legacy_address("net7", bridges=bridges)
        assert bridges == {0, 1, 2}

    def test_unknown_slot_leaves_bridges_untouched(self) -> None:
        bridges: set[int] = set()
        legacy_address("nope", bridges=bridges)
        assert bridges == set()

    def test_aarch64_virt_uses_pcie_bus_name(self) -> None:
        binding = legacy_address("hostpci4", arch="aarch64", machine="virt-8.1")
        assert binding is not None
        assert binding.bus == "pcie.2"

    def test_aarch64_non_virt_keeps_pci_bus_name(self) -> None:
        binding = legacy_address("hostpci0", arch="aarch64", machine="raspi3b")
        assert binding is not None
        assert binding.bus == "pci.0"

    def test_ide_on_aarch64_virt_is_constraint_violation(self) -> None:
        with pytest.raises(ConstraintViolation) as exc_info:
            legacy_address("ide0", arch="aarch64", machine="virt")
        assert exc_info.value.rule == "ide-on-virt"

    def test_ide_on_x86_is_just_unmapped(self) -> None:
        assert legacy_address("ide0", arch="x86_64", machine="pc") is None

    @given(permutations(LEGACY_SLOTS))
    def test_stable_regardless_of_call_order(self, order: list[str]) -> None:
        """Lookups are pure: any call order yields the same bindings."""
        first = {slot: legacy_address(slot) for slot in LEGACY_SLOTS}
        shuffled = {slot: legacy_address(slot) for slot in order}
        assert shuffled == first

    @given(lists(sampled_from(LEGACY_SLOTS), min_size=1, max_size=20))
    def test_repeated_calls_identical(self, slots: list[str]) -> None:
        for slot in slots:
            assert legacy_address(slot) == legacy_address(slot)

    def test_addresses_unique_except_conflict_pairs(self) -> None:
        """Only slots declared in CONFLICT_OK share an address."""
        owners: dict[tuple[int, int], list[str]] = {}
        for slot, position in LEGACY_ADDRESSES.items():
            owners.setdefault(position, []).append(slot)

        for slots in owners.values():
            if len(slots) > 1:
                assert len(slots) == 2
                a, b = slots
                assert CONFLICT_OK[a] == b
                assert CONFLICT_OK[b] == a

    def test_conflicts_with(self) -> None:
        assert conflicts_with("vga") == "legacy-igd"
        assert conflicts_with("legacy-igd") == "vga"
        assert conflicts_with("hostpci0") is None

    def test_table_is_read_only(self) -> None:
        with pytest.raises(TypeError):
            LEGACY_ADDRESSES["hostpci0"] = (9, 9)  # type: ignore[index]


# ============================================================================
# Express topology
# ============================================================================


class TestExpressAddress:
    """Tests for express_address()."""

    @pytest.mark.parametrize("index", range(16))
    def test_hostpci_uses_dedicated_root_port(self, index: int) -> None:
        binding = express_address(f"hostpci{index}")
        assert binding is not None
        assert binding.topology == Topology.EXPRESS
        assert binding.bus == f"ich9-pcie-port-{index + 1}"
        assert binding.addr == "0x0"

    @pytest.mark.parametrize(
        ("slot", "addr"),
        [("hostpci0bus0", "0x10"), ("hostpci3bus0", "0x13"), ("hostpci4bus0", "0x9"), ("hostpci15bus0", "0x19")],
    )
    def test_direct_attach_on_root_complex(self, slot: str, addr: str) -> None:
        binding = express_address(slot)
        assert binding is not None
        assert binding.bus == "pcie.0"
        assert binding.addr == addr

    def test_direct_attach_addresses_distinct(self) -> None:
        root_complex = [addr for bus, addr in EXPRESS_ADDRESSES.values() if bus == "pcie.0"]
        assert len(root_complex) == len(set(root_complex))

    def test_vga_and_ivshmem(self) -> None:
        assert express_address("vga").render() == ",bus=pcie.0,addr=0x1"  # type: ignore[union-attr]
        assert express_address("ivshmem").render() == ",bus=pcie.0,addr=0x14"  # type: ignore[union-attr]

    def test_unknown_slot(self) -> None:
        assert express_address("net0") is None


# ============================================================================
# Root ports
# ============================================================================


class TestRootPort:
    """Tests for root_port()."""

    def test_index_4(self) -> None:
        port = root_port(4)
        assert port is not None
        assert port.render() == (
            "pcie-root-port,id=ich9-pcie-port-5,addr=10.0,x-speed=16,x-width=32,multifunction=on,bus=pcie.0,port=5,chassis=5"
        )

    def test_index_15(self) -> None:
        port = root_port(15)
        assert port is not None
        assert port.addr == "11.3"
        assert port.id == "ich9-pcie-port-16"

    def test_port_and_chassis_distinct(self) -> None:
        ports = [root_port(i) for i in range(4, 16)]
        assert all(p is not None for p in ports)
        numbers = [(p.port, p.chassis) for p in ports if p is not None]
        assert numbers == [(i + 1, i + 1) for i in range(4, 16)]
        assert len({p.addr for p in ports if p is not None}) == 12

    def test_root_port_matches_express_slot_bus(self) -> None:
        """Generated port id is the bus the express slot binding points at."""
        for i in range(4, 16):
            port = root_port(i)
            binding = express_address(f"hostpci{i}")
            assert port is not None and binding is not None
            assert port.id == binding.bus

    @given(integers().filter(lambda i: i < 4 or i > 15))
    def test_out_of_range_is_none(self, index: int) -> None:
        assert root_port(index) is None
