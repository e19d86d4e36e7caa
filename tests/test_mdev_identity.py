"""Tests for mediated device uuids and identity substitution (mdev_identity.py)."""

from hypothesis import given
from hypothesis.strategies import integers

from pci_passthrough.mdev_identity import (
    DEVICE_ID_SUBSTITUTIONS,
    SpoofedIdentity,
    generate_mdev_uuid,
    normalize_device_id,
    substitute_identity,
)
from tests.conftest import make_function

vm_ids = integers(min_value=0, max_value=999_999_999_999)
slot_indexes = integers(min_value=0, max_value=15)


class TestGenerateMdevUuid:
    """Tests for generate_mdev_uuid()."""

    def test_format(self) -> None:
        assert generate_mdev_uuid(100, 3) == "00000003-0000-0000-0000-000000000100"

    @given(vm_ids, slot_indexes)
    def test_deterministic(self, vm_id: int, index: int) -> None:
        assert generate_mdev_uuid(vm_id, index) == generate_mdev_uuid(vm_id, index)

    @given(vm_ids)
    def test_distinct_across_slots(self, vm_id: int) -> None:
        uuids = {generate_mdev_uuid(vm_id, index) for index in range(16)}
        assert len(uuids) == 16

    @given(vm_ids, slot_indexes)
    def test_fixed_width(self, vm_id: int, index: int) -> None:
        uuid = generate_mdev_uuid(vm_id, index)
        assert [len(part) for part in uuid.split("-")] == [8, 4, 4, 4, 12]


class TestSubstituteIdentity:
    """Tests for substitute_identity()."""

    def test_hit_uses_function_vendor_and_subsystem(self) -> None:
        function = make_function("0000:01:00.0", device="0x1e04")
        assert substitute_identity(function) == SpoofedIdentity(
            vendor="0x10de", device="0x1e3c", sub_vendor="0x1462", sub_device="0x3711"
        )

    def test_pascal_maps_to_p40(self) -> None:
        identity = substitute_identity(make_function("0000:01:00.0", device="0x1b81"))
        assert identity is not None
        assert identity.device == "0x1b38"

    def test_titan_v_mapping(self) -> None:
        identity = substitute_identity(make_function("0000:01:00.0", device="0x1b80"))
        assert identity is not None
        assert identity.device == "0x1bb0"

    def test_miss_returns_none(self) -> None:
        assert substitute_identity(make_function("0000:01:00.0", device="0x2204")) is None

    def test_case_and_prefix_insensitive(self) -> None:
        assert normalize_device_id("1E04") == "0x1e04"
        identity = substitute_identity(make_function("0000:01:00.0", device="0x1E04"))
        assert identity is not None

    def test_missing_subsystem_falls_back(self) -> None:
        function = make_function("0000:01:00.0", device="0x1e04", subsystem_vendor=None, subsystem_device=None)
        identity = substitute_identity(function)
        assert identity == SpoofedIdentity(vendor="0x10de", device="0x1e3c", sub_vendor="0x10de", sub_device="0x1e3c")

    def test_render_field_order(self) -> None:
        identity = SpoofedIdentity(vendor="0x10de", device="0x1e3c", sub_vendor="0x1462", sub_device="0x3711")
        assert identity.render() == (
            "x-pci-vendor-id=0x10de,x-pci-device-id=0x1e3c,x-pci-sub-vendor-id=0x1462,x-pci-sub-device-id=0x3711"
        )

    def test_table_size(self) -> None:
        assert len(DEVICE_ID_SUBSTITUTIONS) == 198
        assert set(DEVICE_ID_SUBSTITUTIONS.values()) == {"0x1e3c", "0x1db6", "0x1bb0", "0x1b38"}
