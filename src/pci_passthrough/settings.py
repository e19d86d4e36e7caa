"""Runtime configuration from environment variables."""

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from pci_passthrough import constants


class Settings(BaseSettings):
    """Runtime configuration from environment variables.

    All settings can be overridden via environment variables with PCI_PASSTHROUGH_ prefix.
    Example: PCI_PASSTHROUGH_RUN_DIR=/tmp/qemu-server
    """

    model_config = SettingsConfigDict(
        env_prefix="PCI_PASSTHROUGH_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    # Host paths
    run_dir: Path = Path(constants.DEFAULT_RUN_DIR)
    reservation_file: Path | None = None  # None = run_dir / pci-id-reservations
    rom_dir: Path = Path(constants.DEFAULT_ROM_DIR)
    sysfs_root: Path = Path(constants.DEFAULT_SYSFS_ROOT)
    pci_ids_path: Path = Path(constants.DEFAULT_PCI_IDS_PATH)

    # Reservation lock bounds
    reserve_lock_timeout_seconds: float = Field(default=constants.RESERVE_LOCK_TIMEOUT_SECONDS, gt=0)
    release_lock_timeout_seconds: float = Field(default=constants.RELEASE_LOCK_TIMEOUT_SECONDS, gt=0)
    reservation_grace_seconds: int = Field(default=constants.RESERVATION_GRACE_SECONDS, ge=0)

    @property
    def reservation_path(self) -> Path:
        """Lease file path (explicit override or derived from run_dir)."""
        if self.reservation_file is not None:
            return self.reservation_file
        return self.run_dir / constants.RESERVATION_FILE_NAME
