"""Process liveness probe for VMs running on this host.

A VM is considered running when its launcher pid file exists and names a
live process. The reservation manager compares that pid against the pid
recorded in a lease to tell a live owner from a leftover reservation.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Protocol

import aiofiles
import psutil

from pci_passthrough import constants
from pci_passthrough._logging import get_logger

logger = get_logger(__name__)


class ProcessLiveness(Protocol):
    """Process-liveness collaborator."""

    async def current_pid(self, vm_id: int) -> int | None:
        """Pid of the running VM process, None when the VM is not running."""
        ...


class PidFileLiveness:
    """ProcessLiveness reading ``<run_dir>/<vm_id>.pid``.

    The pid is confirmed with psutil so a stale pid file (host crash,
    SIGKILL) does not keep a VM looking alive.
    """

    def __init__(self, run_dir: Path = Path(constants.DEFAULT_RUN_DIR)) -> None:
        self.run_dir = run_dir

    def pid_file(self, vm_id: int) -> Path:
        return self.run_dir / f"{vm_id}.pid"

    async def current_pid(self, vm_id: int) -> int | None:
        path = self.pid_file(vm_id)
        try:
            async with aiofiles.open(path) as f:
                content = (await f.read()).strip()
        except FileNotFoundError:
            return None

        try:
            pid = int(content)
        except ValueError:
            logger.warning("Malformed VM pid file", extra={"vm_id": vm_id, "path": str(path)})
            return None

        if not await asyncio.to_thread(_is_alive, pid):
            logger.debug("VM pid file names a dead process", extra={"vm_id": vm_id, "pid": pid})
            return None
        return pid


def _is_alive(pid: int) -> bool:
    try:
        proc = psutil.Process(pid)
        return proc.is_running() and proc.status() != psutil.STATUS_ZOMBIE
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return False
