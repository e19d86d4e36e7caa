"""Tests for PidFileLiveness (process_probe.py).

Uses real pid files and real processes; no mocks.
"""

import os
import subprocess
import sys
from pathlib import Path

from pci_passthrough.process_probe import PidFileLiveness


class TestPidFileLiveness:
    """current_pid() answers from <run_dir>/<vm_id>.pid."""

    async def test_running_process(self, tmp_path: Path) -> None:
        (tmp_path / "100.pid").write_text(f"{os.getpid()}\n")
        assert await PidFileLiveness(tmp_path).current_pid(100) == os.getpid()

    async def test_missing_pid_file(self, tmp_path: Path) -> None:
        assert await PidFileLiveness(tmp_path).current_pid(100) is None

    async def test_malformed_pid_file(self, tmp_path: Path) -> None:
        (tmp_path / "100.pid").write_text("not-a-pid\n")
        assert await PidFileLiveness(tmp_path).current_pid(100) is None

    async def test_exited_process(self, tmp_path: Path) -> None:
        proc = subprocess.Popen([sys.executable, "-c", "pass"])
        proc.wait()
        (tmp_path / "100.pid").write_text(f"{proc.pid}\n")
        assert await PidFileLiveness(tmp_path).current_pid(100) is None

    async def test_pid_file_path(self, tmp_path: Path) -> None:
        assert PidFileLiveness(tmp_path).pid_file(42) == tmp_path / "42.pid"
