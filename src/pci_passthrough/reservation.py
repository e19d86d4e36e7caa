"""Cross-process PCI device reservations.

Launchers of different VMs run as independent processes, so device
ownership is arbitrated through a shared lease file guarded by an advisory
flock on a separate sentinel path. There is no coordinator and no
background sweeper: expired or abandoned leases are only noticed when a
new reserve() contends for the same device.

Lease lifecycle per PCI id:
    Unclaimed ──reserve(timeout)──► TimeLeased(vm, expiry)
    TimeLeased ──reserve(pid)─────► PidOwned(vm, pid)     (VM started)
    any ──release()───────────────► Unclaimed

Lease file format (one record per line, sorted by id)::

    0000:01:00.0 100 pid:4242
    0000:02:00.0 101 time:1767225600
    0000:03:00.0 102

Every read-modify-write happens in one locked section and the file is
replaced atomically, so other lockers see the old or the new record set,
never a partial one. Reclaiming a stale lease and claiming it for the new
VM happen in that same section.
"""

from __future__ import annotations

import asyncio
import contextlib
import fcntl
import os
import time
from collections.abc import AsyncIterator, Callable, Iterable
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

import aiofiles
import aiofiles.os
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_delay, wait_fixed

from pci_passthrough import constants
from pci_passthrough._logging import get_logger
from pci_passthrough.exceptions import FormatError, LockTimeoutError, ReservationConflictError
from pci_passthrough.models import PCI_ID_RE, Reservation, ReservationState
from pci_passthrough.process_probe import PidFileLiveness

if TYPE_CHECKING:
    from pci_passthrough.process_probe import ProcessLiveness
    from pci_passthrough.settings import Settings

logger = get_logger(__name__)

Records = dict[str, Reservation]


class ReservationStore(Protocol):
    """Minimal transactional key-value store for reservation records.

    ``transaction()`` locks, loads the full record set and yields it as a
    mutable dict. On normal exit the whole set is written back atomically;
    if the body raises, nothing is written. ``snapshot()`` reads under the
    same lock and never writes.
    """

    def transaction(self, timeout: float) -> contextlib.AbstractAsyncContextManager[Records]: ...

    async def snapshot(self, timeout: float) -> Records: ...


# ============================================================================
# File store
# ============================================================================


def parse_reservations(content: str) -> Records:
    """Parse lease file content, skipping lines that don't match the grammar."""
    records: Records = {}
    for line in content.splitlines():
        record = Reservation.from_line(line)
        if record is not None:
            records[record.pci_id] = record
    return records


def format_reservations(records: Records) -> str:
    """Serialize records sorted by PCI id."""
    return "".join(f"{records[pci_id].to_line()}\n" for pci_id in sorted(records))


class FileReservationStore:
    """ReservationStore backed by a lease file and a sentinel flock.

    Args:
        path: Lease file; the lock lives at ``<path>.lock``
    """

    def __init__(self, path: Path) -> None:
        self.path = path
        self.lock_path = path.with_name(f"{path.name}{constants.LOCK_SUFFIX}")

    @contextlib.asynccontextmanager
    async def transaction(self, timeout: float) -> AsyncIterator[Records]:
        async with self._locked(timeout):
            records = await self._read()
            yield records
            await self._write(records)

    async def snapshot(self, timeout: float) -> Records:
        async with self._locked(timeout):
            return await self._read()

    @contextlib.asynccontextmanager
    async def _locked(self, timeout: float) -> AsyncIterator[None]:
        await aiofiles.os.makedirs(self.path.parent, exist_ok=True)
        fd = self.lock_path.open("w")
        try:
            await self._acquire(fd.fileno(), timeout)
            yield
        finally:
            fd.close()  # Closing fd releases the flock
            # The sentinel file is never deleted: unlinking it would let a
            # later locker flock a fresh inode while another still holds the old one.

    async def _acquire(self, fileno: int, timeout: float) -> None:
        """Poll a non-blocking flock until it succeeds or ``timeout`` elapses."""
        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception_type(BlockingIOError),
                stop=stop_after_delay(timeout),
                wait=wait_fixed(constants.LOCK_POLL_INTERVAL_SECONDS),
                reraise=True,
            ):
                with attempt:
                    fcntl.flock(fileno, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            raise LockTimeoutError(
                f"can't lock file '{self.lock_path}' - got timeout",
                lock_path=str(self.lock_path),
                timeout=timeout,
            ) from None

    async def _read(self) -> Records:
        try:
            async with aiofiles.open(self.path) as f:
                content = await f.read()
        except FileNotFoundError:
            return {}
        return parse_reservations(content)

    async def _write(self, records: Records) -> None:
        # Temp file in the same directory so os.replace stays on one filesystem
        tmp_path = self.path.with_name(f".{self.path.name}.tmp.{os.getpid()}")
        try:
            async with aiofiles.open(tmp_path, "w") as f:
                await f.write(format_reservations(records))
                await f.flush()
                await asyncio.to_thread(os.fsync, f.fileno())
            await aiofiles.os.replace(tmp_path, self.path)
        except BaseException:
            with contextlib.suppress(FileNotFoundError):
                await aiofiles.os.remove(tmp_path)
            raise


# ============================================================================
# In-memory store
# ============================================================================


class MemoryReservationStore:
    """ReservationStore kept in process memory.

    Same transactional semantics as FileReservationStore; the lock is an
    asyncio.Lock, so it only excludes tasks of the current event loop.
    """

    def __init__(self, records: Iterable[Reservation] = ()) -> None:
        self.records: Records = {record.pci_id: record for record in records}
        self.writes = 0
        self._lock: asyncio.Lock | None = None

    def _get_lock(self) -> asyncio.Lock:
        if self._lock is None:
            self._lock = asyncio.Lock()
        return self._lock

    @contextlib.asynccontextmanager
    async def transaction(self, timeout: float) -> AsyncIterator[Records]:
        async with self._locked(timeout):
            working = dict(self.records)
            yield working
            self.records = working
            self.writes += 1

    async def snapshot(self, timeout: float) -> Records:
        async with self._locked(timeout):
            return dict(self.records)

    @contextlib.asynccontextmanager
    async def _locked(self, timeout: float) -> AsyncIterator[None]:
        lock = self._get_lock()
        try:
            async with asyncio.timeout(timeout):
                await lock.acquire()
        except TimeoutError:
            raise LockTimeoutError(
                "can't lock in-memory reservation store - got timeout",
                lock_path="<memory>",
                timeout=timeout,
            ) from None
        try:
            yield
        finally:
            lock.release()


# ============================================================================
# Manager
# ============================================================================


class ReservationManager:
    """Claims and releases exclusive ownership of host PCI devices.

    Args:
        store: Transactional record store
        liveness: Answers which process currently runs a given VM
        clock: Epoch-seconds source (injectable for tests)
        grace_seconds: Added on top of time-based lease timeouts
        reserve_lock_timeout: Bounded lock wait for reserve()
        release_lock_timeout: Bounded lock wait for release()
    """

    def __init__(
        self,
        store: ReservationStore,
        liveness: ProcessLiveness,
        *,
        clock: Callable[[], float] = time.time,
        grace_seconds: int = constants.RESERVATION_GRACE_SECONDS,
        reserve_lock_timeout: float = constants.RESERVE_LOCK_TIMEOUT_SECONDS,
        release_lock_timeout: float = constants.RELEASE_LOCK_TIMEOUT_SECONDS,
    ) -> None:
        self.store = store
        self.liveness = liveness
        self.clock = clock
        self.grace_seconds = grace_seconds
        self.reserve_lock_timeout = reserve_lock_timeout
        self.release_lock_timeout = release_lock_timeout

    @classmethod
    def from_settings(cls, settings: Settings, liveness: ProcessLiveness | None = None) -> ReservationManager:
        """Manager over the host lease file described by ``settings``."""
        return cls(
            FileReservationStore(settings.reservation_path),
            liveness if liveness is not None else PidFileLiveness(settings.run_dir),
            grace_seconds=settings.reservation_grace_seconds,
            reserve_lock_timeout=settings.reserve_lock_timeout_seconds,
            release_lock_timeout=settings.release_lock_timeout_seconds,
        )

    async def reserve(
        self,
        ids: str | Iterable[str],
        vm_id: int,
        timeout: int | None = None,
        pid: int | None = None,
    ) -> None:
        """Claim ``ids`` for ``vm_id``.

        Before the VM starts, call with ``timeout`` for a time-based lease;
        once it runs, call again with its ``pid`` to convert the lease into
        process ownership. With neither, the claim has no expiry.

        Raises:
            FormatError: An id is not a lower-case PCI address
            LockTimeoutError: Lock not acquired within the bound
            ReservationConflictError: An id is held by a different live VM.
                No record is changed in that case.
        """
        requested = _checked_ids(ids)
        if not requested:
            return

        async with self.store.transaction(self.reserve_lock_timeout) as records:
            now = int(self.clock())
            for pci_id in requested:
                current = records.get(pci_id)
                if current is not None and current.vm_id != vm_id:
                    await self._check_contended(current, now)

                if pid is not None:
                    records[pci_id] = Reservation(pci_id=pci_id, vm_id=vm_id, pid=pid)
                elif timeout is not None:
                    expires_at = now + timeout + self.grace_seconds
                    records[pci_id] = Reservation(pci_id=pci_id, vm_id=vm_id, expires_at=expires_at)
                else:
                    records[pci_id] = Reservation(pci_id=pci_id, vm_id=vm_id)

        logger.info(
            "PCI devices reserved",
            extra={"vm_id": vm_id, "pci_ids": requested, "timeout": timeout, "pid": pid},
        )

    async def _check_contended(self, current: Reservation, now: int) -> None:
        """Raise if ``current`` still belongs to its VM; return to allow reclaim."""
        match current.state:
            case ReservationState.TIME_LEASED:
                if current.expires_at is not None and current.expires_at > now:
                    raise ReservationConflictError(
                        f"PCI device '{current.pci_id}' is currently reserved for use by VMID '{current.vm_id}'",
                        pci_id=current.pci_id,
                        owner_vm_id=current.vm_id,
                    )
                logger.debug(
                    "Expired PCI reservation found, taking it",
                    extra={"pci_id": current.pci_id, "owner_vm_id": current.vm_id, "expired_at": current.expires_at},
                )
            case ReservationState.PID_OWNED:
                running_pid = await self.liveness.current_pid(current.vm_id)
                if running_pid is not None and running_pid == current.pid:
                    raise ReservationConflictError(
                        f"PCI device '{current.pci_id}' already in use by VMID '{current.vm_id}'",
                        pci_id=current.pci_id,
                        owner_vm_id=current.vm_id,
                    )
                logger.warning(
                    "Leftover PCI reservation found, taking it",
                    extra={
                        "pci_id": current.pci_id,
                        "owner_vm_id": current.vm_id,
                        "recorded_pid": current.pid,
                        "running_pid": running_pid,
                    },
                )
            case ReservationState.UNBOUNDED:
                raise ReservationConflictError(
                    f"PCI device '{current.pci_id}' is reserved by VMID '{current.vm_id}'",
                    pci_id=current.pci_id,
                    owner_vm_id=current.vm_id,
                )

    async def release(self, ids: str | Iterable[str]) -> None:
        """Drop the records of ``ids``. Unknown ids are ignored.

        Raises:
            FormatError: An id is not a lower-case PCI address
            LockTimeoutError: Lock not acquired within the bound
        """
        dropped = _checked_ids(ids)
        if not dropped:
            return

        async with self.store.transaction(self.release_lock_timeout) as records:
            for pci_id in dropped:
                records.pop(pci_id, None)

        logger.info("PCI reservations released", extra={"pci_ids": dropped})

    async def release_vm(self, vm_id: int) -> list[str]:
        """Drop every record owned by ``vm_id`` (cleanup after VM stop).

        Returns:
            The PCI ids that were released
        """
        async with self.store.transaction(self.release_lock_timeout) as records:
            owned = sorted(pci_id for pci_id, record in records.items() if record.vm_id == vm_id)
            for pci_id in owned:
                del records[pci_id]

        if owned:
            logger.info("PCI reservations released for VM", extra={"vm_id": vm_id, "pci_ids": owned})
        return owned

    async def list_reservations(self) -> list[Reservation]:
        """Current records, sorted by PCI id. Read-only: the lease file is not rewritten."""
        records = await self.store.snapshot(self.release_lock_timeout)
        return [records[pci_id] for pci_id in sorted(records)]


def _checked_ids(ids: str | Iterable[str]) -> list[str]:
    """Normalize to a list and reject ids the lease file grammar can't hold."""
    checked = [ids] if isinstance(ids, str) else list(ids)
    for pci_id in checked:
        if not PCI_ID_RE.match(pci_id):
            raise FormatError(f"invalid PCI id '{pci_id}'", context={"pci_id": pci_id})
    return checked
