"""State management for resource orchestration.

Persists, per applied resource, the declared attributes that produced it,
the provider-assigned attributes (ids, addresses) and a status. The state
file is the only shared mutable resource of a run; it is guarded by an
exclusive run lock and every per-resource commit is an atomic rewrite.

State file layout (JSON):
    {
      "version": 1,
      "serial": 7,
      "lineage": "<uuid>",
      "order": ["Network.main", "Subnet.a", ...],
      "resources": {"Network.main": {...StateEntry...}, ...}
    }
"""

import copy
import json
import logging
import os
import socket
import threading
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Iterator, Optional

from declarations import make_address
from resource_opr.errors import StateConflictError

logger = logging.getLogger(__name__)

STATE_VERSION = 1

APPLIED = 'applied'
FAILED = 'failed'
TAINTED = 'tainted'
STATUSES = (APPLIED, FAILED, TAINTED)


@dataclass
class StateEntry:
    """Per-resource persisted state.

    Attributes:
        kind: Resource kind
        name: Resource name
        status: applied, failed or tainted
        attributes: Declared attribute snapshot used for the last operation
        provider_attributes: Provider-assigned attributes ('id' among them)
        updated_at: Timestamp of the last commit
        error: Last provider error, if status is failed
    """
    kind: str
    name: str
    status: str = APPLIED
    attributes: dict = field(default_factory=dict)
    provider_attributes: dict = field(default_factory=dict)
    updated_at: Optional[float] = None
    error: Optional[str] = None

    @property
    def address(self) -> str:
        return make_address(self.kind, self.name)

    @property
    def resource_id(self) -> Optional[str]:
        """Provider id, or None if the resource was never created."""
        rid = self.provider_attributes.get('id')
        return str(rid) if rid is not None else None

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'kind': self.kind,
            'name': self.name,
            'status': self.status,
            'attributes': self.attributes,
            'provider_attributes': self.provider_attributes,
        }
        if self.updated_at is not None:
            d['updated_at'] = self.updated_at
        if self.error is not None:
            d['error'] = self.error
        return d

    @classmethod
    def from_dict(cls, data: dict) -> 'StateEntry':
        return cls(
            kind=data['kind'],
            name=data['name'],
            status=data.get('status', APPLIED),
            attributes=data.get('attributes', {}),
            provider_attributes=data.get('provider_attributes', {}),
            updated_at=data.get('updated_at'),
            error=data.get('error'),
        )


@dataclass(frozen=True)
class StateSnapshot:
    """Read-only copy of the state at a given serial.

    The planner works on snapshots so that planning has no side effects.
    """
    serial: int
    entries: dict[str, StateEntry]
    order: tuple[str, ...] = ()

    def get(self, address: str) -> Optional[StateEntry]:
        return self.entries.get(address)

    def __contains__(self, address: str) -> bool:
        return address in self.entries

    def __len__(self) -> int:
        return len(self.entries)


def _process_alive(pid: int) -> bool:
    """Check if process with given PID exists."""
    try:
        os.kill(pid, 0)
        return True
    except ProcessLookupError:
        return False
    except PermissionError:
        return True  # Process exists but we can't signal it


def _parse_owner(raw: Optional[bytes]) -> dict:
    """Lock file contents as a dict ({} if missing or unreadable)."""
    if raw is None:
        return {}
    try:
        data = json.loads(raw)
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


class StateStore:
    """File-backed state with an exclusive run lock.

    One active plan/apply/destroy per state file: run_lock() creates
    '<state>.lock' exclusively. Each StateStore instance has its own lock
    object, so stores on different files run concurrently in one process.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self.lock_path = self.path.with_name(self.path.name + '.lock')
        self._entries: dict[str, StateEntry] = {}
        self._order: list[str] = []
        self._serial = 0
        self._lineage = uuid.uuid4().hex
        self._run_lock = threading.Lock()
        self._commit_lock = threading.RLock()
        self._locked = False
        self.load()

    # -- reading --------------------------------------------------------

    def _read_file(self) -> Optional[dict]:
        try:
            with open(self.path, encoding='utf-8') as f:
                data = json.load(f)
        except FileNotFoundError:
            return None
        except json.JSONDecodeError as e:
            raise StateConflictError(f"State file {self.path} is corrupt: {e}") from e
        if not isinstance(data, dict):
            raise StateConflictError(f"State file {self.path} must be a JSON object")
        return data

    def load(self) -> None:
        """(Re)load state from disk. A missing file is an empty state."""
        with self._commit_lock:
            data = self._read_file()
            if data is None:
                self._entries = {}
                self._order = []
                self._serial = 0
                return

            version = data.get('version', STATE_VERSION)
            if version != STATE_VERSION:
                raise StateConflictError(
                    f"Unsupported state version {version} in {self.path}"
                )
            self._serial = int(data.get('serial', 0))
            self._lineage = data.get('lineage') or self._lineage
            self._order = list(data.get('order', []))
            self._entries = {
                address: StateEntry.from_dict(entry)
                for address, entry in data.get('resources', {}).items()
            }
            logger.debug(f"Loaded state from {self.path} (serial {self._serial})")

    @property
    def serial(self) -> int:
        return self._serial

    @property
    def lineage(self) -> str:
        return self._lineage

    @property
    def order(self) -> list[str]:
        return list(self._order)

    def get(self, address: str) -> Optional[StateEntry]:
        with self._commit_lock:
            entry = self._entries.get(address)
            return copy.deepcopy(entry) if entry else None

    def snapshot(self) -> StateSnapshot:
        """Deep copy of the current state for planning."""
        with self._commit_lock:
            return StateSnapshot(
                serial=self._serial,
                entries=copy.deepcopy(self._entries),
                order=tuple(self._order),
            )

    # -- locking --------------------------------------------------------

    @property
    def locked(self) -> bool:
        """True while this instance holds the run lock."""
        return self._locked

    @contextmanager
    def run_lock(self) -> Iterator['StateStore']:
        """Hold the exclusive run lock for the duration of the block.

        Raises:
            StateConflictError: If another run holds the lock
        """
        if not self._run_lock.acquire(blocking=False):
            raise StateConflictError(f"State {self.path} is locked by another run in this process")
        try:
            self._acquire_lock_file()
        except BaseException:
            self._run_lock.release()
            raise
        self._locked = True
        try:
            # Pick up anything committed since this store was created
            self.load()
            yield self
        finally:
            self._locked = False
            self._release_lock_file()
            self._run_lock.release()

    def _acquire_lock_file(self) -> None:
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        for _ in range(2):
            try:
                fd = os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                raw = self._read_lock_raw()
                owner = _parse_owner(raw)
                if raw is not None and self._owner_is_stale(owner):
                    logger.warning(f"Removing stale state lock {self.lock_path} (pid {owner['pid']})")
                    self._reclaim_lock_file(raw)
                    continue
                raise StateConflictError(
                    f"State {self.path} is locked by pid {owner.get('pid')} on {owner.get('host', '?')}"
                )
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump({
                    'pid': os.getpid(),
                    'host': socket.gethostname(),
                    'created_at': time.time(),
                }, f)
            logger.debug(f"Acquired state lock {self.lock_path}")
            return
        raise StateConflictError(f"Could not acquire state lock {self.lock_path}")

    def _reclaim_lock_file(self, stale: bytes) -> None:
        """Remove the lock file only if it still holds the stale owner.

        Another run may have reclaimed the lock between the staleness check
        and now; the '<lock>.reclaim' sentinel serializes reclaimers.
        """
        sentinel = self.lock_path.with_name(self.lock_path.name + '.reclaim')
        try:
            fd = os.open(sentinel, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            raise StateConflictError(
                f"State lock {self.lock_path} is being reclaimed by another run"
            ) from None
        os.close(fd)
        try:
            if self._read_lock_raw() == stale:
                self.lock_path.unlink(missing_ok=True)
        finally:
            sentinel.unlink(missing_ok=True)

    @staticmethod
    def _owner_is_stale(owner: dict) -> bool:
        """True only for a lock whose owner process is gone on this host."""
        pid = owner.get('pid')
        host = owner.get('host', socket.gethostname())
        if not isinstance(pid, int) or host != socket.gethostname():
            return False
        return not _process_alive(pid)

    def _read_lock_raw(self) -> Optional[bytes]:
        try:
            return self.lock_path.read_bytes()
        except FileNotFoundError:
            return None

    def _release_lock_file(self) -> None:
        self.lock_path.unlink(missing_ok=True)
        logger.debug(f"Released state lock {self.lock_path}")

    def force_unlock(self, force: bool = False) -> bool:
        """Remove a lock file left behind by a crashed run.

        Args:
            force: Also remove a lock whose owner is alive or on another host

        Returns:
            True if a lock file was removed

        Raises:
            StateConflictError: The owner may still be running and force is not set
        """
        raw = self._read_lock_raw()
        if raw is None:
            return False
        owner = _parse_owner(raw)
        if not force and not self._owner_is_stale(owner):
            raise StateConflictError(
                f"State {self.path} is locked by pid {owner.get('pid')} on "
                f"{owner.get('host', '?')}, which may still be running; refusing to unlock"
            )
        logger.warning(f"Force-removing state lock held by pid {owner.get('pid')}")
        self.lock_path.unlink(missing_ok=True)
        return True

    # -- writing --------------------------------------------------------

    def _mutate(self, change: Callable[[], None]) -> None:
        """Apply one change as an atomic read-check-modify-write.

        Raises:
            StateConflictError: Run lock not held, or file changed out-of-band
        """
        if not self._locked:
            raise StateConflictError("State mutation requires the run lock")
        with self._commit_lock:
            on_disk = self._read_file()
            disk_serial = int(on_disk.get('serial', 0)) if on_disk else 0
            disk_lineage = on_disk.get('lineage') if on_disk else None
            if disk_serial != self._serial or (disk_lineage and disk_lineage != self._lineage):
                raise StateConflictError(
                    f"State {self.path} was modified out-of-band "
                    f"(expected serial {self._serial}, found {disk_serial})"
                )
            entries, order = copy.deepcopy(self._entries), list(self._order)
            change()
            self._serial += 1
            try:
                self._write()
            except OSError:
                # Memory must not run ahead of the file
                self._entries, self._order = entries, order
                self._serial -= 1
                raise

    def _write(self) -> None:
        """Write state via temp file + rename so it is never half-written."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        data = {
            'version': STATE_VERSION,
            'serial': self._serial,
            'lineage': self._lineage,
            'order': self._order,
            'resources': {addr: e.to_dict() for addr, e in self._entries.items()},
        }
        tmp_file = self.path.with_name(f'.{self.path.name}.tmp.{os.getpid()}')
        try:
            with open(tmp_file, 'w', encoding='utf-8') as f:
                json.dump(data, f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            tmp_file.replace(self.path)
        except OSError:
            tmp_file.unlink(missing_ok=True)
            raise
        logger.debug(f"Saved state to {self.path} (serial {self._serial})")

    def commit(self, entry: StateEntry) -> None:
        """Insert or replace the entry for a resource."""
        entry = copy.deepcopy(entry)
        entry.updated_at = time.time()

        def _change() -> None:
            self._entries[entry.address] = entry

        self._mutate(_change)

    def remove(self, address: str) -> None:
        """Drop the entry for a resource (after a successful delete)."""
        def _change() -> None:
            self._entries.pop(address, None)
            if address in self._order:
                self._order.remove(address)

        self._mutate(_change)

    def mark(self, address: str, status: str, error: Optional[str] = None) -> None:
        """Set the status of an existing entry.

        Raises:
            KeyError: If the resource has no entry
            ValueError: If status is unknown
        """
        if status not in STATUSES:
            raise ValueError(f"Unknown status '{status}'")
        if address not in self._entries:
            raise KeyError(address)

        def _change() -> None:
            entry = self._entries[address]
            entry.status = status
            entry.error = error
            entry.updated_at = time.time()

        self._mutate(_change)

    def record_order(self, order: list[str]) -> None:
        """Record the topological order of the last successful apply."""
        def _change() -> None:
            self._order = [addr for addr in order if addr in self._entries]

        self._mutate(_change)
