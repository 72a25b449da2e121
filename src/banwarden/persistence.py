from __future__ import annotations

import gzip
import hashlib
import os
import time
import zlib
from pathlib import Path
from typing import Callable, Optional

from banwarden import paths, snapshot
from banwarden.log import log_line
from banwarden.records import RecordStore


class FileStorage:
    """Snapshot files on disk. read_snapshot() never raises: unreadable == no data."""

    def read_snapshot(self, path: Path) -> Optional[bytes]:
        try:
            return path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as e:
            log_line(1, f"Cannot read state file {path}: {e}")
            return None

    def write_snapshot(self, path: Path, data: bytes) -> None:
        # write + rename: a crash leaves either the old or the new file
        paths.ensure_parent(path)
        tmp = path.with_name(path.name + ".tmp")
        with open(tmp, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)

    def exists(self, path: Path) -> bool:
        return path.exists()

    def delete(self, path: Path) -> None:
        path.unlink()


def _sha256(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


class PersistenceManager:
    """
    Keeps two copies of the record store:

    - volatile (tmpfs): rewritten whenever the store changed
    - durable (flash): rewritten at most every `durable_write_period` seconds,
      and only when the content differs from what is already there

    durable_write_period: -1 = never, 0 = only on forced save, N = every N seconds
    """

    def __init__(
        self,
        store: RecordStore,
        volatile_path: Path,
        durable_path: Path,
        durable_write_period: int = -1,
        compress_durable: bool = False,
        storage: Optional[FileStorage] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.volatile_path = Path(volatile_path)
        self.durable_path = Path(durable_path)
        self.durable_write_period = int(durable_write_period)
        self.compress_durable = bool(compress_durable)
        self.storage = storage or FileStorage()
        self._clock = clock
        self.last_durable_write = int(clock())

    # -------------------------
    # save
    # -------------------------
    def _durable_due(self, now: int, force: bool) -> bool:
        period = self.durable_write_period
        if period < 0:
            return False
        if period == 0:
            return force
        return force or (now - self.last_durable_write) >= period

    def _read_durable_plain(self) -> Optional[bytes]:
        data = self.storage.read_snapshot(self.durable_path)
        if data is None or not self.compress_durable:
            return data
        try:
            return gzip.decompress(data)
        except (OSError, EOFError, zlib.error):
            return None

    def save_durable(self, now: Optional[int] = None) -> bool:
        """Write the durable snapshot unless it already holds the same content."""
        now = int(self._clock()) if now is None else now
        plain = snapshot.dumps(self.store.all())

        current = self._read_durable_plain()
        if current is not None and _sha256(current) == _sha256(plain):
            log_line(3, "save: durable state unchanged, skipping write")
            return False

        data = gzip.compress(plain, mtime=0) if self.compress_durable else plain
        try:
            self.storage.write_snapshot(self.durable_path, data)
        except OSError as e:
            log_line(0, f"Error: cannot write persistent state file {self.durable_path}: {e}")
            return False

        log_line(2, f"save: wrote persistent state file {self.durable_path}")
        self.last_durable_write = now
        return True

    def save(self, force: bool = False) -> None:
        now = int(self._clock())

        if self.store.is_dirty():
            log_line(3, f"save: writing temp state file {self.volatile_path}")
            try:
                self.storage.write_snapshot(self.volatile_path, snapshot.dumps(self.store.all()))
                self.store.mark_clean()
            except OSError as e:
                log_line(0, f"Error: cannot write temp state file {self.volatile_path}: {e}")

        if self._durable_due(now, force):
            self.save_durable(now)

    # -------------------------
    # load / reset
    # -------------------------
    def _load_one(self, path: Path, compressed: bool) -> int:
        data = self.storage.read_snapshot(path)
        if data is None:
            return 0
        try:
            records = snapshot.loads(data, compressed=compressed)
        except (OSError, EOFError, zlib.error, UnicodeError) as e:
            log_line(1, f"Ignoring unreadable state file {path}: {e}")
            return 0
        for rec in records:
            self.store.upsert(rec)
        return len(records)

    def load(self) -> int:
        """Durable first, then volatile on top (volatile is always the newer one)."""
        self.store.clear()
        self._load_one(self.durable_path, self.compress_durable)
        self._load_one(self.volatile_path, False)
        self.store.mark_clean()
        log_line(2, f"load: loaded {self.store.count()} entries")
        return self.store.count()

    def delete_snapshots(self) -> None:
        for label, path in (("non-persistent", self.volatile_path), ("persistent", self.durable_path)):
            if not self.storage.exists(path):
                continue
            log_line(1, f"Removing {label} state file ({path})")
            try:
                self.storage.delete(path)
            except OSError as e:
                log_line(0, f"Error: cannot remove {path}: {e}")
