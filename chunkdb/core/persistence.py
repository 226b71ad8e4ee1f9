"""
Persistence for the chunk database.

Two on-disk formats, one per connector mode (little-endian throughout):

Snapshot (vector-{db_key}.{version}.bin):
    uint32 index length | uint32 documents length | uint32 spans length | uint32 vectors length
    index bytes | documents JSON | spans JSON | vectors JSON

Transactional, index only (vector-{db_key}.bin):
    uint32 transaction id length | transaction id (UTF-8) | uint32 collection version | index bytes

Writes are debounced (one flush per burst of mutations) and replace the
previous file atomically. Loads validate the tables against the index and
drop everything on any mismatch.
"""

import os
import re
import struct
import tempfile
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional, Union
import numpy as np
from pydantic import ValidationError

from util.logging import logger
from chunkdb.vector.types import ChunkSpan, Document
from .address_table import ChunkAddressTable, CorruptDatabaseError
from .schema import dump_documents, dump_spans, dump_vectors, load_documents, load_spans, load_vectors

SNAPSHOT_HEADER = struct.Struct("<4I")
UINT32 = struct.Struct("<I")

DEFAULT_SAVE_DELAY_SEC = 30.0

Version = Union[int, str]


class CorruptSnapshotError(CorruptDatabaseError):
    """A snapshot file is truncated, malformed or inconsistent with its index."""
    pass


class PersistenceState(Enum):
    UNLOADED = "unloaded"
    LOADED = "loaded"
    DIRTY = "dirty"


@dataclass
class SnapshotPayload:
    index_bytes: bytes
    documents: List[Document]
    spans: List[ChunkSpan]
    vectors: np.ndarray


def encode_snapshot(payload: SnapshotPayload) -> bytes:
    documents = dump_documents(payload.documents)
    spans = dump_spans(payload.spans)
    vectors = dump_vectors(np.asarray(payload.vectors, dtype=np.float64).tolist())

    header = SNAPSHOT_HEADER.pack(len(payload.index_bytes), len(documents), len(spans), len(vectors))
    return b"".join([header, payload.index_bytes, documents, spans, vectors])


def decode_snapshot(data: bytes) -> SnapshotPayload:
    """
    Split a snapshot into its four payloads.

    Raises:
        CorruptSnapshotError: If the header is short, lengths overrun the file or a table is malformed
    """
    if len(data) < SNAPSHOT_HEADER.size:
        raise CorruptSnapshotError(f"Snapshot is {len(data)} bytes, shorter than its header")

    lengths = SNAPSHOT_HEADER.unpack_from(data, 0)
    expected = SNAPSHOT_HEADER.size + sum(lengths)
    if expected != len(data):
        raise CorruptSnapshotError(f"Snapshot header describes {expected} bytes, file has {len(data)}")

    parts = []
    offset = SNAPSHOT_HEADER.size
    for length in lengths:
        parts.append(data[offset:offset + length])
        offset += length
    index_bytes, documents, spans, vectors = parts

    try:
        rows = load_vectors(vectors)
        return SnapshotPayload(
            index_bytes=index_bytes,
            documents=load_documents(documents),
            spans=load_spans(spans),
            vectors=np.asarray(rows, dtype=np.float32) if rows else np.zeros((0, 0), dtype=np.float32),
        )
    except ValidationError as e:
        raise CorruptSnapshotError(f"Snapshot tables are malformed: {e.error_count()} errors") from e


def validate_snapshot(payload: SnapshotPayload, ntotal: int) -> None:
    """Table lengths must match the restored index's vector count."""
    if len(payload.spans) != ntotal:
        raise CorruptSnapshotError(f"Span table has {len(payload.spans)} entries, index has {ntotal}")
    if len(payload.vectors) != ntotal:
        raise CorruptSnapshotError(f"Vector table has {len(payload.vectors)} rows, index has {ntotal}")
    if not payload.documents and payload.spans:
        raise CorruptSnapshotError("Document table is empty but span table is not")


def encode_transactional(index_bytes: bytes, transaction_id: str, collection_version: int) -> bytes:
    transaction = transaction_id.encode("utf-8")
    return b"".join([
        UINT32.pack(len(transaction)),
        transaction,
        UINT32.pack(collection_version),
        index_bytes,
    ])


def decode_transactional(data: bytes):
    """Returns (transaction_id, collection_version, index_bytes)."""
    if len(data) < UINT32.size:
        raise CorruptSnapshotError("Transactional snapshot is shorter than its header")

    (transaction_length,) = UINT32.unpack_from(data, 0)
    version_offset = UINT32.size + transaction_length
    if len(data) < version_offset + UINT32.size:
        raise CorruptSnapshotError(f"Transaction id length {transaction_length} overruns the file")

    transaction_id = data[UINT32.size:version_offset].decode("utf-8", errors="replace")
    (collection_version,) = UINT32.unpack_from(data, version_offset)
    return transaction_id, collection_version, data[version_offset + UINT32.size:]


def atomic_write(path: Path, data: bytes) -> Path:
    """Write to a temp file beside path, then rename it into place."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    fd, temp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(temp_name, path)
    except BaseException:
        if os.path.exists(temp_name):
            os.unlink(temp_name)
        raise
    return path


class PersistenceStrategy(ABC):
    """One on-disk format plus its file naming."""

    def __init__(self, base_folder: Union[str, Path], db_key: str):
        self.base_folder = Path(base_folder)
        self.db_key = db_key

    def path_for(self, version: Version) -> Path:
        return self.base_folder / self.file_name(version)

    @abstractmethod
    def file_name(self, version: Version) -> str:
        pass

    @abstractmethod
    def encode(self, table: ChunkAddressTable, version: Version) -> bytes:
        pass

    @abstractmethod
    def restore(self, data: bytes, table: ChunkAddressTable, version: Version) -> bool:
        """Load data into table. Returns False when the snapshot is for another version."""
        pass

    def after_save(self, version: Version) -> None:
        pass


class VersionedSnapshotPersistence(PersistenceStrategy):
    """Full state (index + documents + spans + vectors), one file per version."""

    def file_name(self, version: Version) -> str:
        version = str(version)
        if not version or re.search(r"[./\\]", version):
            raise ValueError(f"Invalid snapshot version: {version!r}")
        return f"vector-{self.db_key}.{version}.bin"

    def encode(self, table: ChunkAddressTable, version: Version) -> bytes:
        documents, spans, vectors = table.snapshot()
        return encode_snapshot(SnapshotPayload(
            index_bytes=table.index.serialize(),
            documents=documents,
            spans=spans,
            vectors=vectors,
        ))

    def restore(self, data: bytes, table: ChunkAddressTable, version: Version) -> bool:
        payload = decode_snapshot(data)
        if payload.index_bytes:
            table.index.deserialize(payload.index_bytes)
        validate_snapshot(payload, table.index.ntotal)

        table.restore(payload.documents, payload.spans, payload.vectors)
        table.check_invariants()
        return True

    def stale_versions(self, keep: Version) -> List[Path]:
        """Other versions of this database's snapshot in the base folder."""
        pattern = re.compile(rf"^vector-{re.escape(self.db_key)}\.([^./\\]+)\.bin$")
        stale = []
        for entry in sorted(self.base_folder.iterdir()):
            match = pattern.match(entry.name)
            if match and match.group(1) != str(keep):
                stale.append(entry)
        return stale

    def after_save(self, version: Version) -> None:
        for path in self.stale_versions(version):
            try:
                path.unlink()
                logger.log_persistence_operation("cleanup", self.db_key, details={"removed": path.name})
            except OSError as e:
                logger.log_persistence_operation("cleanup", self.db_key, "failed", {"path": path.name, "error": str(e)})


class TransactionalIndexPersistence(PersistenceStrategy):
    """Index-only image guarded by a transaction id and a collection version."""

    def __init__(self, base_folder: Union[str, Path], db_key: str, collection_version: int):
        super().__init__(base_folder, db_key)
        self.collection_version = collection_version

    def file_name(self, version: Version) -> str:
        return f"vector-{self.db_key}.bin"

    def encode(self, table: ChunkAddressTable, version: Version) -> bytes:
        return encode_transactional(table.index.serialize(), str(version or ""), self.collection_version)

    def restore(self, data: bytes, table: ChunkAddressTable, version: Version) -> bool:
        transaction_id, collection_version, index_bytes = decode_transactional(data)
        if transaction_id != str(version or ""):
            return False
        if collection_version != self.collection_version:
            return False

        if index_bytes:
            table.index.deserialize(index_bytes)
        table.restore_index_only()
        table.check_invariants()
        return True


class DebouncedFlush:
    """
    A single cancelable deferred call.

    schedule() cancels any pending call and starts a new timer; the swap is
    done under a lock so a cancelled timer that already woke up sees it was
    superseded and does nothing.
    """

    def __init__(self, callback: Callable[[], None], delay: float = DEFAULT_SAVE_DELAY_SEC, name: str = "chunkdb"):
        self._callback = callback
        self.delay = delay
        self.name = name
        self._lock = threading.Lock()
        self._timer: Optional[threading.Timer] = None
        self._generation = 0

    @property
    def pending(self) -> bool:
        with self._lock:
            return self._timer is not None

    def schedule(self) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
            self._generation += 1
            timer = threading.Timer(self.delay, self._fire, args=(self._generation,))
            timer.daemon = True
            timer.name = f"{self.name}-flush"
            self._timer = timer
            timer.start()

    def cancel(self) -> bool:
        with self._lock:
            if self._timer is None:
                return False
            self._timer.cancel()
            self._timer = None
            self._generation += 1
            return True

    def flush_now(self) -> bool:
        """Run a pending call immediately. Returns False if nothing was pending."""
        if not self.cancel():
            return False
        self._run()
        return True

    def _fire(self, generation: int) -> None:
        with self._lock:
            if generation != self._generation:
                return
            self._timer = None
        self._run()

    def _run(self) -> None:
        # No caller to report to: failures are logged here
        try:
            self._callback()
        except Exception as e:
            logger.log_persistence_operation("flush", self.name, "failed", {"error": str(e)})


class PersistenceManager:
    """Owns the load/save state machine, the strategy and the debounced flush."""

    def __init__(self, db_key: str, table: ChunkAddressTable, strategy: Optional[PersistenceStrategy],
                 lock: Optional[threading.RLock] = None, delay: float = DEFAULT_SAVE_DELAY_SEC):
        self.db_key = db_key
        self.table = table
        self.strategy = strategy
        self.lock = lock or threading.RLock()
        self.state = PersistenceState.UNLOADED
        self.pending_version: Optional[Version] = None
        self.last_error: Optional[Exception] = None
        self._generation = 0
        self._flush = DebouncedFlush(self._flush_pending, delay, name=db_key)

    @property
    def enabled(self) -> bool:
        return self.strategy is not None

    @property
    def flush_pending(self) -> bool:
        return self._flush.pending

    def mark_dirty(self, version: Version) -> None:
        """Record a mutation and (re)schedule the deferred save."""
        with self.lock:
            self.state = PersistenceState.DIRTY
            self.pending_version = version
            self._generation += 1

            if self.strategy is None or not self.table.index.is_created:
                return
            self._flush.schedule()

    def save(self, version: Version) -> Optional[Path]:
        """
        Encode the current state and atomically replace the snapshot for version.

        Returns:
            Path written, or None when persistence is disabled or there is no index
        """
        if self.strategy is None:
            return None

        with self.lock:
            if not self.table.index.is_created:
                return None
            path = self.strategy.path_for(version)
            data = self.strategy.encode(self.table, version)
            generation = self._generation

        atomic_write(path, data)
        logger.log_persistence_operation("save", self.db_key, details={
            "file": path.name,
            "bytes": len(data),
            "labels": self.table.label_count,
        })
        self.strategy.after_save(version)

        with self.lock:
            if generation == self._generation:
                self.state = PersistenceState.LOADED
        return path

    def load(self, version: Version) -> bool:
        """
        Replace the in-memory state with the snapshot for version.

        Returns:
            True if a snapshot was loaded, False if none was usable

        Raises:
            CorruptSnapshotError: If the snapshot is inconsistent (state is dropped first)
        """
        if self.strategy is None:
            return False

        path = self.strategy.path_for(version)
        if not path.exists():
            logger.log_persistence_operation("load", self.db_key, "skipped", {"reason": "missing", "file": path.name})
            return False

        with self.lock:
            self._flush.cancel()
            self.table.clear()
            try:
                data = path.read_bytes()
                loaded = self.strategy.restore(data, self.table, version)
            except CorruptSnapshotError as e:
                self._drop(e, path)
                raise
            except Exception as e:
                error = CorruptSnapshotError(f"Unreadable snapshot {path.name}: {e}")
                self._drop(error, path)
                raise error from e

            if not loaded:
                self.table.clear()
                self.state = PersistenceState.UNLOADED
                logger.log_persistence_operation("load", self.db_key, "skipped", {"reason": "version mismatch", "file": path.name})
                return False

            self.state = PersistenceState.LOADED
            self.last_error = None
            self.pending_version = version

        logger.log_persistence_operation("load", self.db_key, details={"file": path.name, "labels": self.table.index.ntotal})
        return True

    def flush(self) -> bool:
        """Run the pending deferred save now."""
        return self._flush.flush_now()

    def cancel(self) -> bool:
        return self._flush.cancel()

    def _drop(self, error: CorruptSnapshotError, path: Path) -> None:
        self.table.clear()
        self.state = PersistenceState.UNLOADED
        self.last_error = error
        logger.log_integrity_failure(self.db_key, str(error), {"file": path.name})

    def _flush_pending(self) -> None:
        with self.lock:
            version = self.pending_version
        self.save(version)
