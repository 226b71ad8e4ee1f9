"""
Tests for snapshot codecs, atomic writes, the debounced flush and stale-version cleanup.
"""

import logging
import struct
import threading
import time

import numpy as np
import pytest

from chunkdb.core.address_table import ChunkAddressTable
from chunkdb.core.persistence import (
    SNAPSHOT_HEADER,
    CorruptSnapshotError,
    DebouncedFlush,
    PersistenceManager,
    PersistenceState,
    SnapshotPayload,
    TransactionalIndexPersistence,
    VersionedSnapshotPersistence,
    atomic_write,
    decode_snapshot,
    decode_transactional,
    encode_snapshot,
    encode_transactional,
)
from chunkdb.vector import ChunkSpan, Document, NumpyIndexAdapter


def sample_payload():
    return SnapshotPayload(
        index_bytes=b"INDEX",
        documents=[Document(name="doc", content="ab cd", start_label=0, length=2)],
        spans=[ChunkSpan(0, 2), ChunkSpan(3, 2)],
        vectors=np.array([[1.0, 0.0], [0.0, 1.0]], dtype=np.float32),
    )


def populated_table():
    table = ChunkAddressTable(NumpyIndexAdapter())
    table.insert("doc", "ab cd", [(0, 2), (3, 2)], [[1.0, 0.0], [0.0, 1.0]])
    return table


class TestSnapshotCodec:

    def test_header_layout(self):
        data = encode_snapshot(sample_payload())

        index_length, documents_length, spans_length, vectors_length = SNAPSHOT_HEADER.unpack_from(data, 0)
        assert SNAPSHOT_HEADER.size == 16
        assert index_length == len(b"INDEX")
        assert data[16:16 + index_length] == b"INDEX"
        assert len(data) == 16 + index_length + documents_length + spans_length + vectors_length

        documents = data[16 + index_length:16 + index_length + documents_length]
        assert b'"startIndex":0' in documents

    def test_decode_restores_tables(self):
        payload = decode_snapshot(encode_snapshot(sample_payload()))

        assert payload.index_bytes == b"INDEX"
        assert payload.documents == sample_payload().documents
        assert payload.spans == [ChunkSpan(0, 2), ChunkSpan(3, 2)]
        np.testing.assert_allclose(payload.vectors, [[1.0, 0.0], [0.0, 1.0]])

    def test_short_header(self):
        with pytest.raises(CorruptSnapshotError):
            decode_snapshot(b"\x01\x00")

    def test_truncated_payload(self):
        data = encode_snapshot(sample_payload())
        with pytest.raises(CorruptSnapshotError):
            decode_snapshot(data[:-3])

    def test_trailing_garbage(self):
        data = encode_snapshot(sample_payload())
        with pytest.raises(CorruptSnapshotError):
            decode_snapshot(data + b"xx")

    def test_malformed_table(self):
        documents = b'[{"name": "doc"}]'
        data = SNAPSHOT_HEADER.pack(0, len(documents), 2, 2) + documents + b"[]" + b"[]"
        with pytest.raises(CorruptSnapshotError):
            decode_snapshot(data)

    def test_ragged_vector_table(self):
        vectors = b"[[1.0, 2.0], [3.0]]"
        data = SNAPSHOT_HEADER.pack(0, 2, 2, len(vectors)) + b"[]" + b"[]" + vectors
        with pytest.raises(CorruptSnapshotError):
            decode_snapshot(data)


class TestTransactionalCodec:

    def test_layout(self):
        data = encode_transactional(b"IDX", "tx-7", 3)

        assert data == struct.pack("<I", 4) + b"tx-7" + struct.pack("<I", 3) + b"IDX"
        assert decode_transactional(data) == ("tx-7", 3, b"IDX")

    def test_truncated(self):
        with pytest.raises(CorruptSnapshotError):
            decode_transactional(b"\x00")
        with pytest.raises(CorruptSnapshotError):
            decode_transactional(struct.pack("<I", 50) + b"short")


def test_atomic_write_replaces_file(tmp_path):
    target = tmp_path / "nested" / "vector-db.1.bin"

    atomic_write(target, b"first")
    atomic_write(target, b"second")

    assert target.read_bytes() == b"second"
    assert [p.name for p in target.parent.iterdir()] == ["vector-db.1.bin"]


class TestDebouncedFlush:

    def test_burst_coalesces_into_one_call(self):
        calls = []
        done = threading.Event()

        def callback():
            calls.append(time.monotonic())
            done.set()

        flush = DebouncedFlush(callback, delay=0.05)
        for _ in range(5):
            flush.schedule()

        assert done.wait(2.0)
        time.sleep(0.1)
        assert len(calls) == 1
        assert not flush.pending

    def test_cancel_prevents_call(self):
        calls = []
        flush = DebouncedFlush(lambda: calls.append(1), delay=0.05)
        flush.schedule()

        assert flush.cancel()
        time.sleep(0.15)
        assert calls == []
        assert not flush.cancel()

    def test_flush_now_runs_pending_call(self):
        calls = []
        flush = DebouncedFlush(lambda: calls.append(1), delay=60)

        assert not flush.flush_now()
        flush.schedule()
        assert flush.flush_now()
        assert calls == [1]
        assert not flush.pending

    def test_failure_is_logged(self, caplog):
        def callback():
            raise OSError("disk full")

        flush = DebouncedFlush(callback, delay=60, name="db")
        flush.schedule()

        with caplog.at_level(logging.WARNING, logger="chunkdb"):
            flush.flush_now()

        assert "persistence.flush" in caplog.text
        assert "disk full" in caplog.text


class TestVersionedSnapshotPersistence:

    def test_file_name(self, tmp_path):
        strategy = VersionedSnapshotPersistence(tmp_path, "db")
        assert strategy.file_name(3) == "vector-db.3.bin"
        assert strategy.path_for("v2") == tmp_path / "vector-db.v2.bin"

    @pytest.mark.parametrize("version", ["", "1.2", "../x", "a\\b"])
    def test_invalid_version(self, tmp_path, version):
        with pytest.raises(ValueError):
            VersionedSnapshotPersistence(tmp_path, "db").file_name(version)

    def test_stale_versions_only_match_own_key(self, tmp_path):
        for name in ["vector-db.1.bin", "vector-db.2.bin", "vector-db.3.bin",
                     "vector-db2.1.bin", "vector-other.1.bin", "notes.txt"]:
            (tmp_path / name).write_bytes(b"")

        stale = VersionedSnapshotPersistence(tmp_path, "db").stale_versions(3)

        assert [p.name for p in stale] == ["vector-db.1.bin", "vector-db.2.bin"]

    def test_cleanup_failure_is_logged(self, tmp_path, caplog, monkeypatch):
        (tmp_path / "vector-db.1.bin").write_bytes(b"")
        strategy = VersionedSnapshotPersistence(tmp_path, "db")

        def refuse(self, *args, **kwargs):
            raise PermissionError("read-only")

        monkeypatch.setattr(type(tmp_path), "unlink", refuse)
        with caplog.at_level(logging.WARNING, logger="chunkdb"):
            strategy.after_save(2)

        assert "persistence.cleanup" in caplog.text
        assert "read-only" in caplog.text

    def test_restore_rejects_table_mismatch(self, tmp_path):
        table = populated_table()
        strategy = VersionedSnapshotPersistence(tmp_path, "db")
        documents, spans, vectors = table.snapshot()
        data = encode_snapshot(SnapshotPayload(table.index.serialize(), documents, spans[:1], vectors))

        with pytest.raises(CorruptSnapshotError):
            strategy.restore(data, ChunkAddressTable(NumpyIndexAdapter()), 1)


class TestPersistenceManager:

    def test_save_then_load(self, tmp_path):
        table = populated_table()
        manager = PersistenceManager("db", table, VersionedSnapshotPersistence(tmp_path, "db"), delay=60)
        manager.mark_dirty(1)
        assert manager.state == PersistenceState.DIRTY

        path = manager.save(1)
        manager.cancel()

        assert path == tmp_path / "vector-db.1.bin"
        assert manager.state == PersistenceState.LOADED

        restored = ChunkAddressTable(NumpyIndexAdapter())
        loader = PersistenceManager("db", restored, VersionedSnapshotPersistence(tmp_path, "db"))
        assert loader.load(1)
        assert restored.documents == table.documents
        assert restored.spans == table.spans
        np.testing.assert_allclose(restored.vectors, table.vectors)

    def test_save_without_index_writes_nothing(self, tmp_path):
        table = ChunkAddressTable(NumpyIndexAdapter())
        manager = PersistenceManager("db", table, VersionedSnapshotPersistence(tmp_path, "db"))

        assert manager.save(1) is None
        assert list(tmp_path.iterdir()) == []

    def test_mark_dirty_without_strategy_schedules_nothing(self):
        manager = PersistenceManager("db", populated_table(), None)
        manager.mark_dirty(1)

        assert manager.state == PersistenceState.DIRTY
        assert not manager.flush_pending
        assert manager.save(1) is None

    def test_missing_file(self, tmp_path):
        manager = PersistenceManager("db", populated_table(), VersionedSnapshotPersistence(tmp_path, "db"))
        assert not manager.load(9)
        assert manager.state == PersistenceState.UNLOADED

    def test_garbage_file_drops_state(self, tmp_path):
        (tmp_path / "vector-db.1.bin").write_bytes(b"not a snapshot at all")
        table = populated_table()
        manager = PersistenceManager("db", table, VersionedSnapshotPersistence(tmp_path, "db"))

        with pytest.raises(CorruptSnapshotError):
            manager.load(1)

        assert table.documents == []
        assert table.index.ntotal == 0
        assert isinstance(manager.last_error, CorruptSnapshotError)

    def test_unreadable_file_drops_state(self, tmp_path):
        (tmp_path / "vector-db.1.bin").mkdir()
        table = populated_table()
        manager = PersistenceManager("db", table, VersionedSnapshotPersistence(tmp_path, "db"))
        manager.mark_dirty(1)

        with pytest.raises(CorruptSnapshotError):
            manager.load(1)

        assert table.index.ntotal == 0
        assert manager.state == PersistenceState.UNLOADED
        assert isinstance(manager.last_error, CorruptSnapshotError)
        assert not manager.flush_pending

    def test_mark_dirty_schedules_under_shared_lock(self):
        lock = threading.RLock()
        manager = PersistenceManager("db", populated_table(), VersionedSnapshotPersistence("unused", "db"),
                                     lock=lock, delay=60)

        with lock:
            worker = threading.Thread(target=manager.mark_dirty, args=(1,))
            worker.start()
            worker.join(0.1)
            assert worker.is_alive()
            assert not manager.flush_pending

        worker.join(2.0)
        assert manager.flush_pending
        assert manager.state == PersistenceState.DIRTY
        manager.cancel()

    def test_mark_dirty_without_index_schedules_nothing(self, tmp_path):
        table = ChunkAddressTable(NumpyIndexAdapter())
        manager = PersistenceManager("db", table, VersionedSnapshotPersistence(tmp_path, "db"))

        manager.mark_dirty(1)

        assert manager.state == PersistenceState.DIRTY
        assert not manager.flush_pending

    def test_transactional_mismatch(self, tmp_path):
        table = populated_table()
        saver = PersistenceManager("db", table, TransactionalIndexPersistence(tmp_path, "db", 2))
        saver.save("tx-1")

        restored = ChunkAddressTable(NumpyIndexAdapter())
        assert not PersistenceManager("db", restored, TransactionalIndexPersistence(tmp_path, "db", 2)).load("tx-0")
        assert not PersistenceManager("db", restored, TransactionalIndexPersistence(tmp_path, "db", 3)).load("tx-1")
        assert restored.index.ntotal == 0

        assert PersistenceManager("db", restored, TransactionalIndexPersistence(tmp_path, "db", 2)).load("tx-1")
        assert restored.index.ntotal == 2
        assert restored.index_only
