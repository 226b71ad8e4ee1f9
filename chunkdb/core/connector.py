"""
FAISS vector database connector: the public surface used by the orchestration layer.

Each connector owns its index, address tables and snapshot files exclusively.
Public operations and the deferred flush share one re-entrant lock per
connector, so a flush never observes a half-applied insert or remove.
"""

import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence

from util.logging import logger
from chunkdb.vector.types import SearchResult
from .address_table import ChunkAddressTable, CorruptDatabaseError, DocumentNotFoundError
from .clustering import ResultClusterer
from .config import debug_enabled, get_base_folder, get_index_adapter, get_save_delay
from .persistence import (
    PersistenceManager,
    PersistenceState,
    PersistenceStrategy,
    TransactionalIndexPersistence,
    Version,
    VersionedSnapshotPersistence,
)


@dataclass
class FaissVectorDatabaseOptions:
    """Per-connector options; defaults come from the environment."""

    base_folder: Optional[str] = field(default_factory=get_base_folder)
    """Snapshot directory; None disables persistence"""

    save_delay: float = field(default_factory=get_save_delay)
    """Seconds of quiet before a dirty database is flushed"""

    vector_provider: Optional[str] = None
    """Index engine override (faiss|memory)"""


class FaissVectorDatabaseConnector:
    """Chunked-document store with clustered search and debounced persistence."""

    def __init__(self, db_key: str, version: Version = 0, options: Optional[FaissVectorDatabaseOptions] = None,
                 collection_version: Optional[int] = None):
        """
        Create the connector and try to load its snapshot.

        Args:
            db_key: Database key (names the snapshot files)
            version: Snapshot version, or the last transaction id in transactional mode
            options: Connector options (default: from environment)
            collection_version: Selects the transactional index-only format when given
        """
        self.db_key = db_key
        self.version: Version = version
        self.options = options or FaissVectorDatabaseOptions()
        self.collection_version = collection_version

        self._lock = threading.RLock()
        self.table = ChunkAddressTable(get_index_adapter(self.options.vector_provider))
        self.clusterer = ResultClusterer(self.table)
        self.persistence = PersistenceManager(
            db_key,
            self.table,
            self._build_strategy(),
            lock=self._lock,
            delay=self.options.save_delay,
        )
        self.last_load_error: Optional[Exception] = None

        try:
            self.load_from_disk(version)
        except Exception as e:
            # Any failed load leaves the connector empty
            self.table.clear()
            self.last_load_error = e
            logger.log_persistence_operation("load", db_key, "failed", {"error": str(e)})

    @classmethod
    def with_transaction_log(cls, db_key: str, collection_version: int, last_transaction_id: str,
                             options: Optional[FaissVectorDatabaseOptions] = None) -> "FaissVectorDatabaseConnector":
        """Connector persisting an index-only image guarded by transaction id and collection version."""
        return cls(db_key, version=last_transaction_id, options=options, collection_version=collection_version)

    def _build_strategy(self) -> Optional[PersistenceStrategy]:
        if not self.options.base_folder:
            return None
        if self.collection_version is not None:
            return TransactionalIndexPersistence(self.options.base_folder, self.db_key, self.collection_version)
        return VersionedSnapshotPersistence(self.options.base_folder, self.db_key)

    @property
    def state(self) -> PersistenceState:
        return self.persistence.state

    @property
    def last_transaction_id(self) -> Version:
        return self.version

    def get_buffer(self) -> bytes:
        """Raw index bytes (empty when no index exists)."""
        with self._lock:
            if not self.table.index.is_created:
                return b""
            return self.table.index.serialize()

    def insert(self, name: str, content: str, spans: Sequence[Any], vectors, transaction_id: Optional[Version] = None) -> bool:
        """
        Insert a chunked document.

        Args:
            name: Document name
            content: Full document text
            spans: One (start, length) span per vector
            vectors: Chunk vectors
            transaction_id: Version for the next save

        Returns:
            False when there were no vectors to insert
        """
        with self._lock:
            if transaction_id is not None:
                self.version = transaction_id

            document = self.table.insert(name, content, spans, vectors)
            if document is None:
                return False

            logger.log_vector_operation("insert", self.db_key, {
                "name": name,
                "start_label": document.start_label,
                "labels": document.length,
                "ntotal": self.table.index.ntotal,
            })
            self.persistence.mark_dirty(self.version)
            return True

    def remove(self, name: str, transaction_id: Optional[Version] = None) -> int:
        """Remove every document with this name. Returns the number removed."""
        with self._lock:
            if transaction_id is not None:
                self.version = transaction_id

            if not self.table.index.is_created:
                return 0
            self.table.require_addressable()

            try:
                removed = self.table.remove(name)
            except CorruptDatabaseError as e:
                self._invalidate(e)
                raise

            if removed:
                logger.log_vector_operation("remove", self.db_key, {
                    "name": name,
                    "documents": removed,
                    "ntotal": self.table.index.ntotal,
                })
                self.persistence.mark_dirty(self.version)
            return removed

    def search(self, keywords: Optional[Iterable[str]], query_vector, k: int,
               min_relevance: float = 0.0, content_size: int = 0) -> List[SearchResult]:
        """
        Clustered search for up to k passages.

        Args:
            keywords: Keywords boosting passages that contain them (may be empty)
            query_vector: Query vector
            k: Maximum number of passages
            min_relevance: Minimum inner product for first-pass candidates
            content_size: Chunks of context on each side of a passage

        Returns:
            Ranked SearchResults (content, relevance, path_name)
        """
        with self._lock:
            if not self.table.index.is_created or not self.table.index.ntotal:
                return []
            self.table.require_addressable()

            try:
                results = self.clusterer.search(
                    query_vector,
                    k,
                    min_relevance=min_relevance,
                    content_size=content_size,
                    keywords=keywords,
                )
            except (DocumentNotFoundError, CorruptDatabaseError) as e:
                self._invalidate(e)
                raise

            if debug_enabled():
                stats = self.clusterer.last_stats
                logger.log_search(self.db_key, k, stats.get("candidates", 0), stats.get("clusters", 0), len(results))
            return results

    def save_to_disk(self, version: Optional[Version] = None) -> Optional[Path]:
        """Write the snapshot now (cancels any pending deferred save)."""
        with self._lock:
            if version is not None:
                self.version = version
            version = self.version
        self.persistence.cancel()
        return self.persistence.save(version)

    def load_from_disk(self, version: Optional[Version] = None) -> bool:
        """
        Replace the in-memory state with the snapshot for version.

        Returns:
            False when there is no usable snapshot (the connector is then empty)

        Raises:
            CorruptSnapshotError: If the snapshot is inconsistent (the connector is then empty)
        """
        with self._lock:
            if version is not None:
                self.version = version
            loaded = self.persistence.load(self.version)
            if loaded:
                self.last_load_error = None
            return loaded

    def flush(self) -> bool:
        """Run the pending deferred save immediately."""
        return self.persistence.flush()

    def close(self) -> None:
        """Flush any pending save."""
        self.persistence.flush()

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "db_key": self.db_key,
                "version": self.version,
                "documents": len(self.table.documents),
                "labels": self.table.label_count,
                "ntotal": self.table.index.ntotal,
                "dimension": self.table.index.dimension,
                "state": self.state.value,
                "persistence": self.persistence.enabled,
                "flush_pending": self.persistence.flush_pending,
                "index_only": self.table.index_only,
            }

    def _invalidate(self, error: Exception) -> None:
        """Drop all in-memory state after an invariant violation."""
        self.persistence.cancel()
        self.table.clear()
        self.persistence.state = PersistenceState.UNLOADED
        logger.log_integrity_failure(self.db_key, str(error))
