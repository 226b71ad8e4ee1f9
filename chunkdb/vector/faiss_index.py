"""
FAISS-backed implementation of IVectorIndex.
IndexFlatIP is exact; remove_ids on a flat index compacts the remaining labels.
"""

from typing import Iterable, List, Optional
import numpy as np

from .types import SearchHit
from .index import IVectorIndex, as_matrix, as_query


class FaissIndexAdapter(IVectorIndex):
    """Thin pass-through to a faiss.IndexFlatIP created on first insert."""

    def __init__(self, dimension: Optional[int] = None):
        """
        Initialize the adapter.

        Args:
            dimension: Create the index immediately with this dimension (default: lazily on first add)
        """
        try:
            import faiss
            self.faiss = faiss
        except ImportError:
            raise ImportError("FAISS not installed. Please install faiss-cpu package.")

        self.index = None
        if dimension is not None:
            self.create(dimension)

    @property
    def dimension(self) -> Optional[int]:
        return None if self.index is None else int(self.index.d)

    @property
    def ntotal(self) -> int:
        return 0 if self.index is None else int(self.index.ntotal)

    def create(self, dimension: int) -> None:
        self._check_create(dimension)
        if self.index is None:
            self.index = self.faiss.IndexFlatIP(dimension)

    def add(self, vectors) -> None:
        matrix = as_matrix(vectors, self.dimension)
        if matrix.shape[0] == 0:
            return
        self.create(matrix.shape[1])
        self.index.add(matrix)

    def search(self, query_vector, k: int) -> List[SearchHit]:
        if not self.ntotal or k <= 0:
            return []

        query = as_query(query_vector, self.dimension)
        distances, labels = self.index.search(query, min(k, self.ntotal))

        # FAISS pads with -1 when fewer than k vectors are reachable
        return [
            SearchHit(label=int(label), distance=float(distance))
            for label, distance in zip(labels[0], distances[0])
            if label >= 0
        ]

    def remove_labels(self, labels: Iterable[int]) -> int:
        if self.index is None:
            return 0
        ids = np.asarray(sorted(set(int(l) for l in labels)), dtype=np.int64)
        if ids.size == 0:
            return 0
        return int(self.index.remove_ids(ids))

    def serialize(self) -> bytes:
        if self.index is None:
            return b""
        return self.faiss.serialize_index(self.index).tobytes()

    def deserialize(self, data: bytes) -> None:
        index = self.faiss.deserialize_index(np.frombuffer(data, dtype=np.uint8).copy())
        if index.metric_type != self.faiss.METRIC_INNER_PRODUCT:
            raise ValueError(f"Serialized index uses metric {index.metric_type}, expected inner product")
        self.index = index

    def reconstruct_all(self) -> np.ndarray:
        if self.index is None:
            return np.zeros((0, 0), dtype=np.float32)
        if not self.ntotal:
            return np.zeros((0, self.dimension), dtype=np.float32)
        return np.asarray(self.index.reconstruct_n(0, self.ntotal), dtype=np.float32)

    def reset(self) -> None:
        self.index = None
