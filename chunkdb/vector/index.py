"""
Vector index adapter contract and a brute-force numpy implementation.
The engine assigns dense labels in insertion order and renumbers them after deletions.
"""

import io
from abc import ABC, abstractmethod
from typing import Iterable, List, Optional
import numpy as np

from .types import SearchHit


class DimensionMismatchError(ValueError):
    """Vectors do not match each other or the index's fixed dimension."""
    pass


def as_matrix(vectors, dimension: Optional[int] = None) -> np.ndarray:
    """
    Convert a batch of vectors to a 2-D float32 array.

    Args:
        vectors: Sequence of equal-width vectors, or a 2-D array
        dimension: Expected width, when already fixed

    Raises:
        DimensionMismatchError: If rows differ in width or do not match dimension
    """
    if isinstance(vectors, np.ndarray):
        matrix = vectors
        if matrix.ndim == 1:
            matrix = matrix.reshape(1, -1)
    else:
        rows = [np.asarray(v, dtype=np.float32).ravel() for v in vectors]
        widths = {row.shape[0] for row in rows}
        if len(widths) > 1:
            raise DimensionMismatchError(f"Vectors have differing dimensions: {sorted(widths)}")
        matrix = np.vstack(rows) if rows else np.zeros((0, dimension or 0), dtype=np.float32)

    if matrix.ndim != 2:
        raise DimensionMismatchError(f"Expected a 2-D batch of vectors, got shape {matrix.shape}")

    if dimension is not None and matrix.shape[0] and matrix.shape[1] != dimension:
        raise DimensionMismatchError(
            f"Vector dimension {matrix.shape[1]} does not match expected dimension {dimension}"
        )

    return np.ascontiguousarray(matrix, dtype=np.float32)


def as_query(vector, dimension: Optional[int] = None) -> np.ndarray:
    """Convert a single query vector to a (1, d) float32 array."""
    query = np.asarray(vector, dtype=np.float32).reshape(1, -1)
    if dimension is not None and query.shape[1] != dimension:
        raise DimensionMismatchError(
            f"Query dimension {query.shape[1]} does not match index dimension {dimension}"
        )
    return np.ascontiguousarray(query)


class IVectorIndex(ABC):
    """Abstract interface for the nearest-neighbour engine (inner-product metric)."""

    @property
    @abstractmethod
    def dimension(self) -> Optional[int]:
        """Fixed dimension, or None before the index is created."""
        pass

    @property
    @abstractmethod
    def ntotal(self) -> int:
        """Number of stored vectors."""
        pass

    @property
    def is_created(self) -> bool:
        return self.dimension is not None

    @abstractmethod
    def create(self, dimension: int) -> None:
        """Create the index lazily; the first call fixes the dimension."""
        pass

    @abstractmethod
    def add(self, vectors: np.ndarray) -> None:
        """Append vectors, assigning the next sequential labels."""
        pass

    @abstractmethod
    def search(self, query_vector, k: int) -> List[SearchHit]:
        """Return up to k hits ordered by descending inner product."""
        pass

    @abstractmethod
    def remove_labels(self, labels: Iterable[int]) -> int:
        """Delete labels and renumber the remainder densely. Returns removed count."""
        pass

    @abstractmethod
    def serialize(self) -> bytes:
        """Opaque binary image of the index."""
        pass

    @abstractmethod
    def deserialize(self, data: bytes) -> None:
        """Replace the index with one read from serialize() output."""
        pass

    @abstractmethod
    def reconstruct_all(self) -> np.ndarray:
        """All stored vectors as a (ntotal, dimension) array."""
        pass

    @abstractmethod
    def reset(self) -> None:
        """Drop the index entirely (dimension becomes unset)."""
        pass

    def _check_create(self, dimension: int) -> None:
        if dimension <= 0:
            raise DimensionMismatchError(f"Dimension must be positive: {dimension}")
        if self.dimension is not None and self.dimension != dimension:
            raise DimensionMismatchError(
                f"Index already created with dimension {self.dimension}, got {dimension}"
            )


class NumpyIndexAdapter(IVectorIndex):
    """Exact inner-product search over an in-memory numpy matrix."""

    def __init__(self, dimension: Optional[int] = None):
        self._vectors: Optional[np.ndarray] = None
        if dimension is not None:
            self.create(dimension)

    @property
    def dimension(self) -> Optional[int]:
        return None if self._vectors is None else int(self._vectors.shape[1])

    @property
    def ntotal(self) -> int:
        return 0 if self._vectors is None else int(self._vectors.shape[0])

    def create(self, dimension: int) -> None:
        self._check_create(dimension)
        if self._vectors is None:
            self._vectors = np.zeros((0, dimension), dtype=np.float32)

    def add(self, vectors) -> None:
        matrix = as_matrix(vectors, self.dimension)
        if matrix.shape[0] == 0:
            return
        self.create(matrix.shape[1])
        self._vectors = np.vstack([self._vectors, matrix])

    def search(self, query_vector, k: int) -> List[SearchHit]:
        if not self.ntotal or k <= 0:
            return []

        query = as_query(query_vector, self.dimension)[0]
        scores = self._vectors @ query
        order = np.argsort(-scores, kind="stable")[:min(k, self.ntotal)]
        return [SearchHit(label=int(i), distance=float(scores[i])) for i in order]

    def remove_labels(self, labels: Iterable[int]) -> int:
        if self._vectors is None:
            return 0
        doomed = np.asarray(sorted(set(int(l) for l in labels)), dtype=np.int64)
        doomed = doomed[(doomed >= 0) & (doomed < self.ntotal)]
        if doomed.size == 0:
            return 0
        keep = np.ones(self.ntotal, dtype=bool)
        keep[doomed] = False
        self._vectors = self._vectors[keep]
        return int(doomed.size)

    def serialize(self) -> bytes:
        if self._vectors is None:
            return b""
        buffer = io.BytesIO()
        np.save(buffer, self._vectors, allow_pickle=False)
        return buffer.getvalue()

    def deserialize(self, data: bytes) -> None:
        matrix = np.load(io.BytesIO(data), allow_pickle=False)
        if matrix.ndim != 2:
            raise ValueError(f"Serialized index has shape {matrix.shape}, expected 2-D")
        self._vectors = matrix.astype(np.float32)

    def reconstruct_all(self) -> np.ndarray:
        if self._vectors is None:
            return np.zeros((0, 0), dtype=np.float32)
        return self._vectors.copy()

    def reset(self) -> None:
        self._vectors = None
