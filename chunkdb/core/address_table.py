"""
Chunk address table: maps dense vector labels back to (document, span) pairs.

Labels [doc.start_label, doc.start_label + doc.length) belong to one document,
and spans[label] / vectors[label] describe each label. The three tables stay
parallel to the index: len(spans) == len(vectors) == index.ntotal.
"""

from typing import Any, Iterable, List, Mapping, Optional, Sequence, Tuple
import numpy as np

from chunkdb.vector.index import IVectorIndex, as_matrix
from chunkdb.vector.types import ChunkSpan, Document


class DocumentNotFoundError(LookupError):
    """A label is not covered by any document (invariant violation)."""
    pass


class CorruptDatabaseError(RuntimeError):
    """The address tables and the index disagree; the state cannot be trusted."""
    pass


def coerce_span(span: Any) -> ChunkSpan:
    """Accept a ChunkSpan, a (start, length) pair or a {"start", "length"} mapping."""
    if isinstance(span, ChunkSpan):
        result = span
    elif isinstance(span, Mapping):
        start = span.get("start", span.get("startIndex", span.get("start_offset")))
        if start is None or "length" not in span:
            raise ValueError(f"Span mapping needs start and length: {dict(span)}")
        result = ChunkSpan(start_offset=int(start), length=int(span["length"]))
    else:
        start, length = span
        result = ChunkSpan(start_offset=int(start), length=int(length))

    if result.start_offset < 0 or result.length < 0:
        raise ValueError(f"Span offsets must be non-negative: {result}")
    return result


class ChunkAddressTable:
    """Documents, spans and raw vectors kept in step with an index adapter."""

    def __init__(self, index: IVectorIndex):
        self.index = index
        self.documents: List[Document] = []
        self.spans: List[ChunkSpan] = []
        self.vectors: Optional[np.ndarray] = None
        # Set when only the index was restored (no address tables available)
        self.index_only = False

    @property
    def label_count(self) -> int:
        return len(self.spans)

    @property
    def vector_count(self) -> int:
        return 0 if self.vectors is None else int(self.vectors.shape[0])

    def vector_at(self, label: int) -> np.ndarray:
        return self.vectors[label]

    def vectors_at(self, labels: Iterable[int]) -> np.ndarray:
        return self.vectors[np.asarray(sorted(labels), dtype=np.int64)]

    def insert(self, name: str, content: str, spans: Sequence[Any], vectors) -> Optional[Document]:
        """
        Append a document and forward its vectors to the index.

        Args:
            name: Document name (removal key)
            content: Full document text
            spans: One span per vector
            vectors: Equal-width vectors, one per chunk

        Returns:
            The new Document, or None when there are no vectors

        Raises:
            DimensionMismatchError: If vector widths differ from each other or from the index
            ValueError: If spans and vectors differ in count
        """
        self.require_addressable()
        if len(vectors) == 0:
            return None

        # Validate everything before touching state
        matrix = as_matrix(vectors, self.index.dimension)
        chunk_spans = [coerce_span(s) for s in spans]
        if len(chunk_spans) != matrix.shape[0]:
            raise ValueError(f"Got {len(chunk_spans)} spans for {matrix.shape[0]} vectors")

        self.index.add(matrix)

        document = Document(name=name, content=content, start_label=len(self.spans), length=len(chunk_spans))
        self.documents.append(document)
        self.spans.extend(chunk_spans)
        self.vectors = matrix.copy() if self.vectors is None else np.vstack([self.vectors, matrix])
        return document

    def remove(self, name: str) -> int:
        """
        Remove every document with this name and re-index the rest.

        Phase one computes the doomed labels and each survivor's shift; phase
        two applies them to the index and the tables.

        Returns:
            Number of documents removed
        """
        self.require_addressable()
        doomed = [d for d in self.documents if d.name == name]
        if not doomed:
            return 0

        doomed_labels = [label for d in doomed for label in range(d.start_label, d.end_label)]
        keep = np.ones(self.label_count, dtype=bool)
        keep[doomed_labels] = False

        survivors: List[Tuple[Document, int]] = []
        for document in self.documents:
            if document.name == name:
                continue
            shift = sum(d.length for d in doomed if d.start_label < document.start_label)
            survivors.append((document, shift))

        removed = self.index.remove_labels(doomed_labels)
        if removed != len(doomed_labels):
            raise CorruptDatabaseError(
                f"Index removed {removed} labels, expected {len(doomed_labels)} for '{name}'"
            )

        self.spans = [span for span, kept in zip(self.spans, keep) if kept]
        self.vectors = self.vectors[keep]
        for document, shift in survivors:
            document.start_label -= shift
        self.documents = [document for document, _ in survivors]
        return len(doomed)

    def document_for_label(self, label: int) -> Document:
        """Find the document owning a label; a miss is an invariant violation."""
        for document in self.documents:
            if document.contains(label):
                return document
        raise DocumentNotFoundError(f"Document not found for label {label}")

    def materialize(self, document: Document, first_label: int, last_label: int) -> str:
        """Text covered by the spans of [first_label, last_label], clamped to the document."""
        first = max(document.start_label, first_label)
        last = min(document.end_label - 1, last_label)
        if first > last:
            return ""

        window = self.spans[first:last + 1]
        start = min(span.start_offset for span in window)
        end = max(span.end_offset for span in window)
        return document.content[start:end]

    def check_invariants(self) -> None:
        """
        Raise CorruptDatabaseError unless spans, vectors and the index agree
        and the documents tile [0, ntotal) in order.
        """
        ntotal = self.index.ntotal
        if self.vector_count != ntotal:
            raise CorruptDatabaseError(f"Vector table has {self.vector_count} rows, index has {ntotal}")
        if self.vectors is not None and ntotal and self.vectors.shape[1] != self.index.dimension:
            raise CorruptDatabaseError(
                f"Vector table width {self.vectors.shape[1]} does not match index dimension {self.index.dimension}"
            )
        if self.index_only:
            return

        if self.label_count != ntotal:
            raise CorruptDatabaseError(f"Span table has {self.label_count} entries, index has {ntotal}")
        if not self.documents and self.spans:
            raise CorruptDatabaseError("Document table is empty but span table is not")

        expected_start = 0
        for document in self.documents:
            if document.start_label != expected_start or document.length <= 0:
                raise CorruptDatabaseError(
                    f"Document '{document.name}' starts at {document.start_label}, expected {expected_start}"
                )
            expected_start = document.end_label
        if expected_start != ntotal:
            raise CorruptDatabaseError(f"Documents cover {expected_start} labels, index has {ntotal}")

    def snapshot(self) -> Tuple[List[Document], List[ChunkSpan], np.ndarray]:
        """Copies of the three tables for persistence."""
        documents = [
            Document(name=d.name, content=d.content, start_label=d.start_label, length=d.length)
            for d in self.documents
        ]
        vectors = self.vectors.copy() if self.vectors is not None else np.zeros((0, 0), dtype=np.float32)
        return documents, list(self.spans), vectors

    def restore(self, documents: List[Document], spans: List[ChunkSpan], vectors) -> None:
        """Replace the tables (the index must already hold the matching vectors)."""
        self.documents = list(documents)
        self.spans = list(spans)
        self.vectors = as_matrix(vectors) if len(vectors) else None
        self.index_only = False

    def restore_index_only(self) -> None:
        """Adopt a restored index that came without address tables."""
        self.documents = []
        self.spans = []
        self.vectors = self.index.reconstruct_all() if self.index.ntotal else None
        self.index_only = self.index.ntotal > 0

    def clear(self) -> None:
        """Drop all tables and the index."""
        self.documents = []
        self.spans = []
        self.vectors = None
        self.index_only = False
        self.index.reset()

    def require_addressable(self) -> None:
        if self.index_only:
            raise CorruptDatabaseError(
                "Index was restored without address tables; documents cannot be resolved"
            )
