"""
Shared record types for the chunk database.
Labels are dense integers assigned by the index engine in insertion order.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Set
import numpy as np


@dataclass
class ChunkSpan:
    """A slice of a document's text associated with one vector label."""

    start_offset: int
    """Offset of the chunk into the parent document's content"""

    length: int
    """Length of the chunk"""

    @property
    def end_offset(self) -> int:
        return self.start_offset + self.length


@dataclass
class Document:
    """A named text whose chunks occupy a contiguous range of labels."""

    name: str
    """Removal key; several documents may share a name"""

    content: str
    """Full raw text"""

    start_label: int
    """First vector label belonging to this document"""

    length: int
    """Number of labels belonging to this document"""

    @property
    def end_label(self) -> int:
        """One past the last label of this document."""
        return self.start_label + self.length

    def contains(self, label: int) -> bool:
        return self.start_label <= label < self.end_label


@dataclass
class SearchHit:
    """Raw result from the index engine."""

    label: int
    """Vector label of the match"""

    distance: float
    """Inner product between the query and the stored vector"""


@dataclass
class Cluster:
    """Group of nearby, related labels reported as one passage."""

    document: Document
    anchor_label: int
    labels: Set[int] = field(default_factory=set)
    centroid: Optional[np.ndarray] = None
    score: float = 0.0
    content: str = ""

    @property
    def min_label(self) -> int:
        return min(self.labels)

    @property
    def max_label(self) -> int:
        return max(self.labels)


@dataclass
class SearchResult:
    """Passage returned to callers of search."""

    content: str
    relevance: float
    path_name: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "content": self.content,
            "relevance": self.relevance,
            "pathName": self.path_name,
        }
