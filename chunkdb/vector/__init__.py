"""
Vector index adapters and shared record types.
"""

# Package initialization for vector module
from .index import IVectorIndex, NumpyIndexAdapter, DimensionMismatchError
from .faiss_index import FaissIndexAdapter
from .types import ChunkSpan, Document, SearchHit, Cluster, SearchResult

__all__ = [
    'IVectorIndex',
    'NumpyIndexAdapter',
    'FaissIndexAdapter',
    'DimensionMismatchError',
    'ChunkSpan',
    'Document',
    'SearchHit',
    'Cluster',
    'SearchResult'
]
