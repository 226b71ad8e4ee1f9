"""
Clustered search: turns one query vector into a few multi-chunk passages.

A broad raw search is expanded with neighbour probes around the strongest hits,
the hits are swept in label order into spatially and semantically coherent
clusters, the clusters are scored and ranked, and nearby related clusters are
merged into the survivors before their text is returned.
"""

from typing import Dict, Iterable, List, Optional, Sequence
import numpy as np

from chunkdb.vector.types import Cluster, SearchHit, SearchResult
from .address_table import ChunkAddressTable
from .scoring import cosine_similarity, score_cluster

# Raw candidates fetched per requested result
OVERSAMPLE_FACTOR = 50

# Candidates (per requested result) that get a secondary neighbour probe
EXPANSION_FACTOR = 3

# Gaps longer than this do not inflate the average gap
MAX_COUNTED_GAP = 15
GAP_SCALE = 1.5

# Centroid similarity required to merge a neighbouring cluster into a survivor
MERGE_SIMILARITY = 0.1


def average_gap(labels: Sequence[int]) -> float:
    """Mean of min(15, gap) between consecutive sorted labels, scaled by 1.5."""
    if len(labels) < 2:
        return 0.0
    gaps = [min(MAX_COUNTED_GAP, b - a) for a, b in zip(labels, labels[1:])]
    return GAP_SCALE * sum(gaps) / len(gaps)


def average_distance(hits: Sequence[SearchHit]) -> float:
    """Mean relevance over all hits."""
    if not hits:
        return 0.0
    return sum(h.distance for h in hits) / len(hits)


def range_gap(a: Cluster, b: Cluster) -> int:
    """Labels between two clusters' ranges (0 when they overlap)."""
    return max(0, b.min_label - a.max_label, a.min_label - b.max_label)


class ResultClusterer:
    """Clustered search over a ChunkAddressTable and its index."""

    def __init__(self, table: ChunkAddressTable):
        self.table = table
        self.last_stats: Dict[str, int] = {}

    @property
    def index(self):
        return self.table.index

    def search(self, query_vector, k: int, min_relevance: float = 0.0, content_size: int = 0,
               keywords: Optional[Iterable[str]] = None) -> List[SearchResult]:
        """
        Search for up to k passages.

        Args:
            query_vector: Query vector (must match the index dimension)
            k: Maximum number of passages
            min_relevance: Minimum inner product for first-pass candidates
            content_size: Chunks of context added on each side of a passage
            keywords: Optional keywords boosting passages that contain them

        Returns:
            Ranked, de-duplicated SearchResults
        """
        self.last_stats = {"candidates": 0, "hits": 0, "clusters": 0}
        ntotal = self.index.ntotal
        if not ntotal:
            return []

        k = min(k, ntotal)
        if k <= 0:
            return []

        query = np.asarray(query_vector, dtype=np.float32).ravel()
        keywords = list(keywords or [])

        candidates = [
            hit for hit in self.index.search(query, k * OVERSAMPLE_FACTOR)
            if hit.distance >= min_relevance
        ]
        self.last_stats["candidates"] = len(candidates)
        if not candidates:
            return []

        hits = self._expand(candidates, query, k)
        hits.sort(key=lambda h: h.label)
        self.last_stats["hits"] = len(hits)

        gap = average_gap([h.label for h in hits])
        distance = average_distance(hits)

        clusters = self._sweep(hits, gap, distance)
        for cluster in clusters:
            self._materialize(cluster, content_size)
            members = self.table.vectors_at(cluster.labels)
            cluster.centroid, breakdown = score_cluster(members, query, cluster.content, keywords)
            cluster.score = breakdown.combined
        self.last_stats["clusters"] = len(clusters)

        ranked = sorted(clusters, key=lambda c: c.score, reverse=True)
        retained = self._merge_neighbours(ranked[:k], clusters, gap, content_size)

        results: List[SearchResult] = []
        seen_content = set()
        for cluster in retained:
            if cluster.content in seen_content:
                continue
            seen_content.add(cluster.content)
            results.append(SearchResult(
                content=cluster.content,
                relevance=float(cluster.score),
                path_name=cluster.document.name,
            ))
        return results

    def _expand(self, candidates: List[SearchHit], query: np.ndarray, k: int) -> List[SearchHit]:
        """Add unseen neighbours of the strongest candidates to the hit set."""
        hits = list(candidates)
        seen = {h.label for h in hits}

        for candidate in candidates[:min(len(candidates), k * EXPANSION_FACTOR)]:
            probe = self.table.vector_at(candidate.label)
            for neighbour in self.index.search(probe, k + 1):
                if neighbour.label in seen:
                    continue
                seen.add(neighbour.label)
                relevance = float(np.dot(self.table.vector_at(neighbour.label), query))
                hits.append(SearchHit(label=neighbour.label, distance=relevance))

        return hits

    def _sweep(self, hits: List[SearchHit], gap: float, distance: float) -> List[Cluster]:
        """Group label-sorted hits into clusters in a single pass."""
        clusters: List[Cluster] = []
        current: Optional[Cluster] = None

        for hit in hits:
            document = self.table.document_for_label(hit.label)
            if current is not None and self._joins(current, document, hit.label, gap, distance):
                current.labels.add(hit.label)
                continue

            current = Cluster(document=document, anchor_label=hit.label, labels={hit.label})
            clusters.append(current)

        return clusters

    def _joins(self, cluster: Cluster, document, label: int, gap: float, distance: float) -> bool:
        if cluster.document is not document:
            return False
        if label - cluster.max_label > gap:
            return False
        if label - cluster.anchor_label > 2 * gap:
            return False
        similarity = cosine_similarity(
            self.table.vector_at(cluster.anchor_label),
            self.table.vector_at(label),
        )
        return similarity >= distance

    def _materialize(self, cluster: Cluster, content_size: int) -> None:
        cluster.content = self.table.materialize(
            cluster.document,
            cluster.min_label - content_size,
            cluster.max_label + content_size,
        )

    def _merge_neighbours(self, retained: List[Cluster], clusters: List[Cluster],
                          gap: float, content_size: int) -> List[Cluster]:
        """
        Absorb nearby, related clusters into each retained cluster.

        Scores are left as ranked; a retained cluster swallowed by a
        higher-ranked one is not reported on its own.
        """
        absorbed = set()
        survivors: List[Cluster] = []

        for cluster in retained:
            if id(cluster) in absorbed:
                continue
            survivors.append(cluster)
            absorbed.add(id(cluster))

            merged = True
            while merged:
                merged = False
                for other in clusters:
                    if other is cluster or id(other) in absorbed:
                        continue
                    if other.document is not cluster.document:
                        continue
                    if range_gap(cluster, other) > 2 * gap:
                        continue
                    if cosine_similarity(cluster.centroid, other.centroid) < MERGE_SIMILARITY:
                        continue
                    cluster.labels |= other.labels
                    absorbed.add(id(other))
                    merged = True

            self._materialize(cluster, content_size)

        return survivors
