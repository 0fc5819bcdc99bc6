"""
Nearest-neighbour index seam for the L3 vector memory.

Ids returned by search() are insertion positions, so callers keep their own
position-aligned fragment list and must reset() and re-add after removals.
"""

from typing import List, Protocol, Sequence, Tuple

import numpy as np

from .logging_config import get_logger

logger = get_logger(__name__)


class VectorIndexError(Exception):
    """Raised when vectors cannot be added to or searched in an index."""
    pass


class VectorIndex(Protocol):

    def add(self, vectors: Sequence[Sequence[float]]) -> None:
        ...

    def search(self, query_vector: Sequence[float], k: int) -> Tuple[List[float], List[int]]:
        ...

    def size(self) -> int:
        ...

    def reset(self) -> None:
        ...


class InMemoryVectorIndex:
    """Exact (flat) Euclidean-distance index held in a numpy matrix."""

    def __init__(self, dimension: int):
        self.dimension = dimension
        self._vectors = np.empty((0, dimension), dtype=np.float32)

    def add(self, vectors: Sequence[Sequence[float]]) -> None:
        """
        Append vectors to the index.

        Args:
            vectors: One or more vectors of length `dimension`

        Raises:
            VectorIndexError: If the vector shape does not match the index
        """
        matrix = np.asarray(vectors, dtype=np.float32)
        if matrix.ndim == 1:
            matrix = matrix.reshape(1, -1)
        if matrix.shape[1] != self.dimension:
            raise VectorIndexError(f'Expected vectors of dimension {self.dimension}, got {matrix.shape[1]}')
        self._vectors = np.vstack([self._vectors, matrix])

    def search(self, query_vector: Sequence[float], k: int) -> Tuple[List[float], List[int]]:
        """
        Find the k nearest stored vectors.

        Args:
            query_vector: Query of length `dimension`
            k: Maximum number of neighbours

        Returns:
            (distances, ids) sorted by ascending distance; both empty for an empty index
        """
        if self.size() == 0 or k <= 0:
            return [], []

        query = np.asarray(query_vector, dtype=np.float32).reshape(-1)
        if query.shape[0] != self.dimension:
            raise VectorIndexError(f'Expected query of dimension {self.dimension}, got {query.shape[0]}')

        distances = np.linalg.norm(self._vectors - query, axis=1)
        k = min(k, len(distances))
        top_indices = np.argsort(distances, kind='stable')[:k]
        return [float(distances[i]) for i in top_indices], [int(i) for i in top_indices]

    def size(self) -> int:
        return int(self._vectors.shape[0])

    def reset(self) -> None:
        self._vectors = np.empty((0, self.dimension), dtype=np.float32)
        logger.debug('Reset in-memory vector index')

    def health_check(self) -> bool:
        return True
