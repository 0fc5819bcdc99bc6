"""
Deterministic character-hash embedding for development and tests.
"""

import math
from typing import List

import numpy as np


class HashEmbed:
    """Cheap stand-in for a real embedding model; same text always yields the same unit vector."""

    def __init__(self, dimension: int):
        self.dimension = dimension

    def _embed(self, text: str) -> List[float]:
        vector = np.zeros(self.dimension, dtype=np.float64)
        for char in text:
            code = ord(char)
            vector[code % self.dimension] += math.sin(code * 0.01) * 0.1

        magnitude = np.linalg.norm(vector)
        if magnitude > 0:
            vector /= magnitude
        return vector.tolist()

    def embed_document(self, text: str) -> List[float]:
        return self._embed(text)

    def embed_query(self, text: str) -> List[float]:
        return self._embed(text)

    def health_check(self) -> bool:
        return True
