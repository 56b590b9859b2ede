"""Compact embeddings of activation vectors.

Three reductions from D to T dimensions:
- random_projection: multiply by a seeded Gaussian D x T matrix scaled by sqrt(1/T)
- mean_pooling: average contiguous segments of the vector
- pca: currently the random projection; results are marked approximate
"""

import logging
import math
from dataclasses import dataclass
from enum import Enum
from typing import Hashable, Iterable, Mapping, Sequence

import torch
from torch import Tensor

from ..errors import InvalidArgumentError

logger = logging.getLogger(__name__)


class EmbeddingMethod(str, Enum):
    RANDOM_PROJECTION = "random_projection"
    MEAN_POOLING = "mean_pooling"
    PCA = "pca"

    @classmethod
    def parse(cls, name: "str | EmbeddingMethod") -> "EmbeddingMethod":
        """Look up a method by name.

        Raises:
            InvalidArgumentError: If the name is not a known method.
        """
        try:
            return cls(name)
        except ValueError:
            known = ", ".join(m.value for m in cls)
            raise InvalidArgumentError(
                f"Unknown embedding method {name!r}, expected one of: {known}"
            ) from None


@dataclass
class EmbeddingResult:
    """Embedding of one activation vector."""

    source_id: Hashable
    embedding: Tensor  # [target_dim]
    method: EmbeddingMethod
    approximate: bool = False

    def to_dict(self) -> dict:
        return {
            "source_id": self.source_id,
            "embedding": self.embedding.tolist(),
            "method": self.method.value,
            "approximate": self.approximate,
        }


def pooling_segments(input_dim: int, target_dim: int) -> list[tuple[int, int]]:
    """Half-open [start, end) segments that partition [0, input_dim).

    Every segment spans ``input_dim // target_dim`` indices and the last one
    absorbs the remainder. When ``target_dim > input_dim`` all but the last
    segment are empty.
    """
    pool_size = input_dim // target_dim
    segments = [(i * pool_size, (i + 1) * pool_size) for i in range(target_dim - 1)]
    segments.append(((target_dim - 1) * pool_size, input_dim))
    return segments


def mean_pool(vector: Tensor, target_dim: int) -> Tensor:
    """Average each pooling segment; an empty segment yields 0."""
    vector = vector.reshape(-1)
    pooled = torch.zeros(target_dim, dtype=torch.float32)
    for i, (start, end) in enumerate(pooling_segments(vector.shape[0], target_dim)):
        if end > start:
            pooled[i] = vector[start:end].double().mean().float()
    return pooled


def random_projection_matrix(input_dim: int, target_dim: int, seed: int = 42) -> Tensor:
    """Gaussian projection matrix [input_dim, target_dim], reproducible per seed."""
    generator = torch.Generator().manual_seed(seed)
    matrix = torch.randn(input_dim, target_dim, generator=generator)
    return matrix * math.sqrt(1.0 / target_dim)


def _as_pairs(
    activations: Mapping[Hashable, Tensor] | Iterable[tuple[Hashable, Tensor]] | Tensor,
) -> list[tuple[Hashable, Tensor]]:
    if isinstance(activations, Tensor):
        if activations.numel() == 0:
            return []
        return list(enumerate(activations.reshape(-1, activations.shape[-1])))
    if isinstance(activations, Mapping):
        return list(activations.items())
    return list(activations)


def compute_embeddings(
    activations: Mapping[Hashable, Tensor] | Sequence[tuple[Hashable, Tensor]] | Tensor,
    target_dim: int,
    method: EmbeddingMethod | str = EmbeddingMethod.RANDOM_PROJECTION,
    seed: int = 42,
) -> list[EmbeddingResult]:
    """Reduce each activation vector to ``target_dim`` values.

    Args:
        activations: (id, vector) pairs, a mapping of id to vector, or an
            [N, D] matrix whose row numbers become the ids.
        target_dim: Embedding dimension T.
        method: Reduction method (enum or its name).
        seed: Seed for the projection matrix.

    Returns:
        One EmbeddingResult per input vector, in input order.

    Raises:
        InvalidArgumentError: Unknown method or non-positive target_dim.
    """
    method = EmbeddingMethod.parse(method)
    if target_dim < 1:
        raise InvalidArgumentError(f"target_dim must be positive, got {target_dim}")

    pairs = _as_pairs(activations)
    if not pairs:
        logger.info("No activations supplied for embedding")
        return []

    approximate = method is EmbeddingMethod.PCA
    if approximate:
        logger.warning(
            "PCA embeddings are approximated with a random projection; "
            "results are not principal components"
        )

    projections: dict[int, Tensor] = {}
    results = []
    for source_id, vector in pairs:
        vector = torch.as_tensor(vector, dtype=torch.float32).reshape(-1)
        if method is EmbeddingMethod.MEAN_POOLING:
            embedding = mean_pool(vector, target_dim)
        else:
            dim = vector.shape[0]
            if dim not in projections:
                projections[dim] = random_projection_matrix(dim, target_dim, seed)
            embedding = vector @ projections[dim]
        results.append(EmbeddingResult(source_id, embedding, method, approximate))

    logger.info("Computed %d %s embeddings of dimension %d", len(results), method.value, target_dim)
    return results
