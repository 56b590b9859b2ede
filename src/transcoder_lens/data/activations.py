"""Activation vectors: byte codec, validation and streaming statistics.

Activations are stored as raw little-endian float32 arrays, one file or blob
per (sample, layer). This module turns those bytes into tensors, checks them
for corruption before expensive training runs, and accumulates cheap summary
statistics over a stream of vectors.
"""

import math
from dataclasses import dataclass, field
from typing import Iterable, Sequence

import numpy as np
import torch
from torch import Tensor

from ..errors import CorruptDataError, InvalidArgumentError

FLOAT_DTYPE = np.dtype("<f4")
ZERO_THRESHOLD = 1e-8


@dataclass
class ActivationRecord:
    """One captured activation vector plus the context that produced it."""

    activation_id: int
    vector: Tensor
    sample_index: int = 0
    token_position: int = 0
    input_text: str = ""


def encode_activation(vector: Tensor | Sequence[float]) -> bytes:
    """Serialize a vector as little-endian float32 bytes."""
    array = torch.as_tensor(vector, dtype=torch.float32).detach().cpu().numpy()
    return array.astype(FLOAT_DTYPE).tobytes()


def decode_activation_bytes(data: bytes, expected_dim: int | None = None) -> Tensor:
    """Decode little-endian float32 bytes into a 1-D tensor.

    Raises:
        CorruptDataError: If the byte length is not a multiple of 4 or does
            not match expected_dim.
    """
    if len(data) % FLOAT_DTYPE.itemsize != 0:
        raise CorruptDataError("File size not divisible by 4 (not valid float array)")
    if expected_dim is not None and len(data) != expected_dim * FLOAT_DTYPE.itemsize:
        raise CorruptDataError(
            f"File size mismatch: expected {expected_dim * FLOAT_DTYPE.itemsize}, got {len(data)}"
        )
    values = np.frombuffer(data, dtype=FLOAT_DTYPE).astype(np.float32)
    return torch.from_numpy(values)


def stack_activations(activations: Tensor | Sequence[Tensor | Sequence[float]]) -> Tensor:
    """Stack activations into a float32 matrix [N, D].

    Accepts a matrix, a single vector or a sequence of vectors. An empty input
    gives a tensor with zero rows.

    Raises:
        InvalidArgumentError: If the vectors do not share one dimension.
    """
    if isinstance(activations, Tensor):
        matrix = activations.to(torch.float32)
        if matrix.ndim == 1:
            matrix = matrix.unsqueeze(0) if matrix.numel() else matrix.reshape(0, 0)
        if matrix.ndim != 2:
            raise InvalidArgumentError(
                f"Expected activations of shape [N, D], got {tuple(matrix.shape)}"
            )
        return matrix

    vectors = [torch.as_tensor(v, dtype=torch.float32).reshape(-1) for v in activations]
    if not vectors:
        return torch.empty(0, 0)
    dims = {v.shape[0] for v in vectors}
    if len(dims) != 1:
        raise InvalidArgumentError(f"Activation vectors have mixed dimensions: {sorted(dims)}")
    return torch.stack(vectors)


@dataclass
class ValidationResult:
    """Outcome of validating one stored activation."""

    activation_id: int
    is_valid: bool
    issue: str | None = None

    @property
    def is_corrupted(self) -> bool:
        return not self.is_valid


def validate_activation_bytes(
    data: bytes,
    expected_dim: int | None,
    activation_id: int = 0,
) -> ValidationResult:
    """Check stored bytes for the corruption modes seen in practice.

    Repair is not attempted; callers decide what to do with invalid entries.
    The size check is skipped when no expected dimension is known.
    """
    try:
        vector = decode_activation_bytes(data)
    except CorruptDataError as e:
        return ValidationResult(activation_id, False, e.reason)

    expected_bytes = None if expected_dim is None else expected_dim * FLOAT_DTYPE.itemsize
    if expected_bytes is not None and len(data) != expected_bytes:
        return ValidationResult(
            activation_id,
            False,
            f"File size mismatch: expected {expected_bytes}, got {len(data)}",
        )

    invalid_count = int((~torch.isfinite(vector)).sum().item())
    if invalid_count > 0:
        return ValidationResult(
            activation_id,
            False,
            f"Contains {invalid_count} invalid float values (NaN/Infinity)",
        )

    return ValidationResult(activation_id, True)


@dataclass
class ValidationSummary:
    """Aggregate over many validation results."""

    total: int
    valid: int
    corrupted: int
    issues: list[str] = field(default_factory=list)

    @classmethod
    def from_results(cls, results: Iterable[ValidationResult]) -> "ValidationSummary":
        results = list(results)
        return cls(
            total=len(results),
            valid=sum(r.is_valid for r in results),
            corrupted=sum(r.is_corrupted for r in results),
            issues=[r.issue for r in results if r.issue],
        )


@dataclass
class ActivationStatistics:
    """Running summary over a stream of activation vectors.

    Means are updated incrementally so the stream never has to be held in
    memory at once.
    """

    sample_count: int = 0
    average_magnitude: float = 0.0
    average_sparsity: float = 0.0
    min_value: float = math.inf
    max_value: float = -math.inf

    def accumulate(self, vector: Tensor) -> None:
        """Fold one vector into the running statistics."""
        vector = torch.as_tensor(vector, dtype=torch.float32).reshape(-1)
        if vector.numel() == 0:
            return
        magnitude = torch.linalg.vector_norm(vector.double()).item()
        nonzero = (vector.abs() > ZERO_THRESHOLD).sum().item()
        sparsity = 1.0 - nonzero / vector.numel()

        self.sample_count += 1
        n = self.sample_count
        self.average_magnitude += (magnitude - self.average_magnitude) / n
        self.average_sparsity += (sparsity - self.average_sparsity) / n
        self.min_value = min(self.min_value, vector.min().item())
        self.max_value = max(self.max_value, vector.max().item())

    def to_dict(self) -> dict:
        return {
            "sample_count": self.sample_count,
            "average_magnitude": self.average_magnitude,
            "average_sparsity": self.average_sparsity,
            "min_value": self.min_value if self.sample_count else None,
            "max_value": self.max_value if self.sample_count else None,
        }


def summarize_activations(vectors: Iterable[Tensor]) -> ActivationStatistics:
    """Compute ActivationStatistics over an iterable of vectors."""
    stats = ActivationStatistics()
    for vector in vectors:
        stats.accumulate(vector)
    return stats
