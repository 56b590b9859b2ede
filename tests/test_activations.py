"""Tests for activation byte codec, validation and statistics."""

import struct

import pytest
import torch

from transcoder_lens.data.activations import (
    ActivationStatistics,
    ValidationResult,
    ValidationSummary,
    decode_activation_bytes,
    encode_activation,
    stack_activations,
    summarize_activations,
    validate_activation_bytes,
)
from transcoder_lens.errors import CorruptDataError, InvalidArgumentError


class TestCodec:
    """Tests for encode_activation / decode_activation_bytes."""

    def test_little_endian_float32(self):
        """Test vectors are written as little-endian float32."""
        data = encode_activation([1.0, -2.5])
        assert data == struct.pack("<ff", 1.0, -2.5)

    def test_decode(self):
        """Test bytes decode back to the original values."""
        vector = decode_activation_bytes(struct.pack("<fff", 1.0, 2.0, 3.0))
        assert torch.equal(vector, torch.tensor([1.0, 2.0, 3.0]))

    def test_length_not_multiple_of_four(self):
        """Test a truncated float array is rejected."""
        with pytest.raises(CorruptDataError) as exc_info:
            decode_activation_bytes(b"\x00" * 7)
        assert exc_info.value.reason == "File size not divisible by 4 (not valid float array)"

    def test_expected_dim_mismatch(self):
        """Test a vector of the wrong length is rejected."""
        with pytest.raises(CorruptDataError) as exc_info:
            decode_activation_bytes(encode_activation([1.0, 2.0]), expected_dim=3)
        assert exc_info.value.reason == "File size mismatch: expected 12, got 8"


class TestStackActivations:
    """Tests for stack_activations."""

    def test_matrix_passthrough(self):
        """Test a matrix is returned as float32."""
        matrix = stack_activations(torch.ones(3, 4, dtype=torch.float64))
        assert matrix.shape == (3, 4)
        assert matrix.dtype == torch.float32

    def test_list_of_vectors(self):
        """Test a list of vectors is stacked."""
        assert stack_activations([[1.0, 2.0], torch.tensor([3.0, 4.0])]).shape == (2, 2)

    def test_single_vector(self):
        """Test a 1-D tensor becomes one row."""
        assert stack_activations(torch.ones(5)).shape == (1, 5)

    def test_empty(self):
        """Test empty input gives zero rows."""
        assert stack_activations([]).shape[0] == 0

    def test_mixed_dimensions(self):
        """Test vectors of different lengths are rejected."""
        with pytest.raises(InvalidArgumentError):
            stack_activations([[1.0, 2.0], [1.0]])


class TestValidation:
    """Tests for validate_activation_bytes."""

    def test_valid(self):
        """Test a well-formed vector passes."""
        result = validate_activation_bytes(encode_activation([1.0, 2.0]), expected_dim=2)
        assert result.is_valid
        assert result.issue is None

    def test_not_divisible_by_four(self):
        """Test a truncated array is reported."""
        result = validate_activation_bytes(b"\x00" * 5, expected_dim=2, activation_id=9)
        assert result.is_corrupted
        assert result.activation_id == 9
        assert "not divisible by 4" in result.issue

    def test_size_mismatch(self):
        """Test a vector of the wrong dimension is reported."""
        result = validate_activation_bytes(encode_activation([1.0, 2.0, 3.0]), expected_dim=2)
        assert result.issue == "File size mismatch: expected 8, got 12"

    def test_nan_and_infinity(self):
        """Test non-finite values are counted."""
        data = encode_activation([float("nan"), 1.0, float("inf")])
        result = validate_activation_bytes(data, expected_dim=3)
        assert result.issue == "Contains 2 invalid float values (NaN/Infinity)"

    def test_summary(self):
        """Test results are aggregated."""
        summary = ValidationSummary.from_results(
            [
                ValidationResult(0, True),
                ValidationResult(1, False, "bad"),
                ValidationResult(2, True),
            ]
        )
        assert summary.total == 3
        assert summary.valid == 2
        assert summary.corrupted == 1
        assert summary.issues == ["bad"]


class TestActivationStatistics:
    """Tests for the streaming statistics accumulator."""

    def test_accumulate(self):
        """Test running means, min and max."""
        stats = summarize_activations([torch.tensor([3.0, 4.0]), torch.tensor([0.0, -1.0])])
        assert stats.sample_count == 2
        assert stats.average_magnitude == pytest.approx((5.0 + 1.0) / 2)
        assert stats.average_sparsity == pytest.approx(0.25)
        assert stats.min_value == -1.0
        assert stats.max_value == 4.0

    def test_empty(self):
        """Test an empty stream reports no range."""
        stats = ActivationStatistics()
        assert stats.to_dict()["min_value"] is None
        assert stats.to_dict()["sample_count"] == 0
