"""Tests for the model blob codec."""

import struct

import numpy as np
import pytest
import torch

from transcoder_lens.errors import CorruptDataError
from transcoder_lens.transcoder.model import SkipTranscoderModel
from transcoder_lens.transcoder.serialization import (
    HEADER_SIZE,
    deserialize_model,
    expected_blob_size,
    serialize_model,
)


class TestSerialization:
    """Tests for serialize_model / deserialize_model."""

    def test_blob_size(self, small_model):
        """Test the blob has header plus all parameters as float32."""
        blob = serialize_model(small_model)
        floats = 8 * 16 + 16 + 16 * 8 + 8 + 8 * 8 + 8
        assert len(blob) == HEADER_SIZE + 4 * floats
        assert len(blob) == expected_blob_size(8, 16)

    def test_header_is_little_endian_dims(self, small_model):
        """Test the header holds D and L as little-endian int32."""
        blob = serialize_model(small_model)
        assert struct.unpack("<ii", blob[:8]) == (8, 16)

    def test_encoder_weights_row_major(self, small_model):
        """Test encoder weights follow the header in row-major order."""
        blob = serialize_model(small_model)
        first = np.frombuffer(blob, dtype="<f4", count=8 * 16, offset=HEADER_SIZE)
        assert np.array_equal(first.reshape(8, 16), small_model.encoder_weight.numpy())

    def test_roundtrip_bit_identical(self, small_model):
        """Test encode/decode outputs match exactly after a round trip."""
        with torch.no_grad():
            small_model.encoder_bias.uniform_(-0.1, 0.1)
            small_model.skip_weight.add_(torch.randn(8, 8) * 0.01)

        restored = deserialize_model(serialize_model(small_model))
        x = torch.randn(10, 8)

        assert restored.input_dim == 8
        assert restored.latent_dim == 16
        assert torch.equal(restored.encode(x), small_model.encode(x))
        assert torch.equal(restored(x), small_model(x))
        latent = small_model.encode(x)
        assert torch.equal(restored.decode(latent), small_model.decode(latent))

    def test_truncated_header(self):
        """Test a blob shorter than the header is rejected."""
        with pytest.raises(CorruptDataError):
            deserialize_model(b"\x01\x00")

    def test_non_positive_dimensions(self):
        """Test zero or negative dimensions are rejected."""
        with pytest.raises(CorruptDataError):
            deserialize_model(struct.pack("<ii", 0, 4))
        with pytest.raises(CorruptDataError):
            deserialize_model(struct.pack("<ii", 4, -1))

    def test_size_mismatch(self, small_model):
        """Test a blob whose length disagrees with its header is rejected."""
        blob = serialize_model(small_model)
        with pytest.raises(CorruptDataError) as exc_info:
            deserialize_model(blob[:-4])
        assert "size mismatch" in exc_info.value.reason

    def test_deserialized_model_in_eval_mode(self):
        """Test the restored model is ready for inference."""
        model = SkipTranscoderModel(4, 6)
        assert not deserialize_model(serialize_model(model)).training
