"""Tests for the local blob store."""

import pytest
import torch

from transcoder_lens.data.activations import ActivationRecord, encode_activation
from transcoder_lens.data.store import LocalBlobStore, ModelMetadata
from transcoder_lens.errors import InvalidArgumentError
from transcoder_lens.transcoder.features import DiscoveredFeature
from transcoder_lens.transcoder.serialization import serialize_model


class TestActivations:
    """Tests for storing and loading activations."""

    def test_roundtrip(self, store, activations):
        """Test saved vectors load back in order."""
        assert store.save_activations(1, 0, activations) == 50
        loaded = store.load_activations(1, 0)
        assert torch.equal(loaded, activations)

    def test_append_numbers_after_existing(self, store):
        """Test a second save continues the numbering."""
        store.save_activations(1, 0, torch.zeros(2, 3))
        store.save_activations(1, 0, torch.ones(2, 3))
        loaded = store.load_activations(1, 0)
        assert loaded.shape == (4, 3)
        assert torch.equal(loaded[2:], torch.ones(2, 3))

    def test_limit(self, store, activations):
        """Test loads are capped."""
        store.save_activations(1, 0, activations)
        assert store.load_activations(1, 0, limit=10).shape == (10, 8)
        capped = LocalBlobStore(store.root, max_activations=7)
        assert capped.load_activations(1, 0).shape == (7, 8)

    def test_missing_layer(self, store):
        """Test an empty layer loads as zero rows."""
        assert store.load_activations(1, 3).shape[0] == 0

    def test_corrupt_files_skipped(self, store, caplog):
        """Test corrupt activation files are logged and skipped."""
        store.save_activations(1, 0, torch.ones(3, 4))
        activation_dir = store.root / "session_1" / "layer_0" / "activations"
        (activation_dir / "1.bin").write_bytes(b"\x00" * 6)
        (activation_dir / "3.bin").write_bytes(encode_activation([float("nan")] * 4))

        loaded = store.load_activations(1, 0)

        assert loaded.shape == (2, 4)
        assert "Skipping corrupt activation 1.bin" in caplog.text
        assert "NaN/Infinity" in caplog.text

    def test_records_keep_context(self, store):
        """Test activation records keep their text and position."""
        records = [
            ActivationRecord(5, torch.ones(2), sample_index=2, token_position=7, input_text="hello"),
            ActivationRecord(6, torch.zeros(2), sample_index=2, token_position=8, input_text="world"),
        ]
        store.save_activations(1, 0, records)
        loaded = store.load_records(1, 0)
        assert [r.activation_id for r in loaded] == [5, 6]
        assert loaded[0].input_text == "hello"
        assert loaded[1].token_position == 8

    def test_validate(self, store):
        """Test validation reports corrupt files with reasons."""
        store.save_activations(1, 0, torch.ones(3, 4))
        activation_dir = store.root / "session_1" / "layer_0" / "activations"
        (activation_dir / "2.bin").write_bytes(encode_activation([1.0, 2.0]))

        results = store.validate_activations(1, 0)

        assert [r.is_valid for r in results] == [True, True, False]
        assert results[2].issue == "File size mismatch: expected 16, got 8"

    def test_validate_first_file_corrupt(self, store):
        """Test a malformed first file does not set the expected dimension."""
        store.save_activations(1, 0, torch.ones(3, 4))
        activation_dir = store.root / "session_1" / "layer_0" / "activations"
        (activation_dir / "0.bin").write_bytes(b"\x00" * 6)

        results = store.validate_activations(1, 0)

        assert [r.is_valid for r in results] == [False, True, True]
        assert results[0].issue == "File size not divisible by 4 (not valid float array)"

    def test_validate_without_well_formed_files(self, store):
        """Test validation still reports when no file gives a dimension."""
        activation_dir = store.root / "session_1" / "layer_0" / "activations"
        activation_dir.mkdir(parents=True)
        (activation_dir / "0.bin").write_bytes(b"\x00" * 6)
        (activation_dir / "1.bin").write_bytes(b"")

        results = store.validate_activations(1, 0)

        assert [r.is_valid for r in results] == [False, True]

    def test_non_numeric_files_ignored(self, store):
        """Test stray .bin files without a numeric name are not activations."""
        store.save_activations(1, 0, torch.ones(2, 4))
        activation_dir = store.root / "session_1" / "layer_0" / "activations"
        (activation_dir / "notes.bin").write_bytes(b"\x00" * 16)

        assert store.load_activations(1, 0).shape == (2, 4)
        assert len(store.validate_activations(1, 0)) == 2
        assert store.save_activations(1, 0, torch.zeros(1, 4)) == 1
        assert (activation_dir / "2.bin").exists()

    def test_invalid_location(self, store):
        """Test non-positive sessions and negative layers fail fast."""
        with pytest.raises(InvalidArgumentError):
            store.load_activations(0, 0)
        with pytest.raises(InvalidArgumentError):
            store.load_activations(1, -1)

    def test_layers(self, store):
        """Test stored layers are listed in order."""
        store.save_activations(2, 3, torch.ones(1, 2))
        store.save_activations(2, 1, torch.ones(1, 2))
        assert store.layers(2) == [1, 3]
        assert store.layers(9) == []


class TestModels:
    """Tests for storing and loading models."""

    def test_roundtrip(self, store, small_model):
        """Test a saved model loads back with identical outputs."""
        store.save_model(1, 0, serialize_model(small_model), {"final_loss": 0.5})
        loaded = store.load_model(1, 0)
        x = torch.randn(3, 8)
        assert torch.equal(loaded(x), small_model(x))

    def test_metadata(self, store, small_model):
        """Test metadata records dimensions and metrics."""
        store.save_model(1, 2, serialize_model(small_model), {"final_loss": 0.5})
        metadata = store.load_model_metadata(1, 2)
        assert isinstance(metadata, ModelMetadata)
        assert (metadata.input_dim, metadata.latent_dim) == (8, 16)
        assert metadata.metrics == {"final_loss": 0.5}
        assert ModelMetadata.from_json(metadata.to_json()) == metadata

    def test_missing_model(self, store):
        """Test a missing model loads as None."""
        assert store.load_model(1, 0) is None
        assert store.load_model_metadata(1, 0) is None


class TestFeatures:
    """Tests for storing and loading features."""

    def test_roundtrip(self, store):
        """Test features survive a JSON round trip."""
        features = [DiscoveredFeature(3, 0.5, 0.9, active_count=4, layer_index=1)]
        store.save_features(1, 1, features)
        assert store.load_features(1, 1) == features

    def test_missing(self, store):
        """Test missing features load as an empty list."""
        assert store.load_features(1, 0) == []
