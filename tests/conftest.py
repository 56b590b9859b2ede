"""Pytest configuration and shared fixtures."""

import pytest
import torch

from transcoder_lens.data.store import LocalBlobStore
from transcoder_lens.transcoder.model import SkipTranscoderModel


@pytest.fixture(autouse=True)
def set_seed():
    """Set random seed for reproducibility."""
    torch.manual_seed(42)


@pytest.fixture
def small_model():
    """Small untrained transcoder: 8 inputs, 16 latent features."""
    return SkipTranscoderModel(input_dim=8, latent_dim=16, seed=42)


@pytest.fixture
def activations():
    """50 random activation vectors of dimension 8."""
    generator = torch.Generator().manual_seed(0)
    return torch.randn(50, 8, generator=generator)


@pytest.fixture
def store(tmp_path):
    """Empty local store in a temporary directory."""
    return LocalBlobStore(tmp_path / "store")
