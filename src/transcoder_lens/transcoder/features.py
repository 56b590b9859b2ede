"""Discovered-feature extraction from a trained Skip Transcoder."""

import logging
from dataclasses import dataclass
from typing import Sequence

import torch
from torch import Tensor

from ..data.activations import stack_activations
from .model import SkipTranscoderModel

logger = logging.getLogger(__name__)


@dataclass
class DiscoveredFeature:
    """A latent feature that fired reliably on a sample of activations."""

    feature_index: int
    average_activation: float  # Mean over the samples where it fired
    sparsity_score: float  # 1 - active_count / sample_count
    active_count: int = 0
    layer_index: int = 0

    @property
    def feature_id(self) -> str:
        """Identifier unique across layers, e.g. ``"3:117"``."""
        return f"{self.layer_index}:{self.feature_index}"

    def to_dict(self) -> dict:
        return {
            "feature_index": self.feature_index,
            "average_activation": self.average_activation,
            "sparsity_score": self.sparsity_score,
            "active_count": self.active_count,
            "layer_index": self.layer_index,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "DiscoveredFeature":
        return cls(**d)


@dataclass
class ActiveFeature:
    """A feature firing on one specific activation vector."""

    feature_index: int
    activation: float
    input_text: str = ""


@torch.no_grad()
def extract_features(
    model: SkipTranscoderModel,
    activations: Tensor | Sequence[Tensor],
    activity_threshold: float = 1e-6,
    min_active_samples: int = 5,
    layer_index: int = 0,
) -> list[DiscoveredFeature]:
    """Find the features that fire on at least ``min_active_samples`` samples.

    Args:
        model: Trained transcoder.
        activations: Sample activations [N, input_dim].
        activity_threshold: A latent counts as active above this magnitude.
        min_active_samples: Minimum number of samples a feature must fire on.
        layer_index: Layer the activations came from, stored on each feature.

    Returns:
        Discovered features ordered by feature index.
    """
    activations = stack_activations(activations)
    num_samples = activations.shape[0]
    if num_samples == 0:
        logger.info("No activations supplied for feature extraction")
        return []

    latents = model.encode(activations)
    active = latents.abs() > activity_threshold
    active_counts = active.sum(dim=0)
    active_sums = torch.where(active, latents, torch.zeros_like(latents)).double().sum(dim=0)

    features = []
    for index in torch.nonzero(active_counts >= min_active_samples).flatten().tolist():
        count = int(active_counts[index].item())
        features.append(
            DiscoveredFeature(
                feature_index=index,
                average_activation=active_sums[index].item() / count,
                sparsity_score=1.0 - count / num_samples,
                active_count=count,
                layer_index=layer_index,
            )
        )

    logger.info(
        "Discovered %d features active in >= %d of %d samples",
        len(features),
        min_active_samples,
        num_samples,
    )
    return features


@torch.no_grad()
def active_features(
    model: SkipTranscoderModel,
    vector: Tensor | Sequence[float],
    activity_threshold: float = 1e-6,
    input_text: str = "",
) -> list[ActiveFeature]:
    """List the features active on a single activation vector."""
    latent = model.encode(torch.as_tensor(vector, dtype=torch.float32).reshape(-1))
    indices = torch.nonzero(latent.abs() > activity_threshold).flatten().tolist()
    return [ActiveFeature(i, latent[i].item(), input_text) for i in indices]
