"""Configuration system using Pydantic for type safety and validation."""

from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field, model_validator


class TranscoderConfig(BaseModel):
    """Configuration for the Skip Transcoder architecture."""

    latent_dim: int = Field(
        default=512,
        ge=1,
        description="Number of sparse latent features",
    )
    seed: int = Field(default=42, description="Seed for weight initialization")
    sparsity_threshold: float = Field(
        default=0.01,
        gt=0,
        description="Average encoder weight magnitude below which a feature counts as sparse",
    )


class TrainingConfig(BaseModel):
    """Configuration for Skip Transcoder training."""

    sparsity_penalty: float = Field(default=0.01, ge=0, description="L1 coefficient")
    learning_rate: float = Field(default=1e-3, gt=0)
    max_epochs: int = Field(default=100, ge=1)
    batch_size: int = Field(default=32, ge=1)
    patience: int = Field(
        default=10,
        ge=1,
        description="Epochs without improvement before stopping",
    )
    report_every: int = Field(default=10, ge=1, description="Report progress every N epochs")
    update_rule: Literal["approximate", "exact"] = Field(
        default="approximate",
        description="Parameter update rule (heuristic or true per-sample gradient)",
    )
    seed: int = Field(default=42, description="Seed for per-epoch shuffling")


class FeatureConfig(BaseModel):
    """Configuration for discovered-feature extraction."""

    activity_threshold: float = Field(default=1e-6, gt=0)
    min_active_samples: int = Field(
        default=5,
        ge=1,
        description="Minimum samples a feature must fire in to be kept",
    )
    sample_size: int = Field(
        default=1000,
        ge=1,
        description="Number of activations used for extraction after training",
    )
    top_k: int = Field(
        default=50,
        ge=1,
        description="Strongest activating examples kept per feature report",
    )


class AnalysisConfig(BaseModel):
    """Configuration for interpretability analysis."""

    max_samples: int = Field(default=2000, ge=1)
    activity_threshold: float = Field(default=1e-6, gt=0)
    correlation_threshold: float = Field(default=0.1, ge=0, lt=1)
    strong_correlation_threshold: float = Field(
        default=0.5,
        ge=0,
        le=1,
        description="Correlations above this magnitude are counted as strong in the summary",
    )
    causal_samples: int = Field(default=100, ge=1)
    causal_epsilon: float = Field(default=1e-4, gt=0)
    weight_epsilon: float = Field(
        default=1e-6,
        gt=0,
        description="Weights at or below this magnitude are ignored for complexity",
    )
    top_n: int = Field(default=10, ge=1, description="Features listed in the summary")


class CircuitConfig(BaseModel):
    """Configuration for cross-layer circuit discovery."""

    min_strength: float = Field(default=0.1)
    max_depth: int = Field(default=1, ge=1, description="Maximum layer hops per circuit")
    max_features_per_layer: int = Field(default=50, ge=1)
    max_circuits: int = Field(default=100, ge=1)
    sparse_threshold: float = Field(default=0.8, ge=0, le=1)
    active_threshold: float = Field(default=0.5, ge=0)
    equal_activation_tolerance: float = Field(default=0.1, ge=0)


class EmbeddingConfig(BaseModel):
    """Configuration for activation embeddings."""

    target_dim: int = Field(default=64, ge=1)
    method: Literal["random_projection", "mean_pooling", "pca"] = Field(
        default="random_projection",
    )
    seed: int = Field(default=42)
    max_samples: int = Field(default=10_000, ge=1)


class StoreConfig(BaseModel):
    """Configuration for the local activation and model store."""

    root: Path = Field(default=Path("store"))
    max_activations: int = Field(
        default=10_000,
        ge=1,
        description="Maximum activation vectors loaded per session/layer",
    )


class ExperimentConfig(BaseModel):
    """Top-level experiment configuration."""

    transcoder: TranscoderConfig = Field(default_factory=TranscoderConfig)
    training: TrainingConfig = Field(default_factory=TrainingConfig)
    features: FeatureConfig = Field(default_factory=FeatureConfig)
    analysis: AnalysisConfig = Field(default_factory=AnalysisConfig)
    circuits: CircuitConfig = Field(default_factory=CircuitConfig)
    embeddings: EmbeddingConfig = Field(default_factory=EmbeddingConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)

    session_id: int = Field(default=1, ge=1)
    layers: list[int] = Field(
        default_factory=lambda: [0, 1],
        description="Which layers to train transcoders on",
    )

    output_dir: Path = Field(default=Path("outputs"))
    experiment_name: str = Field(default="default")

    @model_validator(mode="after")
    def check_layers(self) -> "ExperimentConfig":
        """Layers must be non-negative and unique."""
        if any(layer < 0 for layer in self.layers):
            raise ValueError("layer indices must be non-negative")
        if len(set(self.layers)) != len(self.layers):
            raise ValueError("layer indices must be unique")
        return self

    @classmethod
    def from_yaml(cls, path: str | Path) -> "ExperimentConfig":
        """Load configuration from a YAML file."""
        with open(path) as f:
            data = yaml.safe_load(f)
        return cls(**(data or {}))

    def to_yaml(self, path: str | Path) -> None:
        """Save configuration to a YAML file."""
        # mode='json' turns Path objects into strings
        data = self.model_dump(mode="json")
        with open(path, "w") as f:
            yaml.dump(data, f, default_flow_style=False)

    def get_run_dir(self) -> Path:
        """Get the directory for this experiment run."""
        run_dir = self.output_dir / self.experiment_name
        run_dir.mkdir(parents=True, exist_ok=True)
        return run_dir
