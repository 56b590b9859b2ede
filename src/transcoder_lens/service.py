"""Entry points for training and analyzing transcoders against a store.

No-data conditions are logged and produce ``None`` or empty results.
Argument and corruption errors propagate unchanged. Anything else is logged
with the operation's context and re-raised so the caller can mark the run
failed.
"""

import logging
from contextlib import contextmanager
from typing import Hashable, Iterator, Mapping, Sequence

from torch import Tensor

from .analysis.circuits import Circuit, CircuitQueue, discover_circuits
from .analysis.embeddings import EmbeddingMethod, EmbeddingResult, compute_embeddings
from .analysis.feature_report import build_feature_report, collect_top_activations
from .analysis.interpretability import InterpretabilityAnalyzer, InterpretabilityReport
from .config import ExperimentConfig
from .data.activations import (
    ActivationStatistics,
    ValidationSummary,
    stack_activations,
    summarize_activations,
)
from .data.store import LocalBlobStore
from .errors import InvalidArgumentError, TranscoderError
from .transcoder.features import DiscoveredFeature, extract_features
from .transcoder.model import SkipTranscoderModel
from .transcoder.serialization import serialize_model
from .transcoder.training import TrainingResult, train_transcoder

logger = logging.getLogger(__name__)


@contextmanager
def _operation(name: str, **context) -> Iterator[None]:
    try:
        yield
    except TranscoderError:
        raise
    except Exception:
        details = ", ".join(f"{k}={v}" for k, v in context.items())
        logger.exception("%s failed (%s)", name, details)
        raise


class TranscoderService:
    """Trains, persists and analyzes Skip Transcoders.

    Usage:
        service = TranscoderService(LocalBlobStore("store"))
        result = service.train(session_id=1, layer_index=0, latent_dim=512)
        report = service.analyze_interpretability(result.model, activations)
    """

    def __init__(
        self,
        store: LocalBlobStore,
        queue: CircuitQueue | None = None,
        config: ExperimentConfig | None = None,
        show_progress: bool = False,
    ):
        """Initialize the service.

        Args:
            store: Source of activations and home of trained models.
            queue: Where discovered circuits are sent, if anywhere.
            config: Experiment configuration.
            show_progress: Display rich progress bars during training.
        """
        self.store = store
        self.queue = queue
        self.config = config or ExperimentConfig()
        self.show_progress = show_progress

    def train(
        self,
        session_id: int,
        layer_index: int,
        latent_dim: int | None = None,
        sparsity_penalty: float | None = None,
        learning_rate: float | None = None,
        max_epochs: int | None = None,
    ) -> TrainingResult | None:
        """Train a transcoder on stored activations and persist it.

        After training, the model blob and its metrics are saved and features
        are extracted from the first ``features.sample_size`` vectors.

        Returns:
            TrainingResult, or None when no activations are stored.
        """
        training = self.config.training
        latent_dim = self.config.transcoder.latent_dim if latent_dim is None else latent_dim
        sparsity_penalty = (
            training.sparsity_penalty if sparsity_penalty is None else sparsity_penalty
        )
        learning_rate = training.learning_rate if learning_rate is None else learning_rate
        max_epochs = training.max_epochs if max_epochs is None else max_epochs

        with _operation("Training", session_id=session_id, layer_index=layer_index):
            logger.info(
                "Training Skip Transcoder for session %d layer %d (latent_dim=%d)",
                session_id,
                layer_index,
                latent_dim,
            )
            activations = self.store.load_activations(session_id, layer_index)
            result = train_transcoder(
                activations,
                latent_dim=latent_dim,
                sparsity_penalty=sparsity_penalty,
                learning_rate=learning_rate,
                max_epochs=max_epochs,
                config=training,
                seed=self.config.transcoder.seed,
                show_progress=self.show_progress,
            )
            if result is None:
                return None

            metrics = {
                "final_loss": result.final_loss,
                "epochs_run": result.epochs_run,
                "stopped_early": result.stopped_early,
                "sparsity": result.model.get_average_sparsity(
                    self.config.transcoder.sparsity_threshold
                ),
                "update_rule": training.update_rule,
                "num_samples": activations.shape[0],
            }
            self.store.save_model(session_id, layer_index, serialize_model(result.model), metrics)

            sample = activations[: self.config.features.sample_size]
            features = self.extract_features(result.model, sample, layer_index=layer_index)
            self.store.save_features(session_id, layer_index, features)
            return result

    def extract_features(
        self,
        model: SkipTranscoderModel,
        sample_activations: Tensor | Sequence[Tensor],
        layer_index: int = 0,
    ) -> list[DiscoveredFeature]:
        """Features that fire on enough of the sample activations."""
        with _operation("Feature extraction", layer_index=layer_index):
            return extract_features(
                model,
                sample_activations,
                activity_threshold=self.config.features.activity_threshold,
                min_active_samples=self.config.features.min_active_samples,
                layer_index=layer_index,
            )

    def analyze_interpretability(
        self,
        model: SkipTranscoderModel,
        sample_activations: Tensor | Sequence[Tensor],
    ) -> InterpretabilityReport | None:
        with _operation("Interpretability analysis", latent_dim=model.latent_dim):
            report = InterpretabilityAnalyzer(model, self.config.analysis).analyze(
                sample_activations
            )
            if report is not None:
                logger.info("Interpretability summary:\n%s", report.summary)
            return report

    def analyze_feature(
        self,
        session_id: int,
        layer_index: int,
        feature_index: int,
        sample_size: int | None = None,
    ) -> dict | None:
        """Report what makes one feature of a stored model fire.

        The stored model encodes up to ``sample_size`` stored activations
        (``features.sample_size`` by default). The report covers the feature's
        strongest ``features.top_k`` firings with their input text, the most
        common tokens among them and a coarse concept label.

        Returns:
            Report dictionary, or None when no model is stored for the layer.

        Raises:
            InvalidArgumentError: If feature_index is outside the model's
                latent dimension or sample_size is not positive.
        """
        features = self.config.features
        sample_size = features.sample_size if sample_size is None else sample_size
        if sample_size < 1:
            raise InvalidArgumentError(f"sample_size must be positive, got {sample_size}")

        with _operation(
            "Feature analysis",
            session_id=session_id,
            layer_index=layer_index,
            feature_index=feature_index,
        ):
            model = self.store.load_model(session_id, layer_index)
            if model is None:
                return None
            if not 0 <= feature_index < model.latent_dim:
                raise InvalidArgumentError(
                    f"feature_index must be in [0, {model.latent_dim}), got {feature_index}"
                )

            records = self.store.load_records(session_id, layer_index, limit=sample_size)
            tracker = collect_top_activations(
                model,
                records,
                k=features.top_k,
                activity_threshold=features.activity_threshold,
            )
            report = build_feature_report(tracker, feature_index, top_n=self.config.analysis.top_n)
            report["layer_index"] = layer_index
            logger.info(
                "Feature %d analysis completed: %d activations, %s",
                feature_index,
                report["total_activations"],
                report["possible_concept"],
            )
            return report

    def discover_circuits(
        self,
        features_by_layer: Mapping[int, Sequence[DiscoveredFeature]],
        min_strength: float | None = None,
        max_depth: int | None = None,
    ) -> list[Circuit]:
        with _operation("Circuit discovery", layers=sorted(features_by_layer)):
            return discover_circuits(
                features_by_layer,
                min_strength=min_strength,
                max_depth=max_depth,
                config=self.config.circuits,
                queue=self.queue,
            )

    def compute_embeddings(
        self,
        activations: Mapping[Hashable, Tensor] | Sequence[tuple[Hashable, Tensor]] | Tensor,
        target_dim: int | None = None,
        method: EmbeddingMethod | str | None = None,
    ) -> list[EmbeddingResult]:
        """Embed at most ``embeddings.max_samples`` activations."""
        config = self.config.embeddings
        target_dim = config.target_dim if target_dim is None else target_dim
        method = method or config.method

        if isinstance(activations, Mapping):
            activations = list(activations.items())
        activations = activations[: config.max_samples]

        with _operation("Embedding computation", method=method, target_dim=target_dim):
            return compute_embeddings(activations, target_dim, method, seed=config.seed)

    def load_model(self, session_id: int, layer_index: int) -> SkipTranscoderModel | None:
        with _operation("Model load", session_id=session_id, layer_index=layer_index):
            return self.store.load_model(session_id, layer_index)

    def load_features(self, session_id: int, layer_index: int) -> list[DiscoveredFeature]:
        with _operation("Feature load", session_id=session_id, layer_index=layer_index):
            return self.store.load_features(session_id, layer_index)

    def validate_activations(self, session_id: int, layer_index: int) -> ValidationSummary:
        """Check stored activations for corruption without repairing them."""
        with _operation("Validation", session_id=session_id, layer_index=layer_index):
            summary = ValidationSummary.from_results(
                self.store.validate_activations(session_id, layer_index)
            )
            logger.info(
                "Validated %d activations for session %d layer %d: %d corrupted",
                summary.total,
                session_id,
                layer_index,
                summary.corrupted,
            )
            return summary

    def sample_activations(self, session_id: int, layer_index: int) -> Tensor:
        """Stored activations capped at ``analysis.max_samples``."""
        with _operation("Activation load", session_id=session_id, layer_index=layer_index):
            activations = self.store.load_activations(
                session_id, layer_index, limit=self.config.analysis.max_samples
            )
            return stack_activations(activations)

    def activation_statistics(self, session_id: int, layer_index: int) -> ActivationStatistics:
        """Streaming magnitude, sparsity and range over the stored activations."""
        with _operation("Activation statistics", session_id=session_id, layer_index=layer_index):
            records = self.store.load_records(session_id, layer_index)
            return summarize_activations(r.vector for r in records)
