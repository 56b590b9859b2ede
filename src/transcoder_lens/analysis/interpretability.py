"""Statistical, causal and structural analysis of a trained Skip Transcoder.

All statistics are computed in float64 over the latent codes of a sample of
activations. Variances are population variances. The structural metrics read
the weights only and need no data.
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Sequence

import torch
from torch import Tensor

from ..config import AnalysisConfig
from ..data.activations import stack_activations
from ..transcoder.model import SkipTranscoderModel

logger = logging.getLogger(__name__)


@dataclass
class FeatureStatistics:
    """Distribution of one latent feature over the analyzed samples."""

    feature_index: int
    mean: float
    variance: float
    std_dev: float
    sparsity: float  # Fraction of samples where the feature is silent
    min: float
    max: float
    active_count: int

    def to_dict(self) -> dict:
        return dict(self.__dict__)


@dataclass
class FeatureCorrelation:
    """Pearson correlation between two latent features (feature_a < feature_b)."""

    feature_a: int
    feature_b: int
    correlation: float

    def to_dict(self) -> dict:
        return dict(self.__dict__)


@dataclass
class StructuralMetrics:
    """Weight-only summary of how the model splits work between its pathways."""

    encoder_complexity: float  # Mean |w| over non-negligible encoder weights
    decoder_complexity: float  # Mean |w| over non-negligible decoder weights
    skip_importance: float  # sum|W_skip| / sum|W_dec|
    effective_dimensionality: float  # Participation ratio of feature norms

    def to_dict(self) -> dict:
        return dict(self.__dict__)


@dataclass
class InterpretabilityReport:
    """Everything the analyzer learned about a model on one sample."""

    num_samples: int
    feature_statistics: list[FeatureStatistics]
    correlations: list[FeatureCorrelation]
    selectivity: Tensor  # [latent_dim]
    causal_attribution: Tensor  # [latent_dim]
    structural: StructuralMetrics
    summary: str = ""
    top_causal_features: list[tuple[int, float]] = field(default_factory=list)

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "num_samples": self.num_samples,
            "feature_statistics": [s.to_dict() for s in self.feature_statistics],
            "correlations": [c.to_dict() for c in self.correlations],
            "selectivity": self.selectivity.tolist(),
            "causal_attribution": self.causal_attribution.tolist(),
            "structural": self.structural.to_dict(),
            "top_causal_features": [list(pair) for pair in self.top_causal_features],
            "summary": self.summary,
        }


def _constant_columns(values: Tensor) -> Tensor:
    """Boolean mask of columns whose values are all identical."""
    return values.max(dim=0).values == values.min(dim=0).values


class InterpretabilityAnalyzer:
    """Runs the interpretability analyses over a trained model.

    Usage:
        analyzer = InterpretabilityAnalyzer(model, AnalysisConfig())
        report = analyzer.analyze(activations)
        print(report.summary)
    """

    def __init__(self, model: SkipTranscoderModel, config: AnalysisConfig | None = None):
        self.model = model
        self.config = config or AnalysisConfig()

    @torch.no_grad()
    def analyze(self, activations: Tensor | Sequence[Tensor]) -> InterpretabilityReport | None:
        """Run every analysis on up to ``max_samples`` activations.

        Args:
            activations: Sample activations [N, input_dim].

        Returns:
            InterpretabilityReport, or None when no activations were given.
        """
        activations = stack_activations(activations)[: self.config.max_samples]
        if activations.shape[0] == 0:
            logger.info("No activations supplied for interpretability analysis")
            return None

        logger.info(
            "Analyzing %d features over %d samples",
            self.model.latent_dim,
            activations.shape[0],
        )
        latents = self.model.encode(activations).double()

        statistics = self.feature_statistics(latents)
        correlations = self.feature_correlations(latents)
        selectivity = self.selectivity(latents)
        causal = self.causal_attribution(activations)
        structural = self.structural_metrics()

        top_n = min(self.config.top_n, self.model.latent_dim)
        scores, indices = torch.topk(causal, top_n)
        top_causal = list(zip(indices.tolist(), scores.tolist()))

        report = InterpretabilityReport(
            num_samples=activations.shape[0],
            feature_statistics=statistics,
            correlations=correlations,
            selectivity=selectivity,
            causal_attribution=causal,
            structural=structural,
            top_causal_features=top_causal,
        )
        report.summary = self._summarize(report)
        logger.info("Interpretability analysis completed: %d correlations", len(correlations))
        return report

    def feature_statistics(self, latents: Tensor) -> list[FeatureStatistics]:
        """Per-feature mean, population variance, sparsity and range.

        Args:
            latents: Latent codes [N, latent_dim].
        """
        latents = latents.double()
        num_samples = latents.shape[0]
        mean = latents.mean(dim=0)
        variance = ((latents - mean) ** 2).mean(dim=0)
        active_count = (latents.abs() > self.config.activity_threshold).sum(dim=0)
        minimum = latents.min(dim=0).values
        maximum = latents.max(dim=0).values

        return [
            FeatureStatistics(
                feature_index=j,
                mean=mean[j].item(),
                variance=variance[j].item(),
                std_dev=math.sqrt(variance[j].item()),
                sparsity=1.0 - active_count[j].item() / num_samples,
                min=minimum[j].item(),
                max=maximum[j].item(),
                active_count=int(active_count[j].item()),
            )
            for j in range(latents.shape[1])
        ]

    def feature_correlations(self, latents: Tensor) -> list[FeatureCorrelation]:
        """Pearson correlation for every pair of non-constant features.

        Pairs whose ``|r|`` does not exceed ``correlation_threshold`` are
        dropped. A constant feature has no defined correlation and is skipped.
        """
        latents = latents.double()
        if latents.shape[0] < 2:
            return []

        centered = latents - latents.mean(dim=0)
        norms = centered.norm(dim=0)
        varying = ~_constant_columns(latents) & (norms > 0)

        safe_norms = torch.where(varying, norms, torch.ones_like(norms))
        normalized = centered / safe_norms
        corr = (normalized.T @ normalized).clamp(-1.0, 1.0)

        pair_mask = torch.triu(torch.ones_like(corr, dtype=torch.bool), diagonal=1)
        pair_mask &= varying.unsqueeze(0) & varying.unsqueeze(1)
        pair_mask &= corr.abs() > self.config.correlation_threshold

        rows, cols = torch.nonzero(pair_mask, as_tuple=True)
        return [
            FeatureCorrelation(a, b, corr[a, b].item())
            for a, b in zip(rows.tolist(), cols.tolist())
        ]

    def selectivity(self, latents: Tensor) -> Tensor:
        """Excess kurtosis per feature, clamped at zero.

        Spiky features that fire rarely but strongly score high. A constant
        feature scores 0.
        """
        latents = latents.double()
        mean = latents.mean(dim=0)
        centered = latents - mean
        variance = (centered**2).mean(dim=0)
        fourth_moment = (centered**4).mean(dim=0)

        constant = _constant_columns(latents) | (variance == 0)
        safe_variance = torch.where(constant, torch.ones_like(variance), variance)
        kurtosis = fourth_moment / safe_variance**2 - 3.0
        kurtosis = torch.where(constant, torch.zeros_like(kurtosis), kurtosis)
        return kurtosis.clamp(min=0.0)

    @torch.no_grad()
    def causal_attribution(self, activations: Tensor | Sequence[Tensor]) -> Tensor:
        """Finite-difference sensitivity of reconstruction error per feature.

        For each of the first ``causal_samples`` activations, every latent
        coordinate is nudged by ``causal_epsilon`` and both codes are decoded
        (sparse pathway only). The score is
        ``|(err_perturbed - err_original) / epsilon|`` with
        ``err = sum((decode(z) - x)^2)``, averaged over samples. No gradient
        flows through the encoder.

        Returns:
            float64 tensor [latent_dim].
        """
        activations = stack_activations(activations)[: self.config.causal_samples]
        latent_dim = self.model.latent_dim
        if activations.shape[0] == 0:
            return torch.zeros(latent_dim, dtype=torch.float64)

        epsilon = self.config.causal_epsilon
        decoder_weight = self.model.decoder_weight.double()
        decoder_bias = self.model.decoder_bias.double()

        totals = torch.zeros(latent_dim, dtype=torch.float64)
        for x in activations:
            x = x.double()
            latent = self.model.encode(x.float()).double()
            reconstruction = latent @ decoder_weight + decoder_bias
            error = ((reconstruction - x) ** 2).sum()

            # Row j is the reconstruction with latent j nudged by epsilon
            perturbed = reconstruction.unsqueeze(0) + epsilon * decoder_weight
            perturbed_error = ((perturbed - x) ** 2).sum(dim=1)
            totals += ((perturbed_error - error) / epsilon).abs()

        return totals / activations.shape[0]

    def structural_metrics(self) -> StructuralMetrics:
        """Complexity of each pathway and effective dimensionality of the code."""
        eps = self.config.weight_epsilon
        encoder = self.model.encoder_weight.double()
        decoder = self.model.decoder_weight.double()
        skip = self.model.skip_weight.double()

        def complexity(weights: Tensor) -> float:
            significant = weights.abs()[weights.abs() > eps]
            return significant.mean().item() if significant.numel() else 0.0

        decoder_total = decoder.abs().sum().item()
        skip_importance = skip.abs().sum().item() / decoder_total if decoder_total > 0 else 0.0

        # Squared norm of each feature's encoder weights stands in for an eigenvalue
        norms = (encoder**2).sum(dim=0)
        denominator = (norms**2).sum().item()
        effective_dim = norms.sum().item() ** 2 / denominator if denominator > 0 else 0.0

        return StructuralMetrics(
            encoder_complexity=complexity(encoder),
            decoder_complexity=complexity(decoder),
            skip_importance=skip_importance,
            effective_dimensionality=effective_dim,
        )

    def _summarize(self, report: InterpretabilityReport) -> str:
        correlations = report.correlations
        positive = sum(c.correlation > 0 for c in correlations)
        strong = sum(
            abs(c.correlation) > self.config.strong_correlation_threshold for c in correlations
        )
        stats = report.feature_statistics
        avg_sparsity = sum(s.sparsity for s in stats) / len(stats)
        avg_activation = sum(s.mean for s in stats) / len(stats)

        lines = [
            f"Interpretability analysis of {len(stats)} features over {report.num_samples} samples",
            f"Top {len(report.top_causal_features)} causally important features:",
        ]
        for index, score in report.top_causal_features:
            lines.append(f"  feature {index}: {score:.6f}")
        lines += [
            f"Correlations: {len(correlations)} total, {positive} positive, "
            f"{len(correlations) - positive} negative, {strong} strong",
            f"Average sparsity: {avg_sparsity:.4f}",
            f"Average activation: {avg_activation:.6f}",
            f"Skip importance: {report.structural.skip_importance:.4f}, "
            f"effective dimensionality: {report.structural.effective_dimensionality:.2f}",
        ]
        return "\n".join(lines)
