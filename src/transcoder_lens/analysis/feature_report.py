"""Top-k activating examples and per-feature reports.

Key components:
- FeatureActivation: one firing of a feature on a captured activation
- TopKTracker: keeps the k strongest firings per feature
- build_feature_report: summary of one feature with its common tokens and
  a keyword-based concept label
"""

import heapq
import itertools
import json
import logging
from collections import Counter
from dataclasses import dataclass
from pathlib import Path
from typing import Sequence

import torch
from torch import Tensor

from ..data.activations import ActivationRecord
from ..transcoder.model import SkipTranscoderModel

logger = logging.getLogger(__name__)


@dataclass
class FeatureActivation:
    """A single activation of a feature.

    Stores the context needed to understand what caused the activation.
    """

    feature_idx: int  # Which feature fired
    activation_value: float  # How strongly it fired
    sample_idx: int  # Which sample the activation came from
    token_position: int = 0  # Token position within the sample
    input_text: str = ""  # Text that produced the activation

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "feature_idx": self.feature_idx,
            "activation_value": self.activation_value,
            "sample_idx": self.sample_idx,
            "token_position": self.token_position,
            "input_text": self.input_text,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "FeatureActivation":
        """Create from dictionary."""
        return cls(**d)


class TopKTracker:
    """Tracks the top-k activating examples per feature.

    Uses min-heaps to keep only the k highest activations for each feature,
    so memory stays bounded however many samples are streamed through.

    Usage:
        tracker = TopKTracker(num_features=512, k=50)
        tracker.update(latents, sample_indices, input_texts, token_positions)
        top_examples = tracker.get_top_examples(feature_idx=7)
    """

    def __init__(self, num_features: int, k: int = 50, activity_threshold: float = 1e-6):
        """Initialize tracker.

        Args:
            num_features: Number of latent features in the transcoder.
            k: Number of top examples to track per feature.
            activity_threshold: Activations at or below this are ignored.
        """
        self.num_features = num_features
        self.k = k
        self.activity_threshold = activity_threshold

        # Min-heaps per feature of (activation_value, insertion order, FeatureActivation)
        self._heaps: list[list[tuple[float, int, FeatureActivation]]] = [
            [] for _ in range(num_features)
        ]
        self._counter = itertools.count()

        self.total_activations = 0
        self.samples_processed = 0

    def _push(self, activation: FeatureActivation) -> None:
        heap = self._heaps[activation.feature_idx]
        entry = (activation.activation_value, next(self._counter), activation)
        if len(heap) < self.k:
            heapq.heappush(heap, entry)
        elif activation.activation_value > heap[0][0]:
            heapq.heapreplace(heap, entry)

    def update(
        self,
        latents: Tensor,
        sample_indices: list[int] | Tensor,
        input_texts: list[str] | None = None,
        token_positions: list[int] | None = None,
    ) -> None:
        """Update with a batch of latent codes.

        Args:
            latents: Latent codes [batch, num_features].
            sample_indices: Sample index of each row.
            input_texts: Optional text for each row.
            token_positions: Optional token position for each row.
        """
        latents = latents.detach().cpu()
        if latents.ndim == 1:
            latents = latents.unsqueeze(0)
        if latents.shape[-1] != self.num_features:
            raise ValueError(
                f"Expected {self.num_features} features, got {latents.shape[-1]}"
            )

        if isinstance(sample_indices, Tensor):
            sample_indices = sample_indices.tolist()

        for row, sample_idx in enumerate(sample_indices):
            values = latents[row]
            text = input_texts[row] if input_texts else ""
            position = token_positions[row] if token_positions else 0

            active_indices = torch.nonzero(values.abs() > self.activity_threshold).flatten()
            for feat_idx in active_indices.tolist():
                self.total_activations += 1
                self._push(
                    FeatureActivation(
                        feature_idx=feat_idx,
                        activation_value=values[feat_idx].item(),
                        sample_idx=sample_idx,
                        token_position=position,
                        input_text=text,
                    )
                )

        self.samples_processed += len(sample_indices)

    def get_top_examples(self, feature_idx: int) -> list[FeatureActivation]:
        """Top-k examples for a feature, strongest first."""
        examples = [item[2] for item in self._heaps[feature_idx]]
        examples.sort(key=lambda x: x.activation_value, reverse=True)
        return examples

    def get_feature_stats(self) -> dict[int, dict]:
        """Per-feature stats over the tracked examples."""
        stats = {}
        for i in range(self.num_features):
            activations = [e.activation_value for e in self.get_top_examples(i)]
            if activations:
                stats[i] = {
                    "num_examples": len(activations),
                    "max_activation": max(activations),
                    "min_activation": min(activations),
                    "mean_activation": sum(activations) / len(activations),
                }
            else:
                stats[i] = {
                    "num_examples": 0,
                    "max_activation": 0.0,
                    "min_activation": 0.0,
                    "mean_activation": 0.0,
                }
        return stats

    def save(self, path: Path | str) -> None:
        """Save tracker state to JSON."""
        data = {
            "num_features": self.num_features,
            "k": self.k,
            "activity_threshold": self.activity_threshold,
            "total_activations": self.total_activations,
            "samples_processed": self.samples_processed,
            "features": {},
        }
        for i in range(self.num_features):
            examples = self.get_top_examples(i)
            if examples:
                data["features"][str(i)] = [e.to_dict() for e in examples]

        with open(path, "w") as f:
            json.dump(data, f, indent=2)

    @classmethod
    def load(cls, path: Path | str) -> "TopKTracker":
        """Load tracker from JSON."""
        with open(path) as f:
            data = json.load(f)

        tracker = cls(
            num_features=data["num_features"],
            k=data["k"],
            activity_threshold=data.get("activity_threshold", 1e-6),
        )
        tracker.total_activations = data["total_activations"]
        tracker.samples_processed = data["samples_processed"]

        for examples in data["features"].values():
            for e_dict in examples:
                tracker._push(FeatureActivation.from_dict(e_dict))

        return tracker


@torch.no_grad()
def collect_top_activations(
    model: SkipTranscoderModel,
    records: Sequence[ActivationRecord],
    k: int = 50,
    batch_size: int = 256,
    activity_threshold: float = 1e-6,
) -> TopKTracker:
    """Collect top-k activating examples from captured activations.

    Args:
        model: Trained transcoder.
        records: Activation records with their input context.
        k: Number of top examples per feature.
        batch_size: Records encoded at once.
        activity_threshold: Activations at or below this are ignored.

    Returns:
        TopKTracker with collected activations.
    """
    tracker = TopKTracker(model.latent_dim, k=k, activity_threshold=activity_threshold)
    model.eval()

    for start in range(0, len(records), batch_size):
        batch = records[start : start + batch_size]
        vectors = torch.stack([torch.as_tensor(r.vector, dtype=torch.float32) for r in batch])
        tracker.update(
            latents=model.encode(vectors),
            sample_indices=[r.sample_index for r in batch],
            input_texts=[r.input_text for r in batch],
            token_positions=[r.token_position for r in batch],
        )

    logger.info(
        "Tracked %d activations over %d samples",
        tracker.total_activations,
        tracker.samples_processed,
    )
    return tracker


def common_tokens(examples: Sequence[FeatureActivation], top_n: int = 10) -> list[str]:
    """Most frequent lowercased whitespace tokens longer than two characters."""
    counts = Counter(
        token.lower()
        for example in examples
        for token in example.input_text.split()
        if len(token) > 2
    )
    return [token for token, _ in counts.most_common(top_n)]


UNKNOWN_CONCEPT = "Unknown concept - requires manual analysis"

# Checked in order; the first domain with a keyword in the example text wins
CONCEPT_KEYWORDS = [
    ("Medical concept", ("medical", "patient", "diagnosis")),
    ("Legal concept", ("legal", "law", "court")),
    ("Programming concept", ("code", "function", "programming")),
]


def infer_concept(examples: Sequence[FeatureActivation]) -> str:
    """Guess a coarse domain label from keywords in the examples' input text.

    Matching is substring-based and case-insensitive, so it is only a hint
    for a human reviewer.
    """
    text = " ".join(example.input_text for example in examples).lower()
    for concept, keywords in CONCEPT_KEYWORDS:
        if any(keyword in text for keyword in keywords):
            return concept
    return UNKNOWN_CONCEPT


def build_feature_report(tracker: TopKTracker, feature_idx: int, top_n: int = 10) -> dict:
    """Report on one feature from its tracked examples.

    Args:
        tracker: TopKTracker with activation data.
        feature_idx: Which feature to report on.
        top_n: Number of examples and tokens to include.

    Returns:
        Report dictionary. A feature with no tracked examples reports zeros.
    """
    examples = tracker.get_top_examples(feature_idx)
    values = [e.activation_value for e in examples]
    return {
        "feature_idx": feature_idx,
        "total_activations": len(examples),
        "average_activation": sum(values) / len(values) if values else 0.0,
        "max_activation": max(values) if values else 0.0,
        "top_examples": [e.to_dict() for e in examples[:top_n]],
        "common_tokens": common_tokens(examples, top_n),
        "possible_concept": infer_concept(examples),
    }
