"""Analysis tools for trained Skip Transcoders.

This module provides tools for understanding what transcoder features
represent and how they relate:

- InterpretabilityAnalyzer: statistics, correlations, selectivity, causal attribution
- TopKTracker: Track top-k activating examples per feature
- discover_circuits: Link features across layers into circuits
- compute_embeddings: Compact embeddings of activation vectors
"""

from .circuits import (
    Circuit,
    CircuitQueue,
    CircuitType,
    InMemoryCircuitQueue,
    JsonlCircuitQueue,
    QueuedOperation,
    discover_circuits,
)
from .embeddings import (
    EmbeddingMethod,
    EmbeddingResult,
    compute_embeddings,
    pooling_segments,
)
from .feature_report import (
    FeatureActivation,
    TopKTracker,
    build_feature_report,
    collect_top_activations,
    common_tokens,
    infer_concept,
)
from .interpretability import (
    FeatureCorrelation,
    FeatureStatistics,
    InterpretabilityAnalyzer,
    InterpretabilityReport,
    StructuralMetrics,
)

__all__ = [
    # Circuits
    "Circuit",
    "CircuitQueue",
    "CircuitType",
    "InMemoryCircuitQueue",
    "JsonlCircuitQueue",
    "QueuedOperation",
    "discover_circuits",
    # Embeddings
    "EmbeddingMethod",
    "EmbeddingResult",
    "compute_embeddings",
    "pooling_segments",
    # Feature reports
    "FeatureActivation",
    "TopKTracker",
    "build_feature_report",
    "collect_top_activations",
    "common_tokens",
    "infer_concept",
    # Interpretability
    "FeatureCorrelation",
    "FeatureStatistics",
    "InterpretabilityAnalyzer",
    "InterpretabilityReport",
    "StructuralMetrics",
]
