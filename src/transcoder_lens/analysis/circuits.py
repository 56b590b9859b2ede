"""Cross-layer circuit discovery and the queue that hands circuits downstream.

A circuit is a directed link from a feature in one layer to a feature in a
later layer. Its strength is a heuristic built from the two features'
summary statistics:

    strength = (1 - |a_s - a_t|) * min(s_s, s_t) / ln(layer_distance + 1)

where ``a`` is the average activation and ``s`` the sparsity score. No
activations are replayed, so strength is a similarity score rather than a
measured causal effect.

Discovered circuits, preceded by nodes for their endpoint features, are pushed
to a ``CircuitQueue`` for an external graph store to pick up later. Pushing is
fire-and-forget: a failed enqueue is logged and discovery carries on.
"""

import json
import logging
import math
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Mapping, Protocol, Sequence

from ..config import CircuitConfig
from ..errors import InvalidArgumentError
from ..transcoder.features import DiscoveredFeature

logger = logging.getLogger(__name__)

CREATE_CAUSAL_RELATIONSHIP = "CREATE_CAUSAL_RELATIONSHIP"
CREATE_FEATURE_NODE = "CREATE_FEATURE_NODE"
PENDING = "PENDING"


class CircuitType(str, Enum):
    """Coarse label for how a source feature relates to its target."""

    SPARSE_PATHWAY = "sparse_pathway"
    ACTIVATION_AMPLIFIER = "activation_amplifier"
    PATTERN_MAINTAINER = "pattern_maintainer"
    FEATURE_TRANSFORMER = "feature_transformer"


@dataclass
class Circuit:
    """A directed link between features in two layers (source_layer < target_layer)."""

    source_feature_id: str
    target_feature_id: str
    source_layer: int
    target_layer: int
    strength: float
    circuit_type: CircuitType

    @property
    def layer_span(self) -> int:
        return self.target_layer - self.source_layer

    def to_dict(self) -> dict:
        return {
            "source_feature_id": self.source_feature_id,
            "target_feature_id": self.target_feature_id,
            "source_layer": self.source_layer,
            "target_layer": self.target_layer,
            "strength": self.strength,
            "circuit_type": self.circuit_type.value,
            "layer_span": self.layer_span,
        }


@dataclass
class QueuedOperation:
    """One entry waiting for the external graph store."""

    operation_type: str
    source_feature_id: str
    target_feature_id: str | None
    parameters: dict = field(default_factory=dict)
    queued_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    status: str = PENDING

    def to_dict(self) -> dict:
        return dict(self.__dict__)

    @classmethod
    def from_dict(cls, d: dict) -> "QueuedOperation":
        return cls(**d)


class CircuitQueue(Protocol):
    """Asynchronous hand-off to the graph store. No acknowledgment is expected."""

    def enqueue_circuit(
        self,
        source_id: str,
        target_id: str,
        strength: float,
        circuit_type: CircuitType,
    ) -> None: ...

    def enqueue_feature_node(self, feature: DiscoveredFeature) -> None: ...


def _circuit_operation(
    source_id: str, target_id: str, strength: float, circuit_type: CircuitType
) -> QueuedOperation:
    return QueuedOperation(
        operation_type=CREATE_CAUSAL_RELATIONSHIP,
        source_feature_id=source_id,
        target_feature_id=target_id,
        parameters={"strength": strength, "circuit_type": CircuitType(circuit_type).value},
    )


def _feature_operation(feature: DiscoveredFeature) -> QueuedOperation:
    return QueuedOperation(
        operation_type=CREATE_FEATURE_NODE,
        source_feature_id=feature.feature_id,
        target_feature_id=None,
        parameters={
            "layer_index": feature.layer_index,
            "feature_index": feature.feature_index,
            "average_activation": feature.average_activation,
            "sparsity_score": feature.sparsity_score,
        },
    )


class InMemoryCircuitQueue:
    """Queue that keeps operations in a list, for tests and single-process use."""

    def __init__(self):
        self.operations: list[QueuedOperation] = []

    def enqueue_circuit(
        self,
        source_id: str,
        target_id: str,
        strength: float,
        circuit_type: CircuitType,
    ) -> None:
        self.operations.append(_circuit_operation(source_id, target_id, strength, circuit_type))

    def enqueue_feature_node(self, feature: DiscoveredFeature) -> None:
        self.operations.append(_feature_operation(feature))

    def pending(self) -> list[QueuedOperation]:
        return [op for op in self.operations if op.status == PENDING]


class JsonlCircuitQueue:
    """Append-only JSON-lines file that an external worker drains."""

    def __init__(self, path: Path | str):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def _append(self, operation: QueuedOperation) -> None:
        with open(self.path, "a") as f:
            f.write(json.dumps(operation.to_dict()) + "\n")

    def enqueue_circuit(
        self,
        source_id: str,
        target_id: str,
        strength: float,
        circuit_type: CircuitType,
    ) -> None:
        self._append(_circuit_operation(source_id, target_id, strength, circuit_type))

    def enqueue_feature_node(self, feature: DiscoveredFeature) -> None:
        self._append(_feature_operation(feature))

    def read(self) -> list[QueuedOperation]:
        """All operations written so far, oldest first."""
        if not self.path.exists():
            return []
        with open(self.path) as f:
            return [QueuedOperation.from_dict(json.loads(line)) for line in f if line.strip()]


def circuit_strength(
    source: DiscoveredFeature,
    target: DiscoveredFeature,
    layer_distance: int,
) -> float:
    """Heuristic strength of the link from source to target."""
    similarity = 1.0 - abs(source.average_activation - target.average_activation)
    sparsity = min(source.sparsity_score, target.sparsity_score)
    return similarity * sparsity / math.log(layer_distance + 1)


def classify_circuit(
    source: DiscoveredFeature,
    target: DiscoveredFeature,
    config: CircuitConfig | None = None,
) -> CircuitType:
    """Label a circuit from its endpoint statistics; the first matching rule wins."""
    config = config or CircuitConfig()
    if (
        source.sparsity_score > config.sparse_threshold
        and target.sparsity_score > config.sparse_threshold
    ):
        return CircuitType.SPARSE_PATHWAY
    if (
        source.average_activation > config.active_threshold
        and target.average_activation > config.active_threshold
    ):
        return CircuitType.ACTIVATION_AMPLIFIER
    if (
        abs(source.average_activation - target.average_activation)
        < config.equal_activation_tolerance
    ):
        return CircuitType.PATTERN_MAINTAINER
    return CircuitType.FEATURE_TRANSFORMER


def _enqueue(
    queue: CircuitQueue,
    kept: Sequence[tuple[Circuit, DiscoveredFeature, DiscoveredFeature]],
) -> None:
    # Endpoint nodes are queued before the relationships that refer to them.
    nodes: dict[str, DiscoveredFeature] = {}
    for circuit, source, target in kept:
        nodes.setdefault(
            circuit.source_feature_id, replace(source, layer_index=circuit.source_layer)
        )
        nodes.setdefault(
            circuit.target_feature_id, replace(target, layer_index=circuit.target_layer)
        )

    queued_nodes = 0
    for feature_id, node in nodes.items():
        try:
            queue.enqueue_feature_node(node)
        except Exception as e:
            logger.warning("Failed to queue feature node %s: %s", feature_id, e)
            continue
        queued_nodes += 1

    queued = 0
    for circuit, _, _ in kept:
        try:
            queue.enqueue_circuit(
                circuit.source_feature_id,
                circuit.target_feature_id,
                circuit.strength,
                circuit.circuit_type,
            )
        except Exception as e:
            logger.warning(
                "Failed to queue circuit %s -> %s: %s",
                circuit.source_feature_id,
                circuit.target_feature_id,
                e,
            )
            continue
        queued += 1
    logger.info(
        "Queued %d feature nodes and %d circuits for the graph store", queued_nodes, queued
    )


def discover_circuits(
    features_by_layer: Mapping[int, Sequence[DiscoveredFeature]],
    min_strength: float | None = None,
    max_depth: int | None = None,
    config: CircuitConfig | None = None,
    queue: CircuitQueue | None = None,
) -> list[Circuit]:
    """Link discovered features across layers.

    Layers are visited in index order. A source layer is paired with every
    later layer at most ``max_depth`` indices away, so ``max_depth=1`` links
    only layers whose indices differ by one. The layer distance used in the
    strength is the difference of the two layer indices.

    Args:
        features_by_layer: Discovered features keyed by layer index.
        min_strength: Circuits weaker than this are dropped (config default).
        max_depth: Maximum layer span of a circuit (config default).
        config: Feature caps and classification thresholds.
        queue: Where circuits and their endpoint features are sent for the
            graph store, if anywhere.

    Returns:
        Circuits sorted by strength descending, at most ``max_circuits``.

    Raises:
        InvalidArgumentError: If max_depth is below 1 or min_strength is not finite.
    """
    config = config or CircuitConfig()
    min_strength = config.min_strength if min_strength is None else min_strength
    max_depth = config.max_depth if max_depth is None else max_depth
    if max_depth < 1:
        raise InvalidArgumentError(f"max_depth must be at least 1, got {max_depth}")
    if not math.isfinite(min_strength):
        raise InvalidArgumentError(f"min_strength must be finite, got {min_strength}")
    cap = config.max_features_per_layer

    layers = sorted(features_by_layer)
    candidates: list[tuple[Circuit, DiscoveredFeature, DiscoveredFeature]] = []
    for i, source_layer in enumerate(layers):
        sources = list(features_by_layer[source_layer])[:cap]
        for target_layer in layers[i + 1 :]:
            distance = target_layer - source_layer
            if distance > max_depth:
                break
            targets = list(features_by_layer[target_layer])[:cap]
            for source in sources:
                for target in targets:
                    strength = circuit_strength(source, target, distance)
                    if strength < min_strength:
                        continue
                    circuit = Circuit(
                        source_feature_id=f"{source_layer}:{source.feature_index}",
                        target_feature_id=f"{target_layer}:{target.feature_index}",
                        source_layer=source_layer,
                        target_layer=target_layer,
                        strength=strength,
                        circuit_type=classify_circuit(source, target, config),
                    )
                    candidates.append((circuit, source, target))

    candidates.sort(key=lambda c: c[0].strength, reverse=True)
    kept = candidates[: config.max_circuits]
    logger.info("Discovered %d circuits across %d layers", len(kept), len(layers))

    if queue is not None:
        _enqueue(queue, kept)

    return [circuit for circuit, _, _ in kept]
