"""Tests for cross-layer circuit discovery."""

import json
import math

import pytest

from transcoder_lens.analysis.circuits import (
    CREATE_CAUSAL_RELATIONSHIP,
    CREATE_FEATURE_NODE,
    PENDING,
    CircuitType,
    InMemoryCircuitQueue,
    JsonlCircuitQueue,
    circuit_strength,
    classify_circuit,
    discover_circuits,
)
from transcoder_lens.config import CircuitConfig
from transcoder_lens.errors import InvalidArgumentError
from transcoder_lens.transcoder.features import DiscoveredFeature


def feature(index: int, activation: float, sparsity: float, layer: int = 0) -> DiscoveredFeature:
    return DiscoveredFeature(index, activation, sparsity, active_count=1, layer_index=layer)


class FailingQueue:
    """Queue whose every enqueue raises."""

    def __init__(self):
        self.attempts = 0

    def enqueue_circuit(self, source_id, target_id, strength, circuit_type):
        self.attempts += 1
        raise ConnectionError("graph store unavailable")

    def enqueue_feature_node(self, feature):
        raise ConnectionError("graph store unavailable")


class TestStrength:
    """Tests for circuit_strength."""

    def test_formula(self):
        """Test strength combines similarity, sparsity and layer distance."""
        source = feature(0, 0.3, 0.9)
        target = feature(1, 0.5, 0.7)
        expected = (1 - 0.2) * 0.7 / math.log(2)
        assert circuit_strength(source, target, 1) == pytest.approx(expected)

    def test_distance_weakens(self):
        """Test farther layers give weaker circuits."""
        source, target = feature(0, 0.3, 0.9), feature(1, 0.3, 0.9)
        assert circuit_strength(source, target, 3) < circuit_strength(source, target, 1)


class TestClassification:
    """Tests for classify_circuit."""

    def test_sparse_pathway(self):
        """Test both endpoints sparse wins first."""
        assert classify_circuit(feature(0, 0.9, 0.85), feature(1, 0.9, 0.95)) is CircuitType.SPARSE_PATHWAY

    def test_activation_amplifier(self):
        """Test both endpoints highly active."""
        assert (
            classify_circuit(feature(0, 0.6, 0.5), feature(1, 0.9, 0.5))
            is CircuitType.ACTIVATION_AMPLIFIER
        )

    def test_pattern_maintainer(self):
        """Test near-equal activations."""
        assert (
            classify_circuit(feature(0, 0.2, 0.5), feature(1, 0.25, 0.5))
            is CircuitType.PATTERN_MAINTAINER
        )

    def test_feature_transformer(self):
        """Test everything else."""
        assert (
            classify_circuit(feature(0, 0.1, 0.5), feature(1, 0.4, 0.5))
            is CircuitType.FEATURE_TRANSFORMER
        )


class TestDiscoverCircuits:
    """Tests for discover_circuits."""

    def test_single_pair(self):
        """Test two layers with one feature each give one circuit spanning one layer."""
        circuits = discover_circuits(
            {0: [feature(3, 0.4, 0.9)], 1: [feature(5, 0.45, 0.9, layer=1)]},
            min_strength=0.1,
            max_depth=1,
        )
        assert len(circuits) == 1
        circuit = circuits[0]
        assert circuit.layer_span == 1
        assert circuit.source_feature_id == "0:3"
        assert circuit.target_feature_id == "1:5"
        assert circuit.source_layer < circuit.target_layer
        assert circuit.circuit_type is CircuitType.SPARSE_PATHWAY

    def test_min_strength_filter(self):
        """Test weak circuits are dropped."""
        circuits = discover_circuits(
            {0: [feature(0, 0.1, 0.05)], 1: [feature(0, 0.9, 0.05)]},
            min_strength=0.1,
            max_depth=1,
        )
        assert circuits == []

    def test_max_depth(self):
        """Test max_depth controls which later layers are paired."""
        layers = {layer: [feature(0, 0.5, 0.9)] for layer in (0, 1, 2)}
        consecutive = discover_circuits(layers, min_strength=0.0, max_depth=1)
        deeper = discover_circuits(layers, min_strength=0.0, max_depth=2)

        assert {(c.source_layer, c.target_layer) for c in consecutive} == {(0, 1), (1, 2)}
        assert {(c.source_layer, c.target_layer) for c in deeper} == {(0, 1), (1, 2), (0, 2)}

    def test_span_beyond_max_depth_excluded(self):
        """Test layers further apart than max_depth are never linked."""
        layers = {2: [feature(0, 0.5, 0.9)], 5: [feature(0, 0.5, 0.9)]}
        assert discover_circuits(layers, min_strength=0.0, max_depth=1) == []
        assert discover_circuits(layers, min_strength=0.0, max_depth=2) == []

    def test_layer_distance_uses_indices(self):
        """Test a circuit across non-adjacent indices uses their actual distance."""
        circuits = discover_circuits(
            {2: [feature(0, 0.5, 0.9)], 5: [feature(0, 0.5, 0.9)]},
            min_strength=0.0,
            max_depth=3,
        )
        assert len(circuits) == 1
        assert circuits[0].layer_span == 3
        assert circuits[0].strength == pytest.approx(0.9 / math.log(4))

    def test_spans_never_exceed_max_depth(self):
        """Test every circuit spans at most max_depth layers."""
        layers = {layer: [feature(0, 0.5, 0.9)] for layer in (0, 1, 3, 4, 7)}
        circuits = discover_circuits(layers, min_strength=0.0, max_depth=2)
        assert {(c.source_layer, c.target_layer) for c in circuits} == {
            (0, 1),
            (1, 3),
            (3, 4),
        }

    @pytest.mark.parametrize("max_depth", [0, -2])
    def test_invalid_max_depth(self, max_depth):
        """Test a depth below one is rejected."""
        layers = {layer: [feature(0, 0.5, 0.9)] for layer in (0, 1, 2)}
        with pytest.raises(InvalidArgumentError):
            discover_circuits(layers, min_strength=0.0, max_depth=max_depth)

    def test_invalid_min_strength(self):
        """Test a NaN threshold is rejected."""
        layers = {layer: [feature(0, 0.5, 0.9)] for layer in (0, 1)}
        with pytest.raises(InvalidArgumentError):
            discover_circuits(layers, min_strength=float("nan"), max_depth=1)

    def test_sorted_and_capped(self):
        """Test circuits are sorted by strength and capped."""
        config = CircuitConfig(max_circuits=5)
        layers = {
            0: [feature(i, 0.1 * i, 0.9) for i in range(4)],
            1: [feature(i, 0.1 * i, 0.9) for i in range(4)],
        }
        circuits = discover_circuits(layers, min_strength=0.0, max_depth=1, config=config)
        assert len(circuits) == 5
        strengths = [c.strength for c in circuits]
        assert strengths == sorted(strengths, reverse=True)

    def test_features_per_layer_capped(self):
        """Test only the first max_features_per_layer features are paired."""
        config = CircuitConfig(max_features_per_layer=2, max_circuits=100)
        layers = {
            0: [feature(i, 0.5, 0.9) for i in range(5)],
            1: [feature(i, 0.5, 0.9) for i in range(5)],
        }
        circuits = discover_circuits(layers, min_strength=0.0, max_depth=1, config=config)
        assert len(circuits) == 4

    def test_single_layer(self):
        """Test one layer has nothing to link."""
        assert discover_circuits({0: [feature(0, 0.5, 0.9)]}, 0.0, 1) == []

    def test_enqueues_circuits(self):
        """Test every kept circuit is queued as a pending relationship."""
        queue = InMemoryCircuitQueue()
        circuits = discover_circuits(
            {0: [feature(3, 0.4, 0.9)], 1: [feature(5, 0.45, 0.9)]},
            min_strength=0.1,
            max_depth=1,
            queue=queue,
        )
        assert len(circuits) == 1
        assert [op.operation_type for op in queue.pending()] == [
            CREATE_FEATURE_NODE,
            CREATE_FEATURE_NODE,
            CREATE_CAUSAL_RELATIONSHIP,
        ]
        op = queue.operations[-1]
        assert (op.source_feature_id, op.target_feature_id) == ("0:3", "1:5")
        assert op.parameters["circuit_type"] == "sparse_pathway"
        assert op.status == PENDING

    def test_enqueues_endpoint_nodes_once(self):
        """Test each endpoint feature is queued once under its layer's id."""
        queue = InMemoryCircuitQueue()
        layers = {
            0: [feature(0, 0.5, 0.9), feature(1, 0.5, 0.9)],
            1: [feature(2, 0.5, 0.9)],
        }
        circuits = discover_circuits(layers, min_strength=0.0, max_depth=1, queue=queue)

        nodes = [op for op in queue.operations if op.operation_type == CREATE_FEATURE_NODE]
        assert len(circuits) == 2
        assert sorted(op.source_feature_id for op in nodes) == ["0:0", "0:1", "1:2"]
        assert all(op.target_feature_id is None for op in nodes)
        target = next(op for op in nodes if op.source_feature_id == "1:2")
        assert target.parameters["layer_index"] == 1
        assert target.parameters["feature_index"] == 2

        node_ids = {op.source_feature_id for op in nodes}
        for op in queue.operations:
            if op.operation_type == CREATE_CAUSAL_RELATIONSHIP:
                assert {op.source_feature_id, op.target_feature_id} <= node_ids

    def test_enqueue_failure_does_not_stop_discovery(self, caplog):
        """Test a failing queue is logged and circuits are still returned."""
        queue = FailingQueue()
        layers = {
            0: [feature(0, 0.5, 0.9), feature(1, 0.5, 0.9)],
            1: [feature(0, 0.5, 0.9)],
        }
        circuits = discover_circuits(layers, min_strength=0.0, max_depth=1, queue=queue)
        assert len(circuits) == 2
        assert queue.attempts == 2
        assert "Failed to queue circuit" in caplog.text
        assert "Failed to queue feature node" in caplog.text


class TestJsonlCircuitQueue:
    """Tests for the JSON-lines queue."""

    def test_appends_operations(self, tmp_path):
        """Test circuits and feature nodes are appended as JSON lines."""
        queue = JsonlCircuitQueue(tmp_path / "queue" / "ops.jsonl")
        queue.enqueue_circuit("0:1", "1:2", 0.7, CircuitType.PATTERN_MAINTAINER)
        queue.enqueue_feature_node(feature(4, 0.3, 0.8, layer=2))

        lines = (tmp_path / "queue" / "ops.jsonl").read_text().splitlines()
        assert len(lines) == 2
        first = json.loads(lines[0])
        assert first["operation_type"] == CREATE_CAUSAL_RELATIONSHIP
        assert first["status"] == "PENDING"
        assert first["parameters"] == {"strength": 0.7, "circuit_type": "pattern_maintainer"}
        assert "queued_at" in first

        operations = queue.read()
        assert operations[1].operation_type == CREATE_FEATURE_NODE
        assert operations[1].source_feature_id == "2:4"
        assert operations[1].target_feature_id is None

    def test_read_missing_file(self, tmp_path):
        """Test reading a queue that was never written."""
        assert JsonlCircuitQueue(tmp_path / "none.jsonl").read() == []
