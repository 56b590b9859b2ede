"""Local file-system store for activations, trained models and features.

Layout under the store root:

    session_<id>/layer_<idx>/
        activations/<activation_id>.bin   raw little-endian float32 vectors
        records.json                      context per activation id
        model.bin                         serialized transcoder blob
        model_meta.json                   ModelMetadata
        features.json                     discovered features

Anything that speaks the ``ActivationSource`` / ``ModelRepository`` protocols
can stand in for this store, e.g. a database-backed implementation.
"""

import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Protocol, Sequence

import torch
from torch import Tensor

from ..errors import CorruptDataError, InvalidArgumentError
from ..transcoder.features import DiscoveredFeature
from ..transcoder.model import SkipTranscoderModel
from ..transcoder.serialization import deserialize_model
from .activations import (
    ActivationRecord,
    ValidationResult,
    decode_activation_bytes,
    encode_activation,
    validate_activation_bytes,
)

logger = logging.getLogger(__name__)


class ActivationSource(Protocol):
    """Where captured activations come from."""

    def load_activations(self, session_id: int, layer_index: int) -> Tensor: ...


class ModelRepository(Protocol):
    """Where trained transcoders are kept."""

    def save_model(self, session_id: int, layer_index: int, blob: bytes, metrics: dict) -> None: ...

    def load_model(self, session_id: int, layer_index: int) -> SkipTranscoderModel | None: ...


@dataclass
class ModelMetadata:
    """Metadata stored next to a model blob."""

    session_id: int
    layer_index: int
    input_dim: int
    latent_dim: int
    metrics: dict = field(default_factory=dict)
    created_at: str = field(default_factory=lambda: datetime.now().isoformat())

    def to_json(self) -> str:
        """Serialize to JSON string."""
        return json.dumps(asdict(self), indent=2)

    @classmethod
    def from_json(cls, json_str: str) -> "ModelMetadata":
        """Deserialize from JSON string."""
        return cls(**json.loads(json_str))


def check_location(session_id: int, layer_index: int) -> None:
    """Reject identifiers that can never name stored data.

    Raises:
        InvalidArgumentError: If session_id is not positive or layer_index is negative.
    """
    if session_id < 1:
        raise InvalidArgumentError(f"session_id must be positive, got {session_id}")
    if layer_index < 0:
        raise InvalidArgumentError(f"layer_index must be non-negative, got {layer_index}")


class LocalBlobStore:
    """File-system store implementing both ActivationSource and ModelRepository."""

    def __init__(self, root: Path | str, max_activations: int = 10_000):
        """Initialize the store.

        Args:
            root: Directory holding all sessions.
            max_activations: Maximum vectors returned by one load.
        """
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self.max_activations = max_activations

    def _layer_dir(self, session_id: int, layer_index: int) -> Path:
        check_location(session_id, layer_index)
        return self.root / f"session_{session_id}" / f"layer_{layer_index}"

    def _activation_dir(self, session_id: int, layer_index: int) -> Path:
        return self._layer_dir(session_id, layer_index) / "activations"

    def _activation_files(self, session_id: int, layer_index: int) -> list[Path]:
        activation_dir = self._activation_dir(session_id, layer_index)
        if not activation_dir.exists():
            return []
        # Only numbered files are activations
        files = [p for p in activation_dir.glob("*.bin") if p.stem.isdigit()]
        return sorted(files, key=lambda p: int(p.stem))

    def layers(self, session_id: int) -> list[int]:
        """Layer indices that have a directory in this session."""
        session_dir = self.root / f"session_{session_id}"
        if not session_dir.exists():
            return []
        indices = (p.name.split("_", 1)[1] for p in session_dir.glob("layer_*"))
        return sorted(int(index) for index in indices if index.isdigit())

    # Activations

    def save_activations(
        self,
        session_id: int,
        layer_index: int,
        activations: Sequence[Tensor] | Sequence[ActivationRecord] | Tensor,
    ) -> int:
        """Write activation vectors, numbering them after any already stored.

        Returns:
            Number of vectors written.
        """
        activation_dir = self._activation_dir(session_id, layer_index)
        activation_dir.mkdir(parents=True, exist_ok=True)
        existing = self._activation_files(session_id, layer_index)
        next_id = int(existing[-1].stem) + 1 if existing else 0

        records = self._read_records(session_id, layer_index)
        written = 0
        for item in activations:
            if isinstance(item, ActivationRecord):
                activation_id = item.activation_id
                vector = item.vector
                records[str(activation_id)] = {
                    "sample_index": item.sample_index,
                    "token_position": item.token_position,
                    "input_text": item.input_text,
                }
                next_id = max(next_id, activation_id + 1)
            else:
                activation_id = next_id
                vector = item
                next_id += 1
            (activation_dir / f"{activation_id}.bin").write_bytes(encode_activation(vector))
            written += 1

        if records:
            with open(self._layer_dir(session_id, layer_index) / "records.json", "w") as f:
                json.dump(records, f, indent=2)
        logger.info("Saved %d activations for session %d layer %d", written, session_id, layer_index)
        return written

    def _read_records(self, session_id: int, layer_index: int) -> dict[str, dict]:
        path = self._layer_dir(session_id, layer_index) / "records.json"
        if not path.exists():
            return {}
        with open(path) as f:
            return json.load(f)

    def load_records(
        self,
        session_id: int,
        layer_index: int,
        limit: int | None = None,
    ) -> list[ActivationRecord]:
        """Load activations with their stored context, skipping corrupt files."""
        limit = self.max_activations if limit is None else limit
        context = self._read_records(session_id, layer_index)
        records: list[ActivationRecord] = []
        expected_dim = None

        for path in self._activation_files(session_id, layer_index):
            if len(records) >= limit:
                break
            try:
                vector = decode_activation_bytes(path.read_bytes(), expected_dim)
            except CorruptDataError as e:
                logger.warning("Skipping corrupt activation %s: %s", path.name, e.reason)
                continue
            if not torch.isfinite(vector).all():
                logger.warning("Skipping activation %s: contains NaN/Infinity", path.name)
                continue
            expected_dim = vector.shape[0]

            activation_id = int(path.stem)
            info = context.get(str(activation_id), {})
            records.append(ActivationRecord(activation_id=activation_id, vector=vector, **info))

        return records

    def load_activations(
        self,
        session_id: int,
        layer_index: int,
        limit: int | None = None,
    ) -> Tensor:
        """Load up to ``limit`` (default ``max_activations``) vectors as [N, D].

        Returns:
            Activation matrix; zero rows when nothing usable is stored.
        """
        records = self.load_records(session_id, layer_index, limit)
        if not records:
            logger.info("No activations stored for session %d layer %d", session_id, layer_index)
            return torch.empty(0, 0)
        logger.info(
            "Loaded %d activations for session %d layer %d",
            len(records),
            session_id,
            layer_index,
        )
        return torch.stack([r.vector for r in records])

    def validate_activations(
        self,
        session_id: int,
        layer_index: int,
        expected_dim: int | None = None,
    ) -> list[ValidationResult]:
        """Validate every stored activation file.

        The expected dimension defaults to the stored model's input dimension,
        then to the size of the first stored file that holds whole float32
        values.
        """
        files = self._activation_files(session_id, layer_index)
        if expected_dim is None:
            metadata = self.load_model_metadata(session_id, layer_index)
            if metadata is not None:
                expected_dim = metadata.input_dim
            else:
                sizes = (path.stat().st_size for path in files)
                expected_dim = next((size // 4 for size in sizes if size and size % 4 == 0), None)

        return [
            validate_activation_bytes(path.read_bytes(), expected_dim, int(path.stem))
            for path in files
        ]

    # Models

    def save_model(self, session_id: int, layer_index: int, blob: bytes, metrics: dict) -> None:
        """Save a model blob plus metadata, replacing any previous model."""
        model = deserialize_model(blob)
        layer_dir = self._layer_dir(session_id, layer_index)
        layer_dir.mkdir(parents=True, exist_ok=True)

        (layer_dir / "model.bin").write_bytes(blob)
        metadata = ModelMetadata(
            session_id=session_id,
            layer_index=layer_index,
            input_dim=model.input_dim,
            latent_dim=model.latent_dim,
            metrics=metrics,
        )
        with open(layer_dir / "model_meta.json", "w") as f:
            f.write(metadata.to_json())
        logger.info("Saved model for session %d layer %d", session_id, layer_index)

    def load_model(self, session_id: int, layer_index: int) -> SkipTranscoderModel | None:
        """Load a stored model, or None when none was saved."""
        path = self._layer_dir(session_id, layer_index) / "model.bin"
        if not path.exists():
            logger.info("No model stored for session %d layer %d", session_id, layer_index)
            return None
        return deserialize_model(path.read_bytes())

    def load_model_metadata(self, session_id: int, layer_index: int) -> ModelMetadata | None:
        path = self._layer_dir(session_id, layer_index) / "model_meta.json"
        if not path.exists():
            return None
        with open(path) as f:
            return ModelMetadata.from_json(f.read())

    # Features

    def save_features(
        self,
        session_id: int,
        layer_index: int,
        features: Sequence[DiscoveredFeature],
    ) -> None:
        layer_dir = self._layer_dir(session_id, layer_index)
        layer_dir.mkdir(parents=True, exist_ok=True)
        with open(layer_dir / "features.json", "w") as f:
            json.dump([feature.to_dict() for feature in features], f, indent=2)

    def load_features(self, session_id: int, layer_index: int) -> list[DiscoveredFeature]:
        path = self._layer_dir(session_id, layer_index) / "features.json"
        if not path.exists():
            return []
        with open(path) as f:
            return [DiscoveredFeature.from_dict(d) for d in json.load(f)]
