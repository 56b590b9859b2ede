"""Byte blob codec for trained Skip Transcoder weights.

Layout (little-endian):
    int32 D, int32 L,
    float32 encoder_weight [D, L] (row-major), float32 encoder_bias [L],
    float32 decoder_weight [L, D], float32 decoder_bias [D],
    float32 skip_weight [D, D], float32 skip_bias [D]
"""

import numpy as np
import torch

from ..errors import CorruptDataError
from .model import SkipTranscoderModel

HEADER_DTYPE = np.dtype("<i4")
FLOAT_DTYPE = np.dtype("<f4")
HEADER_SIZE = 2 * HEADER_DTYPE.itemsize

# Order in which parameters appear in the blob
PARAMETER_ORDER = (
    "encoder_weight",
    "encoder_bias",
    "decoder_weight",
    "decoder_bias",
    "skip_weight",
    "skip_bias",
)


def _parameter_shapes(input_dim: int, latent_dim: int) -> dict[str, tuple[int, ...]]:
    return {
        "encoder_weight": (input_dim, latent_dim),
        "encoder_bias": (latent_dim,),
        "decoder_weight": (latent_dim, input_dim),
        "decoder_bias": (input_dim,),
        "skip_weight": (input_dim, input_dim),
        "skip_bias": (input_dim,),
    }


def expected_blob_size(input_dim: int, latent_dim: int) -> int:
    """Number of bytes a serialized model with these dimensions occupies."""
    num_floats = sum(
        int(np.prod(shape)) for shape in _parameter_shapes(input_dim, latent_dim).values()
    )
    return HEADER_SIZE + num_floats * FLOAT_DTYPE.itemsize


def serialize_model(model: SkipTranscoderModel) -> bytes:
    """Serialize model parameters to the blob layout."""
    parts = [np.array([model.input_dim, model.latent_dim], dtype=HEADER_DTYPE).tobytes()]
    for name in PARAMETER_ORDER:
        tensor = getattr(model, name).detach().cpu().contiguous()
        parts.append(tensor.numpy().astype(FLOAT_DTYPE).tobytes())
    return b"".join(parts)


def deserialize_model(blob: bytes) -> SkipTranscoderModel:
    """Rebuild a model from its blob.

    Raises:
        CorruptDataError: If the header is truncated, the dimensions are not
            positive, or the length does not match the declared dimensions.
    """
    if len(blob) < HEADER_SIZE:
        raise CorruptDataError(f"Model blob too short for header: {len(blob)} bytes")

    input_dim, latent_dim = (int(v) for v in np.frombuffer(blob, dtype=HEADER_DTYPE, count=2))
    if input_dim < 1 or latent_dim < 1:
        raise CorruptDataError(
            f"Invalid dimensions in model blob: input_dim={input_dim}, latent_dim={latent_dim}"
        )

    expected = expected_blob_size(input_dim, latent_dim)
    if len(blob) != expected:
        raise CorruptDataError(
            f"Model blob size mismatch: expected {expected}, got {len(blob)}"
        )

    model = SkipTranscoderModel(input_dim, latent_dim)
    offset = HEADER_SIZE
    shapes = _parameter_shapes(input_dim, latent_dim)
    with torch.no_grad():
        for name in PARAMETER_ORDER:
            shape = shapes[name]
            count = int(np.prod(shape))
            values = np.frombuffer(blob, dtype=FLOAT_DTYPE, count=count, offset=offset)
            getattr(model, name).copy_(torch.from_numpy(values.astype(np.float32).reshape(shape)))
            offset += count * FLOAT_DTYPE.itemsize
    model.eval()
    return model
