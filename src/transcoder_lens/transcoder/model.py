"""Skip Transcoder model.

A Skip Transcoder decomposes layer activations into a sparse latent code while
a dense linear skip path carries whatever the sparse code does not explain:

    output = decode(encode(x)) + skip(x)

Reference: Paulo et al. (2025) - "Transcoders Beat Sparse Autoencoders for
Interpretability" https://arxiv.org/abs/2501.18823

Unlike a framework-trained module, every parameter here is a plain tensor that
the trainer updates explicitly, so the parameters never require gradients.
"""

import math
from typing import NamedTuple

import torch
from torch import Tensor, nn

from ..errors import InvalidArgumentError


class TranscoderOutput(NamedTuple):
    """Output from a forward pass with loss computation."""

    output: Tensor  # decode(encode(x)) + skip(x)
    latent: Tensor  # Non-negative sparse code
    loss: Tensor  # reconstruction_loss + penalty * sparsity_loss
    reconstruction_loss: Tensor  # Sum of squared errors
    sparsity_loss: Tensor  # L1 norm of the latent code
    l0: Tensor  # Number of active features


class SkipTranscoderModel(nn.Module):
    """Sparse autoencoder with an additive dense skip connection.

    Parameters (D = input_dim, L = latent_dim):
        - encoder_weight [D, L], encoder_bias [L]
        - decoder_weight [L, D], decoder_bias [D]
        - skip_weight [D, D], skip_bias [D]

    Weights are stored input-major (x @ W), which is also the row-major layout
    of the serialized blob. The skip path starts as the identity so an
    untrained model passes its input straight through plus the sparse term.
    """

    def __init__(self, input_dim: int, latent_dim: int, seed: int = 42):
        """Initialize the model.

        Args:
            input_dim: Dimension D of the activation vectors.
            latent_dim: Number L of sparse features.
            seed: Seed for the reproducible weight initialization.
        """
        super().__init__()
        if input_dim < 1 or latent_dim < 1:
            raise InvalidArgumentError(
                f"Dimensions must be positive, got input_dim={input_dim}, latent_dim={latent_dim}"
            )
        self.input_dim = input_dim
        self.latent_dim = latent_dim
        self.seed = seed

        self.encoder_weight = nn.Parameter(torch.empty(input_dim, latent_dim), requires_grad=False)
        self.encoder_bias = nn.Parameter(torch.zeros(latent_dim), requires_grad=False)
        self.decoder_weight = nn.Parameter(torch.empty(latent_dim, input_dim), requires_grad=False)
        self.decoder_bias = nn.Parameter(torch.zeros(input_dim), requires_grad=False)
        self.skip_weight = nn.Parameter(torch.empty(input_dim, input_dim), requires_grad=False)
        self.skip_bias = nn.Parameter(torch.zeros(input_dim), requires_grad=False)

        self._init_weights()

    def _init_weights(self) -> None:
        """Xavier-style Gaussian init for the sparse pathway, identity skip."""
        generator = torch.Generator().manual_seed(self.seed)
        scale = math.sqrt(2.0 / (self.input_dim + self.latent_dim))
        with torch.no_grad():
            self.encoder_weight.copy_(
                torch.randn(self.input_dim, self.latent_dim, generator=generator) * scale
            )
            self.decoder_weight.copy_(
                torch.randn(self.latent_dim, self.input_dim, generator=generator) * scale
            )
            self.encoder_bias.zero_()
            self.decoder_bias.zero_()
            self.skip_weight.copy_(torch.eye(self.input_dim))
            self.skip_bias.zero_()

    def check_input(self, x: Tensor) -> Tensor:
        """Convert to a float32 tensor and verify the trailing dimension.

        Raises:
            InvalidArgumentError: If the last dimension is not input_dim.
        """
        x = torch.as_tensor(x, dtype=torch.float32)
        if x.ndim == 0 or x.shape[-1] != self.input_dim:
            raise InvalidArgumentError(
                f"Expected activations of dimension {self.input_dim}, got shape {tuple(x.shape)}"
            )
        return x

    def encode(self, x: Tensor) -> Tensor:
        """Encode activations to the non-negative latent code.

        Args:
            x: Activations [input_dim] or [batch, input_dim].

        Returns:
            Latent code [latent_dim] or [batch, latent_dim], all elements >= 0.
        """
        x = self.check_input(x)
        return torch.relu(x @ self.encoder_weight + self.encoder_bias)

    def decode(self, latent: Tensor) -> Tensor:
        """Decode a latent code (sparse pathway only, no skip).

        Args:
            latent: Latent code [latent_dim] or [batch, latent_dim].

        Returns:
            Reconstruction [input_dim] or [batch, input_dim].
        """
        latent = torch.as_tensor(latent, dtype=torch.float32)
        if latent.ndim == 0 or latent.shape[-1] != self.latent_dim:
            raise InvalidArgumentError(
                f"Expected latent code of dimension {self.latent_dim}, got shape {tuple(latent.shape)}"
            )
        return latent @ self.decoder_weight + self.decoder_bias

    def skip_connection(self, x: Tensor) -> Tensor:
        """Dense affine skip path from input to output."""
        x = self.check_input(x)
        return x @ self.skip_weight + self.skip_bias

    def forward(self, x: Tensor) -> Tensor:
        """Full prediction: decode(encode(x)) + skip(x)."""
        x = self.check_input(x)
        return self.decode(self.encode(x)) + self.skip_connection(x)

    def forward_with_loss(self, x: Tensor, sparsity_penalty: float = 0.0) -> TranscoderOutput:
        """Forward pass with loss computation for a single sample.

        Args:
            x: Activation vector [input_dim].
            sparsity_penalty: L1 coefficient applied to the latent code.

        Returns:
            TranscoderOutput with prediction, latent code and losses.
        """
        x = self.check_input(x)
        latent = self.encode(x)
        output = self.decode(latent) + self.skip_connection(x)

        reconstruction_loss = ((output - x) ** 2).sum(dim=-1)
        sparsity_loss = latent.abs().sum(dim=-1)
        loss = reconstruction_loss + sparsity_penalty * sparsity_loss
        l0 = (latent > 0).float().sum(dim=-1)

        return TranscoderOutput(
            output=output,
            latent=latent,
            loss=loss,
            reconstruction_loss=reconstruction_loss,
            sparsity_loss=sparsity_loss,
            l0=l0,
        )

    def get_average_sparsity(self, threshold: float = 0.01) -> float:
        """Fraction of features whose encoder weights are near zero.

        For each latent feature j this averages |W_enc[:, j]| plus |b_enc[j]|
        over the input dimension. It is a weight-based proxy for how often a
        feature stays silent, not an L0 measured on data.

        Returns:
            Value in [0, 1].
        """
        magnitude = self.encoder_weight.abs().sum(dim=0) + self.encoder_bias.abs()
        average = magnitude / self.input_dim
        return (average < threshold).float().mean().item()

    def extra_repr(self) -> str:
        return f"input_dim={self.input_dim}, latent_dim={self.latent_dim}"
