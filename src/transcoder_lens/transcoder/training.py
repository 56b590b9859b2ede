"""Skip Transcoder training loop with early stopping.

Parameters are updated explicitly one sample at a time, in the order the
shuffled mini-batches deliver them, so a run is reproducible for a given seed.
Two update rules are available and a run uses exactly one of them:

- ``APPROXIMATE``: the decoder moves against ``outer(latent, output - x)`` and
  each active feature's encoder column moves by a small constant times the
  input. Bias and skip parameters are left alone. This is not the gradient of
  the training loss; loss values are reported but need not decrease.
- ``EXACT``: plain SGD on the true per-sample gradient of
  ``sum((output - x)^2) + penalty * sum(|latent|)`` through the decoder, the
  ReLU, the encoder and the skip path.
"""

import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Sequence

import torch
from rich.progress import BarColumn, Progress, SpinnerColumn, TaskProgressColumn, TextColumn
from torch import Tensor
from torch.utils.data import DataLoader, TensorDataset

from ..config import TrainingConfig
from ..data.activations import stack_activations
from ..errors import InvalidArgumentError
from .model import SkipTranscoderModel

logger = logging.getLogger(__name__)

DECODER_STEP_SCALE = 0.01
ENCODER_STEP_SCALE = 0.001


class UpdateRule(str, Enum):
    """How the trainer turns a sample's error into a parameter update."""

    APPROXIMATE = "approximate"
    EXACT = "exact"


@dataclass
class EpochMetrics:
    """Metrics from one training epoch."""

    epoch: int
    loss: float
    best_loss: float
    sparsity: float
    batches: int


@dataclass
class TrainingResult:
    """Outcome of a training run."""

    model: SkipTranscoderModel
    final_loss: float  # Best epoch loss seen
    epochs_run: int
    stopped_early: bool
    history: list[EpochMetrics] = field(default_factory=list)


def make_dataloader(activations: Tensor, batch_size: int = 32, seed: int = 42) -> DataLoader:
    """Shuffled mini-batches over an activation matrix.

    The generator is seeded once, so each epoch gets a different but
    reproducible permutation.
    """
    generator = torch.Generator().manual_seed(seed)
    return DataLoader(
        TensorDataset(activations),
        batch_size=batch_size,
        shuffle=True,
        generator=generator,
    )


class TranscoderTrainer:
    """Trainer for Skip Transcoders."""

    def __init__(
        self,
        model: SkipTranscoderModel,
        config: TrainingConfig,
        show_progress: bool = False,
    ):
        """Initialize trainer.

        Args:
            model: The model to train in place.
            config: Training configuration.
            show_progress: Display a rich progress bar while training.
        """
        self.model = model
        self.config = config
        self.update_rule = UpdateRule(config.update_rule)
        self.show_progress = show_progress

        self.epoch = 0
        self.samples_seen = 0
        self.samples_failed = 0
        self.metrics_history: list[EpochMetrics] = []

    @torch.no_grad()
    def train_step(self, batch: Tensor | Sequence[Tensor]) -> float | None:
        """Train on one mini-batch, one sample at a time.

        Args:
            batch: Activations [batch, input_dim] (or a TensorDataset tuple).

        Returns:
            Mean per-sample loss over the samples that succeeded, or None if
            every sample failed.

        Raises:
            InvalidArgumentError: If the batch width is not the model's input_dim.
        """
        if isinstance(batch, (tuple, list)):
            batch = batch[0]
        if batch.dim() != 2 or batch.shape[-1] != self.model.input_dim:
            raise InvalidArgumentError(
                f"Expected batch of shape [batch, {self.model.input_dim}], "
                f"got {tuple(batch.shape)}"
            )

        total_loss = 0.0
        succeeded = 0
        for index, x in enumerate(batch):
            try:
                result = self.model.forward_with_loss(x, self.config.sparsity_penalty)
                loss = result.loss.item()
                if not math.isfinite(loss):
                    raise FloatingPointError(f"non-finite loss {loss}")
                self._update_parameters(x, result.output, result.latent)
            except InvalidArgumentError:
                raise
            except (RuntimeError, ValueError, FloatingPointError) as e:
                self.samples_failed += 1
                logger.warning("Skipping sample %d of batch in epoch %d: %s", index, self.epoch, e)
                continue
            total_loss += loss
            succeeded += 1

        self.samples_seen += succeeded
        if succeeded == 0:
            return None
        return total_loss / succeeded

    def _update_parameters(self, x: Tensor, output: Tensor, latent: Tensor) -> None:
        if self.update_rule is UpdateRule.EXACT:
            self._exact_update(x, output, latent)
        else:
            self._approximate_update(x, output, latent)

    def _approximate_update(self, x: Tensor, output: Tensor, latent: Tensor) -> None:
        lr = self.config.learning_rate
        model = self.model

        error = output - x
        model.decoder_weight -= lr * DECODER_STEP_SCALE * torch.outer(latent, error)

        # Only features that fired move
        active = (latent > 0).to(x.dtype)
        model.encoder_weight -= lr * ENCODER_STEP_SCALE * torch.outer(x, active)

    def _exact_update(self, x: Tensor, output: Tensor, latent: Tensor) -> None:
        lr = self.config.learning_rate
        penalty = self.config.sparsity_penalty
        model = self.model

        grad_output = 2.0 * (output - x)
        active = (latent > 0).to(x.dtype)

        # d(loss)/d(latent), taken before the decoder moves
        grad_latent = model.decoder_weight @ grad_output + penalty * active
        grad_pre_activation = grad_latent * active

        model.decoder_weight -= lr * torch.outer(latent, grad_output)
        model.decoder_bias -= lr * grad_output
        model.skip_weight -= lr * torch.outer(x, grad_output)
        model.skip_bias -= lr * grad_output
        model.encoder_weight -= lr * torch.outer(x, grad_pre_activation)
        model.encoder_bias -= lr * grad_pre_activation

    def train_epoch(
        self,
        dataloader: DataLoader,
        progress: Progress | None = None,
        task_id: int | None = None,
    ) -> tuple[float | None, int]:
        """Train for one epoch.

        Returns:
            Tuple of (mean batch loss or None if no batch succeeded, batches used).
        """
        batch_losses = []
        for batch in dataloader:
            loss = self.train_step(batch)
            if loss is not None:
                batch_losses.append(loss)
            if progress is not None and task_id is not None:
                progress.update(task_id, advance=1)

        self.epoch += 1
        if not batch_losses:
            return None, 0
        return sum(batch_losses) / len(batch_losses), len(batch_losses)

    def train(self, dataloader: DataLoader, max_epochs: int | None = None) -> TrainingResult:
        """Full training loop with early stopping.

        Args:
            dataloader: DataLoader with activation batches.
            max_epochs: Number of epochs (uses config if not provided).

        Returns:
            TrainingResult holding the model and the best epoch loss.
        """
        max_epochs = max_epochs or self.config.max_epochs
        patience = self.config.patience

        best_loss = math.inf
        epochs_without_improvement = 0
        stopped_early = False
        epochs_run = 0

        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TaskProgressColumn(),
            disable=not self.show_progress,
        ) as progress:
            epoch_task = progress.add_task(f"[cyan]Training {max_epochs} epochs", total=max_epochs)

            for epoch in range(max_epochs):
                step_task = progress.add_task(
                    f"[green]Epoch {epoch + 1}/{max_epochs}",
                    total=len(dataloader),
                )
                epoch_loss, batches = self.train_epoch(dataloader, progress, step_task)
                progress.remove_task(step_task)
                progress.update(epoch_task, advance=1)
                epochs_run += 1

                if epoch_loss is None:
                    logger.warning("Epoch %d produced no usable batches", epoch)
                    epoch_loss = math.nan

                if epoch_loss < best_loss:
                    best_loss = epoch_loss
                    epochs_without_improvement = 0
                else:
                    epochs_without_improvement += 1

                sparsity = self.model.get_average_sparsity()
                self.metrics_history.append(
                    EpochMetrics(
                        epoch=epoch,
                        loss=epoch_loss,
                        best_loss=best_loss,
                        sparsity=sparsity,
                        batches=batches,
                    )
                )

                if epochs_without_improvement >= patience:
                    logger.info("Early stopping at epoch %d with loss %.6f", epoch, best_loss)
                    stopped_early = True
                    break

                if epoch % self.config.report_every == 0:
                    logger.info("Epoch %d: loss=%.6f, sparsity=%.4f", epoch, epoch_loss, sparsity)

        return TrainingResult(
            model=self.model,
            final_loss=best_loss,
            epochs_run=epochs_run,
            stopped_early=stopped_early,
            history=list(self.metrics_history),
        )


def train_transcoder(
    activations: Tensor | Sequence[Tensor],
    latent_dim: int,
    sparsity_penalty: float = 0.01,
    learning_rate: float = 1e-3,
    max_epochs: int = 100,
    config: TrainingConfig | None = None,
    seed: int = 42,
    show_progress: bool = False,
) -> TrainingResult | None:
    """Train a fresh Skip Transcoder on a set of activation vectors.

    Args:
        activations: Matrix [N, D] or a sequence of [D] vectors.
        latent_dim: Number of sparse features L.
        sparsity_penalty: L1 coefficient.
        learning_rate: Step size.
        max_epochs: Upper bound on epochs.
        config: Remaining training options (batch size, patience, update rule).
            The explicit arguments above override its fields.
        seed: Seed for the model initialization.
        show_progress: Display a rich progress bar.

    Returns:
        TrainingResult, or None when there is nothing to train on.

    Raises:
        InvalidArgumentError: If a hyperparameter is out of range.
    """
    if latent_dim < 1:
        raise InvalidArgumentError(f"latent_dim must be positive, got {latent_dim}")
    if not learning_rate > 0:
        raise InvalidArgumentError(f"learning_rate must be positive, got {learning_rate}")
    if max_epochs < 1:
        raise InvalidArgumentError(f"max_epochs must be at least 1, got {max_epochs}")
    if not sparsity_penalty >= 0:
        raise InvalidArgumentError(
            f"sparsity_penalty must be non-negative, got {sparsity_penalty}"
        )

    activations = stack_activations(activations)
    if activations.shape[0] == 0:
        logger.info("No activation data found for training")
        return None

    config = (config or TrainingConfig()).model_copy(
        update={
            "sparsity_penalty": sparsity_penalty,
            "learning_rate": learning_rate,
            "max_epochs": max_epochs,
        }
    )
    num_samples, input_dim = activations.shape
    logger.info("Loaded %d activation vectors, dimension %d", num_samples, input_dim)

    model = SkipTranscoderModel(input_dim, latent_dim, seed=seed)
    trainer = TranscoderTrainer(model, config, show_progress=show_progress)
    dataloader = make_dataloader(activations, config.batch_size, config.seed)
    result = trainer.train(dataloader)

    logger.info("Skip Transcoder training completed. Final loss: %.6f", result.final_loss)
    return result
