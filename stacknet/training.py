from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Sequence

from .data_helper import TrainingDataGenerator
from .solvers import Solver

if TYPE_CHECKING:
    from .callbacks import TrainingCallback
    from .model import Model

logger = logging.getLogger(__name__)

Metrics = Dict[str, float]

PROGRESS_WIDTH = 30


@dataclass(frozen=True)
class FitConfig:
    epochs: int = 1
    log_every: int = 1
    verbose: bool = True
    clear_line: bool = False
    callbacks: Sequence["TrainingCallback"] = ()

    def __post_init__(self) -> None:
        if self.epochs < 1:
            raise ValueError("epochs must be >= 1")
        if self.log_every < 1:
            raise ValueError("log_every must be >= 1")
        object.__setattr__(self, "callbacks", tuple(self.callbacks))


def fit_config_from_mapping(cfg: Mapping[str, Any]) -> FitConfig:
    """
    Build a FitConfig from a plain mapping (e.g. parsed JSON or YAML).

    Unknown keys are rejected rather than ignored.
    """
    allowed = {"epochs", "log_every", "verbose", "clear_line", "callbacks"}
    unknown = sorted(set(cfg) - allowed)
    if unknown:
        raise KeyError(f"Unknown fit options: {', '.join(unknown)}")
    kwargs: Dict[str, Any] = {}
    if "epochs" in cfg:
        kwargs["epochs"] = int(cfg["epochs"])
    if "log_every" in cfg:
        kwargs["log_every"] = int(cfg["log_every"])
    if "verbose" in cfg:
        kwargs["verbose"] = bool(cfg["verbose"])
    if "clear_line" in cfg:
        kwargs["clear_line"] = bool(cfg["clear_line"])
    if "callbacks" in cfg:
        kwargs["callbacks"] = tuple(cfg["callbacks"])
    return FitConfig(**kwargs)


@dataclass
class EpochStats:
    mean_loss: float
    num_batches: int
    metrics: Metrics


def progress_line(epoch: int, epochs: int, loss: float, done: int, total: int) -> str:
    """
    ``Epoch 3/10 - Loss: 0.123456 |=========>        |  45%``
    """
    fraction = (done / total) if total > 0 else 1.0
    filled = int(round(fraction * PROGRESS_WIDTH))
    if filled >= PROGRESS_WIDTH:
        bar = "=" * PROGRESS_WIDTH
    else:
        bar = "=" * filled + ">" + " " * (PROGRESS_WIDTH - filled - 1)
    return f"Epoch {epoch}/{epochs} - Loss: {loss:.6f} |{bar}| {int(fraction * 100):3d}%"


class Trainer:
    """
    Drives epochs of Model.fit_batch over a data generator.

    Per epoch: reset the generator, fit every batch it yields while keeping a
    running mean loss, then run the epoch callbacks. A truthy on_epoch_end
    return stops training after that epoch; any exception aborts and
    propagates after the cleanup hooks have run.
    """

    def __init__(
        self,
        model: "Model",
        generator: TrainingDataGenerator,
        solver: Solver,
        config: FitConfig,
    ) -> None:
        self.model = model
        self.generator = generator
        self.solver = solver
        self.config = config

    def run(self) -> List[float]:
        history: List[float] = []
        callbacks = self.config.callbacks
        try:
            for cb in callbacks:
                if cb.on_training_start is not None:
                    cb.on_training_start()
            for epoch in range(1, self.config.epochs + 1):
                stats = self._train_epoch(epoch)
                history.append(stats.mean_loss)
                if self._epoch_end(epoch, stats.metrics):
                    logger.info("training stopped by callback after epoch %d", epoch)
                    break
            if self.config.verbose:
                print()
            for cb in callbacks:
                if cb.on_training_end is not None:
                    cb.on_training_end()
        finally:
            for cb in callbacks:
                if cb.on_cleanup is not None:
                    cb.on_cleanup()
        return history

    def _train_epoch(self, epoch: int) -> EpochStats:
        batch_size = self.model.batch_size
        self.generator.reset(batch_size)
        num_batches = self.generator.num_batches
        show = self.config.verbose and self._is_log_epoch(epoch)
        redraw_every = max(num_batches // 100, 1)

        total_loss = 0.0
        steps = 0
        metrics: Metrics = {}
        while True:
            inputs, targets = self.generator.next_batch()
            if inputs is None or targets is None:
                break
            total_loss += self.model.fit_batch(inputs, targets, self.solver)
            steps += 1
            metrics["loss"] = total_loss / steps
            for cb in self.config.callbacks:
                if cb.on_batch_end is not None:
                    cb.on_batch_end(epoch, steps, num_batches, metrics)
            if show and (steps - 1) % redraw_every == 0:
                line = progress_line(epoch, self.config.epochs, metrics["loss"], steps, num_batches)
                print(line, end="\r", flush=True)

        if steps == 0:
            raise ValueError(
                f"generator produced no batches in epoch {epoch} (batch size {batch_size})"
            )
        if show:
            end = "\r" if self.config.clear_line else "\n"
            print(
                f"Epoch {epoch}/{self.config.epochs} - Loss: {metrics['loss']:.6f} Done"
                + " " * (PROGRESS_WIDTH - 2),
                end=end,
                flush=True,
            )
        return EpochStats(mean_loss=metrics["loss"], num_batches=steps, metrics=metrics)

    def _epoch_end(self, epoch: int, metrics: Metrics) -> bool:
        stop = False
        for cb in self.config.callbacks:
            if cb.on_epoch_end is not None and cb.on_epoch_end(epoch, metrics):
                stop = True
        return stop

    def _is_log_epoch(self, epoch: int) -> bool:
        return epoch == 1 or epoch == self.config.epochs or epoch % self.config.log_every == 0
