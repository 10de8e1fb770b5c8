"""
Training callbacks.

A TrainingCallback bundles optional hooks; the Trainer calls each hook that is
set, in registration order:

  on_training_start()                              once, before the first epoch
  on_batch_end(epoch, batch, num_batches, metrics) after every batch
  on_epoch_end(epoch, metrics) -> stop?            after every epoch
  on_training_end()                                after the last epoch
  on_cleanup()                                     always, even on error

Epoch and batch hooks may add entries to ``metrics``. Raising aborts training.
"""

from __future__ import annotations

import csv
import logging
import math
from dataclasses import dataclass
from typing import IO, TYPE_CHECKING, Callable, Dict, Optional

if TYPE_CHECKING:
    from .model import Model

logger = logging.getLogger(__name__)

Metrics = Dict[str, float]


@dataclass
class TrainingCallback:
    on_training_start: Optional[Callable[[], None]] = None
    on_batch_end: Optional[Callable[[int, int, int, Metrics], None]] = None
    on_epoch_end: Optional[Callable[[int, Metrics], Optional[bool]]] = None
    on_training_end: Optional[Callable[[], None]] = None
    on_cleanup: Optional[Callable[[], None]] = None


def csv_metrics_callback(writer: IO[str], *names: str) -> TrainingCallback:
    """
    Log named metrics as CSV rows ``epoch,<names...>``.

    The header is written immediately. A row is written only for epochs in
    which at least one of the named metrics is present; absent ones are empty.
    """
    if not names:
        raise ValueError("csv_metrics_callback needs at least one metric name")
    out = csv.writer(writer)
    out.writerow(["epoch", *names])

    def on_epoch_end(epoch: int, metrics: Metrics) -> bool:
        if not any(name in metrics for name in names):
            return False
        out.writerow([epoch, *(metrics[name] if name in metrics else "" for name in names)])
        return False

    return TrainingCallback(on_epoch_end=on_epoch_end)


def csv_metrics_file_callback(path: str, *names: str) -> TrainingCallback:
    """
    csv_metrics_callback writing to ``path``; the file is closed in on_cleanup.
    """
    handle = open(path, "w", newline="", encoding="utf-8")
    try:
        inner = csv_metrics_callback(handle, *names)
    except ValueError:
        handle.close()
        raise

    def on_epoch_end(epoch: int, metrics: Metrics) -> bool:
        assert inner.on_epoch_end is not None
        stop = bool(inner.on_epoch_end(epoch, metrics))
        handle.flush()
        return stop

    return TrainingCallback(on_epoch_end=on_epoch_end, on_cleanup=handle.close)


def save_params_callback(model: "Model", path: str) -> TrainingCallback:
    """Overwrite the checkpoint at ``path`` after every epoch."""
    def on_epoch_end(epoch: int, metrics: Metrics) -> bool:
        model.write_params(path)
        return False

    return TrainingCallback(on_epoch_end=on_epoch_end)


def repeated_save_params_callback(model: "Model", path_template: str, every: int) -> TrainingCallback:
    """
    Write ``path_template.format(epoch=epoch)`` every ``every`` epochs,
    e.g. ``"checkpoints/model_{epoch:04d}.pt"``.
    """
    if every < 1:
        raise ValueError("every must be >= 1")

    def on_epoch_end(epoch: int, metrics: Metrics) -> bool:
        if epoch % every == 0:
            model.write_params(path_template.format(epoch=epoch))
        return False

    return TrainingCallback(on_epoch_end=on_epoch_end)


def custom_epoch_metric_callback(fn: Callable[[], float], name: str, every: int) -> TrainingCallback:
    """
    Run ``fn`` every ``every`` epochs and store its result as ``metrics[name]``.
    """
    if every < 1:
        raise ValueError("every must be >= 1")

    def on_epoch_end(epoch: int, metrics: Metrics) -> bool:
        if epoch % every == 0:
            metrics[name] = float(fn())
        return False

    return TrainingCallback(on_epoch_end=on_epoch_end)


def custom_batch_metric_callback(fn: Callable[[], float], name: str, every: int) -> TrainingCallback:
    """
    Run ``fn`` every ``every`` batches and store its result as ``metrics[name]``.

    This runs inside the batch loop; expensive metrics slow training down a lot.
    """
    if every < 1:
        raise ValueError("every must be >= 1")

    def on_batch_end(epoch: int, batch: int, num_batches: int, metrics: Metrics) -> None:
        if batch % every == 0:
            metrics[name] = float(fn())

    return TrainingCallback(on_batch_end=on_batch_end)


def early_stopping_callback(metric: str = "loss", patience: int = 5, min_delta: float = 0.0) -> TrainingCallback:
    """
    Stop gracefully once ``metric`` has not improved by more than ``min_delta``
    for ``patience`` consecutive epochs. Lower is better.
    """
    if patience < 1:
        raise ValueError("patience must be >= 1")
    state = {"best": math.inf, "stale": 0}

    def on_training_start() -> None:
        state["best"] = math.inf
        state["stale"] = 0

    def on_epoch_end(epoch: int, metrics: Metrics) -> bool:
        if metric not in metrics:
            return False
        value = metrics[metric]
        if value < state["best"] - min_delta:
            state["best"] = value
            state["stale"] = 0
            return False
        state["stale"] += 1
        if state["stale"] >= patience:
            logger.info(
                "early stopping at epoch %d: %s has not improved on %.6f for %d epochs",
                epoch,
                metric,
                state["best"],
                patience,
            )
            return True
        return False

    return TrainingCallback(on_training_start=on_training_start, on_epoch_end=on_epoch_end)
