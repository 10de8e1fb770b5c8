from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Dict, List, Optional, Sequence, Tuple

import torch

from .callbacks import TrainingCallback

if TYPE_CHECKING:
    import matplotlib.axes

    from .model import Model


@dataclass
class StatRecord:
    name: str
    numel: int
    l2: float
    max_abs: float
    mean_abs: float
    zero_frac: float


@dataclass
class ParameterStats:
    records: List[StatRecord]

    def to_text(self, top_k: Optional[int] = None) -> str:
        if not self.records:
            return "No parameters."
        rows = sorted(self.records, key=lambda rec: -rec.l2)
        limit = rows if top_k is None else rows[:top_k]
        lines = ["Parameters:"]
        for rec in limit:
            lines.append(
                f"  {rec.name:<30} n={rec.numel:<8d} |l2|={rec.l2:.4e} "
                f"|max|={rec.max_abs:.4e} mean|p|={rec.mean_abs:.4e} "
                f"zero%={rec.zero_frac * 100:5.2f}"
            )
        return "\n".join(lines)


def parameter_stats(model: "Model") -> ParameterStats:
    """
    Magnitude summary of every model parameter, keyed ``"layer:param"``.
    """
    records: List[StatRecord] = []
    for name, tensor in model.get_params().items():
        data = tensor.detach().to(torch.float64)
        if data.numel() == 0:
            records.append(StatRecord(name, 0, 0.0, 0.0, 0.0, 0.0))
            continue
        abs_val = data.abs()
        records.append(
            StatRecord(
                name=name,
                numel=data.numel(),
                l2=float(data.norm().item()),
                max_abs=float(abs_val.max().item()),
                mean_abs=float(abs_val.mean().item()),
                zero_frac=float((abs_val <= 1e-9).sum().item()) / data.numel(),
            )
        )
    return ParameterStats(records)


@dataclass
class LossHistory:
    """
    Records every metric seen at epoch end as ``name -> [(epoch, value), ...]``.

    Register ``history.callback()`` with the fit callbacks.
    """

    metrics: Dict[str, List[Tuple[int, float]]] = field(default_factory=dict)

    def callback(self) -> TrainingCallback:
        def on_epoch_end(epoch: int, values: Dict[str, float]) -> bool:
            for name, value in values.items():
                self.metrics.setdefault(name, []).append((epoch, float(value)))
            return False

        return TrainingCallback(on_epoch_end=on_epoch_end)

    def last(self, name: str = "loss") -> float:
        if not self.metrics.get(name):
            raise KeyError(f"No values recorded for metric {name!r}.")
        return self.metrics[name][-1][1]


def plot_metric_history(
    history: LossHistory,
    save_path: str = "metrics.png",
    metrics: Optional[Sequence[str]] = None,
    *,
    ax: Optional["matplotlib.axes.Axes"] = None,
    title: Optional[str] = None,
    log_scale: bool = False,
) -> "matplotlib.axes.Axes":
    """
    Plot recorded metric curves against the epoch and save them as a PNG.

    Args:
        history: LossHistory filled during fit.
        save_path: Filepath for the rendered image.
        metrics: Metric names to draw; defaults to every recorded metric.
        ax: Optional axes to draw on; a new figure is created otherwise.
        title: Optional plot title.
        log_scale: Use a logarithmic y axis.
    Returns:
        The matplotlib Axes containing the plot.
    """
    try:
        import matplotlib.pyplot as plt  # type: ignore
        import numpy as np
    except ImportError as exc:  # pragma: no cover - optional dependency
        raise RuntimeError("matplotlib is required for plotting helpers.") from exc

    names = list(metrics) if metrics is not None else sorted(history.metrics)
    missing = [name for name in names if name not in history.metrics]
    if missing:
        raise KeyError(f"No recorded values for metrics: {', '.join(missing)}")
    if not names:
        raise ValueError("History is empty; nothing to plot.")

    if ax is None:
        fig, ax = plt.subplots(figsize=(8, 4))
    else:
        fig = ax.figure
    for name in names:
        series = np.asarray(history.metrics[name], dtype=np.float64)
        ax.plot(series[:, 0], series[:, 1], marker="o", markersize=3, label=name)
    ax.set_xlabel("epoch")
    ax.set_ylabel("value")
    if log_scale:
        ax.set_yscale("log")
    ax.set_title(title or "Training metrics")
    ax.legend()

    fig.tight_layout()
    fig.savefig(os.path.abspath(save_path), dpi=150)
    plt.close(fig)
    return ax
