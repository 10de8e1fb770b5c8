"""
Demo: fit sin(x) on [0, 2*pi) from batches generated on the fly.

The data never exists as one dataset: SyntheticDataGenerator draws a fresh
batch from ``sample_sin`` for every step. Results are plotted to sin.png.
"""

from __future__ import annotations

import math
import os
import sys
from typing import Dict, Tuple

import torch

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))
import stacknet as sn


CONFIG = {
    "seed": 11,
    "batch_size": 16,
    "samples_per_epoch": 5000,
    "solver": {"kind": "adam", "learn_rate": 0.01},
    "fit": {"epochs": 10, "log_every": 1},
    "plot": "sin.png",
}


def sample_sin(batch_size: int, generator: torch.Generator) -> Tuple[Dict[str, torch.Tensor], Dict[str, torch.Tensor]]:
    x = torch.rand(batch_size, 1, generator=generator, dtype=torch.float64) * 2 * math.pi
    return {"x": x}, {"yt": torch.sin(x)}


def main() -> None:
    torch.manual_seed(CONFIG["seed"])
    model = sn.Model()
    n = sn.Namer("model")
    x = sn.Input(model, n(), (CONFIG["batch_size"], 1)).node
    out = sn.Dense(model, n(), 10)(x)
    out = sn.Relu(model, n())(out)
    out = sn.Dense(model, n(), 10)(out)
    out = sn.Relu(model, n())(out)
    out = sn.Dense(model, n(), 1)(out)
    out = sn.Tanh(model, n())(out)
    model.build({"x": x}, {"yp": out}, sn.mse_loss("yt", out))

    generator = sn.SyntheticDataGenerator(sample_sin, CONFIG["samples_per_epoch"], seed=CONFIG["seed"])
    history = sn.LossHistory()
    model.fit_generator(
        generator,
        sn.solver_from_config(CONFIG["solver"]),
        callbacks=[history.callback()],
        **CONFIG["fit"],
    )

    test_x = torch.linspace(0, 2 * math.pi, 360, dtype=torch.float64).reshape(360, 1)
    test_yp = model.predict({"x": test_x})["yp"]
    err = (test_yp - torch.sin(test_x)).abs().max().item()
    print(f"max abs error over [0, 2pi): {err:.4f}")

    sn.plot_metric_history(history, CONFIG["plot"], ["loss"], title="sin fit", log_scale=True)


if __name__ == "__main__":
    main()
