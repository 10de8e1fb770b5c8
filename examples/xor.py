"""
Demo: learn XOR with a two-layer dense network.

Shows the full round trip: build, fit with a progress bar and callbacks,
predict, and save/load the parameters.
"""

from __future__ import annotations

import os
import sys

import torch

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))
import stacknet as sn


TRAINING = {
    "seed": 0,
    "learn_rate": 0.05,
    "fit": {"epochs": 1000, "log_every": 100},
    "checkpoint": "xor_params.pt",
}


def make_model() -> sn.Model:
    model = sn.Model(dtype=torch.float64)
    n = sn.Namer("xor")
    x = sn.Input(model, n(), (4, 2)).node
    out = sn.Dense(model, n(), 5)(x)
    out = sn.Tanh(model, n())(out)
    out = sn.Dense(model, n(), 1)(out)
    out = sn.Sigmoid(model, n())(out)
    model.build({"x": x}, {"yp": out}, sn.mse_loss("yt", out))
    return model


def main() -> None:
    torch.manual_seed(TRAINING["seed"])
    xs = {"x": sn.make_2d_tensor([[0.0, 0.0], [0.0, 1.0], [1.0, 0.0], [1.0, 1.0]])}
    ys = {"yt": sn.make_2d_tensor([[0.0], [1.0], [1.0], [0.0]])}

    model = make_model()
    print(model.summary())

    history = sn.LossHistory()
    config = sn.fit_config_from_mapping(
        {**TRAINING["fit"], "callbacks": [history.callback(), sn.early_stopping_callback(patience=50, min_delta=1e-6)]}
    )
    model.fit(xs, ys, sn.AdamSolver(learn_rate=TRAINING["learn_rate"]), config)

    yp = model.predict(xs)["yp"]
    for row, target, pred in zip(xs["x"], ys["yt"], yp):
        print(f"X={row.tolist()} Y={target.item():.0f} YP={pred.item():.3f}")

    model.write_params(TRAINING["checkpoint"])
    restored = make_model()
    restored.read_params(TRAINING["checkpoint"])
    print("restored matches:", torch.allclose(restored.predict(xs)["yp"], yp))
    print(sn.parameter_stats(model).to_text())


if __name__ == "__main__":
    main()
