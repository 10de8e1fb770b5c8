"""
Demo: look inside a trained XOR network through a second, bound model.

The partial model only contains the encoder half. Binding its parameters to
the full model makes both share storage, so training the full model updates
the partial one. Never run two bound models at the same time.
"""

from __future__ import annotations

import os
import sys

import torch

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))
import stacknet as sn


def encoder(model: sn.Model, inputs: sn.Node) -> sn.Node:
    # Separate namers keep layer names identical across the full and partial models.
    n = sn.Namer("encoder")
    out = sn.Dense(model, n(), 5)(inputs)
    return sn.Sigmoid(model, n())(out)


def decoder(model: sn.Model, inputs: sn.Node) -> sn.Node:
    n = sn.Namer("decoder")
    out = sn.Dense(model, n(), 1)(inputs)
    return sn.Sigmoid(model, n())(out)


def make_model(encoder_only: bool) -> sn.Model:
    model = sn.Model()
    x = sn.Input(model, "input", (4, 2)).node
    out = encoder(model, x)
    if not encoder_only:
        out = decoder(model, out)
    model.build({"x": x}, {"y": out}, sn.mse_loss("yt", out))
    return model


def show(model: sn.Model, x: torch.Tensor, title: str) -> None:
    yp = model.predict({"x": x})["y"]
    print(f"\nPredictions ({title}):")
    for row, pred in zip(x, yp):
        print(f"X={row.tolist()} YP={[round(v, 3) for v in pred.tolist()]}")


def main() -> None:
    torch.manual_seed(3)
    x = sn.make_2d_tensor([[0.0, 0.0], [0.0, 1.0], [1.0, 0.0], [1.0, 1.0]])
    y = sn.make_2d_tensor([[0.0], [1.0], [1.0], [0.0]])

    full = make_model(encoder_only=False)
    partial = make_model(encoder_only=True)
    partial.bind_params_from(full)
    show(partial, x, "partial no training")

    # fit_batch needs exactly one batch; there is no progress bar on this path.
    solver = sn.AdamSolver(learn_rate=0.01)
    for epoch in range(1001):
        loss = full.fit_batch({"x": x}, {"yt": y}, solver)
        if epoch % 100 == 0:
            print(f"Epoch: {epoch:<4d} Loss {loss:.4f}")

    show(partial, x, "partial after training")
    show(full, x, "full after training")


if __name__ == "__main__":
    main()
