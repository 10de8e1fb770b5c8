"""
Demo: tell horizontal from vertical bars with a small convolutional network.

Images are drawn with Pillow, randomly rotated by a few degrees, resized to
the network input and turned into a (n, 1, h, w) tensor with images_to_tensor.
"""

from __future__ import annotations

import os
import sys
from typing import List, Tuple

import torch
from PIL import Image, ImageDraw

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))
import stacknet as sn


CONFIG = {
    "seed": 2,
    "num_images": 64,
    "draw_size": 24,
    "input_size": 12,
    "batch_size": 16,
    "max_rotation": 10.0,
    "learn_rate": 0.01,
    "fit": {"epochs": 40, "log_every": 10},
}


def draw_bars(vertical: bool, offset: int, rotation: float) -> Image.Image:
    size = CONFIG["draw_size"]
    img = Image.new("L", (size, size), 0)
    draw = ImageDraw.Draw(img)
    for start in range(offset, size, 8):
        if vertical:
            draw.rectangle([start, 0, start + 2, size - 1], fill=255)
        else:
            draw.rectangle([0, start, size - 1, start + 2], fill=255)
    img = sn.transform_image(img, rotation_degrees=rotation, scale=1.1)
    return sn.resize_image(img, CONFIG["input_size"], CONFIG["input_size"], "approx_bilinear")


def make_dataset(generator: torch.Generator) -> Tuple[torch.Tensor, torch.Tensor]:
    images: List[Image.Image] = []
    labels: List[int] = []
    for _ in range(CONFIG["num_images"]):
        vertical = bool(torch.randint(0, 2, (1,), generator=generator))
        offset = int(torch.randint(0, 8, (1,), generator=generator))
        rotation = (float(torch.rand(1, generator=generator)) * 2 - 1) * CONFIG["max_rotation"]
        images.append(draw_bars(vertical, offset, rotation))
        labels.append(int(vertical))
    return sn.images_to_tensor(images, greyscale=True), sn.make_1d_tensor(labels, dtype=torch.int64)


def make_model() -> sn.Model:
    size, batch = CONFIG["input_size"], CONFIG["batch_size"]
    model = sn.Model()
    n = sn.Namer("bars")
    x = sn.Input(model, n(), (batch, 1, size, size)).node
    out = sn.SimpleConv2D(model, n(), 3, 4)(x)
    out = sn.Relu(model, n())(out)
    out = sn.SimpleMaxPooling2D(model, n(), 2)(out)
    out = sn.Reshape(model, n(), (batch, 4 * (size // 2) * (size // 2)))(out)
    out = sn.Dense(model, n(), 2)(out)
    out = sn.Softmax(model, n())(out)
    model.build({"x": x}, {"yp": out}, sn.cce_loss("yt", out))
    return model


def main() -> None:
    torch.manual_seed(CONFIG["seed"])
    xs, labels = make_dataset(torch.Generator().manual_seed(CONFIG["seed"]))
    ys = torch.nn.functional.one_hot(labels, 2).to(torch.float64)

    model = make_model()
    print(model.summary())
    model.fit({"x": xs}, {"yt": ys}, sn.AdamSolver(CONFIG["learn_rate"]), **CONFIG["fit"])

    pred = model.predict({"x": xs})["yp"].argmax(dim=1)
    accuracy = (pred == labels).to(torch.float64).mean().item()
    print(f"training accuracy: {accuracy:.3f}")


if __name__ == "__main__":
    main()
