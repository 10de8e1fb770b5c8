from __future__ import annotations

import math
from typing import List, Sequence

import numpy as np
import torch
from PIL import Image

# Interpolation names accepted by resize_image/transform_image.
INTERPOLATIONS = {
    "nearest_neighbor": Image.Resampling.NEAREST,
    "bilinear": Image.Resampling.BILINEAR,
    "approx_bilinear": Image.Resampling.BOX,
}


def _resample(interpolation: str) -> Image.Resampling:
    try:
        return INTERPOLATIONS[interpolation]
    except KeyError:
        raise ValueError(
            f"unknown interpolation {interpolation!r}; expected one of {sorted(INTERPOLATIONS)}"
        ) from None


def images_to_tensor(
    images: Sequence[Image.Image],
    greyscale: bool = False,
    dtype: torch.dtype = torch.float64,
) -> torch.Tensor:
    """
    Stack same-sized images into a (n, channels, height, width) tensor in [0, 1].

    Colour images give 3 channels (r, g, b); ``greyscale=True`` keeps only the
    red channel, which is exact for images written by ``tensor_to_images``.
    Alpha is dropped.
    """
    if not images:
        raise ValueError("images_to_tensor needs at least one image")
    size = images[0].size
    arrays: List[np.ndarray] = []
    for i, img in enumerate(images):
        if img.size != size:
            raise ValueError(f"image {i} has size {img.size}, expected {size}")
        rgb = np.asarray(img.convert("RGB"), dtype=np.float64) / 255.0  # (h, w, 3)
        if greyscale:
            rgb = rgb[:, :, :1]
        arrays.append(rgb.transpose(2, 0, 1))
    return torch.from_numpy(np.stack(arrays)).to(dtype)


def tensor_to_images(tensor: torch.Tensor, greyscale: bool = False) -> List[Image.Image]:
    """
    Inverse of ``images_to_tensor``: values are clamped to [0, 1] and scaled to 8 bits.

    A single-channel tensor (or ``greyscale=True``, which reads channel 0)
    writes the same value to r, g and b.
    """
    if tensor.ndim != 4:
        raise ValueError(f"expected a (n, channels, height, width) tensor, got shape {tuple(tensor.shape)}")
    channels = tensor.shape[1]
    if channels not in (1, 3):
        raise ValueError(f"expected 1 or 3 channels, got {channels}")
    if greyscale or channels == 1:
        tensor = tensor[:, :1]
    data = (tensor.detach().cpu().to(torch.float64).clamp(0.0, 1.0) * 255.0).round()
    data = data.to(torch.uint8).numpy().transpose(0, 2, 3, 1)  # (n, h, w, c)

    images: List[Image.Image] = []
    for arr in data:
        if arr.shape[-1] == 1:
            images.append(Image.fromarray(np.ascontiguousarray(arr[:, :, 0]), "L").convert("RGB"))
        else:
            images.append(Image.fromarray(np.ascontiguousarray(arr), "RGB"))
    return images


def resize_image(
    img: Image.Image,
    width: int,
    height: int,
    interpolation: str = "bilinear",
) -> Image.Image:
    if width < 1 or height < 1:
        raise ValueError(f"target size must be positive, got {width}x{height}")
    return img.resize((int(width), int(height)), _resample(interpolation))


def transform_image(
    img: Image.Image,
    rotation_degrees: float = 0.0,
    scale: float = 1.0,
    interpolation: str = "bilinear",
) -> Image.Image:
    """
    Rotate (counter-clockwise) and scale ``img`` about its centre, keeping its size.

    Areas that map outside the source are filled black; content scaled past
    the border is cropped.
    """
    if scale <= 0:
        raise ValueError(f"scale must be > 0, got {scale}")
    resample = _resample(interpolation)
    if resample == Image.Resampling.BOX:
        # Affine transforms only sample with nearest, bilinear or bicubic filters.
        resample = Image.Resampling.BILINEAR
    width, height = img.size
    cx, cy = width / 2.0, height / 2.0

    # Affine data maps output pixel coordinates back into the source image.
    angle = -math.radians(rotation_degrees)
    cos_a = round(math.cos(angle), 15) / scale
    sin_a = round(math.sin(angle), 15) / scale
    matrix = (
        cos_a, sin_a, cx - cos_a * cx - sin_a * cy,
        -sin_a, cos_a, cy + sin_a * cx - cos_a * cy,
    )
    return img.transform(img.size, Image.Transform.AFFINE, matrix, resample=resample)
