# stacknet/ops.py

"""
Tensor-level functions used by the layers.

These are plain torch callables: the graph runs them on meta tensors for shape
inference and on real tensors at execution time.
"""

from __future__ import annotations

import math
from typing import List, Sequence

import torch
import torch.nn.functional as F


class OneHotFunction(torch.autograd.Function):
    """
    Encode a vector of class indices as rows of a one-hot matrix.

    The op has no gradient: its output is marked non-differentiable and any
    attempt to backpropagate through it raises.
    """

    @staticmethod
    def forward(ctx, indices: torch.Tensor, num_classes: int, dtype: torch.dtype) -> torch.Tensor:  # type: ignore[override]
        out = torch.zeros(indices.shape[0], num_classes, dtype=dtype, device=indices.device)
        if out.device.type != "meta":
            if indices.numel() and (int(indices.min()) < 0 or int(indices.max()) >= num_classes):
                raise IndexError(
                    f"one-hot index out of range for {num_classes} classes: "
                    f"min={int(indices.min())} max={int(indices.max())}"
                )
            out.scatter_(1, indices.long().unsqueeze(1), 1)
        ctx.mark_non_differentiable(out)
        return out

    @staticmethod
    def backward(ctx, grad_output: torch.Tensor):  # type: ignore[override]
        raise RuntimeError("one-hot encoding is not differentiable")


def one_hot(indices: torch.Tensor, num_classes: int, dtype: torch.dtype) -> torch.Tensor:
    return OneHotFunction.apply(indices, num_classes, dtype)


def row_softmax(x: torch.Tensor) -> torch.Tensor:
    """
    Softmax along axis 1 written as exp / row-sum rather than the fused kernel.
    """
    exponentiated = torch.exp(x)
    return exponentiated / exponentiated.sum(dim=1, keepdim=True)


def leaky_relu(x: torch.Tensor, slope: float) -> torch.Tensor:
    """relu(x) - relu(-slope * x)"""
    return F.relu(x) - F.relu(x * -slope)


def binary_threshold(x: torch.Tensor) -> torch.Tensor:
    """1 where x is strictly greater than the dtype's zero, else 0, in x's dtype."""
    return (x > torch.zeros((), dtype=x.dtype, device=x.device)).to(dtype=x.dtype)


def row_dot(a: torch.Tensor, b: torch.Tensor) -> torch.Tensor:
    """Elementwise product summed along axis 1, keeping a (batch, 1) result."""
    return (a * b).sum(dim=1, keepdim=True)


def same_padding(size: int, window: int, stride: int) -> List[int]:
    """
    Left/right padding so that the output size is ceil(size / stride).
    """
    out_size = int(math.ceil(size / stride))
    total = max((out_size - 1) * stride + window - size, 0)
    left = total // 2
    return [left, total - left]


def padded_max_pool2d(
    x: torch.Tensor,
    pool_size: Sequence[int],
    stride: Sequence[int],
    padding: Sequence[int],
) -> torch.Tensor:
    """
    Max pooling with possibly asymmetric padding ``[top, bottom, left, right]``.
    """
    top, bottom, left, right = padding
    if any(padding):
        x = F.pad(x, (left, right, top, bottom), mode="constant", value=float("-inf"))
    return F.max_pool2d(x, kernel_size=tuple(pool_size), stride=tuple(stride))
