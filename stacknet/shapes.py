# stacknet/shapes.py

"""
Shape predicates used at attach time.

Each validator is a small closure over its expectation; ``validate_shape``
runs them in order and raises on the first one that fails, so layers can
fail fast with a readable message instead of an opaque engine error later.
"""

from __future__ import annotations

import math
from typing import Callable, Sequence, Tuple

from .errors import ShapeError

Shape = Tuple[int, ...]
ShapeValidator = Callable[[Shape], None]


def as_shape(shape: Sequence[int]) -> Shape:
    return tuple(int(dim) for dim in shape)


def volume(shape: Sequence[int]) -> int:
    return math.prod(as_shape(shape))


def exact_shape_eq(a: Sequence[int], b: Sequence[int]) -> bool:
    return as_shape(a) == as_shape(b)


def validate_shape(shape: Sequence[int], *validators: ShapeValidator) -> None:
    """
    Run every validator against ``shape``; raise ShapeError on the first failure.
    """
    resolved = as_shape(shape)
    for validator in validators:
        validator(resolved)


def ndims(n: int) -> ShapeValidator:
    def _check(shape: Shape) -> None:
        if len(shape) != n:
            raise ShapeError(
                f"expected shape with ndims {n} but got ndims {len(shape)} with shape {shape}"
            )
    return _check


def nth_dim(dim: int, value: int) -> ShapeValidator:
    def _check(shape: Shape) -> None:
        if dim >= len(shape):
            raise ShapeError(f"expected shape[{dim}] to be {value} but shape {shape} has no such axis")
        if shape[dim] != value:
            raise ShapeError(f"expected shape[{dim}] to be {value} but got {shape[dim]}")
    return _check


def matching_shape(target: Sequence[int]) -> ShapeValidator:
    expected = as_shape(target)

    def _check(shape: Shape) -> None:
        if shape != expected:
            raise ShapeError(f"expected shape {expected} but got {shape}")
    return _check


def matching_volume(target: Sequence[int]) -> ShapeValidator:
    expected = as_shape(target)

    def _check(shape: Shape) -> None:
        if volume(shape) != volume(expected):
            raise ShapeError(
                f"shapes must have the same size: {expected} ({volume(expected)}) "
                f"and {shape} ({volume(shape)})"
            )
    return _check


def at_least_ndims(n: int) -> ShapeValidator:
    def _check(shape: Shape) -> None:
        if len(shape) < n:
            raise ShapeError(f"expected shape with at least {n} dims but got {len(shape)} ({shape})")
    return _check
