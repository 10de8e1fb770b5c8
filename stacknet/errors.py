# stacknet/errors.py

from __future__ import annotations


class StacknetError(Exception):
    """Base class for every error raised by stacknet itself."""


class ShapeError(StacknetError, ValueError):
    """A tensor or node shape violates a layer or model contract."""


class BatchShapeError(ShapeError):
    """A batch fed to predict/fit does not match the model's compiled shapes."""


class BuildError(StacknetError, RuntimeError):
    """Model or layer construction could not be completed."""


class GeneratorStateError(StacknetError, RuntimeError):
    """A data generator was used outside of its reset/next_batch lifecycle."""


class EngineError(StacknetError, RuntimeError):
    """The tensor engine failed while executing a compiled graph."""
