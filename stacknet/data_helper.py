"""
Batching utilities and training data generators.

``batch_tensors`` cuts a set of equally long named tensors into fixed-size
batches; the generators feed ``Model.fit_generator`` one epoch at a time.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol, Sequence, Tuple

import torch

from .errors import GeneratorStateError

NamedTensors = Dict[str, torch.Tensor]
Batch = Tuple[Optional[NamedTensors], Optional[NamedTensors]]
SampleFn = Callable[[int, torch.Generator], Tuple[NamedTensors, NamedTensors]]


def num_rows(named: Mapping[str, torch.Tensor]) -> int:
    """
    Shared first-axis length of every tensor in ``named``.
    """
    if not named:
        raise ValueError("expected at least one named tensor")
    rows: Optional[int] = None
    for name, tensor in named.items():
        if tensor.dim() == 0:
            raise ValueError(f"tensor {name!r} is a scalar; expected a leading batch axis")
        if rows is None:
            rows = int(tensor.shape[0])
        elif rows != int(tensor.shape[0]):
            raise ValueError("all inputs must have the same number of rows")
    assert rows is not None
    return rows


def slice_batch(tensor: torch.Tensor, start: int, stop: int) -> torch.Tensor:
    """Slice rows ``start:stop`` along the first axis, always keeping the rank."""
    return tensor.narrow(0, start, stop - start)


def batch_tensors(
    named: Mapping[str, torch.Tensor],
    batch_size: int,
    zero_pad: bool,
) -> Tuple[List[NamedTensors], int]:
    """
    Split equally long named tensors into batches of ``batch_size`` rows.

    Args:
      named: Mapping from name to tensor; all must share the first-axis length.
      batch_size: Rows per batch.
      zero_pad: If True the final partial batch is padded with zeros; otherwise
        the trailing rows that do not fill a batch are dropped.

    Returns:
      (batches, num_padded_rows). num_padded_rows is 0 unless padding was added.
    """
    if batch_size < 1:
        raise ValueError("batch_size must be >= 1")
    rows = num_rows(named)
    remainder = rows % batch_size
    prepared: NamedTensors = dict(named)
    num_padded = 0
    if remainder:
        if zero_pad:
            num_padded = batch_size - remainder
            for name, tensor in prepared.items():
                padding = torch.zeros(
                    (num_padded, *tensor.shape[1:]), dtype=tensor.dtype, device=tensor.device
                )
                prepared[name] = torch.cat([tensor, padding], dim=0)
        else:
            for name, tensor in prepared.items():
                prepared[name] = slice_batch(tensor, 0, rows - remainder)
    total_rows = rows + num_padded if zero_pad else rows - remainder
    batches: List[NamedTensors] = []
    for start in range(0, total_rows, batch_size):
        batches.append(
            {name: slice_batch(tensor, start, start + batch_size) for name, tensor in prepared.items()}
        )
    return batches, num_padded


def _infer_dtype(value: Any) -> torch.dtype:
    if isinstance(value, bool):
        return torch.bool
    if isinstance(value, int):
        return torch.int64
    if isinstance(value, float):
        return torch.float64
    raise TypeError(f"unsupported element type {type(value).__name__}")


def make_2d_tensor(rows: Sequence[Sequence[Any]], dtype: Optional[torch.dtype] = None) -> torch.Tensor:
    """
    Build a (rows, columns) tensor from nested Python sequences.
    """
    if not rows or not rows[0]:
        raise ValueError("data must have at least one row and one column")
    width = len(rows[0])
    for row in rows:
        if len(row) != width:
            raise ValueError("data must have the same number of columns in each row")
    return torch.tensor([list(row) for row in rows], dtype=dtype or _infer_dtype(rows[0][0]))


def make_1d_tensor(values: Sequence[Any], dtype: Optional[torch.dtype] = None) -> torch.Tensor:
    """
    Build a (n,) tensor from a flat Python sequence.
    """
    if not values:
        raise ValueError("data must have at least one element")
    return torch.tensor(list(values), dtype=dtype or _infer_dtype(values[0]))


class TrainingDataGenerator(Protocol):
    """
    Supplies one epoch of named (inputs, targets) batches.

    Lifecycle: reset(batch_size) -> next_batch() ... -> (None, None).
    """

    def reset(self, batch_size: int) -> None:
        ...

    def next_batch(self) -> Batch:
        ...

    @property
    def num_batches(self) -> int:
        ...


@dataclass
class TensorDataGenerator:
    """
    In-memory generator: pre-slices a fixed dataset into batches at reset().

    Trailing rows that do not fill a whole batch are dropped every epoch.
    Only suitable for datasets that fit in memory.
    """

    inputs: NamedTensors
    targets: NamedTensors
    shuffle: bool = False
    generator: Optional[torch.Generator] = None
    _batched_inputs: List[NamedTensors] = field(init=False, default_factory=list, repr=False)
    _batched_targets: List[NamedTensors] = field(init=False, default_factory=list, repr=False)
    _cursor: int = field(init=False, default=0, repr=False)
    _ready: bool = field(init=False, default=False, repr=False)

    def __post_init__(self) -> None:
        self.inputs = dict(self.inputs)
        self.targets = dict(self.targets)
        if num_rows(self.inputs) != num_rows(self.targets):
            raise ValueError("inputs and targets must have the same number of rows")

    @property
    def num_samples(self) -> int:
        return num_rows(self.inputs)

    @property
    def num_batches(self) -> int:
        return len(self._batched_inputs)

    def reset(self, batch_size: int) -> None:
        inputs, targets = self.inputs, self.targets
        if self.shuffle:
            order = torch.randperm(self.num_samples, generator=self.generator)
            inputs = {name: tensor[order] for name, tensor in inputs.items()}
            targets = {name: tensor[order] for name, tensor in targets.items()}
        self._batched_inputs, _ = batch_tensors(inputs, batch_size, zero_pad=False)
        self._batched_targets, _ = batch_tensors(targets, batch_size, zero_pad=False)
        self._cursor = 0
        self._ready = True

    def next_batch(self) -> Batch:
        if not self._ready:
            raise GeneratorStateError("reset() must be called before next_batch()")
        if self._cursor >= len(self._batched_inputs):
            return None, None
        self._cursor += 1
        return self._batched_inputs[self._cursor - 1], self._batched_targets[self._cursor - 1]


class SyntheticDataGenerator:
    """
    On-the-fly generator: draws a fresh batch from ``sample_fn`` on every call.

    The random source is an explicit torch.Generator, seeded once at
    construction when ``seed`` is given; it is not re-seeded between epochs.
    """

    def __init__(
        self,
        sample_fn: SampleFn,
        samples_per_epoch: int,
        *,
        seed: Optional[int] = None,
        generator: Optional[torch.Generator] = None,
    ) -> None:
        if samples_per_epoch < 1:
            raise ValueError("samples_per_epoch must be >= 1")
        self.sample_fn = sample_fn
        self.samples_per_epoch = int(samples_per_epoch)
        self.generator = generator or torch.Generator()
        if seed is not None:
            self.generator.manual_seed(seed)
        self._batch_size: Optional[int] = None
        self._batches_left = 0
        self._batches_for_epoch = 0

    @property
    def num_batches(self) -> int:
        return self._batches_for_epoch

    def reset(self, batch_size: int) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self._batch_size = batch_size
        self._batches_left = self.samples_per_epoch // batch_size
        self._batches_for_epoch = self._batches_left

    def next_batch(self) -> Batch:
        if self._batch_size is None:
            raise GeneratorStateError("reset() must be called before next_batch()")
        if self._batches_left == 0:
            return None, None
        inputs, targets = self.sample_fn(self._batch_size, self.generator)
        self._batches_left -= 1
        return dict(inputs), dict(targets)
