# stacknet/layers.py

from __future__ import annotations

from typing import TYPE_CHECKING, Callable, Dict, List, Optional, Sequence, Tuple, Union

import torch
import torch.nn.functional as F

from . import ops
from .errors import BuildError
from .graph import Graph, Node
from .shapes import as_shape, at_least_ndims, matching_shape, matching_volume, ndims, validate_shape

if TYPE_CHECKING:
    from .model import Model

IntPair = Union[int, Sequence[int]]


def _pair(value: IntPair, what: str) -> Tuple[int, int]:
    if isinstance(value, int):
        return (value, value)
    pair = tuple(int(v) for v in value)
    if len(pair) != 2:
        raise ValueError(f"{what} must be an int or a pair of ints, got {value!r}")
    return pair  # type: ignore[return-value]


class Namer:
    """
    Generate layer names of the form ``base_1``, ``base_2``, ...
    """

    def __init__(self, base_name: str) -> None:
        self.base_name = base_name
        self.counter = 0

    def next(self) -> str:
        self.counter += 1
        return f"{self.base_name}_{self.counter}"

    __call__ = next


class Layer:
    """
    A named unit of graph construction.

    Responsibilities:
      - Register itself on its Model at construction.
      - Extend the model's Graph exactly once through attach().
      - Expose its parameter nodes by name for training and checkpointing.
    """

    kind = "layer"
    trainable = False

    def __init__(self, model: "Model", name: str) -> None:
        self.model = model
        self.name = name
        self.dtype = model.dtype
        self.node: Optional[Node] = None
        self.input_nodes: List[Node] = []
        model.add_layer(self)

    @property
    def graph(self) -> Graph:
        return self.model.graph

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.name!r})"

    def parameters(self) -> Dict[str, Node]:
        return {}

    def attach(self, *inputs: Node) -> Node:
        """
        Extend the graph from ``inputs`` and return this layer's output node.
        """
        if self.node is not None:
            raise BuildError(f"layer {self.name!r} is already attached")
        if self.model.built:
            raise BuildError(f"cannot attach layer {self.name!r}: model is already built")
        out = self._attach(*inputs)
        self.input_nodes = list(inputs)
        self.node = out
        return out

    __call__ = attach

    def _attach(self, *inputs: Node) -> Node:
        raise NotImplementedError


class Input(Layer):
    """
    Placeholder for one named model input.
      - Shape: (batch_size, ...other_dims), rank >= 1.
    """

    kind = "input"

    def __init__(
        self,
        model: "Model",
        name: str,
        shape: Sequence[int],
        dtype: Optional[torch.dtype] = None,
    ) -> None:
        validate_shape(shape, at_least_ndims(1))
        super().__init__(model, name)
        self.dtype = dtype or model.dtype
        self.node = self.graph.placeholder(as_shape(shape), dtype=self.dtype, name=f"{name}.input")

    def _attach(self, *inputs: Node) -> Node:
        raise BuildError("input layers do not attach to other nodes")


class Dense(Layer):
    """
    Fully connected layer without activation.
      - Input shape: (batch_size, num_inputs)
      - Output shape: (batch_size, units)

    The bias lives in an extra weight row, fed by a constant column of ones.
    """

    kind = "dense"
    trainable = True

    def __init__(self, model: "Model", name: str, units: int) -> None:
        if units < 1:
            raise ValueError("units must be >= 1")
        super().__init__(model, name)
        self.units = int(units)
        self.weights: Optional[Node] = None

    def _attach(self, x: Node) -> Node:  # type: ignore[override]
        validate_shape(x.shape, ndims(2))
        batch_size, num_inputs = x.shape
        self.weights = self.graph.parameter(
            (num_inputs + 1, self.units), dtype=self.dtype, name=f"{self.name}.weights"
        )
        ones = self.graph.constant(torch.ones(batch_size, 1, dtype=self.dtype), name=f"{self.name}.bias")
        with_bias = self.graph.apply(
            lambda a, b: torch.cat([a, b], dim=1), [x, ones], name=f"{self.name}.concat"
        )
        return self.graph.apply(torch.matmul, [with_bias, self.weights], name=f"{self.name}.dense")

    def parameters(self) -> Dict[str, Node]:
        return {} if self.weights is None else {"weights": self.weights}


class Conv2D(Layer):
    """
    2D convolution.
      - Input shape: (batch_size, channels, height, width)
      - Output shape: (batch_size, num_kernels, out_height, out_width)

    Padding is "valid" (none) or "same" (kernel_size // 2 on both sides of each axis).
    """

    kind = "conv2d"
    trainable = True

    def __init__(
        self,
        model: "Model",
        name: str,
        kernel_size: IntPair,
        stride: IntPair,
        padding: str,
        num_kernels: int,
    ) -> None:
        if padding not in ("same", "valid"):
            raise ValueError(f"padding must be 'same' or 'valid', got {padding!r}")
        if num_kernels < 1:
            raise ValueError("num_kernels must be >= 1")
        super().__init__(model, name)
        self.kernel_size = _pair(kernel_size, "kernel_size")
        self.stride = _pair(stride, "stride")
        self.padding = padding
        self.num_kernels = int(num_kernels)
        self.kernels: Optional[Node] = None

    def _attach(self, x: Node) -> Node:  # type: ignore[override]
        validate_shape(x.shape, ndims(4))
        pad = (0, 0)
        if self.padding == "same":
            pad = (self.kernel_size[0] // 2, self.kernel_size[1] // 2)
        channels = x.shape[1]
        self.kernels = self.graph.parameter(
            (self.num_kernels, channels, *self.kernel_size),
            dtype=self.dtype,
            name=f"{self.name}.kernels",
        )
        stride = self.stride
        return self.graph.apply(
            lambda a, k: F.conv2d(a, k, stride=stride, padding=pad),
            [x, self.kernels],
            name=f"{self.name}.conv",
        )

    def parameters(self) -> Dict[str, Node]:
        return {} if self.kernels is None else {"kernels": self.kernels}


class SimpleConv2D(Conv2D):
    """Square kernel, stride 1, "same" padding."""

    def __init__(self, model: "Model", name: str, kernel_size: int, num_kernels: int) -> None:
        super().__init__(model, name, kernel_size, 1, "same", num_kernels)


class MaxPooling2D(Layer):
    """
    2D max pooling.
      - Input shape: (batch_size, channels, height, width)
      - Output shape: (batch_size, channels, out_height, out_width)

    "same" padding splits the required padding per axis, extra row/column on the right.
    """

    kind = "maxpool2d"

    def __init__(
        self,
        model: "Model",
        name: str,
        pool_size: IntPair,
        stride: IntPair,
        padding: str,
    ) -> None:
        if padding not in ("same", "valid"):
            raise ValueError(f"padding must be 'same' or 'valid', got {padding!r}")
        super().__init__(model, name)
        self.pool_size = _pair(pool_size, "pool_size")
        self.stride = _pair(stride, "stride")
        self.padding = padding

    def _attach(self, x: Node) -> Node:  # type: ignore[override]
        validate_shape(x.shape, ndims(4))
        pad = [0, 0, 0, 0]
        if self.padding == "same":
            pad = ops.same_padding(x.shape[2], self.pool_size[0], self.stride[0]) + ops.same_padding(
                x.shape[3], self.pool_size[1], self.stride[1]
            )
        pool_size, stride = self.pool_size, self.stride
        return self.graph.apply(
            lambda a: ops.padded_max_pool2d(a, pool_size, stride, pad),
            [x],
            name=f"{self.name}.maxpool",
        )


class SimpleMaxPooling2D(MaxPooling2D):
    """Square pool, stride equal to the pool size, "same" padding."""

    def __init__(self, model: "Model", name: str, pool_size: int) -> None:
        super().__init__(model, name, pool_size, pool_size, "same")


ACTIVATIONS = ("sigmoid", "relu", "tanh", "binary", "softmax", "leakyrelu")


class Activation(Layer):
    """
    Elementwise activation over any input shape.

    Supported: sigmoid, relu, tanh, binary, softmax (along axis 1), leakyrelu.
    """

    kind = "activation"

    def __init__(self, model: "Model", name: str, activation: str, leaky_slope: float = 0.01) -> None:
        super().__init__(model, name)
        self.activation = activation
        self.leaky_slope = float(leaky_slope)
        self.kind = f"activation({activation})"

    def _fn(self) -> Callable[[torch.Tensor], torch.Tensor]:
        if self.activation == "sigmoid":
            return torch.sigmoid
        if self.activation == "relu":
            return F.relu
        if self.activation == "tanh":
            return torch.tanh
        if self.activation == "binary":
            return ops.binary_threshold
        if self.activation == "softmax":
            return ops.row_softmax
        if self.activation == "leakyrelu":
            slope = self.leaky_slope
            return lambda x: ops.leaky_relu(x, slope)
        raise ValueError(f"invalid activation {self.activation!r}; expected one of {ACTIVATIONS}")

    def _attach(self, x: Node) -> Node:  # type: ignore[override]
        fn = self._fn()
        if self.activation in ("softmax", "leakyrelu") and not x.dtype.is_floating_point:
            raise TypeError(f"{self.activation} requires a floating point input, got {x.dtype}")
        if self.activation == "softmax":
            validate_shape(x.shape, at_least_ndims(2))
        return self.graph.apply(fn, [x], name=f"{self.name}.activation")


class Sigmoid(Activation):
    def __init__(self, model: "Model", name: str) -> None:
        super().__init__(model, name, "sigmoid")


class Relu(Activation):
    def __init__(self, model: "Model", name: str) -> None:
        super().__init__(model, name, "relu")


class Tanh(Activation):
    def __init__(self, model: "Model", name: str) -> None:
        super().__init__(model, name, "tanh")


class Binary(Activation):
    def __init__(self, model: "Model", name: str) -> None:
        super().__init__(model, name, "binary")


class Softmax(Activation):
    def __init__(self, model: "Model", name: str) -> None:
        super().__init__(model, name, "softmax")


class LeakyRelu(Activation):
    def __init__(self, model: "Model", name: str, slope: float = 0.01) -> None:
        super().__init__(model, name, "leakyrelu", leaky_slope=slope)


class Dropout(Layer):
    """
    Randomly zero elements with the given probability while training.
    """

    kind = "dropout"

    def __init__(self, model: "Model", name: str, probability: float) -> None:
        if not 0.0 <= probability < 1.0:
            raise ValueError(f"dropout probability must be in [0, 1), got {probability}")
        super().__init__(model, name)
        self.probability = float(probability)

    def _attach(self, x: Node) -> Node:  # type: ignore[override]
        p = self.probability
        return self.graph.apply(
            lambda a, training: F.dropout(a, p=p, training=training),
            [x],
            name=f"{self.name}.dropout",
            shape=x.shape,
            dtype=x.dtype,
            uses_mode=True,
        )


class Reshape(Layer):
    """
    Reshape to a target shape of the same volume.
    """

    kind = "reshape"

    def __init__(self, model: "Model", name: str, shape: Sequence[int]) -> None:
        super().__init__(model, name)
        self.to_shape = as_shape(shape)

    def _attach(self, x: Node) -> Node:  # type: ignore[override]
        validate_shape(x.shape, matching_volume(self.to_shape))
        to_shape = self.to_shape
        return self.graph.apply(lambda a: a.reshape(to_shape), [x], name=f"{self.name}.reshape")


ARITH_OPS = ("add", "sub", "hadamard_prod", "hadamard_div", "dot")


class BinElemArithmetic(Layer):
    """
    Binary elementwise arithmetic over two equally shaped nodes.

    ``dot`` multiplies elementwise then sums along axis 1, giving (batch_size, 1).
    """

    kind = "arith"

    def __init__(self, model: "Model", name: str, op: str) -> None:
        super().__init__(model, name)
        self.op = op
        self.kind = f"arith({op})"

    def _fn(self) -> Callable[[torch.Tensor, torch.Tensor], torch.Tensor]:
        if self.op == "add":
            return torch.add
        if self.op == "sub":
            return torch.sub
        if self.op == "hadamard_prod":
            return torch.mul
        if self.op == "hadamard_div":
            return torch.div
        if self.op == "dot":
            return ops.row_dot
        raise ValueError(f"invalid arith op {self.op!r}; expected one of {ARITH_OPS}")

    def _attach(self, a: Node, b: Node) -> Node:  # type: ignore[override]
        fn = self._fn()
        validate_shape(b.shape, matching_shape(a.shape))
        if self.op == "dot":
            validate_shape(a.shape, at_least_ndims(2))
        return self.graph.apply(fn, [a, b], name=f"{self.name}.op")


class Add(BinElemArithmetic):
    def __init__(self, model: "Model", name: str) -> None:
        super().__init__(model, name, "add")


class Sub(BinElemArithmetic):
    def __init__(self, model: "Model", name: str) -> None:
        super().__init__(model, name, "sub")


class HadamardProd(BinElemArithmetic):
    def __init__(self, model: "Model", name: str) -> None:
        super().__init__(model, name, "hadamard_prod")


class HadamardDiv(BinElemArithmetic):
    def __init__(self, model: "Model", name: str) -> None:
        super().__init__(model, name, "hadamard_div")


class Dot(BinElemArithmetic):
    def __init__(self, model: "Model", name: str) -> None:
        super().__init__(model, name, "dot")


class OneHot(Layer):
    """
    One-hot encode integer class indices.
      - Input shape: (batch_size,) of integers
      - Output shape: (batch_size, num_classes) of ``dtype``
    """

    kind = "onehot"

    def __init__(
        self,
        model: "Model",
        name: str,
        num_classes: int,
        dtype: Optional[torch.dtype] = None,
    ) -> None:
        if num_classes < 1:
            raise ValueError("num_classes must be greater than 0")
        super().__init__(model, name)
        self.num_classes = int(num_classes)
        self.dtype = dtype or model.dtype

    def _attach(self, x: Node) -> Node:  # type: ignore[override]
        validate_shape(x.shape, ndims(1))
        if x.dtype.is_floating_point or x.dtype.is_complex or x.dtype == torch.bool:
            raise TypeError(f"one-hot layers only support integer inputs, got {x.dtype}")
        num_classes, dtype = self.num_classes, self.dtype
        return self.graph.apply(
            lambda idx: ops.one_hot(idx, num_classes, dtype),
            [x],
            name=f"{self.name}.onehot",
            shape=(x.shape[0], num_classes),
            dtype=dtype,
        )
