# stacknet/graph.py

from __future__ import annotations

import logging
from collections import Counter
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

import torch
import torch.nn as nn

from .errors import BatchShapeError, BuildError, EngineError, ShapeError
from .shapes import Shape, as_shape

logger = logging.getLogger(__name__)

Initializer = Callable[[torch.Tensor], Any]


def glorot_normal(gain: float = 1.0) -> Initializer:
    """Xavier/Glorot normal initializer; the default for every weight tensor."""
    def _init(tensor: torch.Tensor) -> None:
        nn.init.xavier_normal_(tensor, gain=gain)
    return _init


class Node:
    """
    Handle to one vertex of a Graph.

    Responsibilities:
      - Record the vertex kind, static shape and dtype.
      - Reference its input nodes (ops) or its stored tensor (parameters, constants).
      - For parameters, expose bind() (alias storage) and assign() (copy values).
    """

    def __init__(
        self,
        graph: "Graph",
        name: str,
        kind: str,
        shape: Shape,
        dtype: torch.dtype,
        inputs: Sequence["Node"] = (),
        fn: Optional[Callable[..., torch.Tensor]] = None,
        value: Optional[torch.Tensor] = None,
        uses_mode: bool = False,
    ) -> None:
        self.graph = graph
        self.name = name
        self.kind = kind  # 'placeholder', 'parameter', 'constant' or 'op'
        self.shape = shape
        self.dtype = dtype
        self.inputs: Tuple[Node, ...] = tuple(inputs)
        self.fn = fn
        self.value = value
        self.uses_mode = uses_mode

    def __repr__(self) -> str:
        return f"Node({self.name!r}, kind={self.kind!r}, shape={self.shape}, dtype={self.dtype})"

    @property
    def ndim(self) -> int:
        return len(self.shape)

    def numel(self) -> int:
        total = 1
        for dim in self.shape:
            total *= dim
        return total

    def bind(self, parameter: nn.Parameter) -> None:
        """
        Point this parameter node at another node's storage (aliasing).
        """
        self._require_parameter("bind")
        if as_shape(parameter.shape) != self.shape:
            raise ShapeError(
                f"cannot bind {self.name}: expected shape {self.shape} but got {tuple(parameter.shape)}"
            )
        if parameter.dtype != self.dtype:
            raise ShapeError(f"cannot bind {self.name}: dtype {parameter.dtype} != {self.dtype}")
        self.value = parameter

    def assign(self, tensor: torch.Tensor) -> None:
        """
        Copy values into this parameter's storage (no aliasing).
        """
        self._require_parameter("assign")
        if as_shape(tensor.shape) != self.shape:
            raise ShapeError(
                f"cannot set {self.name}: expected shape {self.shape} but got {tuple(tensor.shape)}"
            )
        assert self.value is not None
        with torch.no_grad():
            self.value.copy_(tensor.to(dtype=self.dtype, device=self.value.device))

    def _require_parameter(self, action: str) -> None:
        if self.kind != "parameter":
            raise TypeError(f"cannot {action} node {self.name!r} of kind {self.kind!r}")


class Graph:
    """
    Symbolic record of every tensor operation created so far.

    Responsibilities:
      - Create placeholder, parameter, constant and op nodes in topological order.
      - Infer op output shapes on the meta device so errors surface at attach time.
      - Guard structural integrity (unique node names) before compilation.
    """

    def __init__(self, dtype: torch.dtype = torch.float64) -> None:
        self.dtype = dtype
        self.nodes: List[Node] = []
        self._counter = 0

    # --- Construction APIs ---

    def placeholder(
        self,
        shape: Sequence[int],
        dtype: Optional[torch.dtype] = None,
        name: Optional[str] = None,
    ) -> Node:
        node = Node(self, self._name(name, "placeholder"), "placeholder", as_shape(shape), dtype or self.dtype)
        return self._add(node)

    def parameter(
        self,
        shape: Sequence[int],
        dtype: Optional[torch.dtype] = None,
        name: Optional[str] = None,
        init: Optional[Initializer] = None,
    ) -> Node:
        resolved = as_shape(shape)
        dtype = dtype or self.dtype
        data = torch.empty(resolved, dtype=dtype)
        (init or glorot_normal(1.0))(data)
        node = Node(
            self,
            self._name(name, "parameter"),
            "parameter",
            resolved,
            dtype,
            value=nn.Parameter(data),
        )
        return self._add(node)

    def constant(self, value: torch.Tensor, name: Optional[str] = None) -> Node:
        tensor = value.detach()
        node = Node(
            self,
            self._name(name, "constant"),
            "constant",
            as_shape(tensor.shape),
            tensor.dtype,
            value=tensor,
        )
        return self._add(node)

    def apply(
        self,
        fn: Callable[..., torch.Tensor],
        inputs: Sequence[Node],
        name: Optional[str] = None,
        shape: Optional[Sequence[int]] = None,
        dtype: Optional[torch.dtype] = None,
        uses_mode: bool = False,
    ) -> Node:
        """
        Add an op node computing ``fn(*inputs)``.

        Args:
          fn: Callable over torch tensors. When uses_mode is set it also receives
              ``training=<bool>`` at run time.
          inputs: Predecessor nodes, all of which must belong to this graph.
          name: Optional node name (auto-generated otherwise).
          shape, dtype: Static output metadata; inferred on the meta device when omitted.
        """
        for node in inputs:
            if node.graph is not self:
                raise BuildError(f"node {node.name!r} belongs to a different graph")
        resolved_name = self._name(name, "op")
        if shape is None or dtype is None:
            inferred_shape, inferred_dtype = self._infer(fn, inputs, resolved_name, uses_mode)
            shape = inferred_shape if shape is None else shape
            dtype = inferred_dtype if dtype is None else dtype
        node = Node(
            self,
            resolved_name,
            "op",
            as_shape(shape),
            dtype,
            inputs=inputs,
            fn=fn,
            uses_mode=uses_mode,
        )
        return self._add(node)

    # --- Introspection ---

    def node_names(self) -> List[str]:
        return [node.name for node in self.nodes]

    def parameters(self) -> Iterable[Node]:
        return (node for node in self.nodes if node.kind == "parameter")

    def check_unique_names(self) -> None:
        duplicates = sorted(name for name, count in Counter(self.node_names()).items() if count > 1)
        if duplicates:
            raise BuildError(f"duplicate node names in graph: {', '.join(duplicates)}")

    def compile(
        self,
        watch: Sequence[Node] = (),
        loss: Optional[Node] = None,
        wrt: Sequence[Node] = (),
    ) -> "Machine":
        return Machine(self, watch=watch, loss=loss, wrt=wrt)

    # --- Internal helpers ----------------------------------------------------

    def _add(self, node: Node) -> Node:
        self.nodes.append(node)
        return node

    def _name(self, name: Optional[str], kind: str) -> str:
        self._counter += 1
        return name if name is not None else f"{kind}_{self._counter}"

    @staticmethod
    def _infer(
        fn: Callable[..., torch.Tensor],
        inputs: Sequence[Node],
        name: str,
        uses_mode: bool,
    ) -> Tuple[Shape, torch.dtype]:
        metas = [torch.empty(node.shape, dtype=node.dtype, device="meta") for node in inputs]
        try:
            out = fn(*metas, training=False) if uses_mode else fn(*metas)
        except (RuntimeError, ValueError, TypeError, IndexError) as exc:
            shapes = ", ".join(str(node.shape) for node in inputs)
            raise ShapeError(f"cannot build {name} from inputs with shapes [{shapes}]: {exc}") from exc
        return as_shape(out.shape), out.dtype


class Machine:
    """
    Executor compiled from a finished Graph.

    Responsibilities:
      - Hold per-run placeholder values fed with let().
      - Evaluate every node in creation order, in training or inference mode.
      - Keep the values of watched nodes readable after each run.
      - Differentiate the loss w.r.t. the wired parameter nodes.

    A Machine is stateful and must not be run from two call sites at once.
    """

    def __init__(
        self,
        graph: Graph,
        watch: Sequence[Node] = (),
        loss: Optional[Node] = None,
        wrt: Sequence[Node] = (),
    ) -> None:
        self.graph = graph
        self.loss = loss
        self.wrt: Tuple[Node, ...] = tuple(wrt)
        self._order: Tuple[Node, ...] = tuple(graph.nodes)
        self._watched = {id(node) for node in watch}
        if loss is not None:
            self._watched.add(id(loss))
        self._fed: Dict[int, torch.Tensor] = {}
        self._values: Dict[int, torch.Tensor] = {}
        self._grads: List[Tuple[nn.Parameter, torch.Tensor]] = []

    def reset(self) -> None:
        self._fed.clear()
        self._values.clear()
        self._grads = []

    def let(self, node: Node, tensor: torch.Tensor) -> None:
        if node.kind != "placeholder":
            raise TypeError(f"cannot feed node {node.name!r} of kind {node.kind!r}")
        if as_shape(tensor.shape) != node.shape:
            raise BatchShapeError(
                f"value for {node.name} has shape {tuple(tensor.shape)}, expected {node.shape}"
            )
        if tensor.dtype != node.dtype:
            raise BatchShapeError(f"value for {node.name} has dtype {tensor.dtype}, expected {node.dtype}")
        self._fed[id(node)] = tensor

    def run_all(self, training: bool = False, compute_grads: bool = False) -> None:
        """
        Evaluate the whole graph once.

        Args:
          training: Forwarded to mode-dependent ops such as dropout.
          compute_grads: Differentiate the loss w.r.t. ``wrt`` after the forward pass.
        """
        if compute_grads and self.loss is None:
            raise EngineError("machine was compiled without a loss node; cannot compute gradients")
        values: Dict[int, torch.Tensor] = {}
        for node in self._order:
            values[id(node)] = self._evaluate(node, values, training)
        self._values = {key: values[key] for key in self._watched if key in values}
        self._grads = []
        if compute_grads and self.wrt:
            assert self.loss is not None
            self._grads = self._differentiate(values[id(self.loss)])

    def value(self, node: Node) -> torch.Tensor:
        if id(node) not in self._watched:
            raise KeyError(f"node {node.name!r} is not watched by this machine")
        if id(node) not in self._values:
            raise RuntimeError(f"node {node.name!r} has no value; run the machine first")
        return self._values[id(node)]

    def value_grads(self) -> List[Tuple[nn.Parameter, torch.Tensor]]:
        return list(self._grads)

    # --- Internal helpers ----------------------------------------------------

    def _evaluate(self, node: Node, values: Dict[int, torch.Tensor], training: bool) -> torch.Tensor:
        if node.kind == "placeholder":
            if id(node) not in self._fed:
                raise EngineError(f"placeholder {node.name!r} was not given a value before run")
            return self._fed[id(node)]
        if node.kind in ("parameter", "constant"):
            assert node.value is not None
            return node.value
        assert node.fn is not None
        args = [values[id(inp)] for inp in node.inputs]
        try:
            if node.uses_mode:
                return node.fn(*args, training=training)
            return node.fn(*args)
        except RuntimeError as exc:
            raise EngineError(f"error while running node {node.name!r}: {exc}") from exc

    def _differentiate(self, loss: torch.Tensor) -> List[Tuple[nn.Parameter, torch.Tensor]]:
        params = [node.value for node in self.wrt]
        if not loss.requires_grad:
            raise EngineError("loss does not depend on any trainable parameter")
        try:
            grads = torch.autograd.grad(loss, params, allow_unused=True)
        except RuntimeError as exc:
            raise EngineError(f"error while computing gradients: {exc}") from exc
        pairs: List[Tuple[nn.Parameter, torch.Tensor]] = []
        for param, grad in zip(params, grads):
            assert param is not None
            pairs.append((param, torch.zeros_like(param) if grad is None else grad))
        return pairs
