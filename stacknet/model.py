# stacknet/model.py

from __future__ import annotations

import logging
from collections import Counter
from typing import IO, Any, Dict, List, Mapping, Optional, Union

import torch

from .data_helper import TensorDataGenerator, TrainingDataGenerator, batch_tensors, num_rows
from .errors import BatchShapeError, BuildError
from .graph import Graph, Machine, Node
from .layers import Layer
from .losses import LossFunc
from .solvers import Solver
from .training import FitConfig, Trainer

logger = logging.getLogger(__name__)

Tensors = Dict[str, torch.Tensor]
FileLike = Union[str, IO[bytes]]


def _loss_to_float(loss: torch.Tensor) -> float:
    if loss.dtype not in (torch.float32, torch.float64):
        raise TypeError(f"unsupported loss dtype {loss.dtype}; expected float32 or float64")
    return float(loss.detach().item())


class Model:
    """
    A graph of layers with named inputs, named outputs and one scalar loss.

    Responsibilities:
      - Own the Graph that its layers extend, and the registry of those layers.
      - Freeze the graph once in build() and compile the executing Machine.
      - Run inference (predict_batch/predict) and training steps (fit_batch/fit).
      - Move parameters by name: get/set, write/read, bind (alias) and copy.

    A built model must not be run concurrently, nor while a model bound to it
    through bind_params_from() is running.
    """

    def __init__(self, dtype: torch.dtype = torch.float64) -> None:
        self.dtype = dtype
        self.graph = Graph(dtype)
        self.layers: List[Layer] = []
        self.built = False
        self.input_nodes: Dict[str, Node] = {}
        self.output_nodes: Dict[str, Node] = {}
        self.loss_node: Optional[Node] = None
        self.loss_required_nodes: Dict[str, Node] = {}
        self.machine: Optional[Machine] = None

    def add_layer(self, layer: Layer) -> None:
        if self.built:
            raise BuildError(f"cannot add layer {layer.name!r}: model is already built")
        self.layers.append(layer)

    # --- Build ---

    def build(self, inputs: Mapping[str, Node], outputs: Mapping[str, Node], loss: Optional[LossFunc]) -> None:
        """
        Freeze the graph and compile it.

        Args:
          inputs: Name -> placeholder node fed by predict/fit.
          outputs: Name -> node returned by predict.
          loss: Loss factory; called exactly once here.
        """
        if self.built:
            raise BuildError("model is already built")
        if not inputs:
            raise BuildError("model must have at least one input")
        if not outputs:
            raise BuildError("model must have at least one output")
        if loss is None:
            raise BuildError("model must have a loss function")
        for node in [*inputs.values(), *outputs.values()]:
            if node.graph is not self.graph:
                raise BuildError(f"node {node.name!r} does not belong to this model")
        for name, node in inputs.items():
            if node.kind != "placeholder":
                raise BuildError(f"input {name!r} must be a placeholder node, got {node.kind!r}")

        mark = len(self.graph.nodes)
        try:
            loss_node, required = loss()
            if loss_node.shape != ():
                raise BuildError(f"loss must be a scalar, got shape {loss_node.shape}")
            self._check_unique_layer_names()
            self.graph.check_unique_names()
            trainables = self.trainables()
            machine = self.graph.compile(
                watch=list(outputs.values()),
                loss=loss_node,
                wrt=trainables,
            )
        except Exception:
            del self.graph.nodes[mark:]
            raise

        self.input_nodes = dict(inputs)
        self.output_nodes = dict(outputs)
        self.loss_node = loss_node
        self.loss_required_nodes = dict(required)
        self.machine = machine
        self.built = True
        logger.debug(
            "built model: %d layers, %d graph nodes, %d trainable parameters",
            len(self.layers),
            len(self.graph.nodes),
            len(trainables),
        )

    def trainables(self) -> List[Node]:
        params: List[Node] = []
        for layer in self.layers:
            if layer.trainable:
                params.extend(layer.parameters().values())
        return params

    @property
    def batch_size(self) -> int:
        if not self.input_nodes:
            raise BuildError("model has no inputs yet; call build() first")
        return next(iter(self.input_nodes.values())).shape[0]

    # --- Execution ---

    def predict_batch(self, inputs: Mapping[str, torch.Tensor]) -> Tensors:
        """
        Run one batch in inference mode and return caller-owned output tensors.
        """
        machine = self._require_built()
        self._check_feed(inputs, self.input_nodes, "input")
        machine.reset()
        for name, node in self.input_nodes.items():
            machine.let(node, inputs[name])
        for node in self.loss_required_nodes.values():
            machine.let(node, torch.zeros(node.shape, dtype=node.dtype))
        with torch.no_grad():
            machine.run_all(training=False)
        return {name: machine.value(node).clone().detach() for name, node in self.output_nodes.items()}

    def fit_batch(
        self,
        inputs: Mapping[str, torch.Tensor],
        targets: Mapping[str, torch.Tensor],
        solver: Solver,
    ) -> float:
        """
        One training step on exactly one batch; returns the loss.
        """
        machine = self._require_built()
        assert self.loss_node is not None
        self._check_feed(inputs, self.input_nodes, "input")
        self._check_feed(targets, self.loss_required_nodes, "target")
        machine.reset()
        for name, node in self.input_nodes.items():
            machine.let(node, inputs[name])
        for name, node in self.loss_required_nodes.items():
            machine.let(node, targets[name])
        machine.run_all(training=True, compute_grads=True)
        solver.step(machine.value_grads())
        return _loss_to_float(machine.value(self.loss_node))

    def fit(
        self,
        xs: Mapping[str, torch.Tensor],
        ys: Mapping[str, torch.Tensor],
        solver: Solver,
        config: Optional[FitConfig] = None,
        **options: Any,
    ) -> List[float]:
        """
        Train on in-memory tensors. Rows that do not fill a whole batch are
        dropped each epoch.

        Returns the mean loss of every epoch that ran.
        """
        return self.fit_generator(TensorDataGenerator(dict(xs), dict(ys)), solver, config, **options)

    def fit_generator(
        self,
        generator: TrainingDataGenerator,
        solver: Solver,
        config: Optional[FitConfig] = None,
        **options: Any,
    ) -> List[float]:
        self._require_built()
        if config is None:
            config = FitConfig(**options)
        elif options:
            raise TypeError("pass either a FitConfig or keyword options, not both")
        return Trainer(self, generator, solver, config).run()

    def predict(self, xs: Mapping[str, torch.Tensor]) -> Tensors:
        """
        Predict any number of rows; the last batch is zero-padded and trimmed.
        """
        self._require_built()
        if num_rows(xs) == 0:
            raise ValueError("predict needs at least one input row")
        batches, num_padded = batch_tensors(xs, self.batch_size, zero_pad=True)
        collected: Dict[str, List[torch.Tensor]] = {name: [] for name in self.output_nodes}
        for batch in batches:
            for name, value in self.predict_batch(batch).items():
                collected[name].append(value)
        results: Tensors = {}
        for name, parts in collected.items():
            joined = torch.cat(parts, dim=0)
            results[name] = joined[: joined.shape[0] - num_padded]
        return results

    # --- Parameters ---

    def get_params(self) -> Tensors:
        """Detached copies of every parameter, keyed ``"layer:param"``."""
        params: Tensors = {}
        for layer in self.layers:
            for pname, node in layer.parameters().items():
                assert node.value is not None
                params[f"{layer.name}:{pname}"] = node.value.detach().clone()
        return params

    def set_params(self, params: Mapping[str, torch.Tensor]) -> None:
        """
        Copy values by name. Keys missing on either side are ignored.
        """
        for layer in self.layers:
            for pname, node in layer.parameters().items():
                key = f"{layer.name}:{pname}"
                if key in params:
                    node.assign(params[key])

    def write_params(self, file: FileLike) -> None:
        torch.save(self.get_params(), file)
        logger.debug("wrote parameters to %s", file if isinstance(file, str) else type(file).__name__)

    def read_params(self, file: FileLike) -> None:
        params = torch.load(file, weights_only=True)
        if not isinstance(params, dict):
            raise ValueError(f"checkpoint must hold a dict of tensors, got {type(params).__name__}")
        self.set_params(params)
        logger.debug("read %d parameters", len(params))

    def bind_params_from(self, other: "Model") -> None:
        """
        Alias every same-named parameter to ``other``'s storage.

        After binding, training either model updates both. Binding from several
        models is allowed; later binds win.
        """
        theirs = other._parameter_nodes()
        bound = 0
        for key, node in self._parameter_nodes().items():
            source = theirs.get(key)
            if source is None:
                continue
            assert source.value is not None
            node.bind(source.value)  # type: ignore[arg-type]
            bound += 1
        logger.debug("bound %d parameters", bound)

    def copy_params_from(self, other: "Model") -> None:
        """Copy every same-named parameter value from ``other`` (no aliasing)."""
        self.set_params(other.get_params())

    # --- Introspection ---

    def summary(self) -> str:
        lines: List[str] = ["Inputs:"]
        for name, node in self.input_nodes.items():
            lines.append(f"  {name}: {node.shape} {node.dtype}")
        lines.append("Outputs:")
        for name, node in self.output_nodes.items():
            lines.append(f"  {name}: {node.shape} {node.dtype}")

        rows = [("#", "Name", "Kind", "Output Shape", "Inputs", "Params")]
        total = 0
        for index, layer in enumerate(self.layers):
            count = sum(node.numel() for node in layer.parameters().values())
            total += count
            rows.append(
                (
                    str(index),
                    layer.name,
                    layer.kind,
                    "-" if layer.node is None else str(layer.node.shape),
                    ", ".join(node.name for node in layer.input_nodes) or "-",
                    str(count),
                )
            )
        widths = [max(len(row[col]) for row in rows) for col in range(len(rows[0]))]
        lines.append("Registered Layers:")
        for row in rows:
            lines.append("  " + "  ".join(cell.ljust(width) for cell, width in zip(row, widths)).rstrip())
        lines.append("Stats:")
        lines.append(f"  Layers: {len(self.layers)}")
        lines.append(f"  Trainable parameters: {total}")
        return "\n".join(lines)

    # --- Internal helpers ----------------------------------------------------

    def _require_built(self) -> Machine:
        if not self.built or self.machine is None:
            raise BuildError("model is not built; call build() first")
        return self.machine

    def _check_unique_layer_names(self) -> None:
        duplicates = sorted(name for name, count in Counter(layer.name for layer in self.layers).items() if count > 1)
        if duplicates:
            raise BuildError(f"duplicate layer names: {', '.join(duplicates)}")

    def _parameter_nodes(self) -> Dict[str, Node]:
        return {
            f"{layer.name}:{pname}": node
            for layer in self.layers
            for pname, node in layer.parameters().items()
        }

    @staticmethod
    def _check_feed(given: Mapping[str, torch.Tensor], expected: Mapping[str, Node], what: str) -> None:
        missing = sorted(set(expected) - set(given))
        unknown = sorted(set(given) - set(expected))
        if missing or unknown:
            raise BatchShapeError(
                f"{what} names do not match the model: missing={missing} unknown={unknown}"
            )
        for name, node in expected.items():
            shape = tuple(given[name].shape)
            if shape != node.shape:
                raise BatchShapeError(f"{what} {name!r} has shape {shape}, expected {node.shape}")
