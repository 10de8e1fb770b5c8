# stacknet/losses.py

"""
Loss factories.

Each factory captures what it needs and returns a zero-argument ``LossFunc``.
``Model.build`` calls it exactly once; the call adds the loss nodes to the
graph and returns the scalar loss node together with the placeholders (usually
targets) that must be fed on every run.
"""

from __future__ import annotations

from typing import Callable, Dict, List, Sequence, Tuple

import torch

from .errors import BuildError
from .graph import Node
from .layers import Layer

LossFunc = Callable[[], Tuple[Node, Dict[str, Node]]]


def _target_for(target_name: str, output: Node) -> Node:
    return output.graph.placeholder(output.shape, dtype=output.dtype, name=target_name)


def mse_loss(target_name: str, output: Node) -> LossFunc:
    """
    Mean squared error between ``output`` and a new target placeholder.
    """
    def _loss() -> Tuple[Node, Dict[str, Node]]:
        target = _target_for(target_name, output)
        loss = output.graph.apply(
            lambda o, t: torch.mean(torch.square(o - t)),
            [output, target],
            name=f"{target_name}.mse",
        )
        return loss, {target_name: target}
    return _loss


def bce_loss(target_name: str, output: Node) -> LossFunc:
    """
    Binary cross-entropy; ``output`` must lie strictly inside (0, 1).
    """
    def _loss() -> Tuple[Node, Dict[str, Node]]:
        target = _target_for(target_name, output)
        loss = output.graph.apply(
            lambda o, t: -torch.mean(t * torch.log(o) + (1 - t) * torch.log(1 - o)),
            [output, target],
            name=f"{target_name}.bce",
        )
        return loss, {target_name: target}
    return _loss


def cce_loss(target_name: str, output: Node) -> LossFunc:
    """
    Categorical cross-entropy over axis 1; ``output`` rows should sum to 1.
    """
    def _loss() -> Tuple[Node, Dict[str, Node]]:
        target = _target_for(target_name, output)
        loss = output.graph.apply(
            lambda o, t: -torch.mean(torch.sum(t * torch.log(o), dim=1)),
            [output, target],
            name=f"{target_name}.cce",
        )
        return loss, {target_name: target}
    return _loss


def l2_loss(*layers: Layer) -> LossFunc:
    """
    Sum of squared parameters over ``layers``; requires no extra inputs.
    """
    def _loss() -> Tuple[Node, Dict[str, Node]]:
        if not layers:
            raise ValueError("no layers provided to l2_loss")
        params: List[Node] = []
        for layer in layers:
            params.extend(layer.parameters().values())
        if not params:
            raise BuildError(
                "layers given to l2_loss have no parameters; attach them before building"
            )
        loss = params[0].graph.apply(
            lambda *ps: torch.stack([p.square().sum() for p in ps]).sum(),
            params,
            name=f"l2.{'+'.join(layer.name for layer in layers)}",
        )
        return loss, {}
    return _loss


def weighted_additive_loss(losses: Sequence[LossFunc], weights: Sequence[float]) -> LossFunc:
    """
    Linear combination ``sum(weights[i] * losses[i])``.

    Target names required by the combined losses must be unique.
    """
    def _loss() -> Tuple[Node, Dict[str, Node]]:
        if len(losses) != len(weights):
            raise ValueError("number of losses and weights must match")
        if not losses:
            raise ValueError("weighted_additive_loss needs at least one loss")
        loss_nodes: List[Node] = []
        required: Dict[str, Node] = {}
        for loss in losses:
            node, inputs = loss()
            loss_nodes.append(node)
            for name, placeholder in inputs.items():
                if name in required:
                    raise BuildError(f"loss with name {name} already exists")
                required[name] = placeholder
        scale = [float(w) for w in weights]
        total = loss_nodes[0].graph.apply(
            lambda *ls: torch.stack([w * l for w, l in zip(scale, ls)]).sum(),
            loss_nodes,
            name=f"weighted_additive.{'+'.join(node.name for node in loss_nodes)}",
        )
        return total, required
    return _loss
