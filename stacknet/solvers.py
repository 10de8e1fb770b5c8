# stacknet/solvers.py

from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence, Tuple

import torch
import torch.nn as nn

ValueGrads = Sequence[Tuple[nn.Parameter, torch.Tensor]]


class Solver(Protocol):
    """Anything that can update parameters given (parameter, gradient) pairs."""

    def step(self, value_grads: ValueGrads) -> None:
        ...


class TorchSolver:
    """
    Adapter from the (parameter, gradient) step contract to a torch optimizer.

    The optimizer is created lazily on the first step with the parameters seen
    there; parameters that show up later are added as extra param groups, so one
    solver can drive models whose parameters are bound together.
    """

    def __init__(self, factory: Callable[[List[nn.Parameter]], torch.optim.Optimizer]) -> None:
        self._factory = factory
        self.optimizer: Optional[torch.optim.Optimizer] = None
        self._known: Dict[int, nn.Parameter] = {}

    def step(self, value_grads: ValueGrads) -> None:
        if not value_grads:
            return
        self._ensure_optimizer([param for param, _ in value_grads])
        assert self.optimizer is not None
        for param, grad in value_grads:
            param.grad = grad.detach()
        self.optimizer.step()
        for param, _ in value_grads:
            param.grad = None

    def _ensure_optimizer(self, params: List[nn.Parameter]) -> torch.optim.Optimizer:
        fresh: List[nn.Parameter] = []
        for param in params:
            if id(param) not in self._known:
                self._known[id(param)] = param
                fresh.append(param)
        if self.optimizer is None:
            self.optimizer = self._factory(fresh)
        elif fresh:
            self.optimizer.add_param_group({"params": fresh})
        return self.optimizer


class AdamSolver(TorchSolver):
    def __init__(
        self,
        learn_rate: float = 0.001,
        betas: Tuple[float, float] = (0.9, 0.999),
        eps: float = 1e-8,
        weight_decay: float = 0.0,
    ) -> None:
        if learn_rate <= 0:
            raise ValueError("learn_rate must be > 0")
        self.learn_rate = learn_rate
        super().__init__(
            lambda params: torch.optim.Adam(
                params, lr=learn_rate, betas=betas, eps=eps, weight_decay=weight_decay
            )
        )


class SGDSolver(TorchSolver):
    def __init__(self, learn_rate: float = 0.01, momentum: float = 0.0) -> None:
        if learn_rate <= 0:
            raise ValueError("learn_rate must be > 0")
        self.learn_rate = learn_rate
        super().__init__(lambda params: torch.optim.SGD(params, lr=learn_rate, momentum=momentum))


def solver_from_config(cfg: Dict[str, Any]) -> TorchSolver:
    """
    Build a solver from ``{"kind": "adam" | "sgd", **kwargs}``.
    """
    options = dict(cfg)
    kind = str(options.pop("kind", "adam")).lower()
    if kind == "adam":
        return AdamSolver(**options)
    if kind == "sgd":
        return SGDSolver(**options)
    raise ValueError(f"Unsupported solver kind {kind!r}")
