"""
Layer Contract
==============

Every building block of the attention pipeline exposes the same five
operations, so the recurrent attention cell can drive a glimpse module and an
action module without knowing their concrete types:

    forward(input)           -> output        (also stored in layer.output)
    backward(input, gy)      -> input gradient
    gradient(input, error)   -> None          (written in place into layer.grad)
    output_parameter()       -> last output
    parameters()             -> flat parameter vector

Matrix convention: inputs and outputs are [features, batch] tensors.
Parameters and parameter gradients are flat 1-D tensors.

`layer.grad` is plain storage that the owner of a layer may re-point at a view
of a larger buffer. Layers must write their gradient into it in place
(`copy_`), never rebind it, so that such aliases see the result.
"""

from typing import Any, Dict, Type

import torch


# ============================================================================
# Errors
# ============================================================================

class ShapeMismatchError(ValueError):
    """Input cannot hold the composite glimpse layout."""


class HistoryUnderflowError(RuntimeError):
    """Backward/Gradient requested without the recorded state it needs."""


class ZeroHorizonError(ValueError):
    """Unroll horizon must be at least one step."""


class OverlappingPassError(RuntimeError):
    """Forward started while a backward pass is still draining the history."""


# ============================================================================
# Registry (polymorphic persistence)
# ============================================================================

LAYER_REGISTRY: Dict[str, Type["Layer"]] = {}


def register_layer(cls):
    """Class decorator: make a layer type reconstructible from its type tag."""
    LAYER_REGISTRY[cls.__name__] = cls
    return cls


def build_layer(type_name: str, state: Dict[str, Any]) -> "Layer":
    """Rebuild a layer from `{type, state}` without knowing its type ahead of time."""
    if type_name not in LAYER_REGISTRY:
        raise ValueError(f"Unknown layer type: {type_name}. "
                         f"Registered: {sorted(LAYER_REGISTRY)}")
    return LAYER_REGISTRY[type_name].from_state_dict(state)


def layer_state(layer: "Layer") -> Dict[str, Any]:
    """Type-tagged state of a layer, the inverse of `build_layer`."""
    return {'type': type(layer).__name__, 'state': layer.state_dict()}


# ============================================================================
# Base Layer
# ============================================================================

class Layer:
    """
    Base class for all layers.

    Subclasses implement `forward` and `backward`; layers that own parameters
    keep them in the flat `self.weights` vector and implement `gradient`.
    Parameter-free layers inherit the empty defaults.
    """

    def __init__(self):
        self.output = torch.empty(0)
        self.weights = torch.empty(0)
        self._grad = torch.empty(0)
        self.deterministic = False

    # === Contract ===

    def forward(self, input: torch.Tensor) -> torch.Tensor:
        raise NotImplementedError

    def backward(self, input: torch.Tensor, gy: torch.Tensor) -> torch.Tensor:
        raise NotImplementedError

    def gradient(self, input: torch.Tensor, error: torch.Tensor) -> None:
        """Parameter-free layers have nothing to write."""

    def parameters(self) -> torch.Tensor:
        """Live flat parameter storage (optimizers update it in place)."""
        return self.weights

    def bind_parameters(self, view: torch.Tensor):
        """Move parameters into `view` (a slice of a container's flat vector)."""
        view.copy_(self.weights)
        self.weights = view

    def output_parameter(self) -> torch.Tensor:
        return self.output

    @property
    def num_parameters(self) -> int:
        return self.parameters().numel()

    # === Gradient storage ===

    @property
    def grad(self) -> torch.Tensor:
        return self._grad

    @grad.setter
    def grad(self, value: torch.Tensor):
        self._grad = value

    def _ensure_grad(self) -> torch.Tensor:
        """Allocate own gradient storage if nothing has been bound yet."""
        params = self.parameters()
        if self._grad.numel() != params.numel():
            self.grad = torch.zeros_like(params)
        return self._grad

    # === Per-step state (checkpoint / restore) ===

    def snapshot(self) -> Any:
        """Copy of the mutable state backward depends on."""
        return self.output.clone()

    def restore(self, state: Any):
        self.output = state

    def set_deterministic(self, deterministic: bool):
        self.deterministic = deterministic

    # === Persistence ===

    def config(self) -> Dict[str, Any]:
        """Constructor keyword arguments."""
        return {}

    def state_dict(self) -> Dict[str, Any]:
        return {'config': self.config(), 'parameters': self.parameters().clone()}

    def load_state_dict(self, state: Dict[str, Any]):
        params = state.get('parameters')
        if params is not None and params.numel() > 0:
            self.parameters().copy_(params)

    @classmethod
    def from_state_dict(cls, state: Dict[str, Any]) -> "Layer":
        layer = cls(**state['config'])
        layer.load_state_dict(state)
        return layer

    def __repr__(self) -> str:
        args = ', '.join(f"{k}={v}" for k, v in self.config().items())
        return f"{type(self).__name__}({args})"
