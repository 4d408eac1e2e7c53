"""
Attention Building Blocks
=========================

Concrete layers the recurrent attention cell is assembled from. The cell only
sees the Layer contract; these are the usual pieces plugged into it.

Key Components:
---------------
1. Linear          - affine map W·x + b
2. TanH / Sigmoid  - element-wise activations (backward reads the stored output)
3. Glimpse         - "what + where" network over the composite glimpse input
4. ReinforceNormal - Gaussian location sampler trained with REINFORCE
5. Sequential      - chain of layers sharing one flat parameter/gradient vector
6. ModuleAdapter   - any torch.nn.Module, differentiated with torch.autograd

Glimpse network (Mnih et al., "Recurrent Models of Visual Attention"):

    composite input [n, 2]
        │                       column 0: x  (features, flattened)
        │                       column 1: l  (location, flattened + zero pad)
        ▼
    h = tanh(W_x · x + W_l · l + b)          [hidden, batch]
"""

from typing import Any, Dict, List

import torch
import torch.nn as nn
from torch.nn.utils import parameters_to_vector

from .config import GLIMPSE_LAYOUT
from .layer import Layer, ShapeMismatchError, register_layer, build_layer, layer_state
from .utils import init_linear_xavier, flatten_columns, unflatten_columns


# ============================================================================
# Linear
# ============================================================================

@register_layer
class Linear(Layer):
    """
    Affine layer: output = W · input + b.

    Flat parameter layout: [W (row-major, out x in) | b (out)].
    """

    def __init__(self, in_size: int, out_size: int):
        super().__init__()
        assert in_size > 0, f"in_size must be positive, got {in_size}"
        assert out_size > 0, f"out_size must be positive, got {out_size}"
        self.in_size = in_size
        self.out_size = out_size

        self.weights = torch.zeros(out_size * in_size + out_size)
        init_linear_xavier(self.weight, self.bias)

    @property
    def weight(self) -> torch.Tensor:
        n = self.out_size * self.in_size
        return self.weights[:n].view(self.out_size, self.in_size)

    @property
    def bias(self) -> torch.Tensor:
        n = self.out_size * self.in_size
        return self.weights[n:].view(self.out_size, 1)

    def forward(self, input: torch.Tensor) -> torch.Tensor:
        self.output = self.weight @ input + self.bias
        return self.output

    def backward(self, input: torch.Tensor, gy: torch.Tensor) -> torch.Tensor:
        return self.weight.t() @ gy

    def gradient(self, input: torch.Tensor, error: torch.Tensor) -> None:
        grad = self._ensure_grad()
        n = self.out_size * self.in_size
        grad[:n].view(self.out_size, self.in_size).copy_(error @ input.t())
        grad[n:].copy_(error.sum(dim=1))

    def config(self) -> Dict[str, Any]:
        return {'in_size': self.in_size, 'out_size': self.out_size}


# ============================================================================
# Activations
# ============================================================================

@register_layer
class TanH(Layer):
    """Hyperbolic tangent; backward uses the stored output."""

    def forward(self, input: torch.Tensor) -> torch.Tensor:
        self.output = torch.tanh(input)
        return self.output

    def backward(self, input: torch.Tensor, gy: torch.Tensor) -> torch.Tensor:
        return gy * (1.0 - self.output * self.output)


@register_layer
class Sigmoid(Layer):
    """Logistic sigmoid; backward uses the stored output."""

    def forward(self, input: torch.Tensor) -> torch.Tensor:
        self.output = torch.sigmoid(input)
        return self.output

    def backward(self, input: torch.Tensor, gy: torch.Tensor) -> torch.Tensor:
        return gy * self.output * (1.0 - self.output)


# ============================================================================
# Glimpse
# ============================================================================

@register_layer
class Glimpse(Layer):
    """
    Glimpse network over the two-column composite input.

    Column `feature_col` holds `input_size x batch` features flattened column
    by column; column `location_col` holds `location_size x batch` location
    values flattened the same way, zero-padded to the column length.

    Flat parameter layout: [W_x (hidden x input) | W_l (hidden x location) | b (hidden)].
    """

    def __init__(self, input_size: int, location_size: int, hidden_size: int):
        super().__init__()
        assert input_size > 0 and location_size > 0 and hidden_size > 0, \
            f"Sizes must be positive, got {(input_size, location_size, hidden_size)}"
        self.input_size = input_size
        self.location_size = location_size
        self.hidden_size = hidden_size

        n = hidden_size * (input_size + location_size + 1)
        self.weights = torch.zeros(n)
        init_linear_xavier(self.feature_weight)
        init_linear_xavier(self.location_weight, self.bias)

    # === Parameter views ===

    @property
    def feature_weight(self) -> torch.Tensor:
        n = self.hidden_size * self.input_size
        return self.weights[:n].view(self.hidden_size, self.input_size)

    @property
    def location_weight(self) -> torch.Tensor:
        start = self.hidden_size * self.input_size
        n = self.hidden_size * self.location_size
        return self.weights[start:start + n].view(self.hidden_size, self.location_size)

    @property
    def bias(self) -> torch.Tensor:
        start = self.hidden_size * (self.input_size + self.location_size)
        return self.weights[start:].view(self.hidden_size, 1)

    # === Composite input ===

    def _split(self, input: torch.Tensor):
        """Composite [n, 2] -> features [input, batch], location [location, batch]."""
        if input.dim() != 2 or input.shape[1] != GLIMPSE_LAYOUT.num_cols:
            raise ShapeMismatchError(
                f"Glimpse expects a [n, {GLIMPSE_LAYOUT.num_cols}] composite input, "
                f"got {tuple(input.shape)}")
        n = input.shape[0]
        if n % self.input_size != 0:
            raise ShapeMismatchError(
                f"Composite length {n} is not a multiple of input_size={self.input_size}")
        batch = n // self.input_size
        if self.location_size * batch > n:
            raise ShapeMismatchError(
                f"Location block ({self.location_size} x {batch}) does not fit in {n} rows")

        features = unflatten_columns(input[:, GLIMPSE_LAYOUT.feature_col], self.input_size)
        location = unflatten_columns(
            input[:self.location_size * batch, GLIMPSE_LAYOUT.location_col], self.location_size)
        return features, location

    def forward(self, input: torch.Tensor) -> torch.Tensor:
        features, location = self._split(input)
        self.output = torch.tanh(
            self.feature_weight @ features + self.location_weight @ location + self.bias)
        return self.output

    def backward(self, input: torch.Tensor, gy: torch.Tensor) -> torch.Tensor:
        delta = gy * (1.0 - self.output * self.output)
        d_features = self.feature_weight.t() @ delta
        d_location = self.location_weight.t() @ delta

        g = torch.zeros(input.shape[0], GLIMPSE_LAYOUT.num_cols,
                        dtype=delta.dtype, device=delta.device)
        g[:, GLIMPSE_LAYOUT.feature_col] = flatten_columns(d_features)
        g[:d_location.numel(), GLIMPSE_LAYOUT.location_col] = flatten_columns(d_location)
        return g

    def gradient(self, input: torch.Tensor, error: torch.Tensor) -> None:
        grad = self._ensure_grad()
        features, location = self._split(input)
        delta = error * (1.0 - self.output * self.output)

        n_x = self.hidden_size * self.input_size
        n_l = self.hidden_size * self.location_size
        grad[:n_x].view(self.hidden_size, self.input_size).copy_(delta @ features.t())
        grad[n_x:n_x + n_l].view(self.hidden_size, self.location_size).copy_(delta @ location.t())
        grad[n_x + n_l:].copy_(delta.sum(dim=1))

    def config(self) -> Dict[str, Any]:
        return {
            'input_size': self.input_size,
            'location_size': self.location_size,
            'hidden_size': self.hidden_size,
        }


# ============================================================================
# ReinforceNormal
# ============================================================================

@register_layer
class ReinforceNormal(Layer):
    """
    Gaussian location sampler.

    Training: output ~ N(input, stdev²). Inference (deterministic): output = input.

    Backward ignores the incoming error and returns the REINFORCE term
        reward * (output - mean) / stdev²
    where `reward` is set by whoever scores the episode.
    """

    def __init__(self, stdev: float = 1.0):
        super().__init__()
        assert stdev > 0., f"stdev must be positive, got {stdev}"
        self.stdev = stdev
        self.reward = 0.0
        self.mean = torch.empty(0)

    def forward(self, input: torch.Tensor) -> torch.Tensor:
        self.mean = input.clone()
        if self.deterministic:
            self.output = input.clone()
        else:
            self.output = input + self.stdev * torch.randn_like(input)
        return self.output

    def backward(self, input: torch.Tensor, gy: torch.Tensor) -> torch.Tensor:
        return self.reward * (self.output - self.mean) / (self.stdev ** 2)

    def snapshot(self) -> Any:
        return (self.output.clone(), self.mean.clone())

    def restore(self, state: Any):
        self.output, self.mean = state

    def config(self) -> Dict[str, Any]:
        return {'stdev': self.stdev}


# ============================================================================
# Sequential
# ============================================================================

@register_layer
class Sequential(Layer):
    """
    Chain of layers.

    Children parameters and gradients are views into the container's flat
    vectors (children in order), so binding the container's `grad` to a
    region of a larger buffer binds every child too.
    """

    def __init__(self, *layers: Layer):
        super().__init__()
        assert len(layers) > 0, "Sequential needs at least one layer"
        self.layers: List[Layer] = list(layers)

        self.weights = torch.cat([layer.parameters().reshape(-1) for layer in self.layers])
        self._bind_children()

    def _bind_children(self):
        offset = 0
        for layer in self.layers:
            n = layer.num_parameters
            if n > 0:
                layer.bind_parameters(self.weights[offset:offset + n])
            offset += n

    def bind_parameters(self, view: torch.Tensor):
        super().bind_parameters(view)
        self._bind_children()

    @Layer.grad.setter
    def grad(self, value: torch.Tensor):
        self._grad = value
        if value.numel() != self.weights.numel():
            return
        offset = 0
        for layer in self.layers:
            n = layer.num_parameters
            layer.grad = value[offset:offset + n]
            offset += n

    def _inputs(self, input: torch.Tensor) -> List[torch.Tensor]:
        """Input seen by each child during the last forward."""
        return [input] + [layer.output for layer in self.layers[:-1]]

    def forward(self, input: torch.Tensor) -> torch.Tensor:
        x = input
        for layer in self.layers:
            x = layer.forward(x)
        self.output = x
        return self.output

    def backward(self, input: torch.Tensor, gy: torch.Tensor) -> torch.Tensor:
        error = gy
        for layer, x in zip(reversed(self.layers), reversed(self._inputs(input))):
            error = layer.backward(x, error)
        return error

    def gradient(self, input: torch.Tensor, error: torch.Tensor) -> None:
        self._ensure_grad()
        inputs = self._inputs(input)

        errors = [None] * len(self.layers)
        e = error
        for i in reversed(range(len(self.layers))):
            errors[i] = e
            if i > 0:
                e = self.layers[i].backward(inputs[i], e)

        for layer, x, e in zip(self.layers, inputs, errors):
            layer.gradient(x, e)

    def snapshot(self) -> Any:
        return [layer.snapshot() for layer in self.layers]

    def restore(self, state: Any):
        for layer, s in zip(self.layers, state):
            layer.restore(s)
        self.output = self.layers[-1].output

    def set_deterministic(self, deterministic: bool):
        self.deterministic = deterministic
        for layer in self.layers:
            layer.set_deterministic(deterministic)

    def state_dict(self) -> Dict[str, Any]:
        return {'layers': [layer_state(layer) for layer in self.layers]}

    def load_state_dict(self, state: Dict[str, Any]):
        for layer, s in zip(self.layers, state['layers']):
            layer.load_state_dict(s['state'])

    @classmethod
    def from_state_dict(cls, state: Dict[str, Any]) -> "Sequential":
        return cls(*[build_layer(s['type'], s['state']) for s in state['layers']])

    def __repr__(self) -> str:
        return f"Sequential({', '.join(repr(layer) for layer in self.layers)})"


# ============================================================================
# ModuleAdapter
# ============================================================================

@register_layer
class ModuleAdapter(Layer):
    """
    Wrap a batch-first torch.nn.Module as a Layer.

    The module's parameters are re-pointed at views of one flat vector, so
    `parameters()` is live storage like every other layer. Backward and
    gradient recompute the module on the given input and differentiate it with
    torch.autograd; they never rely on the stored output.
    """

    def __init__(self, module: nn.Module):
        super().__init__()
        self.module = module
        params = list(module.parameters())
        if params:
            self.weights = parameters_to_vector(params).detach().clone()
        self._tie()

    def _tie(self):
        offset = 0
        for p in self.module.parameters():
            n = p.numel()
            p.data = self.weights[offset:offset + n].view_as(p)
            offset += n

    def bind_parameters(self, view: torch.Tensor):
        super().bind_parameters(view)
        self._tie()

    def __setstate__(self, state: Dict[str, Any]):
        # nn.Parameter deep-copies its data, which breaks the tie to `weights`
        self.__dict__.update(state)
        self._tie()

    def forward(self, input: torch.Tensor) -> torch.Tensor:
        with torch.no_grad():
            self.output = self.module(input.t()).t()
        return self.output

    def backward(self, input: torch.Tensor, gy: torch.Tensor) -> torch.Tensor:
        x = input.detach().t().requires_grad_(True)
        with torch.enable_grad():
            out = self.module(x)
            (g,) = torch.autograd.grad(out, x, grad_outputs=gy.t())
        return g.t()

    def gradient(self, input: torch.Tensor, error: torch.Tensor) -> None:
        grad = self._ensure_grad()
        params = list(self.module.parameters())
        if not params:
            return
        with torch.enable_grad():
            out = self.module(input.detach().t())
            grads = torch.autograd.grad(out, params, grad_outputs=error.t(), allow_unused=True)
        flat = torch.cat([
            (g if g is not None else torch.zeros_like(p)).reshape(-1)
            for g, p in zip(grads, params)
        ])
        grad.copy_(flat)

    def config(self) -> Dict[str, Any]:
        return {'module': self.module}

    def __repr__(self) -> str:
        return f"ModuleAdapter({self.module})"
