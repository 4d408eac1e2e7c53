"""
Recurrent Attention
===================

Drives a glimpse (recurrent) module and an action (location) module through a
fixed horizon of rho unrolled steps and backpropagates through time.

Forward, step t = 0 .. rho-1:

    action_in  = zeros[out_size, batch]          if t == 0
               = glimpse.output                  otherwise
    action.forward(action_in)
                          ┌──────────────┬───────────────────────┐
    glimpse_in [n, 2]  =  │ input (flat) │ action.output (flat)  │
                          │              │ + zero padding        │
                          └──────────────┴───────────────────────┘
    glimpse.forward(glimpse_in)
    history.push(glimpse), history.push(action)      (training only)

    output = glimpse.output after step rho-1

Backward, backward_step = 0 .. rho-1 (time step rho-1-backward_step):

    error      = gy                  if backward_step == 0
               = action_delta        otherwise
    restore action, glimpse snapshots (LIFO)
    action_delta = action.backward(...)
    rnn_delta    = glimpse.backward(glimpse_in_t, error)
    g           += rnn_delta[:, location column]
    intermediate = per-step parameter gradients (aliased into the modules)
    accumulator += intermediate

Backward progress is layer state: every call resumes from `backward_step`, so
the unroll can be consumed in several calls (`steps=`).
"""

import copy
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import torch

from .config import GLIMPSE_LAYOUT, AttentionConfig
from .gradients import GradientBuffers
from .history import Snapshot, TimeStepHistory
from .layer import (
    HistoryUnderflowError, Layer, OverlappingPassError, ShapeMismatchError,
    ZeroHorizonError, build_layer, layer_state, register_layer,
)
from .modules import Glimpse, Linear, ReinforceNormal, Sequential
from .utils import flatten_columns, init_linear_normal, unflatten_columns


# Owned modules, in history push order and gradient region order
MODULE_NAMES = ('glimpse', 'action')


@register_layer
class RecurrentAttention(Layer):
    """
    Recurrent attention cell.

    Owns private copies of both sub-modules, the time-step history and the
    shared gradient buffers. Exposes the same Layer contract as its
    sub-modules.

    Args:
        out_size: rows of the zero placeholder fed to the action module at
                  step 0, i.e. the width of the action module's step input
        rnn:      glimpse/recurrent module prototype (copied)
        action:   action/location module prototype (copied)
        rho:      unroll horizon, >= 1
    """

    def __init__(self, out_size: int, rnn: Layer, action: Layer, rho: int):
        super().__init__()
        if rho < 1:
            raise ZeroHorizonError(f"rho must be >= 1, got {rho}")
        assert out_size > 0, f"out_size must be positive, got {out_size}"

        self.out_size = out_size
        self.rho = rho
        self.rnn_module = copy.deepcopy(rnn)
        self.action_module = copy.deepcopy(action)

        # === Step counters ===
        self.forward_step = 0
        self.backward_step = 0

        # === Lazily materialized state ===
        self.initial_input = torch.empty(0)
        self.history = TimeStepHistory()
        self.buffers = GradientBuffers()

        # === Per-step scratch ===
        self.action_error = torch.empty(0)
        self.action_delta = torch.empty(0)
        self.recurrent_error = torch.empty(0)
        self.rnn_delta = torch.empty(0)
        self.input_gradient = torch.empty(0)

        # One flat parameter vector: [glimpse | action]
        self.weights = torch.cat([m.parameters().reshape(-1) for m in self.network])
        self._bind_modules()

    def _bind_modules(self):
        offset = 0
        for module in self.network:
            n = module.num_parameters
            if n > 0:
                module.bind_parameters(self.weights[offset:offset + n])
            offset += n

    def bind_parameters(self, view: torch.Tensor):
        super().bind_parameters(view)
        self._bind_modules()

    @property
    def network(self) -> List[Layer]:
        return [self.rnn_module, self.action_module]

    @property
    def attention_gradient(self) -> torch.Tensor:
        """Time-summed parameter gradient, [glimpse | action]."""
        return self.buffers.accumulator

    @property
    def intermediate_gradient(self) -> torch.Tensor:
        return self.buffers.intermediate

    @property
    def pending_steps(self) -> int:
        """Recorded steps still waiting for backward."""
        return self.history.depth(len(MODULE_NAMES))

    # ========================================================================
    # Forward
    # ========================================================================

    def _glimpse_input(self, input: torch.Tensor) -> torch.Tensor:
        """Composite [n_elem, 2]: input | action output (zero-padded)."""
        location = self.action_module.output
        if location.numel() > input.numel():
            raise ShapeMismatchError(
                f"Action output ({location.numel()} values) does not fit in the "
                f"location column of length {input.numel()}")

        glimpse_input = input.new_zeros(input.numel(), GLIMPSE_LAYOUT.num_cols)
        glimpse_input[:, GLIMPSE_LAYOUT.feature_col] = flatten_columns(input)
        glimpse_input[:location.numel(), GLIMPSE_LAYOUT.location_col] = flatten_columns(location)
        return glimpse_input

    def forward(self, input: torch.Tensor) -> torch.Tensor:
        """
        Unroll rho glimpse/action steps.

        Args:
            input: [features, batch]

        Returns:
            Glimpse module output after the last step.
        """
        if input.dim() != 2:
            raise ShapeMismatchError(
                f"Expected a [features, batch] input, got shape {tuple(input.shape)}")
        # Counters restored from a checkpoint carry no history; only a recorded
        # pass can be left unfinished
        if self.history and 0 < self.backward_step < self.rho:
            raise OverlappingPassError(
                f"Backward pass is at step {self.backward_step}/{self.rho}; "
                f"finish it before starting a new forward pass")

        # An earlier forward whose history was never consumed is discarded
        self.history.clear()

        batch_size = input.shape[1]
        if (self.initial_input.shape != (self.out_size, batch_size)
                or self.initial_input.dtype != input.dtype
                or self.initial_input.device != input.device):
            self.initial_input = input.new_zeros(self.out_size, batch_size)

        for module in self.network:
            module.set_deterministic(self.deterministic)

        for step in range(self.rho):
            self.forward_step = step
            if step == 0:
                action_input = self.initial_input
            else:
                action_input = self.rnn_module.output
            self.action_module.forward(action_input)

            glimpse_input = self._glimpse_input(input)
            self.rnn_module.forward(glimpse_input)

            # Save module state when training
            if not self.deterministic:
                self.history.push('glimpse', step, self.rnn_module.snapshot(), glimpse_input)
                self.history.push('action', step, self.action_module.snapshot(), action_input)

        self.output = self.rnn_module.output

        self.forward_step = 0
        self.backward_step = 0
        return self.output

    # ========================================================================
    # Backward
    # ========================================================================

    def backward(
        self,
        input: torch.Tensor,
        gy: torch.Tensor,
        steps: Optional[int] = None,
    ) -> torch.Tensor:
        """
        Backpropagate through the unrolled steps.

        Args:
            input: the forward input [features, batch]
            gy:    gradient w.r.t. the forward output
            steps: consume at most this many steps (None = all remaining)

        Returns:
            Gradient w.r.t. `input`, summed over the steps consumed so far in
            this pass.
        """
        if self.backward_step >= self.rho:
            raise HistoryUnderflowError(
                f"All {self.rho} steps of this pass are already consumed; run forward first")

        remaining = self.rho - self.backward_step
        if steps is not None:
            if steps < 1:
                raise ValueError(f"steps must be positive, got {steps}")
            remaining = min(steps, remaining)
        self.history.require(remaining, len(MODULE_NAMES))

        # Validate before anything is popped, so a rejected call can be retried
        recorded = self.history.peek().input.shape[0]
        if input.numel() != recorded:
            raise ShapeMismatchError(
                f"Backward input has {input.numel()} values, "
                f"forward recorded {recorded}")

        if not self.buffers.is_allocated and self.backward_step == 0:
            params = self.parameters()
            self.buffers.allocate(
                [m.num_parameters for m in self.network],
                dtype=params.dtype, device=params.device,
            )
            self.action_error = torch.zeros_like(self.action_module.output)

        if self.backward_step == 0:
            # Batch size may have changed since allocation
            if self.action_error.shape != self.action_module.output.shape:
                self.action_error = torch.zeros_like(self.action_module.output)
            self.buffers.zero_accumulator()

        # Re-alias on every call: gradient() between partial calls scatters
        # fresh storage into the modules
        self.buffers.bind(self.network)

        for _ in range(remaining):
            if self.backward_step == 0:
                self.recurrent_error = gy
            else:
                self.recurrent_error = self.action_delta

            action_snap, glimpse_snap = self.history.pop_step(MODULE_NAMES)
            self.action_module.restore(action_snap.state)
            self.rnn_module.restore(glimpse_snap.state)

            if self.backward_step == self.rho - 1:
                self.action_delta = self.action_module.backward(
                    self.action_module.output, self.action_error)
            else:
                self.action_delta = self.action_module.backward(
                    self.initial_input, self.action_error)

            self.rnn_delta = self.rnn_module.backward(glimpse_snap.input, self.recurrent_error)
            if self.rnn_delta.shape[0] != input.numel():
                raise ShapeMismatchError(
                    f"Glimpse delta has {self.rnn_delta.shape[0]} rows, "
                    f"input has {input.numel()} values")

            location_delta = unflatten_columns(
                self.rnn_delta[:, GLIMPSE_LAYOUT.location_col], input.shape[0])
            if self.backward_step == 0:
                self.input_gradient = location_delta.clone()
            else:
                self.input_gradient += location_delta

            self._intermediate_gradient(action_snap, glimpse_snap)
            self.backward_step += 1

        return self.input_gradient

    def _intermediate_gradient(self, action_snap: Snapshot, glimpse_snap: Snapshot):
        """Per-step parameter gradients, folded into the accumulator."""
        self.buffers.zero_intermediate()
        self.action_module.gradient(action_snap.input, self.action_error)
        self.rnn_module.gradient(glimpse_snap.input, self.recurrent_error)
        self.buffers.accumulate()

    # ========================================================================
    # Gradient
    # ========================================================================

    def gradient(self, input: torch.Tensor = None, error: torch.Tensor = None) -> None:
        """Copy the accumulated gradient into each sub-module's own storage."""
        if not self.buffers.is_allocated:
            raise HistoryUnderflowError(
                "Attention gradient is not allocated; run backward first")
        self.buffers.scatter(self.network)
        if self._grad.numel() == self.num_parameters:
            self._grad.copy_(self.buffers.accumulator)

    @property
    def grad(self) -> torch.Tensor:
        """Bound gradient storage if a container set one, else the accumulator."""
        if self._grad.numel() == self.num_parameters:
            return self._grad
        return self.buffers.accumulator

    @grad.setter
    def grad(self, value: torch.Tensor):
        # Target for gradient(), e.g. a slice of an enclosing Sequential
        self._grad = value

    def set_deterministic(self, deterministic: bool):
        self.deterministic = deterministic
        for module in self.network:
            module.set_deterministic(deterministic)

    # ========================================================================
    # Persistence
    # ========================================================================

    def config(self) -> Dict[str, Any]:
        return {'out_size': self.out_size, 'rho': self.rho}

    def state_dict(self) -> Dict[str, Any]:
        return {
            'rho': self.rho,
            'out_size': self.out_size,
            'forward_step': self.forward_step,
            'backward_step': self.backward_step,
            'rnn_module': layer_state(self.rnn_module),
            'action_module': layer_state(self.action_module),
        }

    def load_state_dict(self, state: Dict[str, Any]):
        self.forward_step = state['forward_step']
        self.backward_step = state['backward_step']
        self.rnn_module.load_state_dict(state['rnn_module']['state'])
        self.action_module.load_state_dict(state['action_module']['state'])

    @classmethod
    def from_state_dict(cls, state: Dict[str, Any]) -> "RecurrentAttention":
        rnn = build_layer(state['rnn_module']['type'], state['rnn_module']['state'])
        action = build_layer(state['action_module']['type'], state['action_module']['state'])
        cell = cls(state['out_size'], rnn, action, state['rho'])
        cell.forward_step = state['forward_step']
        cell.backward_step = state['backward_step']
        return cell

    def save(self, path: Union[str, Path]):
        torch.save(self.state_dict(), path)

    @classmethod
    def load(cls, path: Union[str, Path]) -> "RecurrentAttention":
        # Wrapped nn.Modules are pickled whole
        return cls.from_state_dict(torch.load(path, weights_only=False))

    def __repr__(self) -> str:
        return (f"RecurrentAttention(out_size={self.out_size}, rho={self.rho},\n"
                f"  glimpse={self.rnn_module},\n  action={self.action_module})")


AttentionCell = RecurrentAttention


def build_attention(config: AttentionConfig) -> RecurrentAttention:
    """
    Standard RAM pairing:
        glimpse = Glimpse(input, location -> hidden)
        action  = Linear(hidden -> location) + ReinforceNormal(stdev)
    """
    glimpse = Glimpse(config.input_size, config.location_size, config.hidden_size)
    location_head = Linear(config.hidden_size, config.location_size)
    init_linear_normal(location_head.weight, location_head.bias)
    action = Sequential(location_head, ReinforceNormal(config.location_stdev))
    cell = RecurrentAttention(config.out_size, glimpse, action, config.rho)
    cell.deterministic = config.deterministic
    return cell
