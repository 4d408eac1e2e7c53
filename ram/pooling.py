"""
Mean Pooling
============

Stateless peer of the attention cell: maps an input grid to a reduced grid
(forward) and spreads errors back over the pooling windows (backward).

Input column layout (one column per batch sample):
    [in_size channels x input_height rows x input_width cols], width fastest

Output size per axis:
    floor mode:   floor((in - kernel) / stride + 1)   incomplete trailing window dropped
    ceiling mode: ceil((in - kernel) / stride + 1)    trailing window kept, averaged
                                                       over its in-bounds cells
"""

import math
from typing import Any, Dict

import torch
import torch.nn.functional as F

from .config import PoolingConfig
from .layer import Layer, ShapeMismatchError, register_layer


def pooled_size(size: int, kernel: int, stride: int, floor: bool = True) -> int:
    """Number of windows along one axis (stride <= kernel)."""
    ratio = (size - kernel) / stride + 1
    return math.floor(ratio) if floor else math.ceil(ratio)


@register_layer
class MeanPooling(Layer):
    """Average over kernel_width x kernel_height windows of every channel."""

    def __init__(
        self,
        kernel_width: int,
        kernel_height: int,
        stride_width: int = 1,
        stride_height: int = 1,
        floor: bool = True,
        input_width: int = 0,
        input_height: int = 0,
    ):
        super().__init__()
        assert kernel_width > 0 and kernel_height > 0, "Kernel must be positive"
        assert stride_width > 0 and stride_height > 0, "Stride must be positive"
        self.kernel_width = kernel_width
        self.kernel_height = kernel_height
        self.stride_width = stride_width
        self.stride_height = stride_height
        self.floor = floor

        # Set by the enclosing network before forward
        self.input_width = input_width
        self.input_height = input_height
        self.output_width = 0
        self.output_height = 0
        self.in_size = 0
        self.batch_size = 0

    @classmethod
    def from_config(cls, config: PoolingConfig, input_width: int = 0, input_height: int = 0):
        return cls(
            config.kernel_width, config.kernel_height,
            config.stride_width, config.stride_height,
            floor=config.floor, input_width=input_width, input_height=input_height,
        )

    def _pool(self, x: torch.Tensor) -> torch.Tensor:
        return F.avg_pool2d(
            x,
            kernel_size=(self.kernel_height, self.kernel_width),
            stride=(self.stride_height, self.stride_width),
            ceil_mode=not self.floor,
            count_include_pad=False,
        )

    def _slices(self, input: torch.Tensor) -> torch.Tensor:
        """[n, batch] -> [batch * in_size, 1, height, width]"""
        return input.t().reshape(
            self.batch_size * self.in_size, 1, self.input_height, self.input_width)

    def forward(self, input: torch.Tensor) -> torch.Tensor:
        area = self.input_width * self.input_height
        if area == 0:
            raise ShapeMismatchError("input_width and input_height must be set before forward")
        if input.dim() != 2 or input.shape[0] % area != 0:
            raise ShapeMismatchError(
                f"Input {tuple(input.shape)} is not a stack of "
                f"{self.input_height}x{self.input_width} channels")
        if self.input_width < self.kernel_width or self.input_height < self.kernel_height:
            raise ShapeMismatchError(
                f"Kernel {self.kernel_height}x{self.kernel_width} larger than "
                f"input {self.input_height}x{self.input_width}")

        self.batch_size = input.shape[1]
        self.in_size = input.shape[0] // area

        pooled = self._pool(self._slices(input))
        self.output_height, self.output_width = pooled.shape[-2:]

        self.output = pooled.reshape(self.batch_size, -1).t()
        return self.output

    def backward(self, input: torch.Tensor, gy: torch.Tensor) -> torch.Tensor:
        mapped_error = gy.t().reshape(
            self.batch_size * self.in_size, 1, self.output_height, self.output_width)

        x = torch.zeros(
            self.batch_size * self.in_size, 1, self.input_height, self.input_width,
            dtype=gy.dtype, device=gy.device, requires_grad=True)
        # Mean pooling is linear, so its vector-Jacobian product does not depend on x
        with torch.enable_grad():
            (g,) = torch.autograd.grad(self._pool(x), x, grad_outputs=mapped_error)
        return g.reshape(self.batch_size, -1).t()

    def config(self) -> Dict[str, Any]:
        return {
            'kernel_width': self.kernel_width,
            'kernel_height': self.kernel_height,
            'stride_width': self.stride_width,
            'stride_height': self.stride_height,
            'floor': self.floor,
            'input_width': self.input_width,
            'input_height': self.input_height,
        }
