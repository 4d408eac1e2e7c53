import torch
import torch.nn as nn
from typing import Dict


# ============================================================================
# Weight Initialization Utilities
# ============================================================================
# Parameters live in flat vectors; these initialize the [out, in] / [out, 1]
# views carved out of them, in place.

def init_linear_xavier(weight: torch.Tensor, bias: torch.Tensor = None):
    """
    Xavier/Glorot uniform initialization.

    Good for: layers followed by Tanh/Sigmoid, or general purpose.
    """
    nn.init.xavier_uniform_(weight)
    if bias is not None:
        nn.init.zeros_(bias)


def init_linear_normal(weight: torch.Tensor, bias: torch.Tensor = None, std: float = 0.02):
    """
    Normal initialization with small std.

    Good for: location heads, where early proposals should stay near the center.
    """
    nn.init.normal_(weight, mean=0.0, std=std)
    if bias is not None:
        nn.init.zeros_(bias)


# ============================================================================
# Column-Major Flattening
# ============================================================================
# A [rows, batch] matrix is flattened column by column (sample by sample), so
# a flattened input of batch b is b consecutive feature vectors.

def flatten_columns(x: torch.Tensor) -> torch.Tensor:
    """[rows, batch] -> [rows * batch], one column after another."""
    return x.t().reshape(-1)


def unflatten_columns(v: torch.Tensor, rows: int) -> torch.Tensor:
    """[rows * batch] -> [rows, batch]; inverse of flatten_columns."""
    return v.reshape(-1, rows).t()


# ============================================================================
# Gradient Statistics
# ============================================================================

def tensor_stats(t: torch.Tensor) -> Dict[str, float]:
    """Summary statistics for logging (empty tensors report zeros)."""
    if t.numel() == 0:
        return {'norm': 0.0, 'abs_max': 0.0, 'abs_mean': 0.0}
    t = t.detach()
    return {
        'norm': t.norm().item(),
        'abs_max': t.abs().max().item(),
        'abs_mean': t.abs().mean().item(),
    }
