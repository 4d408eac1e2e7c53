"""
Attention Gradient Buffers
==========================

Two flat vectors shared by the glimpse and action modules:

    intermediate: [ glimpse region | action region ]   per-step contributions
    accumulator:  [ glimpse region | action region ]   sum over all rho steps

Regions are views (no copies). `bind` points each module's `grad` at its
intermediate region, so a module's `gradient()` writes straight into the
shared vector. Region offsets come from the modules' parameter counts and are
fixed once allocated; `reset` is the only way to re-size.
"""

from typing import List, Optional, Sequence

import torch

from .layer import HistoryUnderflowError, Layer


class GradientBuffers:
    """Owned contiguous storage plus non-owning per-module region views."""

    def __init__(self):
        self.intermediate = torch.empty(0)
        self.accumulator = torch.empty(0)
        self.sizes: List[int] = []
        self._offsets: List[int] = []

    @property
    def is_allocated(self) -> bool:
        return bool(self.sizes)

    @property
    def total_size(self) -> int:
        return sum(self.sizes)

    def allocate(
        self,
        sizes: Sequence[int],
        dtype: Optional[torch.dtype] = None,
        device: Optional[torch.device] = None,
    ) -> bool:
        """
        Allocate both buffers for the given region sizes (in region order).

        Returns:
            True if storage was created, False if it already existed.
        """
        sizes = [int(s) for s in sizes]
        if self.is_allocated:
            if sizes != self.sizes:
                raise ValueError(
                    f"Gradient buffers already sized {self.sizes}, got {sizes}; "
                    f"call reset() before re-allocating")
            return False

        total = sum(sizes)
        self.intermediate = torch.zeros(total, dtype=dtype, device=device)
        self.accumulator = torch.zeros(total, dtype=dtype, device=device)
        self.sizes = sizes
        self._offsets = [sum(sizes[:i]) for i in range(len(sizes))]
        return True

    def reset(self):
        """Drop storage (sub-modules were rebuilt)."""
        self.intermediate = torch.empty(0)
        self.accumulator = torch.empty(0)
        self.sizes = []
        self._offsets = []

    def region(self, index: int, which: str = 'intermediate') -> torch.Tensor:
        """View of region `index` in the intermediate or accumulator buffer."""
        if not self.is_allocated:
            raise HistoryUnderflowError("Gradient buffers are not allocated yet")
        if which == 'intermediate':
            buffer = self.intermediate
        elif which == 'accumulator':
            buffer = self.accumulator
        else:
            raise ValueError(f"Invalid buffer: {which}. Use 'intermediate' or 'accumulator'.")
        start = self._offsets[index]
        return buffer[start:start + self.sizes[index]]

    def bind(self, modules: Sequence[Layer]):
        """Alias each module's gradient storage to its intermediate region."""
        for i, module in enumerate(modules):
            module.grad = self.region(i, 'intermediate')

    def zero_intermediate(self):
        self.intermediate.zero_()

    def zero_accumulator(self):
        self.accumulator.zero_()

    def accumulate(self):
        """Fold the current per-step contributions into the running sum."""
        self.accumulator += self.intermediate

    def scatter(self, modules: Sequence[Layer]):
        """
        Copy accumulator regions into each module's own gradient storage.

        Modules end up with fresh storage (not aliases), so optimizers see
        the summed gradient through their native `grad`.
        """
        for i, module in enumerate(modules):
            if self.sizes[i] == 0:
                continue
            module.grad = self.region(i, 'accumulator').clone()
