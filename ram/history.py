"""
Time-Step History
=================

Checkpoint log for backpropagation through time.

Sub-modules reuse one mutable output slot across all unrolled steps, so after
forward only the last step's values are left in them. During forward the cell
pushes a snapshot of every owned module after each step; during backward it
pops them in reverse and restores them, so that every value read while
replaying step t equals the value that existed right after forward step t.

Entry order for a horizon of 3 with modules [glimpse, action]:

    push:  g0 a0 g1 a1 g2 a2
    pop:   a2 g2 a1 g1 a0 g0       (strict LIFO)
"""

from typing import Any, Iterator, List, NamedTuple, Sequence

import torch

from .layer import HistoryUnderflowError


class Snapshot(NamedTuple):
    """State of one module right after one forward step."""
    module: str           # Owner name, e.g. 'glimpse' / 'action'
    step: int             # Forward time step
    state: Any            # module.snapshot()
    input: torch.Tensor   # Input the module consumed at this step


class TimeStepHistory:
    """
    LIFO record of per-step module snapshots.

    Usage:
        history.push('glimpse', t, rnn.snapshot(), glimpse_input)
        history.push('action', t, action.snapshot(), action_input)
        ...
        action_snap, glimpse_snap = history.pop_step(['glimpse', 'action'])
    """

    def __init__(self):
        self._entries: List[Snapshot] = []

    def __len__(self) -> int:
        return len(self._entries)

    def __bool__(self) -> bool:
        return bool(self._entries)

    def __iter__(self) -> Iterator[Snapshot]:
        """Oldest entry first (push order)."""
        return iter(list(self._entries))

    def push(self, module: str, step: int, state: Any, input: torch.Tensor):
        self._entries.append(Snapshot(module, step, state, input.detach().clone()))

    def pop(self) -> Snapshot:
        if not self._entries:
            raise HistoryUnderflowError("Time-step history is empty")
        return self._entries.pop()

    def peek(self) -> Snapshot:
        if not self._entries:
            raise HistoryUnderflowError("Time-step history is empty")
        return self._entries[-1]

    def latest(self, module: str) -> Snapshot:
        """Most recent snapshot of `module`, without popping."""
        for snap in reversed(self._entries):
            if snap.module == module:
                return snap
        raise HistoryUnderflowError(f"No snapshot recorded for '{module}'")

    def pop_step(self, modules: Sequence[str]) -> List[Snapshot]:
        """
        Pop one full time step.

        Args:
            modules: module names in push order

        Returns:
            Snapshots in pop order (reverse of `modules`).
        """
        self.require(1, len(modules))
        popped = [self._entries.pop() for _ in modules]

        expected = list(reversed(modules))
        names = [s.module for s in popped]
        if names != expected:
            raise HistoryUnderflowError(
                f"History out of order: expected {expected}, got {names}")
        steps = {s.step for s in popped}
        if len(steps) != 1:
            raise HistoryUnderflowError(f"Snapshots span several steps: {sorted(steps)}")
        return popped

    def require(self, num_steps: int, modules_per_step: int):
        """Fail unless at least `num_steps` full steps are recorded."""
        needed = num_steps * modules_per_step
        if len(self._entries) < needed:
            raise HistoryUnderflowError(
                f"Backward needs {needed} snapshots ({num_steps} steps x "
                f"{modules_per_step} modules), only {len(self._entries)} recorded. "
                f"Was forward run with deterministic=True, or is the pass already consumed?")

    def depth(self, modules_per_step: int) -> int:
        """Number of complete recorded steps."""
        return len(self._entries) // modules_per_step

    def clear(self):
        self._entries.clear()
