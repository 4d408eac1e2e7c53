"""
TensorBoard Logging Utilities
=============================

Clean logging interface for the attention cell's forward/backward state.
"""

from typing import Dict, Optional
from torch.utils.tensorboard import SummaryWriter

from .utils import tensor_stats


class MetricsLogger:
    """
    Clean interface for logging attention-cell metrics to TensorBoard.

    Usage:
        logger = MetricsLogger(writer)
        logger.log_forward(step, cell)
        logger.log_backward(step, cell, input_grad)
        logger.log_gradient_check(step, results)
    """

    def __init__(self, writer: Optional[SummaryWriter] = None):
        self.writer = writer

    def log_forward(self, step: int, cell):
        """Log per-forward state: history depth and output magnitude."""
        if self.writer is None:
            return

        self._log('Forward/history_entries', len(cell.history), step)
        self._log('Forward/pending_steps', cell.pending_steps, step)
        self._log('Forward/rho', cell.rho, step)
        self._log('Forward/output_norm', tensor_stats(cell.output)['norm'], step)

    def log_backward(self, step: int, cell, input_grad=None):
        """Log per-region gradient statistics after (part of) a backward pass."""
        if self.writer is None:
            return

        self._log('Backward/progress', cell.backward_step / cell.rho, step)
        self._log('Backward/history_entries', len(cell.history), step)

        if cell.buffers.is_allocated:
            for i, name in enumerate(('glimpse', 'action')):
                stats = tensor_stats(cell.buffers.region(i, 'accumulator'))
                self._log(f'Gradient/{name}_norm', stats['norm'], step)
                self._log(f'Gradient/{name}_abs_max', stats['abs_max'], step)
            self._log('Gradient/total_norm', tensor_stats(cell.attention_gradient)['norm'], step)

        if input_grad is not None:
            self._log('Gradient/input_norm', tensor_stats(input_grad)['norm'], step)

    def log_gradient_check(self, step: int, results: Dict[str, float]):
        """Log finite-difference comparison errors (debug_gradients.py)."""
        if self.writer is None:
            return
        for key, value in results.items():
            self._log(f'GradCheck/{key}', value, step)

    def log_scalar(self, tag: str, value, step: int):
        self._log(tag, value, step)

    def close(self):
        """Close the writer."""
        if self.writer is not None:
            self.writer.close()

    def _log(self, tag: str, value, step: int):
        """Helper to log a single scalar (skips None values)."""
        if value is not None and self.writer is not None:
            self.writer.add_scalar(tag, value, step)


def create_logger(log_dir) -> MetricsLogger:
    """Create a MetricsLogger with a SummaryWriter."""
    writer = SummaryWriter(log_dir)
    return MetricsLogger(writer)
