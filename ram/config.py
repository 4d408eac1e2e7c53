from dataclasses import dataclass, asdict
from typing import Dict, Any


# ============================================================================
# Glimpse Input Layout
# ============================================================================
# Column layout of the composite input the glimpse module receives each step.
# MUST be consistent between RecurrentAttention (producer) and Glimpse (consumer).

@dataclass(frozen=True)
class GlimpseLayout:
    """
    Composite glimpse input - frozen to prevent accidental modification.

    Structure: [n_elem(input), 2]
        column 0: raw external input, flattened
        column 1: action module output, flattened, zero-padded to n_elem
    """
    feature_col: int = 0
    location_col: int = 1
    num_cols: int = 2


# Global instance - use this everywhere instead of hardcoding 0, 1, 2
GLIMPSE_LAYOUT = GlimpseLayout()


# ============================================================================
# Attention Configuration
# ============================================================================

@dataclass
class AttentionConfig:
    """
    Recurrent attention configuration.

    Sizes:
    - input_size:    feature rows of each external input column
    - hidden_size:   glimpse module output rows; also the width of the zero
                     placeholder the action module sees at step 0 (out_size)
    - location_size: rows proposed by the action module per batch column
    """
    rho: int = 4                  # Unroll horizon
    input_size: int = 16
    hidden_size: int = 8
    location_size: int = 2
    location_stdev: float = 0.1   # ReinforceNormal sampling noise
    deterministic: bool = False   # True = inference, no history recorded

    @property
    def out_size(self) -> int:
        return self.hidden_size

    def describe(self) -> str:
        """Return a one-line summary."""
        mode = "eval" if self.deterministic else "train"
        return (f"rho={self.rho} | in={self.input_size} | hidden={self.hidden_size} | "
                f"loc={self.location_size} (σ={self.location_stdev}) | {mode}")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class PoolingConfig:
    """Mean pooling window configuration."""
    kernel_width: int = 2
    kernel_height: int = 2
    stride_width: int = 2
    stride_height: int = 2
    floor: bool = True            # True = drop incomplete trailing windows


# ============================================================================
# Presets
# ============================================================================

ATTENTION_PRESETS = {
    # Minimal for testing
    "debug": AttentionConfig(rho=2, input_size=4, hidden_size=3, location_size=2),

    # Single step (no recurrence, direct composition)
    "single_step": AttentionConfig(rho=1, input_size=4, hidden_size=2, location_size=2),

    # Default RAM-style setup
    "default": AttentionConfig(),

    # Longer horizon
    "long": AttentionConfig(rho=8, input_size=64, hidden_size=32, location_size=2),

    # Inference-only
    "eval": AttentionConfig(deterministic=True),
}


@dataclass
class DebugConfig:
    """Finite-difference gradient check settings (debug_gradients.py)."""
    eps: float = 1e-6
    atol: float = 1e-5
    batch_sizes: tuple = (1, 3)
    presets: tuple = ("single_step", "debug")
    seed: int = 0
