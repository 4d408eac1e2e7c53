from .config import (
    AttentionConfig, PoolingConfig, DebugConfig,
    ATTENTION_PRESETS, GLIMPSE_LAYOUT, GlimpseLayout,
)
from .layer import (
    Layer, register_layer, build_layer, layer_state, LAYER_REGISTRY,
    ShapeMismatchError, HistoryUnderflowError, ZeroHorizonError, OverlappingPassError,
)
from .modules import Linear, TanH, Sigmoid, Glimpse, ReinforceNormal, Sequential, ModuleAdapter
from .history import TimeStepHistory, Snapshot
from .gradients import GradientBuffers
from .recurrent_attention import RecurrentAttention, AttentionCell, build_attention
from .pooling import MeanPooling, pooled_size
from .logging import MetricsLogger, create_logger
