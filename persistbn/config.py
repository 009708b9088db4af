from dataclasses import dataclass
from enum import Enum
from typing import Optional


# Smallest epsilon the cuDNN batch-norm kernels accept (CUDNN_BN_MIN_EPSILON).
MIN_EPSILON = 1e-5


class BatchNormMode(str, Enum):
    # Statistics per channel, reduced over N, H, W (convolution layers).
    SPATIAL = "spatial"
    # Statistics per (C, H, W) element, reduced over N (fully connected layers).
    PER_ACTIVATION = "per_activation"


@dataclass(frozen=True)
class BatchNormConfig:
    epsilon: float = MIN_EPSILON
    mode: BatchNormMode = BatchNormMode.SPATIAL

    # Exponential average factor for running stats.
    # None -> cumulative moving average, factor = 1 / (1 + forward_count).
    momentum: Optional[float] = None

    # Persistence
    stats_suffix: str = ".pt"

    # Inference with batch statistics (running stats frozen) instead of running stats.
    inference_uses_batch_stats: bool = False

    # Write dx into dy's storage during backward.
    inplace_backward: bool = False

    # Logging
    timing: bool = False
    verbose: bool = True

    def __post_init__(self):
        if not self.epsilon >= MIN_EPSILON:
            raise ValueError(f"epsilon must be >= {MIN_EPSILON}, got {self.epsilon}")
        if self.momentum is not None and not 0.0 <= self.momentum <= 1.0:
            raise ValueError(f"momentum must be in [0, 1], got {self.momentum}")
        # Accept plain strings for the mode ("spatial", "per_activation").
        object.__setattr__(self, "mode", BatchNormMode(self.mode))
