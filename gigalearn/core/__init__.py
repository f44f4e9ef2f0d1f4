# Core module - Pure functions, no side effects
# FORBIDDEN: torch, logging, pathlib, any I/O

from .types import TerminalType, Trajectory
from .exceptions import (
    GigaLearnError,
    ConfigurationError,
    DataShapeError,
    CheckpointError,
)
from .gae import GAEResult, compute_gae, normalize_rewards
from .stats import RunningStat, BatchedRunningStat
