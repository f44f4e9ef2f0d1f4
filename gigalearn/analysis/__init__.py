# Analysis module - Logging, metrics, checkpoints
# IMPURE - Has side effects (file I/O, logging)

from .logger import setup_logging, MetricsLogger, ExperimentLogger
from .metrics import AvgTracker, Report, check_policy_health
from .checkpointing import (
    CheckpointManager,
    save_model_set,
    load_model_set,
    get_latest_checkpoint,
    cleanup_old_checkpoints,
)
