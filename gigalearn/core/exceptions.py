# Exception hierarchy
# FORBIDDEN: torch, logging, any I/O


class GigaLearnError(Exception):
    """Base exception for trainer errors."""
    pass


class ConfigurationError(GigaLearnError):
    """Raised when a configuration is invalid or incompatible with the call."""
    pass


class DataShapeError(GigaLearnError):
    """Raised when collected arrays disagree in size."""
    pass


class CheckpointError(GigaLearnError):
    """Raised when a checkpoint cannot be saved or loaded."""
    pass

