# Environment module - Collaborator interface and stub
# FORBIDDEN: torch, models.*, training.*

from typing import Any, Callable, Dict

from .base import EnvSet, StepOutput
from .stub import StubEnvSet


ENV_REGISTRY: Dict[str, Callable[..., EnvSet]] = {
    "stub": StubEnvSet,
}


def make_env_set(config: Dict[str, Any]) -> EnvSet:
    """Create an environment set from config.

    Args:
        config: Configuration dictionary with an "env" section

    Returns:
        EnvSet instance
    """
    env_config = dict(config.get("env", {}))
    name = env_config.pop("name", "stub")
    if name not in ENV_REGISTRY:
        raise ValueError(f"Unknown environment: {name}. Available: {list(ENV_REGISTRY.keys())}")
    return ENV_REGISTRY[name](**env_config)
