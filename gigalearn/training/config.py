# Learner configuration
# Nested YAML sections map onto these dataclasses

from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List

import yaml

from ..core.exceptions import ConfigurationError
from ..models.blocks import ACTIVATIONS
from ..models.model import ModelConfig, OPTIMIZERS


DEVICE_TYPES = ("auto", "cpu", "cuda")


def _model_config_from_dict(data: Dict[str, Any], default: ModelConfig) -> ModelConfig:
    values = asdict(default)
    for key, value in (data or {}).items():
        if key not in values:
            raise ConfigurationError(f"Unknown model config key: {key}")
        values[key] = value
    values["layer_sizes"] = list(values["layer_sizes"])
    return ModelConfig(**values)


def _default_policy() -> ModelConfig:
    return ModelConfig(layer_sizes=[256, 256, 256])


def _default_critic() -> ModelConfig:
    return ModelConfig(layer_sizes=[256, 256, 256])


def _default_shared_head() -> ModelConfig:
    return ModelConfig(layer_sizes=[256], output_layer=False)


@dataclass
class PPOLearnerConfig:
    """PPO hyperparameters and model layouts."""
    ts_per_itr: int = 50_000
    batch_size: int = 50_000
    mini_batch_size: int = 0  # 0 = use batch_size

    # Fold a trailing remainder (< batch_size) into the last batch
    overbatching: bool = True

    max_episode_duration: int = 1800  # In steps

    # Argmax actions; learning is refused in this mode
    deterministic: bool = False

    policy: ModelConfig = field(default_factory=_default_policy)
    critic: ModelConfig = field(default_factory=_default_critic)
    shared_head: ModelConfig = field(default_factory=_default_shared_head)

    epochs: int = 2
    policy_lr: float = 3e-4
    critic_lr: float = 3e-4

    entropy_scale: float = 0.018
    mask_entropy: bool = False

    clip_range: float = 0.2
    policy_temperature: float = 1.0

    gae_lambda: float = 0.95
    gae_gamma: float = 0.99
    reward_clip_range: float = 200.0  # 0 disables

    use_guiding_policy: bool = False
    guiding_policy_path: str = "guiding_policy"
    guiding_strength: float = 0.03

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PPOLearnerConfig":
        config = cls()
        for key, value in (data or {}).items():
            if key in ("policy", "critic", "shared_head"):
                value = _model_config_from_dict(value, getattr(config, key))
            elif key not in _field_names(cls):
                raise ConfigurationError(f"Unknown ppo config key: {key}")
            setattr(config, key, value)
        return config

    def validate(self) -> List[str]:
        errors = []

        if self.ts_per_itr <= 0:
            errors.append(f"ppo.ts_per_itr must be positive, got {self.ts_per_itr}")
        if self.batch_size <= 0:
            errors.append(f"ppo.batch_size must be positive, got {self.batch_size}")
        if self.mini_batch_size < 0:
            errors.append(f"ppo.mini_batch_size must be >= 0, got {self.mini_batch_size}")
        elif self.mini_batch_size > 0 and self.batch_size % self.mini_batch_size != 0:
            errors.append(
                f"ppo.batch_size ({self.batch_size}) must be a multiple of "
                f"ppo.mini_batch_size ({self.mini_batch_size})"
            )
        if self.epochs < 1:
            errors.append(f"ppo.epochs must be >= 1, got {self.epochs}")
        if self.max_episode_duration <= 0:
            errors.append(f"ppo.max_episode_duration must be positive, got {self.max_episode_duration}")
        if self.policy_lr < 0 or self.critic_lr < 0:
            errors.append("ppo learning rates must be >= 0")
        if self.clip_range <= 0:
            errors.append(f"ppo.clip_range must be positive, got {self.clip_range}")
        if self.policy_temperature <= 0:
            errors.append(f"ppo.policy_temperature must be positive, got {self.policy_temperature}")
        if not 0 <= self.gae_gamma <= 1:
            errors.append(f"ppo.gae_gamma must be in [0, 1], got {self.gae_gamma}")
        if not 0 <= self.gae_lambda <= 1:
            errors.append(f"ppo.gae_lambda must be in [0, 1], got {self.gae_lambda}")
        if self.reward_clip_range < 0:
            errors.append(f"ppo.reward_clip_range must be >= 0, got {self.reward_clip_range}")

        for name in ("policy", "critic", "shared_head"):
            model_config: ModelConfig = getattr(self, name)
            if model_config.activation not in ACTIVATIONS:
                errors.append(f"ppo.{name}.activation unknown: {model_config.activation}")
            if model_config.optimizer not in OPTIMIZERS:
                errors.append(f"ppo.{name}.optimizer unknown: {model_config.optimizer}")
            if any(size <= 0 for size in model_config.layer_sizes):
                errors.append(f"ppo.{name}.layer_sizes must all be positive")

        for name in ("policy", "critic"):
            model_config = getattr(self, name)
            if not model_config.output_layer:
                errors.append(f"ppo.{name} must have an output layer")
        if self.shared_head.layer_sizes and self.shared_head.output_layer:
            errors.append("ppo.shared_head must not have an output layer")

        return errors


@dataclass
class TransferLearnConfig:
    """Distillation of an old policy into the current one."""
    lr: float = 3e-4
    epochs: int = 100
    batch_size: int = 50_000
    use_kl_div: bool = False
    loss_exponent: float = 1.0
    loss_scale: float = 1.0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TransferLearnConfig":
        unknown = set(data or {}) - _field_names(cls)
        if unknown:
            raise ConfigurationError(f"Unknown transfer_learn config keys: {sorted(unknown)}")
        return cls(**(data or {}))


@dataclass
class LearnerConfig:
    """Top-level training run configuration."""
    ppo: PPOLearnerConfig = field(default_factory=PPOLearnerConfig)

    device: str = "auto"
    random_seed: int = -1  # -1 = time based

    # Timestep-numbered subfolders, empty disables saving
    checkpoint_folder: str = "checkpoints"
    ts_per_save: int = 10_000_000  # 0 = every iteration
    checkpoints_to_keep: int = 8  # -1 disables cleanup

    standardize_returns: bool = True
    max_return_samples: int = 150

    standardize_obs: bool = False
    min_obs_std: float = 0.1
    max_obs_mean_range: float = 3.0
    max_obs_samples: int = 100

    num_workers: int = 4
    log_dir: str = "outputs"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LearnerConfig":
        """Build config from the "learner" and "ppo" sections of a config dict."""
        config = cls()
        config.ppo = PPOLearnerConfig.from_dict(data.get("ppo", {}))
        for key, value in data.get("learner", {}).items():
            if key not in _field_names(cls) or key == "ppo":
                raise ConfigurationError(f"Unknown learner config key: {key}")
            setattr(config, key, value)
        return config

    def validate(self) -> List[str]:
        errors = self.ppo.validate()

        if self.device not in DEVICE_TYPES:
            errors.append(f"learner.device must be one of {DEVICE_TYPES}, got {self.device}")
        if self.ts_per_save < 0:
            errors.append(f"learner.ts_per_save must be >= 0, got {self.ts_per_save}")
        if self.checkpoints_to_keep < -1 or self.checkpoints_to_keep == 0:
            errors.append(f"learner.checkpoints_to_keep must be -1 or positive, got {self.checkpoints_to_keep}")
        if self.max_return_samples < 0:
            errors.append(f"learner.max_return_samples must be >= 0, got {self.max_return_samples}")
        if self.min_obs_std <= 0:
            errors.append(f"learner.min_obs_std must be positive, got {self.min_obs_std}")
        if self.num_workers < 0:
            errors.append(f"learner.num_workers must be >= 0, got {self.num_workers}")

        return errors

    def check(self) -> None:
        """Raise ConfigurationError listing every problem."""
        errors = self.validate()
        if errors:
            raise ConfigurationError("Invalid configuration:\n  " + "\n  ".join(errors))


def _field_names(cls) -> set:
    return {f.name for f in fields(cls)}


def load_config(config_path: Path) -> Dict[str, Any]:
    """Load configuration from YAML file.

    Args:
        config_path: Path to config file

    Returns:
        Configuration dictionary
    """
    with open(config_path) as f:
        config = yaml.safe_load(f)
    return config or {}


def apply_overrides(config: Dict[str, Any], overrides: List[str]) -> Dict[str, Any]:
    """Apply command-line overrides to config.

    Args:
        config: Base configuration
        overrides: List of "key.subkey=value" strings

    Returns:
        Modified configuration
    """
    for override in overrides:
        if "=" not in override:
            raise ConfigurationError(f"Invalid override format: {override}. Expected key=value")

        key, value = override.split("=", 1)
        keys = key.split(".")

        # Navigate to nested key
        d = config
        for k in keys[:-1]:
            if k not in d or d[k] is None:
                d[k] = {}
            d = d[k]

        d[keys[-1]] = _parse_value(value)

    return config


def _parse_value(value: str) -> Any:
    try:
        return int(value)
    except ValueError:
        pass
    try:
        return float(value)
    except ValueError:
        pass
    if value.lower() in ("true", "false"):
        return value.lower() == "true"
    if value.startswith("[") and value.endswith("]"):
        return yaml.safe_load(value)
    return value
