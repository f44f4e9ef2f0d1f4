# Pytest configuration and fixtures

import pytest
import numpy as np
import torch
from pathlib import Path
import tempfile
import yaml

from gigalearn.env.stub import StubEnvSet
from gigalearn.models.model import ModelConfig
from gigalearn.training.config import LearnerConfig, PPOLearnerConfig
from gigalearn.training.experience import ExperienceTensors


@pytest.fixture
def seed():
    """Fixed seed for reproducibility."""
    return 42


@pytest.fixture
def set_seed(seed):
    """Set all random seeds."""
    np.random.seed(seed)
    torch.manual_seed(seed)
    if torch.cuda.is_available():
        torch.cuda.manual_seed(seed)


@pytest.fixture
def device():
    """Get test device (CPU for CI)."""
    return torch.device("cpu")


@pytest.fixture
def obs_size():
    """Standard observation width."""
    return 8


@pytest.fixture
def num_actions():
    """Standard discrete action count."""
    return 4


@pytest.fixture
def num_rows():
    """Standard rollout size for tests."""
    return 64


@pytest.fixture
def ppo_config():
    """Small PPO configuration that trains quickly on CPU."""
    return PPOLearnerConfig(
        ts_per_itr=64,
        batch_size=32,
        mini_batch_size=16,
        epochs=2,
        policy=ModelConfig(layer_sizes=[16, 16]),
        critic=ModelConfig(layer_sizes=[16, 16]),
        shared_head=ModelConfig(layer_sizes=[16], output_layer=False),
        max_episode_duration=20,
    )


@pytest.fixture
def experience(num_rows, obs_size, num_actions, set_seed):
    """Random but well-formed experience with valid log probs."""
    masks = torch.ones(num_rows, num_actions, dtype=torch.uint8)
    masks[::3, 0] = 0
    actions = torch.randint(1, num_actions, (num_rows,))
    return ExperienceTensors(
        states=torch.randn(num_rows, obs_size),
        actions=actions,
        log_probs=torch.full((num_rows,), float(np.log(1.0 / num_actions))),
        target_values=torch.randn(num_rows),
        action_masks=masks,
        advantages=torch.randn(num_rows),
    )


@pytest.fixture
def stub_env_set(obs_size, num_actions):
    env_set = StubEnvSet(
        num_envs=4,
        agents_per_env=2,
        obs_size=obs_size,
        num_actions=num_actions,
        length=6,
        max_steps=15,
        seed=0,
    )
    yield env_set
    env_set.close()


@pytest.fixture
def config():
    """Standard test configuration."""
    return {
        "experiment": {
            "name": "test",
            "log_level": "WARNING",
            "iterations": 2,
        },
        "env": {
            "name": "stub",
            "num_envs": 4,
            "agents_per_env": 2,
            "obs_size": 8,
            "num_actions": 4,
            "length": 6,
            "max_steps": 15,
            "seed": 0,
            "num_workers": 0,
        },
        "learner": {
            "device": "cpu",
            "random_seed": 42,
            "checkpoint_folder": "",
            "ts_per_save": 0,
            "checkpoints_to_keep": 2,
            "standardize_returns": True,
            "standardize_obs": True,
            "num_workers": 2,
        },
        "ppo": {
            "ts_per_itr": 64,
            "batch_size": 32,
            "mini_batch_size": 16,
            "epochs": 2,
            "max_episode_duration": 20,
            "policy": {"layer_sizes": [16, 16]},
            "critic": {"layer_sizes": [16, 16]},
            "shared_head": {"layer_sizes": [16]},
        },
    }


@pytest.fixture
def learner_config(config, temp_dir):
    """LearnerConfig built from the test config, saving under temp_dir."""
    learner_config = LearnerConfig.from_dict(config)
    learner_config.checkpoint_folder = str(temp_dir / "checkpoints")
    return learner_config


@pytest.fixture
def temp_dir():
    """Create temporary directory for test outputs."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def config_file(config, temp_dir):
    """Create temporary config file."""
    config_path = temp_dir / "config.yaml"
    with open(config_path, "w") as f:
        yaml.dump(config, f)
    return config_path
