#!/usr/bin/env python3
"""Training entry point for GigaLearn."""

import argparse
import logging
import random
import sys
from pathlib import Path

import numpy as np
import torch

# Add repo root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from gigalearn.analysis.logger import ExperimentLogger
from gigalearn.env import make_env_set
from gigalearn.training.config import LearnerConfig, apply_overrides, load_config
from gigalearn.training.trainer import Learner


def set_global_seed(seed: int) -> int:
    """Set all random seeds for reproducibility.

    Args:
        seed: Random seed

    Returns:
        The seed used
    """
    random.seed(seed)
    np.random.seed(seed)
    torch.manual_seed(seed)

    if torch.cuda.is_available():
        torch.cuda.manual_seed_all(seed)

    return seed


def main():
    parser = argparse.ArgumentParser(description="Train a PPO agent with GigaLearn")
    parser.add_argument(
        "--config",
        type=Path,
        default=Path("configs/base.yaml"),
        help="Path to configuration file",
    )
    parser.add_argument(
        "--device",
        type=str,
        choices=["auto", "cpu", "cuda"],
        default=None,
        help="Device to use (overrides config)",
    )
    parser.add_argument(
        "--iterations",
        type=int,
        default=None,
        help="Number of training iterations (overrides config)",
    )
    parser.add_argument(
        "--override",
        action="append",
        default=[],
        help="Config overrides in format key.subkey=value",
    )
    parser.add_argument(
        "--experiment-name",
        type=str,
        default=None,
        help="Experiment name (overrides config)",
    )

    args = parser.parse_args()

    config = load_config(args.config)
    config.setdefault("experiment", {})
    config.setdefault("learner", {})

    if args.override:
        config = apply_overrides(config, args.override)

    if args.device:
        config["learner"]["device"] = args.device

    if args.iterations is not None:
        config["experiment"]["iterations"] = args.iterations

    if args.experiment_name:
        config["experiment"]["name"] = args.experiment_name

    experiment_name = config["experiment"].get("name", "default")
    exp_logger = ExperimentLogger(
        experiment_name,
        base_dir=Path(config["learner"].get("log_dir", "outputs")),
        level=config["experiment"].get("log_level", "INFO"),
    )

    # Checkpoints default to the run directory
    config["learner"].setdefault("checkpoint_folder", str(exp_logger.checkpoints_dir))
    exp_logger.save_config(config)

    learner_config = LearnerConfig.from_dict(config)

    logger = logging.getLogger("gigalearn")
    logger.info(f"Starting experiment: {experiment_name}")

    if learner_config.random_seed != -1:
        set_global_seed(learner_config.random_seed)
        logger.info(f"Seed: {learner_config.random_seed}")

    env_set = make_env_set(config)
    learner = Learner(learner_config, env_set, experiment=exp_logger)

    try:
        learner.train(config["experiment"].get("iterations"))
        logger.info("Training complete")
    except KeyboardInterrupt:
        logger.info("Training interrupted by user")
    finally:
        if learner.checkpoints is not None:
            learner.save()

        exp_logger.close()

        learner.close()
        env_set.close()

    logger.info("Done")


if __name__ == "__main__":
    main()
