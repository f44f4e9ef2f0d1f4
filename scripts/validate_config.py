#!/usr/bin/env python3
"""Validate configuration file."""

import argparse
import sys
from pathlib import Path

# Add repo root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from gigalearn.core.exceptions import ConfigurationError
from gigalearn.env import ENV_REGISTRY
from gigalearn.training.config import LearnerConfig, load_config


def validate_config(config: dict) -> list:
    """Validate configuration.

    Args:
        config: Configuration dictionary

    Returns:
        List of validation errors (empty if valid)
    """
    errors = []

    # Required sections
    for section in ["env", "learner", "ppo"]:
        if section not in config:
            errors.append(f"Missing required section: {section}")

    if "env" in config:
        env_name = config["env"].get("name", "stub")
        if env_name not in ENV_REGISTRY:
            errors.append(f"env.name must be one of {list(ENV_REGISTRY.keys())}, got '{env_name}'")

    iterations = config.get("experiment", {}).get("iterations")
    if iterations is not None and iterations <= 0:
        errors.append(f"experiment.iterations must be positive or null, got {iterations}")

    try:
        learner_config = LearnerConfig.from_dict(config)
    except (ConfigurationError, TypeError) as e:
        errors.append(str(e))
        return errors

    errors.extend(learner_config.validate())
    return errors


def main():
    parser = argparse.ArgumentParser(description="Validate configuration file")
    parser.add_argument(
        "config",
        type=Path,
        help="Path to configuration file",
    )

    args = parser.parse_args()

    if not args.config.exists():
        print(f"Error: Config file not found: {args.config}")
        sys.exit(1)

    config = load_config(args.config)

    errors = validate_config(config)

    if errors:
        print("Configuration validation failed:")
        for error in errors:
            print(f"  - {error}")
        sys.exit(1)
    else:
        print("Configuration is valid")
        sys.exit(0)


if __name__ == "__main__":
    main()
