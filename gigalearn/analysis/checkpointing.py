# Checkpoint save/load utilities
# Layout: <checkpoint_folder>/<timesteps>/{RUNNING_STATS.json, <NAME>.pt, <NAME>_OPTIM.pt}

import json
import shutil
import torch
from pathlib import Path
from typing import Dict, Any, List, Optional
import logging

from ..core.exceptions import CheckpointError
from ..models.model import Model, ModelSet

logger = logging.getLogger(__name__)


STATS_FILE_NAME = "RUNNING_STATS.json"


def _atomic_save(obj: Any, path: Path) -> None:
    # Save to temporary file first, then rename
    temp_path = path.with_suffix(".tmp")
    torch.save(obj, temp_path)
    temp_path.replace(path)


def model_path(folder: Path, name: str) -> Path:
    return Path(folder) / f"{name}.pt"


def optim_path(folder: Path, name: str) -> Path:
    return Path(folder) / f"{name}_OPTIM.pt"


def save_model(model: Model, folder: Path) -> None:
    """Save model weights and optimizer state.

    Args:
        model: Model to save
        folder: Destination folder
    """
    folder = Path(folder)
    folder.mkdir(parents=True, exist_ok=True)
    _atomic_save(model.state_dict(), model_path(folder, model.name))
    _atomic_save(model.optimizer.state_dict(), optim_path(folder, model.name))


def load_model(model: Model, folder: Path, load_optim: bool = True) -> None:
    """Load model weights (and optionally optimizer state).

    Args:
        model: Model to load into
        folder: Folder holding <NAME>.pt
        load_optim: Also load <NAME>_OPTIM.pt if present

    Raises:
        CheckpointError: Missing weights file or parameter shape mismatch
    """
    folder = Path(folder)
    path = model_path(folder, model.name)
    if not path.exists():
        raise CheckpointError(f"Model file not found for \"{model.name}\": {path}")

    state = torch.load(path, map_location=model.device)
    expected = model.state_dict()

    if set(state.keys()) != set(expected.keys()):
        raise CheckpointError(
            f"Saved model \"{model.name}\" has different layers than the current model "
            f"({len(state)} vs {len(expected)} tensors), make sure the layer sizes match"
        )
    for key, tensor in expected.items():
        if state[key].shape != tensor.shape:
            raise CheckpointError(
                f"Saved model \"{model.name}\" has a different size than the current model at {key} "
                f"({tuple(state[key].shape)} vs {tuple(tensor.shape)}), make sure the layer sizes match"
            )

    model.load_state_dict(state)

    if not load_optim:
        return

    opt_path = optim_path(folder, model.name)
    if not opt_path.exists():
        logger.warning(f"No optimizer state for \"{model.name}\" at {opt_path}, starting fresh")
        return
    model.optimizer.load_state_dict(torch.load(opt_path, map_location=model.device))


def save_model_set(models: ModelSet, folder: Path) -> None:
    for model in models:
        save_model(model, folder)


def load_model_set(models: ModelSet, folder: Path, load_optims: bool = True) -> None:
    folder = Path(folder)
    if not folder.is_dir():
        raise CheckpointError(f"Checkpoint path {folder} is not a valid directory")
    for model in models:
        load_model(model, folder, load_optim=load_optims)


def save_running_stats(path: Path, stats: Dict[str, Any]) -> None:
    with open(path, "w") as f:
        json.dump(stats, f, indent=4)


def load_running_stats(path: Path) -> Dict[str, Any]:
    path = Path(path)
    if not path.exists():
        raise CheckpointError(f"Running stats not found: {path}")
    with open(path) as f:
        return json.load(f)


def find_numbered_dirs(checkpoint_dir: Path) -> List[int]:
    """Timestep-numbered subfolders, ascending."""
    checkpoint_dir = Path(checkpoint_dir)
    if not checkpoint_dir.exists():
        return []
    return sorted(
        int(p.name) for p in checkpoint_dir.iterdir()
        if p.is_dir() and p.name.isdigit()
    )


def get_latest_checkpoint(checkpoint_dir: Path) -> Optional[Path]:
    """Find latest checkpoint in directory.

    Args:
        checkpoint_dir: Directory containing timestep folders

    Returns:
        Path to highest-numbered folder or None
    """
    numbered = find_numbered_dirs(checkpoint_dir)
    if not numbered:
        return None
    return Path(checkpoint_dir) / str(numbered[-1])


def cleanup_old_checkpoints(checkpoint_dir: Path, keep_last: int) -> None:
    """Remove the lowest-numbered folders beyond keep_last (-1 keeps all)."""
    if keep_last < 0:
        return
    numbered = find_numbered_dirs(checkpoint_dir)
    for timesteps in numbered[:max(len(numbered) - keep_last, 0)]:
        path = Path(checkpoint_dir) / str(timesteps)
        shutil.rmtree(path)
        logger.debug(f"Deleted old checkpoint: {path}")


class CheckpointManager:
    """Manage checkpoint saving and loading."""

    def __init__(self, checkpoint_dir: Path, keep_last: int = 8):
        """Initialize checkpoint manager.

        Args:
            checkpoint_dir: Directory for checkpoints
            keep_last: Number of recent checkpoints to keep (-1 keeps all)
        """
        self.checkpoint_dir = Path(checkpoint_dir)
        self.keep_last = keep_last

    def save(self, timesteps: int, models: ModelSet, stats: Dict[str, Any]) -> Path:
        """Save a checkpoint folder named after the timestep count.

        Args:
            timesteps: Total timesteps so far
            models: Models to save
            stats: Running stats written to RUNNING_STATS.json

        Returns:
            Path of the checkpoint folder
        """
        folder = self.checkpoint_dir / str(timesteps)
        folder.mkdir(parents=True, exist_ok=True)

        logger.info(f"Saving checkpoint to {folder}...")
        save_running_stats(folder / STATS_FILE_NAME, stats)
        save_model_set(models, folder)

        cleanup_old_checkpoints(self.checkpoint_dir, self.keep_last)
        return folder

    def load_latest(self, models: ModelSet) -> Optional[Dict[str, Any]]:
        """Load the most recent checkpoint into models.

        Args:
            models: Models to load into

        Returns:
            Running stats dict, or None if there is no checkpoint
        """
        latest = get_latest_checkpoint(self.checkpoint_dir)
        if latest is None:
            logger.info(f"No checkpoints found in {self.checkpoint_dir}, starting new model")
            return None

        logger.info(f"Loading checkpoint {latest}...")
        stats = load_running_stats(latest / STATS_FILE_NAME)
        load_model_set(models, latest)
        return stats
