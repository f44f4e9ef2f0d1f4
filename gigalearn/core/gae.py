# Generalized Advantage Estimation
# FORBIDDEN: torch, logging, any I/O

from dataclasses import dataclass
from typing import Optional, Tuple
import numpy as np

from .exceptions import DataShapeError
from .types import TerminalType


@dataclass
class GAEResult:
    """Per-timestep GAE outputs for one iteration."""
    advantages: np.ndarray      # (N,)
    target_values: np.ndarray   # (N,) value predictions + advantages
    returns: np.ndarray         # (N,) discounted raw-reward returns
    clipped_portion: float      # Fraction of normalized reward magnitude removed by clipping


def normalize_rewards(
    rewards: np.ndarray,
    return_std: float,
    clip_range: float,
) -> Tuple[np.ndarray, float]:
    """Scale rewards by the return std and clip them.

    Normalization is skipped when return_std is 0 or 1.

    Args:
        rewards: Raw rewards, shape (N,)
        return_std: Running standard deviation of returns
        clip_range: Clip bound for normalized rewards, <= 0 disables clipping

    Returns:
        (normalized rewards, clipped portion)
    """
    if return_std == 0 or return_std == 1:
        return rewards, 0.0

    normalized = rewards / np.float32(return_std)
    total = float(np.abs(normalized).sum())
    if clip_range > 0:
        normalized = np.clip(normalized, -clip_range, clip_range)
    total_clipped = float(np.abs(normalized).sum())

    clipped_portion = (total - total_clipped) / max(total, 1e-7)
    return normalized.astype(np.float32), clipped_portion


def compute_gae(
    rewards: np.ndarray,
    terminals: np.ndarray,
    val_preds: np.ndarray,
    trunc_val_preds: Optional[np.ndarray] = None,
    gamma: float = 0.99,
    gae_lambda: float = 0.95,
    return_std: float = 1.0,
    clip_range: float = 10.0,
) -> GAEResult:
    """Compute advantages, value targets and returns.

    Rows are the concatenation of flushed trajectories. A NORMAL terminal
    ends an episode with no bootstrap, a TRUNCATED terminal bootstraps from
    the matching entry of trunc_val_preds (k-th truncated row uses the k-th
    value), and any other row continues into the next row.

    Deltas use normalized rewards, returns use raw rewards.

    Args:
        rewards: Raw rewards, shape (N,)
        terminals: Terminal codes (TerminalType), shape (N,)
        val_preds: Critic predictions for each row, shape (N,)
        trunc_val_preds: Critic predictions for truncation next-states
        gamma: Discount factor
        gae_lambda: GAE lambda parameter
        return_std: Return std used to normalize rewards (0 or 1 disables)
        clip_range: Clip bound for normalized rewards

    Returns:
        GAEResult

    Raises:
        DataShapeError: If array lengths disagree
    """
    rewards = np.asarray(rewards, dtype=np.float32).reshape(-1)
    terminals = np.asarray(terminals, dtype=np.int8).reshape(-1)
    val_preds = np.asarray(val_preds, dtype=np.float32).reshape(-1)
    num_steps = rewards.shape[0]

    if num_steps == 0:
        empty = np.zeros(0, dtype=np.float32)
        return GAEResult(empty, empty.copy(), empty.copy(), 0.0)

    if terminals.shape[0] != num_steps or val_preds.shape[0] < num_steps:
        raise DataShapeError(
            f"GAE: mismatched lengths (rewards={num_steps}, "
            f"terminals={terminals.shape[0]}, val_preds={val_preds.shape[0]})"
        )
    val_preds = val_preds[:num_steps]

    # Terminal classification
    is_done = terminals == TerminalType.NORMAL
    is_trunc = terminals == TerminalType.TRUNCATED
    not_done_not_trunc = (~is_done & ~is_trunc).astype(np.float32)

    next_values = np.zeros(num_steps, dtype=np.float32)
    next_values[:-1] = val_preds[1:]
    next_values[is_done] = 0.0

    if trunc_val_preds is not None:
        trunc_val_preds = np.asarray(trunc_val_preds, dtype=np.float32).reshape(-1)
        trunc_rows = np.flatnonzero(is_trunc)
        if trunc_rows.shape[0] != trunc_val_preds.shape[0]:
            raise DataShapeError(
                f"GAE: truncation count mismatch "
                f"({trunc_rows.shape[0]}/{trunc_val_preds.shape[0]})"
            )
        next_values[trunc_rows] = trunc_val_preds

    norm_rewards, clipped_portion = normalize_rewards(rewards, return_std, clip_range)

    advantages = np.empty(num_steps, dtype=np.float32)
    returns = np.empty(num_steps, dtype=np.float32)
    gamma_lambda = gamma * gae_lambda

    # Sequential in t
    last_gae = 0.0
    last_return = 0.0
    for t in reversed(range(num_steps)):
        nd = not_done_not_trunc[t]
        delta = norm_rewards[t] + gamma * next_values[t] - val_preds[t]
        last_gae = delta + gamma_lambda * nd * last_gae
        last_return = rewards[t] + gamma * nd * last_return
        advantages[t] = last_gae
        returns[t] = last_return

    target_values = val_preds + advantages

    return GAEResult(
        advantages=advantages,
        target_values=target_values.astype(np.float32),
        returns=returns,
        clipped_portion=float(clipped_portion),
    )
