# Discrete masked policy helpers
# FORBIDDEN: env.*, training.*, logging, pathlib

import math
import torch
from typing import Optional, Tuple

from .model import ModelSet


ACTION_MIN_PROB = 1e-11
ACTION_DISABLED_LOGIT = -1e10


def masked_probs(
    logits: torch.Tensor,
    action_masks: torch.Tensor,
    temperature: float = 1.0,
) -> torch.Tensor:
    """Temperature-scaled softmax over enabled actions.

    Disabled actions get a large negative logit bias, then every
    probability is floored at ACTION_MIN_PROB so log() stays finite.

    Args:
        logits: Raw policy outputs, shape (batch, num_actions)
        action_masks: Nonzero for enabled actions, shape (batch, num_actions)
        temperature: Softmax temperature

    Returns:
        probs: shape (batch, num_actions)
    """
    disabled = torch.logical_not(action_masks.to(torch.bool))
    if temperature != 1.0:
        logits = logits / temperature
    logits = logits + ACTION_DISABLED_LOGIT * disabled.to(logits.dtype)
    probs = torch.softmax(logits, dim=-1)
    return probs.clamp(ACTION_MIN_PROB, 1.0)


def policy_probs(
    models: ModelSet,
    obs: torch.Tensor,
    action_masks: torch.Tensor,
    temperature: float = 1.0,
) -> torch.Tensor:
    """Run shared head (if any) and policy, return action probabilities."""
    shared_head = models.get("shared_head")
    if shared_head is not None:
        obs = shared_head(obs)
    policy = models["policy"]
    logits = policy(obs)
    probs = masked_probs(logits, action_masks, temperature)
    return probs.view(-1, policy.num_outputs)


def sample_actions(
    probs: torch.Tensor,
    deterministic: bool = False,
    generator: Optional[torch.Generator] = None,
) -> Tuple[torch.Tensor, Optional[torch.Tensor]]:
    """Pick actions from probabilities.

    Args:
        probs: Action probabilities, shape (batch, num_actions)
        deterministic: If True, take the argmax (no log probs)
        generator: Generator used for sampling

    Returns:
        actions: shape (batch,) int64
        log_probs: shape (batch,), None when deterministic
    """
    if deterministic:
        return probs.argmax(dim=-1).flatten(), None

    actions = torch.multinomial(probs, 1, replacement=True, generator=generator).squeeze(-1)
    log_probs = probs.gather(-1, actions.unsqueeze(-1)).squeeze(-1).log()
    return actions, log_probs


def compute_entropy(
    probs: torch.Tensor,
    action_masks: torch.Tensor,
    mask_entropy: bool,
) -> torch.Tensor:
    """Mean normalized entropy of a batch of distributions.

    With mask_entropy the per-row entropy is divided by log(valid actions),
    otherwise by log(total actions).

    Returns:
        Scalar tensor
    """
    entropy = -(probs.log() * probs).sum(dim=-1)
    if mask_entropy:
        # A single enabled action would divide by log(1) = 0
        valid = action_masks.to(torch.float32).sum(dim=-1).clamp(min=2.0)
        entropy = entropy / valid.log()
    else:
        entropy = entropy / math.log(action_masks.shape[-1])
    return entropy.mean()
