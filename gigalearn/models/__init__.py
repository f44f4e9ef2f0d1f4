# Models module - Neural networks
# FORBIDDEN: env.*, training.*, logging, pathlib

from .blocks import MLP, get_activation
from .model import Model, ModelConfig, ModelSet, make_optimizer
from .policy import masked_probs, policy_probs, sample_actions, compute_entropy
