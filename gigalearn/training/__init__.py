# Training module - Orchestration
# This module may import from all other gigalearn modules

from .config import LearnerConfig, PPOLearnerConfig, TransferLearnConfig
from .experience import ExperienceBuffer, ExperienceTensors
from .pipeline import BatchPipeline, SlotState
from .ppo import MinibatchResult, PPOLearner
from .rollout import RolloutCollector, RolloutArrays, RolloutResult, sanitize_actions
from .trainer import Learner, resolve_device
