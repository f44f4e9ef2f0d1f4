# Main trainer class

import copy
import time
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import numpy as np
import torch

from ..analysis.checkpointing import CheckpointManager
from ..analysis.logger import ExperimentLogger
from ..analysis.metrics import Report, check_policy_health
from ..core.exceptions import ConfigurationError
from ..core.gae import compute_gae
from ..core.stats import BatchedRunningStat, RunningStat
from ..core.types import TerminalType
from ..env.base import EnvSet
from .config import LearnerConfig
from .experience import ExperienceBuffer, ExperienceTensors
from .ppo import PPOLearner
from .rollout import RolloutCollector


logger = logging.getLogger(__name__)


DISPLAY_KEYS = [
    "Average Step Reward",
    "Episode Length",
    "Policy Entropy",
    "Mean KL Divergence",
    "SB3 Clip Fraction",
    "",
    "Policy Loss",
    "Critic Loss",
    "Guiding Loss",
    "",
    "Policy Update Magnitude",
    "Critic Update Magnitude",
    "Shared Head Update Magnitude",
    "",
    "Collection Steps/Second",
    "Consumption Steps/Second",
    "Overall Steps/Second",
    "",
    "Collection Time",
    "-Inference Time",
    "-Env Step Time",
    "Consumption Time",
    "-GAE Time",
    "-PPO Learn Time",
    "",
    "Collected Timesteps",
    "Total Timesteps",
    "Total Iterations",
]


def resolve_device(device_type: str) -> torch.device:
    """Map "auto" / "cpu" / "cuda" onto a torch device."""
    if device_type == "cuda" or (device_type == "auto" and torch.cuda.is_available()):
        if not torch.cuda.is_available():
            raise ConfigurationError("Can't use CUDA because it is not available to torch")
        return torch.device("cuda")
    return torch.device("cpu")


class Learner:
    """Training orchestrator.

    Each iteration: collect rollouts, compute critic values and GAE, fill
    the experience buffer, run the PPO update, report and checkpoint.
    """

    def __init__(
        self,
        config: LearnerConfig,
        env_set: EnvSet,
        experiment: Optional[ExperimentLogger] = None,
    ):
        """Initialize learner.

        Args:
            config: Learner configuration
            env_set: Environments to train on
            experiment: Optional run directory for metrics persistence
        """
        self.config = copy.deepcopy(config)
        self.config.check()

        if self.config.ts_per_save == 0:
            self.config.ts_per_save = self.config.ppo.ts_per_itr

        if self.config.random_seed == -1:
            self.config.random_seed = int(time.time() * 1000) % (2 ** 31)
        seed = self.config.random_seed
        torch.manual_seed(seed)

        self.device = resolve_device(self.config.device)
        logger.info(f"Using device: {self.device}")

        self.env_set = env_set
        self.obs_size = env_set.obs_size
        self.num_actions = env_set.num_actions
        logger.info(f"Obs size: {self.obs_size}, action amount: {self.num_actions}")

        self.return_stat = RunningStat() if self.config.standardize_returns else None
        self.obs_stat = BatchedRunningStat(self.obs_size) if self.config.standardize_obs else None

        self.ppo = PPOLearner(self.obs_size, self.num_actions, self.config.ppo, self.device, seed=seed)

        self.experience = ExperienceBuffer(seed, torch.device("cpu"), max_action_index=self.num_actions - 1)
        self.collector = RolloutCollector(
            env_set=env_set,
            learner=self.ppo,
            max_episode_length=self.config.ppo.max_episode_duration,
            obs_stat=self.obs_stat,
            max_obs_samples=self.config.max_obs_samples,
            max_obs_mean_range=self.config.max_obs_mean_range,
            min_obs_std=self.config.min_obs_std,
            num_workers=self.config.num_workers,
            seed=seed,
        )
        self.rng = np.random.default_rng(seed)

        self.experiment = experiment

        self.total_timesteps = 0
        self.total_iterations = 0

        self.checkpoints: Optional[CheckpointManager] = None
        if self.config.checkpoint_folder:
            logger.info(f"Checkpoint save/load dir: {self.config.checkpoint_folder}")
            self.checkpoints = CheckpointManager(
                Path(self.config.checkpoint_folder),
                keep_last=self.config.checkpoints_to_keep,
            )
            self.load()

    def running_stats(self) -> Dict[str, Any]:
        stats: Dict[str, Any] = {
            "total_timesteps": self.total_timesteps,
            "total_iterations": self.total_iterations,
        }
        if self.return_stat is not None:
            stats["return_stat"] = self.return_stat.to_dict()
        if self.obs_stat is not None:
            stats["obs_stat"] = self.obs_stat.to_dict()
        return stats

    def save(self) -> Path:
        if self.checkpoints is None:
            raise ConfigurationError("Cannot save because checkpoint_folder is not set")
        folder = self.checkpoints.save(self.total_timesteps, self.ppo.models, self.running_stats())
        logger.info(" > Done.")
        return folder

    def load(self) -> bool:
        """Load the most recent checkpoint if there is one.

        Returns:
            True if a checkpoint was loaded
        """
        if self.checkpoints is None:
            raise ConfigurationError("Cannot load because checkpoint_folder is not set")

        stats = self.checkpoints.load_latest(self.ppo.models)
        if stats is None:
            return False

        self.total_timesteps = int(stats["total_timesteps"])
        self.total_iterations = int(stats["total_iterations"])
        if self.return_stat is not None and "return_stat" in stats:
            self.return_stat.load_dict(stats["return_stat"])
        if self.obs_stat is not None and "obs_stat" in stats:
            self.obs_stat.load_dict(stats["obs_stat"])

        # Loaded optimizer state carries the old learning rates
        self.ppo.set_learning_rates(self.config.ppo.policy_lr, self.config.ppo.critic_lr)
        logger.info(f" > Resumed at {self.total_timesteps:,} timesteps")
        return True

    def train(self, num_iterations: Optional[int] = None) -> List[Dict[str, float]]:
        """Run training iterations.

        An iteration that fails is logged and skipped; configuration errors
        propagate.

        Args:
            num_iterations: Number of iterations, None runs until interrupted

        Returns:
            Report of every completed iteration
        """
        reports = []
        iteration = 0
        logger.info(f"Starting training, {self.config.ppo.ts_per_itr:,} timesteps per iteration")

        while num_iterations is None or iteration < num_iterations:
            iteration += 1
            try:
                report = self.run_iteration()
            except ConfigurationError:
                raise
            except Exception:
                logger.exception("Recovered from learner iteration exception")
                if self.device.type == "cuda":
                    torch.cuda.empty_cache()
                continue
            reports.append(report.to_dict())

        return reports

    def run_iteration(self) -> Report:
        """Collect, learn, report and checkpoint once."""
        ppo_config = self.config.ppo
        report = Report()
        is_first_iteration = self.total_timesteps == 0

        collection_start = time.perf_counter()
        rollout = self.collector.collect(ppo_config.ts_per_itr)
        collection_time = time.perf_counter() - collection_start

        report["Inference Time"] = rollout.inference_time
        report["Env Step Time"] = rollout.env_step_time

        consumption_start = time.perf_counter()
        with torch.no_grad():
            arrays = self.collector.build_arrays(rollout.trajectory)

            report["Average Step Reward"] = float(arrays.rewards.mean())
            report["Collected Timesteps"] = rollout.steps_collected

            states = torch.from_numpy(arrays.states)
            val_preds = self.ppo.infer_critic_batched(states, self.ppo.config.mini_batch_size).numpy()

            trunc_val_preds = None
            if arrays.next_states is not None:
                next_states = torch.from_numpy(arrays.next_states).to(self.device)
                trunc_val_preds = self.ppo.infer_critic(next_states).cpu().numpy()

        gae_start = time.perf_counter()
        gae = compute_gae(
            arrays.rewards,
            arrays.terminals,
            val_preds,
            trunc_val_preds,
            gamma=ppo_config.gae_gamma,
            gae_lambda=ppo_config.gae_lambda,
            return_std=self.return_stat.get_std() if self.return_stat is not None else 1.0,
            clip_range=ppo_config.reward_clip_range,
        )
        report["GAE Time"] = time.perf_counter() - gae_start
        report["Clipped Reward Portion"] = gae.clipped_portion

        if self.return_stat is not None:
            report["GAE/Returns STD"] = self.return_stat.get_std()
            num_samples = min(self.config.max_return_samples, len(gae.returns))
            if num_samples > 0:
                picked = self.rng.integers(0, len(gae.returns), size=num_samples)
                self.return_stat.update(gae.returns[picked])

        report["GAE/Avg Return"] = float(np.abs(gae.returns).mean())
        report["GAE/Avg Advantage"] = float(np.abs(gae.advantages).mean())
        report["GAE/Avg Val Target"] = float(np.abs(gae.target_values).mean())

        normal_fraction = float((arrays.terminals == TerminalType.NORMAL).mean())
        if normal_fraction > 0:
            report["Episode Length"] = 1.0 / normal_fraction

        self.experience.set_data(ExperienceTensors(
            states=states,
            actions=torch.from_numpy(arrays.actions),
            log_probs=torch.from_numpy(arrays.log_probs),
            target_values=torch.from_numpy(gae.target_values),
            action_masks=torch.from_numpy(arrays.action_masks),
            advantages=torch.from_numpy(gae.advantages),
        ))

        learn_start = time.perf_counter()
        self.ppo.learn(self.experience, report, is_first_iteration)
        report["PPO Learn Time"] = time.perf_counter() - learn_start

        consumption_time = time.perf_counter() - consumption_start
        steps = rollout.steps_collected
        report["Collection Time"] = collection_time
        report["Consumption Time"] = consumption_time
        report["Collection Steps/Second"] = steps / max(collection_time, 1e-9)
        report["Consumption Steps/Second"] = steps / max(consumption_time, 1e-9)
        report["Overall Steps/Second"] = steps / max(collection_time + consumption_time, 1e-9)

        prev_timesteps = self.total_timesteps
        self.total_timesteps += steps
        self.total_iterations += 1
        report["Total Timesteps"] = self.total_timesteps
        report["Total Iterations"] = self.total_iterations

        if self.checkpoints is not None:
            if self.total_timesteps // self.config.ts_per_save > prev_timesteps // self.config.ts_per_save:
                self.save()

        report.finish()

        for warning in check_policy_health(report):
            logger.warning(warning)

        if self.experiment is not None:
            self.experiment.log_metrics(self.total_iterations, report.to_dict())

        report.display(DISPLAY_KEYS)
        return report

    def close(self) -> None:
        """Clean up resources."""
        self.collector.close()
        self.ppo.close()
