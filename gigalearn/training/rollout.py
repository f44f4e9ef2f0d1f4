# Rollout collection
# Steps the environment set and turns per-agent trajectories into arrays

import time
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

import numpy as np
import torch

from ..core.stats import BatchedRunningStat
from ..core.types import TerminalType, Trajectory
from ..env.base import EnvSet
from .ppo import PPOLearner


logger = logging.getLogger(__name__)


@dataclass
class RolloutResult:
    """Trajectories that ended during one collection pass."""
    trajectory: Trajectory
    steps_collected: int
    inference_time: float
    env_step_time: float


@dataclass
class RolloutArrays:
    """Combined trajectory as contiguous host arrays."""
    states: np.ndarray              # (N, obs_size) float32
    action_masks: np.ndarray        # (N, num_actions) uint8
    actions: np.ndarray             # (N,) int64
    log_probs: np.ndarray           # (N,) float32
    rewards: np.ndarray             # (N,) float32
    terminals: np.ndarray           # (N,) int8
    next_states: Optional[np.ndarray] = None  # (num_truncations, obs_size) float32

    def __len__(self) -> int:
        return len(self.actions)


def sanitize_actions(actions: np.ndarray, num_actions: int) -> np.ndarray:
    """Clamp actions into [0, num_actions - 1], warning if any were out of range."""
    clamped = np.clip(actions, 0, num_actions - 1)
    if np.any(clamped != actions):
        logger.warning("Clamped out-of-range action to valid bounds")
    return clamped


class RolloutCollector:
    """Collects experience from an EnvSet with the learner's current policy.

    Unfinished per-agent trajectories carry over between calls to collect(),
    so episodes may span iterations. A trajectory only joins the combined
    output once it hits a terminal.
    """

    def __init__(
        self,
        env_set: EnvSet,
        learner: PPOLearner,
        max_episode_length: int,
        obs_stat: Optional[BatchedRunningStat] = None,
        max_obs_samples: int = 100,
        max_obs_mean_range: float = 3.0,
        min_obs_std: float = 0.1,
        num_workers: int = 0,
        seed: int = 0,
    ):
        """Initialize collector.

        Args:
            env_set: Environments to step
            learner: Provides action inference
            max_episode_length: Steps after which a trajectory is truncated
            obs_stat: Optional running stat used to standardize observations
            max_obs_samples: Rows sampled into obs_stat per step
            max_obs_mean_range: Clamp on the standardization mean
            min_obs_std: Floor on the standardization std
            num_workers: Threads used to build arrays (0 = inline)
            seed: Seed for obs-stat row sampling
        """
        self.env_set = env_set
        self.learner = learner
        self.max_episode_length = max_episode_length
        self.obs_stat = obs_stat
        self.max_obs_samples = max_obs_samples
        self.max_obs_mean_range = max_obs_mean_range
        self.min_obs_std = min_obs_std
        self.rng = np.random.default_rng(seed)

        self.obs_size = env_set.obs_size
        self.num_actions = env_set.num_actions
        self.trajectories: List[Trajectory] = [Trajectory() for _ in range(env_set.num_agents)]

        self._executor: Optional[ThreadPoolExecutor] = None
        if num_workers > 0:
            self._executor = ThreadPoolExecutor(max_workers=num_workers, thread_name_prefix="rollout-build")

    def _standardize(self, obs: np.ndarray, update: bool) -> np.ndarray:
        if self.obs_stat is None:
            return obs
        if update:
            num_samples = min(len(obs), self.max_obs_samples)
            for idx in self.rng.integers(0, len(obs), size=num_samples):
                self.obs_stat.update_row(obs[idx])
        return self.obs_stat.normalize(obs, self.max_obs_mean_range, self.min_obs_std)

    def collect(self, ts_per_itr: int) -> RolloutResult:
        """Step the environments until ts_per_itr finished timesteps exist.

        Args:
            ts_per_itr: Minimum number of rows in the combined trajectory

        Returns:
            RolloutResult with the combined trajectory
        """
        combined = Trajectory()
        device = self.learner.device
        num_agents = self.env_set.num_agents

        steps_collected = 0
        inference_time = 0.0
        env_step_time = 0.0

        while len(combined) < ts_per_itr:
            start = time.perf_counter()
            self.env_set.reset()
            obs = self.env_set.observations()
            masks = self.env_set.action_masks()
            env_step_time += time.perf_counter() - start

            obs = self._standardize(obs, update=True)

            start = time.perf_counter()
            actions, log_probs = self.learner.infer_actions(
                torch.from_numpy(obs).to(device, non_blocking=True),
                torch.from_numpy(masks).to(device, non_blocking=True),
            )
            actions = sanitize_actions(actions.cpu().numpy(), self.num_actions)
            log_probs = log_probs.cpu().numpy() if log_probs is not None else np.zeros(num_agents, dtype=np.float32)
            inference_time += time.perf_counter() - start

            start = time.perf_counter()
            out = self.env_set.step(actions)
            env_step_time += time.perf_counter() - start

            next_obs = None
            for i in range(num_agents):
                traj = self.trajectories[i]
                terminal = int(out.terminals[i])
                if terminal == TerminalType.NOT_TERMINAL and len(traj) + 1 >= self.max_episode_length:
                    terminal = int(TerminalType.TRUNCATED)

                traj.append_step(obs[i], masks[i], actions[i], out.rewards[i], log_probs[i], terminal)

                if terminal == TerminalType.NOT_TERMINAL:
                    continue

                if terminal == TerminalType.TRUNCATED:
                    if next_obs is None:
                        next_obs = self._standardize(self.env_set.observations(), update=False)
                    traj.next_states.append(next_obs[i])

                combined.extend(traj)
                traj.clear()

            steps_collected += num_agents

        return RolloutResult(
            trajectory=combined,
            steps_collected=steps_collected,
            inference_time=inference_time,
            env_step_time=env_step_time,
        )

    def build_arrays(self, trajectory: Trajectory) -> RolloutArrays:
        """Stack a combined trajectory into arrays.

        The independent fields are built on the worker pool while states,
        the largest, are built on the calling thread.
        """
        jobs: Dict[str, Callable[[], np.ndarray]] = {
            "action_masks": lambda: np.asarray(trajectory.action_masks, dtype=np.uint8).reshape(-1, self.num_actions),
            "actions": lambda: np.asarray(trajectory.actions, dtype=np.int64),
            "log_probs": lambda: np.asarray(trajectory.log_probs, dtype=np.float32),
            "rewards": lambda: np.asarray(trajectory.rewards, dtype=np.float32),
            "terminals": lambda: np.asarray(trajectory.terminals, dtype=np.int8),
        }

        if self._executor is not None:
            futures = {name: self._executor.submit(job) for name, job in jobs.items()}
            states = np.asarray(trajectory.states, dtype=np.float32).reshape(-1, self.obs_size)
            arrays = {name: future.result() for name, future in futures.items()}
        else:
            states = np.asarray(trajectory.states, dtype=np.float32).reshape(-1, self.obs_size)
            arrays = {name: job() for name, job in jobs.items()}

        next_states = None
        if trajectory.next_states:
            next_states = np.asarray(trajectory.next_states, dtype=np.float32).reshape(-1, self.obs_size)

        return RolloutArrays(states=states, next_states=next_states, **arrays)

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None
