# Stub environment for testing
# Discrete corridor task, no physics

from concurrent.futures import ThreadPoolExecutor
from typing import List, Optional
import numpy as np
from gymnasium.spaces import Box, Discrete

from ..core.types import TerminalType
from .base import EnvSet, StepOutput


ACTION_LEFT = 0
ACTION_STAY = 1
ACTION_RIGHT = 2


class _Corridor:
    """One instance: agents walk a 1-D corridor towards the goal cell.

    The instance ends NORMAL when any agent reaches the goal and
    TRUNCATED when max_steps is hit.
    """

    def __init__(
        self,
        num_agents: int,
        length: int,
        max_steps: int,
        obs_size: int,
        rng: np.random.Generator,
    ):
        self.num_agents = num_agents
        self.length = length
        self.max_steps = max_steps
        self.obs_size = obs_size
        self.rng = rng
        self.positions = np.zeros(num_agents, dtype=np.int64)
        self.steps = 0
        self.terminal = int(TerminalType.NOT_TERMINAL)
        self._reset()

    def _reset(self) -> None:
        self.positions = self.rng.integers(0, self.length // 2, size=self.num_agents)
        self.steps = 0
        self.terminal = int(TerminalType.NOT_TERMINAL)

    def reset_if_done(self) -> None:
        if self.terminal != TerminalType.NOT_TERMINAL:
            self._reset()

    def observations(self) -> np.ndarray:
        obs = np.zeros((self.num_agents, self.obs_size), dtype=np.float32)
        progress = self.positions / (self.length - 1)
        obs[:, 0] = progress
        obs[:, 1] = 1.0 - progress
        obs[:, 2] = self.steps / self.max_steps
        if self.obs_size > 3:
            obs[:, 3:] = self.rng.normal(0.0, 0.1, size=(self.num_agents, self.obs_size - 3))
        return obs

    def action_masks(self, num_actions: int) -> np.ndarray:
        masks = np.zeros((self.num_agents, num_actions), dtype=np.uint8)
        masks[:, :3] = 1
        masks[self.positions == 0, ACTION_LEFT] = 0
        return masks

    def step(self, actions: np.ndarray):
        moves = np.zeros(self.num_agents, dtype=np.int64)
        moves[actions == ACTION_LEFT] = -1
        moves[actions == ACTION_RIGHT] = 1
        self.positions = np.clip(self.positions + moves, 0, self.length - 1)
        self.steps += 1

        reached = self.positions == self.length - 1
        rewards = np.where(reached, 1.0, -0.01).astype(np.float32)

        if reached.any():
            self.terminal = int(TerminalType.NORMAL)
        elif self.steps >= self.max_steps:
            self.terminal = int(TerminalType.TRUNCATED)

        return rewards, self.terminal


class StubEnvSet(EnvSet):
    """Vectorized corridor environments.

    Each instance draws from its own generator, spawned from the master
    seed, so results do not depend on worker scheduling.
    """

    def __init__(
        self,
        num_envs: int = 4,
        agents_per_env: int = 1,
        obs_size: int = 8,
        num_actions: int = 4,
        length: int = 8,
        max_steps: int = 50,
        seed: int = 0,
        num_workers: int = 0,
    ):
        if obs_size < 3:
            raise ValueError(f"obs_size must be >= 3, got {obs_size}")
        if num_actions < 3:
            raise ValueError(f"num_actions must be >= 3, got {num_actions}")

        self._num_actions = num_actions
        self._obs_space = Box(low=-np.inf, high=np.inf, shape=(obs_size,), dtype=np.float32)
        self._action_space = Discrete(num_actions)
        self.agents_per_env = agents_per_env

        seeds = np.random.SeedSequence(seed).spawn(num_envs)
        self.envs: List[_Corridor] = [
            _Corridor(agents_per_env, length, max_steps, obs_size, np.random.default_rng(s))
            for s in seeds
        ]

        self._executor: Optional[ThreadPoolExecutor] = None
        if num_workers > 0:
            self._executor = ThreadPoolExecutor(
                max_workers=num_workers, thread_name_prefix="stub-env"
            )

    @property
    def num_agents(self) -> int:
        return len(self.envs) * self.agents_per_env

    @property
    def single_observation_space(self) -> Box:
        return self._obs_space

    @property
    def single_action_space(self) -> Discrete:
        return self._action_space

    def reset(self) -> None:
        for env in self.envs:
            env.reset_if_done()

    def observations(self) -> np.ndarray:
        return np.concatenate([env.observations() for env in self.envs], axis=0)

    def action_masks(self) -> np.ndarray:
        return np.concatenate(
            [env.action_masks(self._num_actions) for env in self.envs], axis=0
        )

    def step(self, actions: np.ndarray) -> StepOutput:
        actions = np.asarray(actions).reshape(len(self.envs), self.agents_per_env)

        if self._executor is not None:
            results = list(self._executor.map(lambda p: p[0].step(p[1]), zip(self.envs, actions)))
        else:
            results = [env.step(acts) for env, acts in zip(self.envs, actions)]

        rewards = np.concatenate([r for r, _ in results]).astype(np.float32)
        terminals = np.repeat(
            np.array([t for _, t in results], dtype=np.int8), self.agents_per_env
        )
        return StepOutput(rewards=rewards, terminals=terminals)

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None
