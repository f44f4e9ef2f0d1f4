# Environment collaborator interface
# FORBIDDEN: torch, models.*, training.*

from abc import ABC, abstractmethod
from dataclasses import dataclass
import numpy as np
from gymnasium.spaces import Box, Discrete


@dataclass
class StepOutput:
    """Result of stepping every agent once."""
    rewards: np.ndarray     # (num_agents,) float32
    terminals: np.ndarray   # (num_agents,) int8, TerminalType codes


class EnvSet(ABC):
    """A set of environment instances stepped in lockstep.

    Every instance contributes one or more agents. Agents are laid out
    contiguously, instance by instance, so agent rows are stable between
    steps.

    Call order per step: reset() (resets instances that ended on the
    previous step), observations()/action_masks(), step(actions). After a
    step, observations() returns the post-step states, which are the
    bootstrap states for any TRUNCATED agent.
    """

    @property
    @abstractmethod
    def num_agents(self) -> int:
        ...

    @property
    @abstractmethod
    def single_observation_space(self) -> Box:
        ...

    @property
    @abstractmethod
    def single_action_space(self) -> Discrete:
        ...

    @property
    def obs_size(self) -> int:
        return int(self.single_observation_space.shape[0])

    @property
    def num_actions(self) -> int:
        return int(self.single_action_space.n)

    @abstractmethod
    def reset(self) -> None:
        """Reset instances that reached a terminal state."""
        ...

    @abstractmethod
    def observations(self) -> np.ndarray:
        """Current observations, shape (num_agents, obs_size) float32."""
        ...

    @abstractmethod
    def action_masks(self) -> np.ndarray:
        """Current action masks, shape (num_agents, num_actions) uint8."""
        ...

    @abstractmethod
    def step(self, actions: np.ndarray) -> StepOutput:
        """Apply one discrete action per agent."""
        ...

    def close(self) -> None:
        """Release resources."""
        pass
