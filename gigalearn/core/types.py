# Core type definitions
# FORBIDDEN: torch, logging, any I/O

from dataclasses import dataclass, field
from enum import IntEnum
from typing import List
import numpy as np


class TerminalType(IntEnum):
    """Per-step terminal code reported by the environment."""
    NOT_TERMINAL = 0
    NORMAL = 1      # Episode ended, no bootstrap
    TRUNCATED = 2   # Episode cut off, bootstrap from the next state


@dataclass
class Trajectory:
    """Append-only experience of one agent slot between terminal events.

    States and action masks are stored row by row and stacked on flush.
    next_states only receives a row when a TRUNCATED terminal occurs.
    """
    states: List[np.ndarray] = field(default_factory=list)
    next_states: List[np.ndarray] = field(default_factory=list)
    action_masks: List[np.ndarray] = field(default_factory=list)
    actions: List[int] = field(default_factory=list)
    rewards: List[float] = field(default_factory=list)
    log_probs: List[float] = field(default_factory=list)
    terminals: List[int] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.actions)

    def append_step(
        self,
        state: np.ndarray,
        action_mask: np.ndarray,
        action: int,
        reward: float,
        log_prob: float,
        terminal: int,
    ) -> None:
        """Record one timestep."""
        self.states.append(state)
        self.action_masks.append(action_mask)
        self.actions.append(int(action))
        self.rewards.append(float(reward))
        self.log_probs.append(float(log_prob))
        self.terminals.append(int(terminal))

    def extend(self, other: "Trajectory") -> None:
        """Append all rows of another trajectory."""
        self.states.extend(other.states)
        self.next_states.extend(other.next_states)
        self.action_masks.extend(other.action_masks)
        self.actions.extend(other.actions)
        self.rewards.extend(other.rewards)
        self.log_probs.extend(other.log_probs)
        self.terminals.extend(other.terminals)

    def clear(self) -> None:
        self.states.clear()
        self.next_states.clear()
        self.action_masks.clear()
        self.actions.clear()
        self.rewards.clear()
        self.log_probs.clear()
        self.terminals.clear()

    @property
    def num_truncations(self) -> int:
        return sum(1 for t in self.terminals if t == TerminalType.TRUNCATED)
