# Rollout store and shuffled batch sampling

import time
import logging
from dataclasses import dataclass, fields, replace
from typing import Callable, Iterator, List, Optional, Sequence, Tuple

import numpy as np
import torch


logger = logging.getLogger(__name__)


@dataclass
class ExperienceTensors:
    """Parallel per-timestep tensors for one iteration of experience.

    Every defined field shares dim 0. Undefined fields are None and are
    skipped by every operation.
    """
    states: Optional[torch.Tensor] = None         # (N, obs_dim) float32
    actions: Optional[torch.Tensor] = None        # (N,) int64
    log_probs: Optional[torch.Tensor] = None      # (N,) float32
    target_values: Optional[torch.Tensor] = None  # (N,) float32
    action_masks: Optional[torch.Tensor] = None   # (N, num_actions) uint8
    advantages: Optional[torch.Tensor] = None     # (N,) float32

    def defined_fields(self) -> Iterator[Tuple[str, torch.Tensor]]:
        for f in fields(self):
            value = getattr(self, f.name)
            if value is not None:
                yield f.name, value

    def map(self, fn: Callable[[torch.Tensor], torch.Tensor]) -> "ExperienceTensors":
        """Apply fn to every defined field, returning a new instance."""
        return replace(self, **{name: fn(t) for name, t in self.defined_fields()})

    def to_device(self, device: torch.device, non_blocking: bool = False) -> "ExperienceTensors":
        return self.map(lambda t: t.to(device, non_blocking=non_blocking))

    def is_on_device(self, device: torch.device) -> bool:
        device = torch.device(device)
        for _, t in self.defined_fields():
            if t.device.type != device.type:
                return False
            if device.index is not None and t.device.index != device.index:
                return False
        return True

    def num_rows(self) -> int:
        for _, t in self.defined_fields():
            return t.shape[0]
        return 0

    def is_empty(self) -> bool:
        return self.num_rows() == 0


class ExperienceBuffer:
    """Holds one rollout and serves shuffled index batches from it.

    The shuffle generator is seeded once at construction, so consecutive
    calls to get_all_batches_shuffled() yield different permutations.
    """

    def __init__(
        self,
        seed: int,
        device: torch.device = torch.device("cpu"),
        max_action_index: int = -1,
    ):
        """Initialize buffer.

        Args:
            seed: Seed for the shuffle generator
            device: Device the stored tensors live on
            max_action_index: Clamp gathered actions to [0, max_action_index]; -1 disables
        """
        self.seed = seed
        self.device = torch.device(device)
        self.max_action_index = max_action_index
        self.rng = np.random.default_rng(seed)

        self.data = ExperienceTensors()
        self._row_limit = 0

        # Profiling
        self.gather_time = 0.0
        self.gather_calls = 0

    def set_data(self, data: ExperienceTensors) -> None:
        """Replace the stored rollout."""
        self.data = data
        self._row_limit = self._compute_row_limit()

    def _compute_row_limit(self) -> int:
        row_counts = [
            t.shape[0]
            for t in (self.data.states, self.data.actions)
            if t is not None
        ]
        if not row_counts:
            return self.data.num_rows()
        return min(row_counts)

    def __len__(self) -> int:
        return self.data.num_rows()

    def sample_rows(self, indices: Sequence[int]) -> ExperienceTensors:
        """Gather rows from every defined field.

        Indices past the row limit are clamped to the last valid row, so
        the output always has len(indices) rows.

        Args:
            indices: Row indices

        Returns:
            ExperienceTensors with one row per index
        """
        if self._row_limit == 0 or len(indices) == 0:
            return ExperienceTensors()

        start_time = time.perf_counter()

        index_tensor = torch.as_tensor(np.asarray(indices), dtype=torch.long)
        index_tensor = index_tensor.clamp(0, self._row_limit - 1)

        result = self.data.map(
            lambda t: t.index_select(0, index_tensor.to(t.device))
        )

        if self.max_action_index >= 0 and result.actions is not None:
            result.actions = result.actions.clamp(0, self.max_action_index)

        self.gather_time += time.perf_counter() - start_time
        self.gather_calls += 1
        return result

    def get_batch_indices(self, batch_size: int, overbatching: bool) -> List[np.ndarray]:
        """Split a fresh permutation of the usable rows into contiguous chunks.

        With overbatching, the chunk that would leave fewer than batch_size
        rows behind absorbs the remainder. Without it, the remainder is its
        own smaller chunk.
        """
        if batch_size <= 0:
            raise ValueError(f"batch_size must be positive, got {batch_size}")

        n = self._row_limit
        if n == 0:
            return []

        permutation = self.rng.permutation(n)

        chunks = []
        start = 0
        while start < n:
            end = start + batch_size
            if overbatching and end + batch_size > n:
                end = n
            end = min(end, n)
            chunks.append(permutation[start:end])
            start = end
        return chunks

    def get_all_batches_shuffled(self, batch_size: int, overbatching: bool) -> List[ExperienceTensors]:
        """Shuffle the buffer and gather every batch.

        Args:
            batch_size: Rows per batch
            overbatching: Merge the trailing remainder into the last full batch

        Returns:
            List of batches covering every row exactly once
        """
        return [
            self.sample_rows(chunk)
            for chunk in self.get_batch_indices(batch_size, overbatching)
        ]

    def profile_summary(self) -> None:
        if self.gather_calls == 0:
            logger.info("ExperienceBuffer: no gathers recorded")
            return
        mean_ms = 1000.0 * self.gather_time / self.gather_calls
        logger.info(
            f"ExperienceBuffer: {self.gather_calls} gathers, "
            f"{self.gather_time:.3f}s total, {mean_ms:.3f}ms mean"
        )

    def reset_profile(self) -> None:
        self.gather_time = 0.0
        self.gather_calls = 0
