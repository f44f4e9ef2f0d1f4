# Running statistics
# FORBIDDEN: torch, logging, any I/O

from typing import Any, Dict
import numpy as np


class RunningStat:
    """Scalar running mean/std using Welford's algorithm.

    Used to estimate the standard deviation of returns, which in turn
    normalizes rewards before GAE.
    """

    def __init__(self):
        self.mean = 0.0
        self.m2 = 0.0
        self.count = 0

    def update(self, samples: np.ndarray) -> None:
        """Add samples one at a time.

        Args:
            samples: 1-D array of new values
        """
        for sample in np.asarray(samples, dtype=np.float64).reshape(-1):
            delta = sample - self.mean
            delta_n = delta / (self.count + 1)
            self.mean += delta_n
            self.m2 += delta * delta_n * self.count
            self.count += 1

    def reset(self) -> None:
        self.mean = 0.0
        self.m2 = 0.0
        self.count = 0

    def get_mean(self) -> float:
        if self.count < 2:
            return 0.0
        return float(self.mean)

    def get_std(self) -> float:
        """Sample standard deviation, 1.0 until two samples exist."""
        if self.count < 2:
            return 1.0
        var = self.m2 / (self.count - 1)
        if var <= 0:
            var = 1.0
        return float(np.sqrt(var))

    def to_dict(self) -> Dict[str, Any]:
        return {"mean": float(self.mean), "var": float(self.m2), "count": int(self.count)}

    def load_dict(self, data: Dict[str, Any]) -> None:
        self.mean = float(data["mean"])
        self.m2 = float(data["var"])
        self.count = int(data["count"])


class BatchedRunningStat:
    """Per-feature running mean/std for observation standardization."""

    def __init__(self, width: int):
        """Initialize statistic.

        Args:
            width: Number of features per row
        """
        self.width = width
        self.mean = np.zeros(width, dtype=np.float64)
        self.m2 = np.zeros(width, dtype=np.float64)
        self.count = 0

    def update_row(self, row: np.ndarray) -> None:
        """Add one observation row."""
        row = np.asarray(row, dtype=np.float64).reshape(self.width)
        delta = row - self.mean
        delta_n = delta / (self.count + 1)
        self.mean += delta_n
        self.m2 += delta * delta_n * self.count
        self.count += 1

    def update(self, rows: np.ndarray) -> None:
        for row in np.asarray(rows).reshape(-1, self.width):
            self.update_row(row)

    def get_mean(self) -> np.ndarray:
        return self.mean

    def get_std(self) -> np.ndarray:
        if self.count < 2:
            return np.ones(self.width, dtype=np.float64)
        var = self.m2 / (self.count - 1)
        return np.where(var > 0, np.sqrt(np.maximum(var, 0.0)), 1.0)

    def normalize(
        self,
        obs: np.ndarray,
        mean_clamp: float,
        min_std: float,
    ) -> np.ndarray:
        """Standardize observations with clamped statistics.

        Returns obs unchanged until two rows have been seen.

        Args:
            obs: Observations, shape (rows, width)
            mean_clamp: Absolute bound on the mean used
            min_std: Lower bound on the std used

        Returns:
            Standardized float32 observations
        """
        if self.count < 2:
            return obs
        mean = np.clip(self.get_mean(), -mean_clamp, mean_clamp)
        std = np.maximum(self.get_std(), min_std)
        return ((obs - mean) / std).astype(np.float32)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "means": self.mean.tolist(),
            "vars": self.m2.tolist(),
            "count": int(self.count),
        }

    def load_dict(self, data: Dict[str, Any]) -> None:
        self.mean = np.asarray(data["means"], dtype=np.float64)
        self.m2 = np.asarray(data["vars"], dtype=np.float64)
        self.count = int(data["count"])
