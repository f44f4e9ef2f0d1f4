# Per-iteration metrics report

import math
import logging
from typing import Dict, Iterator, List, Optional, Sequence


logger = logging.getLogger(__name__)


class AvgTracker:
    """Running mean that ignores NaN samples."""

    def __init__(self):
        self.reset()

    def add(self, value: float, count: int = 1) -> None:
        """Add a value, or a pre-summed total covering count samples."""
        if math.isnan(value):
            return
        self.total += value
        self.count += count

    def get(self) -> float:
        """Mean of the samples, 0 if there are none."""
        if self.count > 0:
            return self.total / self.count
        return 0.0

    def merge(self, other: "AvgTracker") -> None:
        self.add(other.total, other.count)

    def reset(self) -> None:
        self.total = 0.0
        self.count = 0

    def __bool__(self) -> bool:
        return self.count > 0


class Report:
    """Flat metric name -> float map for one iteration.

    Keys written with add_avg() are averaged over every call until finish().
    """

    def __init__(self):
        self._values: Dict[str, float] = {}
        self._avgs: Dict[str, AvgTracker] = {}

    def __setitem__(self, key: str, value: float) -> None:
        self._values[key] = float(value)

    def __getitem__(self, key: str) -> float:
        if key in self._values:
            return self._values[key]
        return self._avgs[key].get()

    def __contains__(self, key: str) -> bool:
        return key in self._values or key in self._avgs

    def __iter__(self) -> Iterator[str]:
        return iter(self.keys())

    def __len__(self) -> int:
        return len(self.keys())

    def get(self, key: str, default: Optional[float] = None) -> Optional[float]:
        if key in self:
            return self[key]
        return default

    def keys(self) -> List[str]:
        return list(self._values.keys()) + [k for k in self._avgs if k not in self._values]

    def add_avg(self, key: str, value: float) -> None:
        self._avgs.setdefault(key, AvgTracker()).add(value)

    def finish(self) -> None:
        """Fold averaged keys into plain values."""
        for key, tracker in self._avgs.items():
            self._values[key] = tracker.get()
        self._avgs = {}

    def to_dict(self) -> Dict[str, float]:
        return {key: self[key] for key in self.keys()}

    def format(self, keys: Sequence[str]) -> str:
        """Render selected keys, one per line.

        An empty string inserts a blank line and a leading "-" indents the
        entry. Missing keys are skipped.
        """
        lines = []
        for key in keys:
            if not key:
                lines.append("")
                continue
            indent = ""
            name = key
            while name.startswith("-"):
                indent += "  "
                name = name[1:]
            if name not in self:
                continue
            lines.append(f"{indent}{name}: {_format_value(self[name])}")
        return "\n".join(lines)

    def display(self, keys: Sequence[str]) -> None:
        logger.info("\n" + self.format(keys))


def _format_value(value: float) -> str:
    if float(value).is_integer() and abs(value) >= 1000:
        return f"{int(value):,}"
    return f"{value:.5g}"


def check_policy_health(report: Report) -> List[str]:
    """Check for signs of policy collapse or training issues.

    Args:
        report: Iteration report

    Returns:
        List of warnings (empty if healthy)
    """
    warnings = []

    entropy = report.get("Policy Entropy", 1.0)
    if entropy < 0.05:
        warnings.append(f"LOW ENTROPY: {entropy:.3f} - policy may be collapsing")

    kl = report.get("Mean KL Divergence", 0.0)
    if kl > 0.1:
        warnings.append(f"HIGH KL: {kl:.3f} - policy changing too fast")

    clip_fraction = report.get("SB3 Clip Fraction", 0.0)
    if clip_fraction > 0.3:
        warnings.append(f"HIGH CLIP FRACTION: {clip_fraction:.2f}")

    policy_loss = report.get("Policy Loss", 0.0)
    if abs(policy_loss) > 100:
        warnings.append(f"POLICY LOSS EXPLOSION: {policy_loss:.2f}")

    critic_loss = report.get("Critic Loss", 0.0)
    if critic_loss > 1000:
        warnings.append(f"CRITIC LOSS EXPLOSION: {critic_loss:.2f}")

    clipped_portion = report.get("Clipped Reward Portion", 0.0)
    if clipped_portion > 0.1:
        warnings.append(f"HIGH REWARD CLIPPING: {clipped_portion:.2%} of normalized reward clipped")

    return warnings
