# Logging utilities

import logging
import json
import csv
from pathlib import Path
from typing import Dict, List, Any, Optional
from datetime import datetime

import numpy as np
import yaml


LOGGER_NAME = "gigalearn"


def setup_logging(
    level: str = "INFO",
    log_file: Optional[Path] = None,
) -> logging.Logger:
    """Setup logging configuration.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_file: Optional file path for logging

    Returns:
        Configured logger
    """
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(getattr(logging, level.upper()))

    # Repeated calls replace handlers instead of stacking them
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(getattr(logging, level.upper()))
    console_format = logging.Formatter(
        "%(asctime)s | %(levelname)s | %(message)s",
        datefmt="%H:%M:%S",
    )
    console_handler.setFormatter(console_format)
    logger.addHandler(console_handler)

    # File handler
    if log_file is not None:
        log_file = Path(log_file)
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(logging.DEBUG)
        file_format = logging.Formatter(
            "%(asctime)s | %(levelname)s | %(name)s | %(message)s",
        )
        file_handler.setFormatter(file_format)
        logger.addHandler(file_handler)

    return logger


class MetricsLogger:
    """Writes iteration reports to metrics.csv and metrics.json.

    Reports do not all carry the same keys (losses and update magnitudes
    only appear after the first iteration), so the CSV is rewritten with a
    wider header whenever a new key shows up.
    """

    def __init__(self, log_dir: Path, summary_window: int = 100):
        """Initialize metrics logger.

        Args:
            log_dir: Directory for log files
            summary_window: Trailing iterations summarized in metrics.json
        """
        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)

        self.csv_path = self.log_dir / "metrics.csv"
        self.json_path = self.log_dir / "metrics.json"
        self.summary_window = summary_window

        self._history: List[Dict[str, Any]] = []
        self._columns: List[str] = []

    def log(self, iteration: int, report: Dict[str, float]) -> None:
        """Record one iteration report.

        Args:
            iteration: Iteration number
            report: Flat metric name -> value map
        """
        row = {"iteration": iteration, "time": datetime.now().isoformat(), **report}
        self._history.append(row)

        new_columns = [key for key in row if key not in self._columns]
        if new_columns:
            self._columns.extend(new_columns)
            self._write_csv(self._history, mode="w")
        else:
            self._write_csv([row], mode="a")

    def _write_csv(self, rows: List[Dict[str, Any]], mode: str) -> None:
        with open(self.csv_path, mode, newline="") as f:
            writer = csv.DictWriter(f, fieldnames=self._columns, restval="")
            if mode == "w":
                writer.writeheader()
            writer.writerows(rows)

    def save_summary(self) -> None:
        """Dump the full history plus trailing-window stats per metric."""
        metric_names = [c for c in self._columns if c not in ("iteration", "time")]
        summary = {name: self.get_summary_stats(name, self.summary_window) for name in metric_names}
        with open(self.json_path, "w") as f:
            json.dump({"summary": summary, "history": self._history}, f, indent=2)

    def get_metric_series(self, metric_name: str) -> List[float]:
        return [row[metric_name] for row in self._history if metric_name in row]

    def get_latest(self, metric_name: str) -> Optional[float]:
        series = self.get_metric_series(metric_name)
        return series[-1] if series else None

    def get_summary_stats(self, metric_name: str, window: int = 100) -> Dict[str, float]:
        """Mean/std/min/max/last of a metric over the trailing window.

        Iterations that did not report the metric are skipped.
        """
        values = np.asarray(self.get_metric_series(metric_name)[-window:], dtype=np.float64)
        if values.size == 0:
            return {}

        return {
            "mean": float(values.mean()),
            "std": float(values.std()),
            "min": float(values.min()),
            "max": float(values.max()),
            "last": float(values[-1]),
        }


class ExperimentLogger:
    """Run directory with logs, metrics and the resolved config."""

    def __init__(
        self,
        experiment_name: str,
        base_dir: Path = Path("outputs"),
        level: str = "INFO",
    ):
        """Initialize experiment logger.

        Args:
            experiment_name: Name of experiment
            base_dir: Base directory for experiments
            level: Console logging level
        """
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        self.experiment_dir = Path(base_dir) / f"{timestamp}_{experiment_name}"
        self.experiment_dir.mkdir(parents=True, exist_ok=True)

        self.logs_dir = self.experiment_dir / "logs"
        self.logs_dir.mkdir(exist_ok=True)

        self.checkpoints_dir = self.experiment_dir / "checkpoints"
        self.checkpoints_dir.mkdir(exist_ok=True)

        self.logger = setup_logging(
            level=level,
            log_file=self.logs_dir / "train.log",
        )

        self.metrics = MetricsLogger(self.logs_dir)

    def save_config(self, config: Dict[str, Any]) -> None:
        config_path = self.experiment_dir / "config.yaml"
        with open(config_path, "w") as f:
            yaml.dump(config, f, default_flow_style=False)

    def log_metrics(self, iteration: int, report: Dict[str, float]) -> None:
        self.metrics.log(iteration, report)

    def close(self) -> None:
        """Write metrics.json and detach the run log file."""
        self.metrics.save_summary()
        self.logger.info(f"Metrics saved to {self.metrics.json_path}")
        for handler in [h for h in self.logger.handlers if isinstance(h, logging.FileHandler)]:
            self.logger.removeHandler(handler)
            handler.close()
