# Copyright 2025 NeuroBM Contributors
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
"""
Training history and callbacks

This module provides the bookkeeping shared by all trainers:
- History: append-only record of per-batch and per-epoch metrics
- Progress logging and custom metric monitoring
- Early stopping on a monitored epoch metric
- Parameter checkpointing via state_dict
"""

from typing import Any, Callable, Dict, List, Optional, Union
import torch
import torch.nn as nn
import numpy as np
import logging
import time
from pathlib import Path
from abc import ABC

logger = logging.getLogger(__name__)


class History:
    """Append-only store mapping metric names to lists of recorded values."""

    def __init__(self):
        self._values: Dict[str, List[Any]] = {}

    def push(self, key: str, value: Any) -> None:
        if isinstance(value, torch.Tensor):
            value = value.item()
        self._values.setdefault(key, []).append(value)

    def __getitem__(self, key: str) -> List[Any]:
        return self._values[key]

    def __contains__(self, key: str) -> bool:
        return key in self._values

    def __len__(self) -> int:
        return len(self._values)

    def keys(self):
        return self._values.keys()

    def last(self, key: str, default: Any = None) -> Any:
        values = self._values.get(key)
        return values[-1] if values else default

    def to_dict(self) -> Dict[str, List[Any]]:
        return {key: list(values) for key, values in self._values.items()}

    def __repr__(self) -> str:
        counts = ", ".join(f"{key}: {len(values)}" for key, values in self._values.items())
        return f"History({counts})"


class Callback(ABC):
    """Base class for training callbacks."""

    def on_train_begin(self, logs: Dict[str, Any], model: nn.Module) -> None:
        """Called at the beginning of training."""
        pass

    def on_train_end(self, logs: Dict[str, Any], model: nn.Module) -> None:
        """Called at the end of training."""
        pass

    def on_epoch_begin(self, epoch: int, logs: Dict[str, Any], model: nn.Module) -> None:
        """Called at the beginning of each epoch."""
        pass

    def on_epoch_end(self, epoch: int, logs: Dict[str, Any], model: nn.Module) -> None:
        """Called at the end of each epoch."""
        pass

    def on_batch_begin(self, batch: int, logs: Dict[str, Any], model: nn.Module) -> None:
        """Called at the beginning of each batch."""
        pass

    def on_batch_end(self, batch: int, logs: Dict[str, Any], model: nn.Module) -> None:
        """Called at the end of each batch."""
        pass


class EarlyStopping(Callback):
    """Stop training when a monitored epoch metric stops improving."""

    def __init__(
        self,
        monitor: str = 'lpl',
        patience: int = 10,
        min_delta: float = 0.0,
        mode: str = 'max',
        restore_best_weights: bool = True,
        verbose: bool = True
    ):
        """
        Initialize early stopping callback.

        Args:
            monitor: Metric to monitor
            patience: Number of epochs with no improvement to wait
            min_delta: Minimum change to qualify as improvement
            mode: 'min' for minimization, 'max' for maximization
            restore_best_weights: Whether to restore best weights when stopping
            verbose: Whether to log messages
        """
        self.monitor = monitor
        self.patience = patience
        self.min_delta = min_delta
        self.mode = mode
        self.restore_best_weights = restore_best_weights
        self.verbose = verbose

        if mode == 'min':
            self.monitor_op = np.less
        elif mode == 'max':
            self.monitor_op = np.greater
        else:
            raise ValueError(f"Unknown mode: {mode}")
        self._reset()

    def _reset(self) -> None:
        self.wait = 0
        self.stopped_epoch = None
        self.best = np.inf if self.mode == 'min' else -np.inf
        self.best_weights = None

    def on_train_begin(self, logs: Dict[str, Any], model: nn.Module) -> None:
        self._reset()

    def on_epoch_end(self, epoch: int, logs: Dict[str, Any], model: nn.Module) -> None:
        current = logs.get(self.monitor)
        if current is None:
            logger.warning(f"Early stopping metric '{self.monitor}' not found in logs")
            return

        improvement = current + self.min_delta if self.mode == 'min' else current - self.min_delta
        if self.monitor_op(improvement, self.best):
            self.best = current
            self.wait = 0
            if self.restore_best_weights:
                self.best_weights = {k: v.clone() for k, v in model.state_dict().items()}
            return

        self.wait += 1
        if self.wait >= self.patience:
            self.stopped_epoch = epoch
            if self.verbose:
                logger.info(f"Early stopping at epoch {epoch + 1}")
            if self.restore_best_weights and self.best_weights is not None:
                model.load_state_dict(self.best_weights)
                if self.verbose:
                    logger.info("Restored best weights")

    def should_stop(self) -> bool:
        return self.stopped_epoch is not None


class ModelCheckpoint(Callback):
    """Save the RBM state_dict at the end of selected epochs."""

    def __init__(
        self,
        filepath: Union[str, Path],
        monitor: str = 'lpl',
        mode: str = 'max',
        save_best_only: bool = True,
        period: int = 1,
        verbose: bool = True
    ):
        """
        Initialize model checkpoint callback.

        Args:
            filepath: Path template, may contain {epoch} and the monitored key
            monitor: Metric to monitor for best model
            mode: 'min' for minimization, 'max' for maximization
            save_best_only: Whether to save only improving epochs
            period: Interval (epochs) between checkpoints
            verbose: Whether to log messages
        """
        self.filepath = Path(filepath)
        self.monitor = monitor
        self.save_best_only = save_best_only
        self.period = period
        self.verbose = verbose

        if mode == 'min':
            self.monitor_op, self.best = np.less, np.inf
        elif mode == 'max':
            self.monitor_op, self.best = np.greater, -np.inf
        else:
            raise ValueError(f"Unknown mode: {mode}")
        self.mode = mode
        self.epochs_since_last_save = 0
        self.saved_paths: List[Path] = []

    def on_train_begin(self, logs: Dict[str, Any], model: nn.Module) -> None:
        self.best = np.inf if self.mode == 'min' else -np.inf
        self.epochs_since_last_save = 0
        self.filepath.parent.mkdir(parents=True, exist_ok=True)

    def on_epoch_end(self, epoch: int, logs: Dict[str, Any], model: nn.Module) -> None:
        self.epochs_since_last_save += 1
        if self.epochs_since_last_save < self.period:
            return
        self.epochs_since_last_save = 0

        current = logs.get(self.monitor)
        if self.save_best_only:
            if current is None:
                logger.warning(f"Checkpoint metric '{self.monitor}' not found in logs")
                return
            if not self.monitor_op(current, self.best):
                return
            self.best = current

        path = Path(str(self.filepath).format(epoch=epoch + 1, **{self.monitor: current or 0}))
        torch.save(model.state_dict(), path)
        self.saved_paths.append(path)
        if self.verbose:
            logger.info(f"Model checkpoint saved to {path}")


class MetricMonitor(Callback):
    """Monitor and track custom metrics during training."""

    def __init__(
        self,
        metrics: Dict[str, Callable],
        log_freq: int = 1,
        verbose: bool = True
    ):
        """
        Initialize metric monitor.

        Args:
            metrics: Dictionary of metric name -> fn(model, logs)
            log_freq: Frequency (epochs) for computing metrics
            verbose: Whether to log metric values
        """
        self.metrics = metrics
        self.log_freq = log_freq
        self.verbose = verbose
        self.metric_history = {name: [] for name in metrics.keys()}

    def on_epoch_end(self, epoch: int, logs: Dict[str, Any], model: nn.Module) -> None:
        """Compute and log custom metrics."""
        if (epoch + 1) % self.log_freq == 0:
            for name, metric_fn in self.metrics.items():
                try:
                    value = metric_fn(model, logs)
                    if isinstance(value, torch.Tensor):
                        value = value.item()
                    self.metric_history[name].append(value)
                    logs[f'custom_{name}'] = value

                    if self.verbose:
                        logger.info(f"Custom metric {name}: {value:.4f}")

                except Exception as e:
                    logger.warning(f"Failed to compute metric {name}: {e}")

    def get_metric_history(self) -> Dict[str, List[float]]:
        """Get history of custom metrics."""
        return {name: list(values) for name, values in self.metric_history.items()}


class ProgressLogger(Callback):
    """Simple progress logging callback."""

    def __init__(self, log_freq: int = 1):
        """
        Initialize progress logger.

        Args:
            log_freq: Frequency (epochs) for logging progress
        """
        self.log_freq = log_freq
        self.start_time: Optional[float] = None

    def on_train_begin(self, logs: Dict[str, Any], model: nn.Module) -> None:
        """Record training start time."""
        self.start_time = time.time()
        logger.info("Training started")

    def on_epoch_end(self, epoch: int, logs: Dict[str, Any], model: nn.Module) -> None:
        """Log progress."""
        if (epoch + 1) % self.log_freq == 0:
            elapsed = time.time() - self.start_time
            summary = " - ".join(
                f"{key}: {value:.4f}" for key, value in logs.items()
                if isinstance(value, float) and key not in ('epoch', 'Δt')
            )
            logger.info(f"Epoch {epoch + 1} completed in {elapsed:.2f}s" + (f" - {summary}" if summary else ""))

    def on_train_end(self, logs: Dict[str, Any], model: nn.Module) -> None:
        """Log training completion."""
        if self.start_time:
            total_time = time.time() - self.start_time
            logger.info(f"Training completed in {total_time:.2f}s")
