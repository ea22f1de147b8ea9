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
Contrastive-divergence training loops for RBMs with callbacks and logging

This module provides the training infrastructure shared by every trainer:
- TrainingLoop: minibatch orchestration, history, callbacks, logging
- ContrastiveDivergence: chains restarted from data (CD-k) or from the
  prior (rdm) at every minibatch
- PersistentContrastiveDivergence: persistent fantasy chains (PCD)
- cd, rdm, pcd: functional entry points returning a History
"""

from typing import Any, Dict, List, Optional, Tuple, Union
import torch
import torch.utils.data as data_utils
import logging
import time
from tqdm import tqdm

from ..configs.config_manager import TrainingConfig
from ..errors import ShapeMismatchError
from ..models.gradients import RBMGradient
from ..models.layers import Binary, Potts, Spin
from ..models.rbm import RBM
from ..models.utils import weighted_mean
from .callbacks import Callback, History
from .eval import log_pseudolikelihood_stochastic
from .optim import RBMOptimizer
from .regularize import regularization_loss, regularize_gradient_

logger = logging.getLogger(__name__)


def contrastive_divergence(
    rbm: RBM,
    vd: torch.Tensor,
    vm: torch.Tensor,
    wd: Optional[torch.Tensor] = None
) -> torch.Tensor:
    """Difference of mean free energies between data and fantasy samples."""
    return weighted_mean(rbm.free_energy(vd), wd) - rbm.free_energy(vm).mean()


class TrainingLoop:
    """
    Minibatch training loop for RBMs.

    Subclasses decide how fantasy chains are produced (`initialize_chains`,
    `advance_chains`) and may transform the gradient (`compute_gradient`).
    Parameters are updated in place through a single RBMOptimizer.
    """

    def __init__(
        self,
        rbm: RBM,
        config: Optional[TrainingConfig] = None,
        callbacks: Optional[List[Callback]] = None
    ):
        """
        Initialize training loop.

        Args:
            rbm: Model to train in place
            config: Training settings
            callbacks: List of training callbacks
        """
        self.rbm = rbm
        self.config = config or TrainingConfig()
        self.callbacks = callbacks or []
        self.optimizer = self.build_optimizer()
        self.history = History()
        self.chains: Optional[torch.Tensor] = None
        self.data_stats: Optional[Dict[str, torch.Tensor]] = None
        self.current_epoch = 0

        logger.debug(f"{type(self).__name__} initialized for {rbm}")

    # Hooks for subclasses

    def build_optimizer(self):
        return RBMOptimizer(self.rbm, self.config.optimizer)

    def initialize_chains(
        self,
        data: torch.Tensor,
        weights: torch.Tensor,
        init_chains: Optional[torch.Tensor] = None
    ) -> Optional[torch.Tensor]:
        return init_chains

    def advance_chains(self, vd: torch.Tensor) -> torch.Tensor:
        raise NotImplementedError

    def compute_gradient(self, vd: torch.Tensor, wd: torch.Tensor, vm: torch.Tensor) -> RBMGradient:
        """Gradient of the contrastive-divergence loss, data minus model."""
        grad_data = self.rbm.grad_free_energy(vd, wd, stats=self.data_stats)
        grad_model = self.rbm.grad_free_energy(vm)
        return grad_data - grad_model

    def begin_training(self, data: torch.Tensor, weights: torch.Tensor) -> None:
        pass

    # Orchestration

    def _dispatch(self, hook: str, *args, **kwargs) -> None:
        for callback in self.callbacks:
            method = getattr(callback, hook, None)
            if method is None:
                continue
            try:
                method(*args, **kwargs)
            except Exception as e:
                logger.warning(f"Callback {type(callback).__name__}.{hook} failed: {e}")

    def _validate(self, data: torch.Tensor, weights: Optional[torch.Tensor]) -> Tuple[torch.Tensor, torch.Tensor]:
        visible_shape = tuple(self.rbm.visible.shape)
        if data.ndim != len(visible_shape) + 1 or tuple(data.shape[1:]) != visible_shape:
            raise ShapeMismatchError(
                f"Data of shape {tuple(data.shape)} does not match visible layer shape {visible_shape}"
            )
        n_samples = data.shape[0]
        if weights is None:
            weights = torch.ones(n_samples, dtype=self.rbm.weights.dtype, device=data.device)
        elif tuple(weights.shape) != (n_samples,):
            raise ShapeMismatchError(
                f"Expected {n_samples} sample weights, got shape {tuple(weights.shape)}"
            )
        return data.to(self.rbm.weights.dtype), weights.to(self.rbm.weights.dtype)

    def _evaluates_lpl(self) -> bool:
        return self.config.evaluate_lpl and isinstance(self.rbm.visible, (Binary, Spin, Potts))

    def train_batch(self, vd: torch.Tensor, wd: torch.Tensor) -> Dict[str, float]:
        """
        Update the parameters on one minibatch.

        Args:
            vd: Data minibatch
            wd: Minibatch sample weights

        Returns:
            Batch metrics
        """
        vm = self.advance_chains(vd)
        grad = self.compute_gradient(vd, wd, vm)
        regularization = self.config.regularization
        if regularization.is_active():
            regularize_gradient_(grad, self.rbm, regularization)

        with torch.no_grad():
            cd_loss = contrastive_divergence(self.rbm, vd, vm, wd).item()
            reg_loss = regularization_loss(self.rbm, regularization).item()

        self.optimizer.step(grad)
        return {'cd_loss': cd_loss, 'reg_loss': reg_loss}

    def train_epoch(self, epoch: int, loader: data_utils.DataLoader) -> Dict[str, float]:
        """
        Train for one epoch.

        Args:
            epoch: Current epoch number (1-based)
            loader: Minibatches of (data, weights)

        Returns:
            Epoch metrics averaged over batches
        """
        totals = {'cd_loss': 0.0, 'reg_loss': 0.0}
        n_batches = 0

        pbar = tqdm(
            loader,
            desc=f"Epoch {epoch}",
            disable=not (self.config.verbose or logger.isEnabledFor(logging.INFO))
        )

        for batch_idx, (vd, wd) in enumerate(pbar, start=1):
            self._dispatch('on_batch_begin', batch=batch_idx, logs={}, model=self.rbm)
            batch_metrics = self.train_batch(vd, wd)

            self.history.push('epoch', epoch)
            self.history.push('batch', batch_idx)
            for key, value in batch_metrics.items():
                self.history.push(key, value)
                totals[key] += value
            n_batches += 1

            pbar.set_postfix({'cd_loss': f"{batch_metrics['cd_loss']:.4f}"})
            self._dispatch('on_batch_end', batch=batch_idx, logs=batch_metrics, model=self.rbm)

        return {key: value / max(n_batches, 1) for key, value in totals.items()}

    def fit(
        self,
        data: torch.Tensor,
        weights: Optional[torch.Tensor] = None,
        init_chains: Optional[torch.Tensor] = None
    ) -> History:
        """
        Main training loop.

        Args:
            data: Training data (n_samples, *visible.shape)
            weights: Per-sample weights (n_samples,)
            init_chains: Fantasy chains to continue from (persistent trainers)

        Returns:
            history: Training history
        """
        data, weights = self._validate(data, weights)
        epochs = self.config.epochs

        self.data_stats = self.rbm.visible.sufficient_statistics(data, weights)
        self.chains = self.initialize_chains(data, weights, init_chains)
        self.begin_training(data, weights)

        loader = data_utils.DataLoader(
            data_utils.TensorDataset(data, weights),
            batch_size=self.config.batch_size,
            shuffle=self.config.shuffle
        )

        logger.info(f"Starting {type(self).__name__} training for {epochs} epochs")
        self._dispatch('on_train_begin', logs={}, model=self.rbm)

        try:
            for epoch in range(1, epochs + 1):
                self.current_epoch = epoch
                self._dispatch('on_epoch_begin', epoch=epoch - 1, logs={}, model=self.rbm)

                epoch_start_time = time.time()
                epoch_logs: Dict[str, Any] = self.train_epoch(epoch, loader)
                elapsed = time.time() - epoch_start_time

                log_msg = f"Epoch {epoch}/{epochs} - cd_loss: {epoch_logs['cd_loss']:.4f}"
                if self._evaluates_lpl():
                    with torch.no_grad():
                        lpl = weighted_mean(log_pseudolikelihood_stochastic(self.rbm, data), weights).item()
                    self.history.push('lpl', lpl)
                    epoch_logs['lpl'] = lpl
                    log_msg += f" - lpl: {lpl:.4f}"
                self.history.push('Δt', elapsed)
                epoch_logs['Δt'] = elapsed
                epoch_logs['epoch'] = epoch

                log_msg += f" - time: {elapsed:.2f}s"
                logger.info(log_msg)

                self._dispatch('on_epoch_end', epoch=epoch - 1, logs=epoch_logs, model=self.rbm)

                stopping = [
                    callback for callback in self.callbacks
                    if hasattr(callback, 'should_stop') and callback.should_stop()
                ]
                if stopping:
                    logger.info(f"Early stopping triggered by {type(stopping[0]).__name__}")
                    break

        except KeyboardInterrupt:
            logger.info("Training interrupted by user")

        except Exception as e:
            logger.error(f"Training failed with error: {e}")
            raise

        finally:
            self._dispatch('on_train_end', logs=self.history.to_dict(), model=self.rbm)

        logger.info("Training completed")
        return self.history


class ContrastiveDivergence(TrainingLoop):
    """
    CD-k training: chains restart at every minibatch.

    With chain_init='data' each chain starts from a data sample (CD); with
    chain_init='prior' it starts from an independent sample of the visible
    layer (rdm).
    """

    def __init__(
        self,
        rbm: RBM,
        config: Optional[TrainingConfig] = None,
        callbacks: Optional[List[Callback]] = None,
        chain_init: str = 'data'
    ):
        if chain_init not in ('data', 'prior'):
            raise ValueError(f"Unknown chain initialization: {chain_init}")
        super().__init__(rbm, config, callbacks)
        self.chain_init = chain_init

    def advance_chains(self, vd: torch.Tensor) -> torch.Tensor:
        with torch.no_grad():
            if self.chain_init == 'data':
                start = vd
            else:
                start = self.rbm.visible.sample_from_prior(vd.shape[0])
            self.chains = self.rbm.sample_v_from_v(start, steps=self.config.steps)
        return self.chains


class PersistentContrastiveDivergence(TrainingLoop):
    """PCD training: batch_size fantasy chains persist across minibatches and epochs."""

    def _check_chains(self, chains: torch.Tensor) -> torch.Tensor:
        self.rbm.visible.batch_shape(chains)
        if chains.ndim != self.rbm.visible.ndim + 1:
            raise ShapeMismatchError(
                f"Fantasy chains must have one batch axis, got shape {tuple(chains.shape)}"
            )
        return chains.to(self.rbm.weights.dtype)

    def initialize_chains(self, data, weights, init_chains=None):
        if init_chains is not None:
            return self._check_chains(init_chains)
        index = torch.randint(data.shape[0], (self.config.batch_size,))
        with torch.no_grad():
            return self.rbm.sample_v_from_v(data[index], steps=self.config.steps)

    def advance_chains(self, vd: torch.Tensor) -> torch.Tensor:
        with torch.no_grad():
            self.chains = self.rbm.sample_v_from_v(self.chains, steps=self.config.steps)
        return self.chains


def _run(
    trainer: TrainingLoop,
    data: torch.Tensor,
    weights: Optional[torch.Tensor],
    init_chains: Optional[torch.Tensor],
    return_chains: bool
) -> Union[History, Tuple[History, torch.Tensor]]:
    history = trainer.fit(data, weights, init_chains=init_chains)
    if return_chains:
        return history, trainer.chains
    return history


def cd(
    rbm: RBM,
    data: torch.Tensor,
    config: Optional[TrainingConfig] = None,
    weights: Optional[torch.Tensor] = None,
    callbacks: Optional[List[Callback]] = None,
    return_chains: bool = False
):
    """
    Train with contrastive divergence, chains started from each minibatch.

    Args:
        rbm: Model trained in place
        data: Training data (n_samples, *visible.shape)
        config: Training settings
        weights: Per-sample weights (n_samples,)
        callbacks: Training callbacks
        return_chains: Also return the last fantasy samples

    Returns:
        History, or (History, chains) when return_chains is set
    """
    trainer = ContrastiveDivergence(rbm, config, callbacks, chain_init='data')
    return _run(trainer, data, weights, None, return_chains)


def rdm(
    rbm: RBM,
    data: torch.Tensor,
    config: Optional[TrainingConfig] = None,
    weights: Optional[torch.Tensor] = None,
    callbacks: Optional[List[Callback]] = None,
    return_chains: bool = False
):
    """Train with chains restarted from prior samples of the visible layer at every minibatch."""
    trainer = ContrastiveDivergence(rbm, config, callbacks, chain_init='prior')
    return _run(trainer, data, weights, None, return_chains)


def pcd(
    rbm: RBM,
    data: torch.Tensor,
    config: Optional[TrainingConfig] = None,
    weights: Optional[torch.Tensor] = None,
    callbacks: Optional[List[Callback]] = None,
    init_chains: Optional[torch.Tensor] = None,
    return_chains: bool = False
):
    """
    Train with persistent contrastive divergence.

    Args:
        rbm: Model trained in place
        data: Training data (n_samples, *visible.shape)
        config: Training settings
        weights: Per-sample weights (n_samples,)
        callbacks: Training callbacks
        init_chains: Fantasy chains to continue from, (n_chains, *visible.shape)
        return_chains: Also return the final fantasy chains

    Returns:
        History, or (History, chains) when return_chains is set
    """
    trainer = PersistentContrastiveDivergence(rbm, config, callbacks)
    return _run(trainer, data, weights, init_chains, return_chains)
