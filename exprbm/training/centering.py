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
Centered persistent contrastive divergence

Gradients are expressed in the centered parameterization of
Melchior, Fischer & Wiskott (JMLR 17, 2016), where the coupling acts on
v - λv and h - λh. λv is the data mean of the visible units and λh a running
average of the hidden data means over minibatches.
"""

from typing import List, Optional
import torch
import logging

from ..configs.config_manager import TrainingConfig
from ..models.gradients import RBMGradient
from ..models.rbm import RBM
from ..models.utils import batch_mean
from .callbacks import Callback
from .loop import PersistentContrastiveDivergence, _run

logger = logging.getLogger(__name__)


def center_gradient(
    rbm: RBM,
    grad: RBMGradient,
    visible_mean: torch.Tensor,
    hidden_mean: torch.Tensor
) -> RBMGradient:
    """
    Transform a gradient into the centered parameterization.

    Args:
        rbm: Model the gradient refers to
        grad: Gradient in the standard parameterization
        visible_mean: Centering offsets λv, shape visible.shape
        hidden_mean: Centering offsets λh, shape hidden.shape

    Returns:
        New gradient record with centered weights and shifted field gradients
    """
    nv, nh = rbm.visible.num_units, rbm.hidden.num_units
    lv = visible_mean.reshape(nv)
    lh = hidden_mean.reshape(nh)
    field_v = rbm.visible.field_gradient(grad.visible).reshape(nv)
    field_h = rbm.hidden.field_gradient(grad.hidden).reshape(nh)

    dw = grad.weights.reshape(nv, nh)
    centered_w = dw - torch.outer(lv, field_h) - torch.outer(field_v, lh)

    shift_v = (centered_w @ lh).reshape(rbm.visible.shape)
    shift_h = (centered_w.T @ lv).reshape(rbm.hidden.shape)

    visible = dict(grad.visible)
    for name in rbm.visible.field_names:
        visible[name] = visible[name] - shift_v
    hidden = dict(grad.hidden)
    for name in rbm.hidden.field_names:
        hidden[name] = hidden[name] - shift_h

    return RBMGradient(visible=visible, hidden=hidden, weights=centered_w.reshape(rbm.weights.shape))


class CenteredPCD(PersistentContrastiveDivergence):
    """
    PCD with centered gradients.

    Fantasy chains start from prior samples of the visible layer. The hidden
    offsets follow λh ← α·λh + (1 - α)·<h>_minibatch with α = config.center_alpha.
    """

    def initialize_chains(self, data, weights, init_chains=None):
        if init_chains is not None:
            return self._check_chains(init_chains)
        with torch.no_grad():
            return self.rbm.visible.sample_from_prior(self.config.batch_size)

    def begin_training(self, data: torch.Tensor, weights: torch.Tensor) -> None:
        with torch.no_grad():
            hidden_means = self.rbm.mean_h_from_v(data)
            self.hidden_mean = batch_mean(hidden_means, 1, weights)
        logger.debug(f"Initial hidden offsets: mean {self.hidden_mean.mean().item():.4f}")

    def compute_gradient(self, vd, wd, vm):
        grad_data = self.rbm.grad_free_energy(vd, wd, stats=self.data_stats)
        grad_model = self.rbm.grad_free_energy(vm)
        grad = grad_data - grad_model

        # visible offsets come from the full-data statistics
        visible_mean = self.rbm.visible.mean_from_gradient(grad_data.visible)
        batch_hidden = self.rbm.hidden.mean_from_gradient(grad_data.hidden)
        alpha = self.config.center_alpha
        self.hidden_mean = alpha * self.hidden_mean + (1 - alpha) * batch_hidden

        if not self.config.center_visible:
            visible_mean = torch.zeros_like(visible_mean)
        hidden_mean = self.hidden_mean if self.config.center_hidden else torch.zeros_like(self.hidden_mean)
        return center_gradient(self.rbm, grad, visible_mean, hidden_mean)


def pcd_centered(
    rbm: RBM,
    data: torch.Tensor,
    config: Optional[TrainingConfig] = None,
    weights: Optional[torch.Tensor] = None,
    callbacks: Optional[List[Callback]] = None,
    init_chains: Optional[torch.Tensor] = None,
    return_chains: bool = False
):
    """
    Train with centered persistent contrastive divergence.

    Args:
        rbm: Model trained in place
        data: Training data (n_samples, *visible.shape)
        config: Training settings (center_alpha, center_visible, center_hidden)
        weights: Per-sample weights (n_samples,)
        callbacks: Training callbacks
        init_chains: Fantasy chains to continue from
        return_chains: Also return the final fantasy chains

    Returns:
        History, or (History, chains) when return_chains is set
    """
    trainer = CenteredPCD(rbm, config, callbacks)
    return _run(trainer, data, weights, init_chains, return_chains)
