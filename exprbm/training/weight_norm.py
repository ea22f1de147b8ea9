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
Weight-normalized persistent contrastive divergence

The weights of each hidden unit are split into a norm g and a direction u,
W = g·u/‖u‖ with norms taken over the visible axes (Salimans & Kingma, 2016).
Gradients with respect to g, u and the layer parameters are obtained by
differentiating the contrastive-divergence loss with torch.autograd.
"""

from typing import Dict, List, Optional, Tuple
import torch
import logging
from torch.func import functional_call

from ..configs.config_manager import TrainingConfig
from ..errors import DomainError, GradientConsistencyError
from ..models.rbm import RBM
from ..models.utils import weighted_mean
from .callbacks import Callback
from .loop import PersistentContrastiveDivergence, _run
from .optim import apply_gradients_, build_optimizer
from .regularize import _penalty

logger = logging.getLogger(__name__)


def _visible_dims(visible_ndim: int) -> Tuple[int, ...]:
    return tuple(range(visible_ndim))


def weight_norm(rbm: RBM) -> Tuple[torch.Tensor, torch.Tensor]:
    """
    Split the weights into per-hidden-unit norms and unit directions.

    Returns:
        g: Norms with singleton visible axes, broadcastable against the weights
        u: Directions with unit norm over the visible axes
    """
    dims = _visible_dims(rbm.visible.ndim)
    weights = rbm.weights.detach()
    g = torch.sqrt(weights.pow(2).sum(dim=dims, keepdim=True))
    if bool((g == 0).any()):
        raise DomainError("Weight normalization needs every hidden unit to have nonzero weights")
    return g, weights / g


def weights_from_norm(g: torch.Tensor, u: torch.Tensor, visible_ndim: int) -> torch.Tensor:
    """Recompose W = g·u/‖u‖."""
    u_norm = torch.sqrt(u.pow(2).sum(dim=_visible_dims(visible_ndim), keepdim=True))
    return g * u / u_norm


def _tolerance(dtype: torch.dtype) -> float:
    return 1e-8 if dtype == torch.float64 else 1e-3


class WeightNormPCD(PersistentContrastiveDivergence):
    """PCD on the weight-normalized parameterization, with a chain-rule self-check."""

    def build_optimizer(self):
        self.norm, self.direction = (t.clone().requires_grad_() for t in weight_norm(self.rbm))
        self.layer_params = {
            name: param for name, param in self.rbm.named_parameters() if name != 'weights'
        }
        self.leaf_params: Dict[str, torch.Tensor] = {
            **self.layer_params,
            'norm': self.norm,
            'direction': self.direction,
        }
        return build_optimizer(self.leaf_params.values(), self.config.optimizer)

    def check_gradients(
        self,
        grad_weights: torch.Tensor,
        grad_norm: torch.Tensor,
        grad_direction: torch.Tensor
    ) -> None:
        """
        Compare autograd gradients of g and u with the chain rule through W.

        Raises:
            GradientConsistencyError: If either gradient disagrees
        """
        dims = _visible_dims(self.rbm.visible.ndim)
        g, u = self.norm.detach(), self.direction.detach()
        u_norm = torch.sqrt(u.pow(2).sum(dim=dims, keepdim=True))
        expected_norm = (u * grad_weights).sum(dim=dims, keepdim=True) / u_norm
        expected_direction = g * grad_weights / u_norm - g * grad_norm * u / u_norm ** 2

        tol = _tolerance(grad_weights.dtype)
        if not torch.allclose(grad_norm, expected_norm, rtol=tol, atol=tol):
            raise GradientConsistencyError("Weight-norm gradient disagrees with the chain rule through W")
        if not torch.allclose(grad_direction, expected_direction, rtol=tol, atol=tol):
            raise GradientConsistencyError("Weight-direction gradient disagrees with the chain rule through W")

    def train_batch(self, vd: torch.Tensor, wd: torch.Tensor) -> Dict[str, float]:
        vm = self.advance_chains(vd)
        nv = self.rbm.visible.ndim

        fields = {name: param.detach().clone().requires_grad_() for name, param in self.layer_params.items()}
        weights = weights_from_norm(self.norm, self.direction, nv)
        params = {**fields, 'weights': weights}

        cd_loss = (
            weighted_mean(functional_call(self.rbm, params, (vd,)), wd)
            - functional_call(self.rbm, params, (vm,)).mean()
        )
        visible_fields = {name: fields[f'visible.{name}'] for name in self.rbm.visible.field_names}
        reg_loss = _penalty(visible_fields, weights, nv, self.config.regularization)
        loss = cd_loss + reg_loss

        names = list(fields)
        inputs = [fields[name] for name in names] + [weights, self.norm, self.direction]
        # allow_unused: layer parameters that do not enter the free energy (e.g. frozen scales)
        grads = torch.autograd.grad(loss, inputs, allow_unused=True)
        grads = [torch.zeros_like(x) if grad is None else grad for x, grad in zip(inputs, grads)]
        grad_weights, grad_norm, grad_direction = grads[-3:]

        self.check_gradients(grad_weights, grad_norm, grad_direction)

        named_grads = dict(zip(names, grads[:len(names)]))
        named_grads['norm'] = grad_norm
        named_grads['direction'] = grad_direction
        apply_gradients_(self.optimizer, self.leaf_params, named_grads)

        with torch.no_grad():
            dims = _visible_dims(nv)
            self.direction.div_(torch.sqrt(self.direction.pow(2).sum(dim=dims, keepdim=True)))
            self.rbm.weights.copy_(weights_from_norm(self.norm, self.direction, nv))

        return {'cd_loss': cd_loss.item(), 'reg_loss': reg_loss.item()}


def train_norm(
    rbm: RBM,
    data: torch.Tensor,
    config: Optional[TrainingConfig] = None,
    weights: Optional[torch.Tensor] = None,
    callbacks: Optional[List[Callback]] = None,
    init_chains: Optional[torch.Tensor] = None,
    return_chains: bool = False
):
    """
    Train with weight-normalized persistent contrastive divergence.

    Args:
        rbm: Model trained in place
        data: Training data (n_samples, *visible.shape)
        config: Training settings
        weights: Per-sample weights (n_samples,)
        callbacks: Training callbacks
        init_chains: Fantasy chains to continue from
        return_chains: Also return the final fantasy chains

    Returns:
        History, or (History, chains) when return_chains is set

    Raises:
        GradientConsistencyError: If the autograd gradients fail the chain-rule check
    """
    trainer = WeightNormPCD(rbm, config, callbacks)
    return _run(trainer, data, weights, init_chains, return_chains)
