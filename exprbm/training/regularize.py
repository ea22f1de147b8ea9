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
Parameter penalties for RBM training

Supported penalties (coefficients in RegularizationConfig):
- l2_fields: (λ/2)·Σθ² on the visible field parameters
- l1_weights: λ·Σ|w|
- l2_weights: (λ/2)·Σw²
- l2l1_weights: (λ/2)·N_v·Σ_μ (mean_i |w_iμ|)², which favors sparse hidden units
"""

from typing import Dict
import torch

from ..configs.config_manager import RegularizationConfig
from ..models.gradients import RBMGradient
from ..models.rbm import RBM


def _visible_dims(rbm: RBM):
    return tuple(range(rbm.visible.ndim))


def regularize_gradient_(grad: RBMGradient, rbm: RBM, config: RegularizationConfig) -> RBMGradient:
    """
    Add penalty gradients to a gradient record in place.

    Args:
        grad: Gradient of the loss being minimized
        rbm: Model whose parameters are penalized
        config: Penalty coefficients; zero coefficients are skipped

    Returns:
        The same gradient record
    """
    if config.l2_fields:
        for name in rbm.visible.field_names:
            grad.visible[name] = grad.visible[name] + config.l2_fields * getattr(rbm.visible, name)

    w = rbm.weights
    if config.l1_weights:
        grad.weights = grad.weights + config.l1_weights * torch.sign(w)
    if config.l2_weights:
        grad.weights = grad.weights + config.l2_weights * w
    if config.l2l1_weights:
        mean_abs = w.abs().mean(dim=_visible_dims(rbm), keepdim=True)
        grad.weights = grad.weights + config.l2l1_weights * torch.sign(w) * mean_abs
    return grad


def _penalty(
    fields: Dict[str, torch.Tensor],
    weights: torch.Tensor,
    visible_ndim: int,
    config: RegularizationConfig
) -> torch.Tensor:
    loss = weights.new_zeros(())
    if config.l2_fields:
        loss = loss + config.l2_fields / 2 * sum(field.pow(2).sum() for field in fields.values())
    if config.l1_weights:
        loss = loss + config.l1_weights * weights.abs().sum()
    if config.l2_weights:
        loss = loss + config.l2_weights / 2 * weights.pow(2).sum()
    if config.l2l1_weights:
        dims = tuple(range(visible_ndim))
        n_visible = weights.shape[:visible_ndim].numel()
        mean_abs = weights.abs().mean(dim=dims)
        loss = loss + config.l2l1_weights / 2 * n_visible * mean_abs.pow(2).sum()
    return loss


def regularization_loss(rbm: RBM, config: RegularizationConfig) -> torch.Tensor:
    """Penalty value whose gradient `regularize_gradient_` adds."""
    fields = {name: getattr(rbm.visible, name) for name in rbm.visible.field_names}
    return _penalty(fields, rbm.weights, rbm.visible.ndim, config)
