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
Parameter updates for RBM training

This module routes gradient records into torch.optim optimizers:
- build_optimizer: Adam or SGD from an OptimizerConfig
- apply_gradients_: assign gradients to parameters and take one step
- RBMOptimizer: the single update entry point used by every trainer
"""

from typing import Dict, Iterable
import torch
import logging

from ..configs.config_manager import OptimizerConfig
from ..errors import ShapeMismatchError
from ..models.gradients import RBMGradient
from ..models.rbm import RBM

logger = logging.getLogger(__name__)


def build_optimizer(params: Iterable[torch.Tensor], config: OptimizerConfig) -> torch.optim.Optimizer:
    """
    Build a torch optimizer over the given parameters.

    Args:
        params: Leaf tensors to update
        config: Optimizer settings

    Returns:
        Configured optimizer
    """
    name = config.name.lower()
    if name == 'adam':
        return torch.optim.Adam(
            params,
            lr=config.lr,
            betas=tuple(config.betas),
            eps=config.eps,
            weight_decay=config.weight_decay
        )
    if name == 'sgd':
        return torch.optim.SGD(
            params,
            lr=config.lr,
            momentum=config.momentum,
            weight_decay=config.weight_decay
        )
    raise ValueError(f"Unknown optimizer: {config.name}")


def apply_gradients_(
    optimizer: torch.optim.Optimizer,
    params: Dict[str, torch.Tensor],
    grads: Dict[str, torch.Tensor]
) -> None:
    """
    Take one descent step with externally computed gradients.

    Args:
        optimizer: Optimizer built over `params`
        params: Named leaf tensors
        grads: Gradients keyed like `params`
    """
    missing = set(params) - set(grads)
    if missing:
        raise ValueError(f"Missing gradients for parameters: {sorted(missing)}")
    for name, param in params.items():
        grad = grads[name]
        if grad.shape != param.shape:
            raise ShapeMismatchError(
                f"Gradient for {name} has shape {tuple(grad.shape)}, expected {tuple(param.shape)}"
            )
        param.grad = grad.detach().to(dtype=param.dtype, device=param.device)
    optimizer.step()
    for param in params.values():
        param.grad = None


class RBMOptimizer:
    """Applies RBMGradient records to the parameters of an RBM in place."""

    def __init__(self, rbm: RBM, config: OptimizerConfig):
        self.rbm = rbm
        self.params = dict(rbm.named_parameters())
        self.optimizer = build_optimizer(self.params.values(), config)
        logger.debug(f"Optimizer {config.name} (lr={config.lr}) over {list(self.params)}")

    def step(self, gradient: RBMGradient) -> None:
        apply_gradients_(self.optimizer, self.params, gradient.flatten())
