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
"""Parameter initialization for RBMs before training."""

from typing import Optional
import math
import torch
import logging

from ..errors import DomainError
from ..models.layers import Potts
from ..models.rbm import RBM

logger = logging.getLogger(__name__)


@torch.no_grad()
def initialize_weights_(rbm: RBM, scale: float = 0.1) -> RBM:
    """
    Draw weights from N(0, scale²/N_v).

    For Potts visible units the weights are zero-summed over the category axis,
    which removes the gauge direction that only shifts the visible fields.
    """
    n_visible = max(rbm.visible.num_units, 1)
    rbm.weights.normal_(0.0, scale / math.sqrt(n_visible))
    if isinstance(rbm.visible, Potts):
        rbm.weights.sub_(rbm.weights.mean(dim=0, keepdim=True))
    return rbm


def initialize_(
    rbm: RBM,
    data: Optional[torch.Tensor] = None,
    weights: Optional[torch.Tensor] = None,
    eps: float = 1e-6,
    weight_scale: float = 0.1
) -> RBM:
    """
    Initialize an RBM in place for training.

    Args:
        rbm: Model to initialize
        data: Training data (n_samples, *visible.shape); visible parameters
            are fitted to its marginal statistics when given
        weights: Per-sample data weights (optional)
        eps: Clamp for mean activities, must lie in (0, 0.5)
        weight_scale: Standard deviation of the weights times sqrt(N_v)

    Returns:
        The initialized RBM
    """
    if not 0 < eps < 0.5:
        raise DomainError(f"eps must lie in (0, 0.5), got {eps}")

    if data is None:
        rbm.visible.reset_parameters()
    else:
        rbm.visible.batch_shape(data)
        rbm.visible.match_statistics_(data, weights, eps=eps)
    rbm.hidden.reset_parameters()
    initialize_weights_(rbm, weight_scale)

    logger.debug(f"Initialized {type(rbm.visible).__name__}-{type(rbm.hidden).__name__} RBM")
    return rbm
