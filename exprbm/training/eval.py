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
Likelihood diagnostics for RBMs with discrete visible units

This module provides:
- Log-pseudolikelihood: exact (all sites), stochastic (one random site per
  sample) or at chosen sites
- Brute-force log partition function by exhaustive enumeration, used to
  validate AIS on small machines
"""

from typing import List, Tuple
import math
import torch
import torch.nn.functional as F
import logging

from ..models.layers import Binary, Layer, Potts, Spin
from ..models.rbm import RBM
from ..models.utils import enumerate_states

logger = logging.getLogger(__name__)


def _n_sites(layer: Layer) -> int:
    if isinstance(layer, (Binary, Spin)):
        return layer.num_units
    if isinstance(layer, Potts):
        return layer.num_units // layer.n_colors
    raise NotImplementedError(
        f"Pseudolikelihood is defined for Binary, Spin and Potts visible layers, got {type(layer).__name__}"
    )


def _site_substitutions(layer: Layer, x: torch.Tensor, sites: torch.Tensor) -> List[torch.Tensor]:
    """Copies of x with the chosen site of each sample set to every possible state."""
    n = x.shape[0]
    rows = torch.arange(n)
    substituted = []
    if isinstance(layer, Potts):
        q = layer.n_colors
        flat = x.reshape(n, q, -1)
        for color in range(q):
            alt = flat.clone()
            alt[rows, :, sites] = F.one_hot(torch.tensor(color), q).to(x.dtype)
            substituted.append(alt.reshape(x.shape))
    else:
        values = (0.0, 1.0) if isinstance(layer, Binary) else (-1.0, 1.0)
        flat = x.reshape(n, layer.num_units)
        for value in values:
            alt = flat.clone()
            alt[rows, sites] = value
            substituted.append(alt.reshape(x.shape))
    return substituted


def _flatten_batch(rbm: RBM, v: torch.Tensor) -> Tuple[Tuple[int, ...], torch.Tensor]:
    batch = rbm.visible.batch_shape(v)
    n = math.prod(batch)
    return batch, v.to(rbm.weights.dtype).reshape(n, *rbm.visible.shape)


def _at_temperature(rbm: RBM, beta: float) -> RBM:
    return rbm if beta == 1 else rbm.tempered(beta)


@torch.no_grad()
def log_pseudolikelihood_sites(rbm: RBM, v: torch.Tensor, sites: torch.Tensor, beta: float = 1.0) -> torch.Tensor:
    """
    Log conditional probability of one site per sample given all other sites.

    Args:
        rbm: Model with a Binary, Spin or Potts visible layer
        v: Visible configurations (*batch, *visible.shape)
        sites: Flat site index per sample, shape batch. For Potts layers a
            site is a position along the non-category axes.
        beta: Inverse temperature applied to the whole energy

    Returns:
        log p(v_site | v_rest) with shape batch
    """
    n_sites = _n_sites(rbm.visible)
    rbm = _at_temperature(rbm, beta)
    batch, x = _flatten_batch(rbm, v)
    sites = torch.as_tensor(sites, dtype=torch.long).reshape(x.shape[0])
    if sites.numel() and (sites.min() < 0 or sites.max() >= n_sites):
        raise IndexError(f"Site indices must lie in [0, {n_sites})")

    observed = rbm.free_energy(x)
    free = torch.stack([
        rbm.free_energy(alt) for alt in _site_substitutions(rbm.visible, x, sites)
    ])
    return (-torch.logsumexp(observed - free, dim=0)).reshape(batch)


def log_pseudolikelihood_stochastic(rbm: RBM, v: torch.Tensor, beta: float = 1.0) -> torch.Tensor:
    """Log-pseudolikelihood estimated from one uniformly drawn site per sample."""
    n_sites = _n_sites(rbm.visible)
    batch = rbm.visible.batch_shape(v)
    sites = torch.randint(n_sites, batch)
    return log_pseudolikelihood_sites(rbm, v, sites, beta=beta)


def log_pseudolikelihood_exact(rbm: RBM, v: torch.Tensor, beta: float = 1.0) -> torch.Tensor:
    """Log-pseudolikelihood averaged over every site."""
    n_sites = _n_sites(rbm.visible)
    batch = rbm.visible.batch_shape(v)
    rbm = _at_temperature(rbm, beta)
    total = torch.zeros(batch, dtype=rbm.weights.dtype)
    for site in range(n_sites):
        total += log_pseudolikelihood_sites(rbm, v, torch.full(batch, site, dtype=torch.long))
    return total / max(n_sites, 1)


def log_pseudolikelihood(rbm: RBM, v: torch.Tensor, exact: bool = False, beta: float = 1.0) -> torch.Tensor:
    """
    Log-pseudolikelihood of visible configurations.

    Args:
        rbm: Model with a Binary, Spin or Potts visible layer
        v: Visible configurations (*batch, *visible.shape)
        exact: Average over all sites instead of sampling one site
        beta: Inverse temperature; the model energy is multiplied by beta

    Returns:
        Per-sample log-pseudolikelihood with shape batch
    """
    if exact:
        return log_pseudolikelihood_exact(rbm, v, beta=beta)
    return log_pseudolikelihood_stochastic(rbm, v, beta=beta)


@torch.no_grad()
def log_partition_bruteforce(rbm: RBM) -> torch.Tensor:
    """
    Exact log partition function by summing over all discrete states.

    The visible layer is enumerated when discrete; otherwise the hidden layer
    is enumerated on the mirrored machine.
    """
    discrete = (Binary, Spin, Potts)
    if isinstance(rbm.visible, discrete):
        machine = rbm
    elif isinstance(rbm.hidden, discrete):
        machine = rbm.mirror()
    else:
        raise NotImplementedError("Brute-force enumeration needs a discrete visible or hidden layer")

    states = enumerate_states(machine.visible)
    logger.debug(f"Enumerating {states.shape[0]} states")
    return torch.logsumexp(-machine.free_energy(states), dim=0)
