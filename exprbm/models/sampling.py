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
Markov chain samplers for RBMs

This module provides:
- GibbsSampler: block Gibbs chains with recorded samples
- metropolis_step / metropolis: single-site Metropolis-Hastings moves on the
  visible units, alternated with hidden resampling, used for mixing checks
"""

import math
import torch
import logging

from .layers import Binary, Potts, Spin
from .rbm import RBM

logger = logging.getLogger(__name__)


class GibbsSampler:
    """Block Gibbs sampler recording visible states along a chain."""

    def __init__(self, n_steps: int = 100, beta: float = 1.0):
        """
        Initialize Gibbs sampler.

        Args:
            n_steps: Number of Gibbs sweeps between recorded samples
            beta: Inverse temperature
        """
        self.n_steps = n_steps
        self.beta = beta

    def sample(
        self,
        rbm: RBM,
        initial_state: torch.Tensor,
        n_samples: int = 1
    ) -> torch.Tensor:
        """
        Generate samples using Gibbs sampling.

        Args:
            rbm: Model to sample from
            initial_state: Initial visible state (*batch, *visible.shape)
            n_samples: Number of samples to record

        Returns:
            samples: Tensor of shape (n_samples, *initial_state.shape)
        """
        samples = []
        current_state = initial_state

        for _ in range(n_samples):
            current_state = rbm.sample_v_from_v(current_state, steps=self.n_steps, beta=self.beta)
            samples.append(current_state.clone())

        return torch.stack(samples, dim=0)


def metropolis_step(
    rbm: RBM,
    v: torch.Tensor,
    h: torch.Tensor,
    beta: float = 1.0
) -> torch.Tensor:
    """
    One single-site Metropolis-Hastings move per chain on the visible units.

    A random site is proposed to change (flipped for Binary/Spin units,
    recolored uniformly among the other colors for Potts units) and accepted
    with probability min(1, exp(-β ΔE)), where ΔE is the joint energy change
    with h held fixed.

    Args:
        rbm: Model defining the energy
        v: Visible configurations (*batch, *visible.shape)
        h: Hidden configurations broadcastable against v
        beta: Inverse temperature

    Returns:
        Updated visible configurations
    """
    layer = rbm.visible
    batch = layer.batch_shape(v)
    n = math.prod(batch)
    rows = torch.arange(n)
    proposal = v.to(rbm.weights.dtype).reshape(n, *layer.shape).clone()

    if isinstance(layer, (Binary, Spin)):
        flat = proposal.reshape(n, layer.num_units)
        sites = torch.randint(layer.num_units, (n,))
        if isinstance(layer, Binary):
            flat[rows, sites] = 1 - flat[rows, sites]
        else:
            flat[rows, sites] = -flat[rows, sites]
    elif isinstance(layer, Potts):
        n_colors = layer.n_colors
        flat = proposal.reshape(n, n_colors, layer.num_units // n_colors)
        sites = torch.randint(flat.shape[-1], (n,))
        current = flat[rows, :, sites].argmax(dim=-1)
        shift = torch.randint(1, n_colors, (n,))
        new_color = (current + shift) % n_colors
        flat[rows, :, sites] = torch.nn.functional.one_hot(new_color, n_colors).to(flat.dtype)
    else:
        raise TypeError(f"Metropolis moves are defined for discrete visible layers, got {type(layer).__name__}")

    proposal = proposal.reshape(v.shape)
    delta = rbm.energy(proposal, h) - rbm.energy(v, h)
    accept = torch.rand_like(delta) < torch.exp(-beta * delta)
    mask = accept.reshape(*accept.shape, *([1] * layer.ndim))
    return torch.where(mask, proposal, v.to(proposal.dtype))


def metropolis(
    rbm: RBM,
    v: torch.Tensor,
    steps: int = 1,
    beta: float = 1.0
) -> torch.Tensor:
    """
    Metropolis-within-Gibbs chain targeting exp(-β E(v, h)).

    Each step resamples h from p_β(h|v) and then applies one single-site
    Metropolis move to v. The stationary visible marginal is
    ∝ Σ_h exp(-β E(v, h)), i.e. exp(-F(v)) of `rbm.tempered(beta)`.

    Args:
        rbm: Model to sample from
        v: Initial visible configurations
        steps: Number of steps
        beta: Inverse temperature

    Returns:
        Final visible configurations
    """
    for _ in range(steps):
        h = rbm.sample_h_from_v(v, beta)
        v = metropolis_step(rbm, v, h, beta)
    return v
