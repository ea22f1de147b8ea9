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
Restricted Boltzmann Machine as a bipartite energy model

This module couples a visible layer and a hidden layer through a weight
tensor of shape visible.shape + hidden.shape and provides:
- Energies, interaction energy and free energy (hidden units summed out)
- Conditional inputs, block Gibbs sampling, mean-field and mode propagation
- Closed-form log partition function for Gaussian-Gaussian machines
- Mirroring, tempering and the annealing path used by AIS
- Free-energy gradients for contrastive-divergence training
"""

from typing import Dict, Optional, Tuple
import math
import torch
import torch.nn as nn
import logging

from ..errors import DomainError, ShapeMismatchError
from .gradients import RBMGradient
from .layers import Binary, Gaussian, Layer, Spin
from .utils import batch_mean

logger = logging.getLogger(__name__)


class RBM(nn.Module):
    """
    Restricted Boltzmann Machine with arbitrary visible and hidden layers.

    E(v, h) = E_v(v) + E_h(h) - Σ v·W·h
    """

    def __init__(self, visible: Layer, hidden: Layer, weights: torch.Tensor):
        """
        Initialize RBM.

        Args:
            visible: Visible layer
            hidden: Hidden layer
            weights: Coupling tensor of shape visible.shape + hidden.shape
        """
        super().__init__()
        expected = tuple(visible.shape) + tuple(hidden.shape)
        if tuple(weights.shape) != expected:
            raise ShapeMismatchError(
                f"Weights of shape {tuple(weights.shape)} do not match layers, expected {expected}"
            )
        self.visible = visible
        self.hidden = hidden
        self.weights = nn.Parameter(torch.as_tensor(weights), requires_grad=False)

    def extra_repr(self) -> str:
        return f"weights={tuple(self.weights.shape)}"

    def forward(self, v: torch.Tensor) -> torch.Tensor:
        return self.free_energy(v)

    def _flat_weights(self) -> torch.Tensor:
        return self.weights.reshape(self.visible.num_units, self.hidden.num_units)

    # Coupling

    def inputs_h_from_v(self, v: torch.Tensor) -> torch.Tensor:
        """
        Field on the hidden units produced by visible configuration v.

        Args:
            v: Visible configuration (*batch, *visible.shape)

        Returns:
            Inputs of shape (*batch, *hidden.shape)
        """
        batch = self.visible.batch_shape(v)
        flat = v.to(self.weights.dtype).reshape(*batch, self.visible.num_units)
        return (flat @ self._flat_weights()).reshape(*batch, *self.hidden.shape)

    def inputs_v_from_h(self, h: torch.Tensor) -> torch.Tensor:
        """Field on the visible units produced by hidden configuration h."""
        batch = self.hidden.batch_shape(h)
        flat = h.to(self.weights.dtype).reshape(*batch, self.hidden.num_units)
        return (flat @ self._flat_weights().T).reshape(*batch, *self.visible.shape)

    inputs_v_to_h = inputs_h_from_v
    inputs_h_to_v = inputs_v_from_h

    def batch_shape(self, v: torch.Tensor, h: torch.Tensor) -> Tuple[int, ...]:
        """Broadcast batch shape of a visible and a hidden configuration."""
        batch_v = self.visible.batch_shape(v)
        batch_h = self.hidden.batch_shape(h)
        try:
            return tuple(torch.broadcast_shapes(batch_v, batch_h))
        except RuntimeError as e:
            raise ShapeMismatchError(
                f"Visible batch {batch_v} and hidden batch {batch_h} are not broadcastable"
            ) from e

    # Energies

    def interaction_energy(self, v: torch.Tensor, h: torch.Tensor) -> torch.Tensor:
        self.batch_shape(v, h)
        return -self.hidden.reduce(self.inputs_h_from_v(v) * h.to(self.weights.dtype))

    def energy(self, v: torch.Tensor, h: torch.Tensor) -> torch.Tensor:
        """
        Joint energy E(v, h) with singleton-broadcast batch axes.

        Args:
            v: Visible configuration (*batch_v, *visible.shape)
            h: Hidden configuration (*batch_h, *hidden.shape)

        Returns:
            Energy with the broadcast batch shape
        """
        self.batch_shape(v, h)
        return self.visible.energy(v) + self.hidden.energy(h) + self.interaction_energy(v, h)

    def free_energy(self, v: torch.Tensor) -> torch.Tensor:
        """Free energy of visible configurations, hidden units summed out."""
        return self.visible.energy(v) + self.hidden.free_energy(self.inputs_h_from_v(v))

    def free_energy_h(self, h: torch.Tensor) -> torch.Tensor:
        """Free energy of hidden configurations, visible units summed out."""
        return self.hidden.energy(h) + self.visible.free_energy(self.inputs_v_from_h(h))

    # Conditional distributions

    @staticmethod
    def _tempered_layer(layer: Layer, beta: float) -> Layer:
        return layer if beta == 1 else layer.tempered(beta)

    def sample_h_from_v(self, v: torch.Tensor, beta: float = 1.0) -> torch.Tensor:
        inputs = self.inputs_h_from_v(v)
        return self._tempered_layer(self.hidden, beta).transfer_sample(beta * inputs)

    def sample_v_from_h(self, h: torch.Tensor, beta: float = 1.0) -> torch.Tensor:
        inputs = self.inputs_v_from_h(h)
        return self._tempered_layer(self.visible, beta).transfer_sample(beta * inputs)

    def sample_v_from_v(self, v: torch.Tensor, steps: int = 1, beta: float = 1.0) -> torch.Tensor:
        """
        Block Gibbs sampling v → h → v repeated `steps` times.

        Args:
            v: Initial visible configuration
            steps: Number of full sweeps
            beta: Inverse temperature

        Returns:
            Final visible configuration (intermediate hidden states discarded)
        """
        for _ in range(steps):
            v = self.sample_v_from_h(self.sample_h_from_v(v, beta), beta)
        return v

    def sample_h_from_h(self, h: torch.Tensor, steps: int = 1, beta: float = 1.0) -> torch.Tensor:
        for _ in range(steps):
            h = self.sample_h_from_v(self.sample_v_from_h(h, beta), beta)
        return h

    def mean_h_from_v(self, v: torch.Tensor, beta: float = 1.0) -> torch.Tensor:
        inputs = self.inputs_h_from_v(v)
        return self._tempered_layer(self.hidden, beta).transfer_mean(beta * inputs)

    def mean_v_from_h(self, h: torch.Tensor, beta: float = 1.0) -> torch.Tensor:
        inputs = self.inputs_v_from_h(h)
        return self._tempered_layer(self.visible, beta).transfer_mean(beta * inputs)

    def mean_v_from_v(self, v: torch.Tensor, steps: int = 1, beta: float = 1.0) -> torch.Tensor:
        for _ in range(steps):
            v = self.mean_v_from_h(self.mean_h_from_v(v, beta), beta)
        return v

    def mean_h_from_h(self, h: torch.Tensor, steps: int = 1, beta: float = 1.0) -> torch.Tensor:
        for _ in range(steps):
            h = self.mean_h_from_v(self.mean_v_from_h(h, beta), beta)
        return h

    def var_h_from_v(self, v: torch.Tensor, beta: float = 1.0) -> torch.Tensor:
        inputs = self.inputs_h_from_v(v)
        return self._tempered_layer(self.hidden, beta).transfer_var(beta * inputs)

    def var_v_from_h(self, h: torch.Tensor, beta: float = 1.0) -> torch.Tensor:
        inputs = self.inputs_v_from_h(h)
        return self._tempered_layer(self.visible, beta).transfer_var(beta * inputs)

    def mode_h_from_v(self, v: torch.Tensor) -> torch.Tensor:
        return self.hidden.transfer_mode(self.inputs_h_from_v(v))

    def mode_v_from_h(self, h: torch.Tensor) -> torch.Tensor:
        return self.visible.transfer_mode(self.inputs_v_from_h(h))

    def mode_v_from_v(self, v: torch.Tensor, steps: int = 1) -> torch.Tensor:
        for _ in range(steps):
            v = self.mode_v_from_h(self.mode_h_from_v(v))
        return v

    def mode_h_from_h(self, h: torch.Tensor, steps: int = 1) -> torch.Tensor:
        for _ in range(steps):
            h = self.mode_h_from_v(self.mode_v_from_h(h))
        return h

    def reconstruction_error(self, v: torch.Tensor, steps: int = 1) -> torch.Tensor:
        """Per-sample mean absolute difference between v and its Gibbs reconstruction."""
        reconstruction = self.sample_v_from_v(v, steps)
        diff = (v.to(self.weights.dtype) - reconstruction).abs()
        return self.visible.reduce(diff) / max(self.visible.num_units, 1)

    # Derived machines

    def mirror(self) -> "RBM":
        """RBM with visible and hidden roles swapped."""
        nv, nh = self.visible.ndim, self.hidden.ndim
        perm = (*range(nv, nv + nh), *range(nv))
        return RBM(self.hidden, self.visible, self.weights.permute(perm))

    def tempered(self, beta: float) -> "RBM":
        """RBM whose energy is beta times this RBM's energy."""
        return RBM(self.visible.tempered(beta), self.hidden.tempered(beta), beta * self.weights)

    # Partition function

    def log_partition_zero_weight(self) -> torch.Tensor:
        """Log partition function of the layers with the coupling removed."""
        return self.visible.log_partition() + self.hidden.log_partition()

    def log_partition(self) -> torch.Tensor:
        """
        Exact log partition function of a Gaussian-Gaussian RBM.

        Uses log Z = (N+M)/2·log 2π + θᵀA⁻¹θ/2 - logdet(A)/2 with the coupling
        matrix A = [[diag|γv|, -W], [-Wᵀ, diag|γh|]].

        Raises:
            DomainError: If A is not positive definite (Z diverges)
            NotImplementedError: For other layer types (estimate with AIS)
        """
        if not (isinstance(self.visible, Gaussian) and isinstance(self.hidden, Gaussian)):
            raise NotImplementedError(
                f"No closed-form partition function for {type(self.visible).__name__}-"
                f"{type(self.hidden).__name__} RBMs; use exprbm.training.ais"
            )
        nv, nh = self.visible.num_units, self.hidden.num_units
        w = self._flat_weights()
        coupling = torch.cat([
            torch.cat([torch.diag(self.visible.gamma.abs().reshape(nv)), -w], dim=1),
            torch.cat([-w.T, torch.diag(self.hidden.gamma.abs().reshape(nh))], dim=1),
        ], dim=0)
        theta = torch.cat([self.visible.theta.reshape(nv), self.hidden.theta.reshape(nh)])

        cholesky, info = torch.linalg.cholesky_ex(coupling)
        if info.item() != 0:
            raise DomainError("Coupling matrix is not positive definite; the partition function diverges")
        logdet = 2 * torch.log(torch.diagonal(cholesky)).sum()
        quadratic = theta @ torch.cholesky_solve(theta.unsqueeze(-1), cholesky).squeeze(-1)
        return (nv + nh) / 2 * math.log(2 * math.pi) + quadratic / 2 - logdet / 2

    def log_likelihood(self, v: torch.Tensor) -> torch.Tensor:
        """Exact log-likelihood, available where log_partition is."""
        return -self.free_energy(v) - self.log_partition()

    # Gradients

    def grad_free_energy(
        self,
        v: torch.Tensor,
        weights: Optional[torch.Tensor] = None,
        stats: Optional[Dict[str, torch.Tensor]] = None
    ) -> RBMGradient:
        """
        Gradient of the (weighted) mean free energy of v.

        Args:
            v: Visible configurations (*batch, *visible.shape)
            weights: Per-sample weights (optional)
            stats: Precomputed visible sufficient statistics, e.g. of the full
                dataset (optional)

        Returns:
            RBMGradient of mean(F(v) * weights)
        """
        batch = self.visible.batch_shape(v)
        if stats is None:
            stats = self.visible.sufficient_statistics(v, weights)
        grad_v = self.visible.grad_energy(stats)

        inputs = self.inputs_h_from_v(v)
        per_sample = self.hidden.grad_free_energy(inputs)
        mean_h = self.hidden.mean_from_gradient(per_sample)
        grad_h = {
            name: batch_mean(value.expand(*batch, *self.hidden.shape), len(batch), weights)
            for name, value in per_sample.items()
        }

        n = math.prod(batch)
        flat_v = v.to(self.weights.dtype).reshape(n, self.visible.num_units)
        flat_h = mean_h.expand(*batch, *self.hidden.shape).reshape(n, self.hidden.num_units)
        if weights is not None:
            flat_h = flat_h * weights.to(flat_h.dtype).reshape(n, 1)
        grad_w = -(flat_v.T @ flat_h) / max(n, 1)
        return RBMGradient(visible=grad_v, hidden=grad_h, weights=grad_w.reshape(self.weights.shape))


def anneal(init: Layer, rbm: RBM, beta: float) -> RBM:
    """
    Intermediate RBM on the AIS path from an independent model to `rbm`.

    At beta = 0 the visible layer is `init`, the hidden layer has zero fields
    and the coupling vanishes; at beta = 1 the result equals `rbm`.
    """
    return RBM(init.interpolate(rbm.visible, beta), rbm.hidden.anneal(beta), beta * rbm.weights)


def BinaryRBM(a: torch.Tensor, b: torch.Tensor, w: torch.Tensor) -> RBM:
    """RBM with Binary visible fields a and Binary hidden fields b."""
    return RBM(Binary(theta=a), Binary(theta=b), w)


def HopfieldRBM(
    g: torch.Tensor,
    w: torch.Tensor,
    theta: Optional[torch.Tensor] = None,
    gamma: Optional[torch.Tensor] = None
) -> RBM:
    """
    RBM with Spin visible fields g and Gaussian hidden units.

    The hidden units are standard normal (theta = 0, gamma = 1) unless
    theta and gamma are given.
    """
    hidden_shape = tuple(w.shape[g.ndim:])
    hidden = Gaussian.from_shape(*hidden_shape, dtype=w.dtype, device=w.device)
    if theta is not None or gamma is not None:
        hidden = Gaussian(
            theta=hidden.theta.data if theta is None else theta,
            gamma=hidden.gamma.data if gamma is None else gamma,
        )
    return RBM(Spin(theta=g), hidden, w)
