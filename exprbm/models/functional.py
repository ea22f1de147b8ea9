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
Elementwise numerical kernels for Gaussian and rectified units

This module holds the closed-form expressions shared by the continuous layers:
- Gaussian energies, free energies, moments and sampling
- Truncated-Gaussian (ReLU) free energies, moments and sampling
- Double-rectified (dReLU) mixtures of two truncated-Gaussian branches

All functions take already-tilted locations (layer location plus inputs) and
operate elementwise with broadcasting. Free energies follow the convention
F = -log ∫ exp(-E(x)) dx.
"""

from typing import Tuple
import math
import torch

SQRT2 = math.sqrt(2.0)
SQRT_2_OVER_PI = math.sqrt(2.0 / math.pi)

# Above this truncation point, tail samples use exponential rejection.
TAIL_THRESHOLD = 5.0


def logerfcx(x: torch.Tensor) -> torch.Tensor:
    """
    Numerically stable log of the scaled complementary error function.

    Args:
        x: Input tensor

    Returns:
        log(erfcx(x)), finite for all finite x
    """
    neg = torch.clamp(x, max=0.0)
    pos = torch.clamp(x, min=0.0)
    return torch.where(
        x < 0,
        neg ** 2 + torch.log(torch.erfc(neg)),
        torch.log(torch.special.erfcx(pos))
    )


def _weighted(prob: torch.Tensor, value: torch.Tensor) -> torch.Tensor:
    """Multiply by a mixture weight, treating zero weight as an absent term."""
    return torch.where(prob > 0, prob * value, torch.zeros_like(value))


# Gaussian units


def gauss_energy(theta: torch.Tensor, gamma: torch.Tensor, x: torch.Tensor) -> torch.Tensor:
    return (gamma.abs() * x / 2 - theta) * x


def gauss_free(theta: torch.Tensor, gamma: torch.Tensor) -> torch.Tensor:
    abs_gamma = gamma.abs()
    return -theta ** 2 / (2 * abs_gamma) + 0.5 * torch.log(abs_gamma / (2 * math.pi))


def gauss_meanvar(theta: torch.Tensor, gamma: torch.Tensor) -> Tuple[torch.Tensor, torch.Tensor]:
    theta, gamma = torch.broadcast_tensors(theta, gamma)
    abs_gamma = gamma.abs()
    return theta / abs_gamma, 1 / abs_gamma


def gauss_sample(theta: torch.Tensor, gamma: torch.Tensor) -> torch.Tensor:
    mean, var = gauss_meanvar(theta, gamma)
    return mean + torch.sqrt(var) * torch.randn_like(mean)


def gauss_mean_abs(theta: torch.Tensor, gamma: torch.Tensor) -> torch.Tensor:
    """E|x| for a Gaussian unit (folded normal mean)."""
    mean, var = gauss_meanvar(theta, gamma)
    std = torch.sqrt(var)
    return (
        std * SQRT_2_OVER_PI * torch.exp(-mean ** 2 / (2 * var))
        + mean * (1 - 2 * torch.special.ndtr(-mean / std))
    )


# Truncated Gaussian units on [0, ∞)


def _relu_scale(theta: torch.Tensor, gamma: torch.Tensor) -> Tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
    """
    Split |γ| into the regular case and its degenerate limits.

    With γ = 0 and θ < 0 the branch is exponential. With γ = 0 and θ >= 0
    it has no normalizable density, and with |γ| = ∞ it collapses onto the
    origin; both of these are absent branches with infinite free energy, zero
    moments and zero samples, so a dReLU puts all its weight on the other
    branch.

    Returns:
        safe: |γ| with degenerate entries replaced by 1
        flat: mask of the exponential limit
        absent: mask of branches that carry no weight
    """
    abs_gamma = gamma.abs()
    zero = abs_gamma == 0
    absent = torch.isinf(abs_gamma) | (zero & (theta >= 0))
    flat = zero & ~absent
    safe = torch.where(zero | absent, torch.ones_like(abs_gamma), abs_gamma)
    return safe, flat, absent


def _exponential_rate(theta: torch.Tensor, flat: torch.Tensor) -> torch.Tensor:
    # Rate of the γ = 0 limit; 1 elsewhere so unselected entries stay finite.
    return torch.where(flat, -theta, torch.ones_like(theta))


def relu_energy(theta: torch.Tensor, gamma: torch.Tensor, x: torch.Tensor) -> torch.Tensor:
    """Half-Gaussian energy; zero at the origin for every scale."""
    energy = torch.where(x == 0, torch.zeros_like(x), gauss_energy(theta, gamma, x))
    return torch.where(x >= 0, energy, torch.full_like(energy, math.inf))


def relu_free(theta: torch.Tensor, gamma: torch.Tensor) -> torch.Tensor:
    """
    Free energy of a unit with Gaussian energy restricted to x >= 0.

    Args:
        theta: Tilted location θ + inputs
        gamma: Scale γ (its absolute value is used)

    Returns:
        -log ∫_0^∞ exp(-|γ|x²/2 + θx) dx, or +∞ for an absent branch
    """
    theta, gamma = torch.broadcast_tensors(theta, gamma)
    safe, flat, absent = _relu_scale(theta, gamma)
    free = -logerfcx(-theta / torch.sqrt(2 * safe)) - 0.5 * torch.log(math.pi / (2 * safe))
    free = torch.where(flat, torch.log(_exponential_rate(theta, flat)), free)
    return torch.where(absent, torch.full_like(free, math.inf), free)


def relu_meanvar(theta: torch.Tensor, gamma: torch.Tensor) -> Tuple[torch.Tensor, torch.Tensor]:
    """Mean and variance of the truncated Gaussian on [0, ∞)."""
    theta, gamma = torch.broadcast_tensors(theta, gamma)
    safe, flat, absent = _relu_scale(theta, gamma)
    std = torch.rsqrt(safe)
    alpha = -theta * std
    # Mills ratio of the standard normal truncated at alpha
    lam = SQRT_2_OVER_PI / torch.special.erfcx(alpha / SQRT2)
    mean = theta / safe + std * lam
    var = torch.clamp(1 + alpha * lam - lam ** 2, min=0.0) / safe

    rate = _exponential_rate(theta, flat)
    mean = torch.where(flat, 1 / rate, mean)
    var = torch.where(flat, 1 / rate ** 2, var)

    zero = torch.zeros_like(mean)
    return torch.where(absent, zero, mean), torch.where(absent, zero, var)


def standard_tail_sample(alpha: torch.Tensor) -> torch.Tensor:
    """
    Sample a standard normal conditioned on being at least alpha.

    Uses inverse-CDF sampling of the upper tail below TAIL_THRESHOLD and
    Robert's exponential rejection sampler above it.

    Args:
        alpha: Truncation points

    Returns:
        Samples with the shape of alpha
    """
    alpha = alpha.detach()
    low = alpha < TAIL_THRESHOLD
    u = 1 - torch.rand_like(alpha)
    cutoff = torch.where(low, alpha, torch.zeros_like(alpha))
    z = -torch.special.ndtri(u * torch.special.ndtr(-cutoff))

    high = ~low
    if high.any():
        a = alpha[high]
        lam = (a + torch.sqrt(a ** 2 + 4)) / 2
        out = torch.empty_like(a)
        pending = torch.ones_like(a, dtype=torch.bool)
        while pending.any():
            idx = pending.nonzero(as_tuple=True)[0]
            proposal = a[idx] + torch.empty_like(a[idx]).exponential_() / lam[idx]
            accept = torch.rand_like(proposal) <= torch.exp(-0.5 * (proposal - lam[idx]) ** 2)
            out[idx[accept]] = proposal[accept]
            pending[idx[accept]] = False
        z[high] = out
    return z


def relu_sample(theta: torch.Tensor, gamma: torch.Tensor) -> torch.Tensor:
    theta, gamma = torch.broadcast_tensors(theta.detach(), gamma.detach())
    safe, flat, absent = _relu_scale(theta, gamma)
    std = torch.rsqrt(safe)
    x = theta / safe + std * standard_tail_sample(-theta * std)
    rate = _exponential_rate(theta, flat)
    x = torch.where(flat, torch.empty_like(x).exponential_() / rate, x)
    x = torch.where(absent, torch.zeros_like(x), x)
    return torch.clamp(x, min=0.0)


def _relu_peak(theta: torch.Tensor, gamma: torch.Tensor) -> Tuple[torch.Tensor, torch.Tensor]:
    """Mode of one branch and its height θ₊²/|γ|; absent branches have height -∞."""
    theta, gamma = torch.broadcast_tensors(theta, gamma)
    safe, _, absent = _relu_scale(theta, gamma)
    peak = torch.clamp(theta, min=0.0)
    mode = torch.where(absent, torch.zeros_like(peak), peak / safe)
    height = torch.where(absent, torch.full_like(peak, -math.inf), peak * mode)
    return mode, height


def relu_mode(theta: torch.Tensor, gamma: torch.Tensor) -> torch.Tensor:
    mode, _ = _relu_peak(theta, gamma)
    return mode


# Double rectified units: positive branch (θp, γp), negative branch (θn, γn)


def drelu_energy(
    theta_p: torch.Tensor,
    theta_n: torch.Tensor,
    gamma_p: torch.Tensor,
    gamma_n: torch.Tensor,
    x: torch.Tensor
) -> torch.Tensor:
    positive = gauss_energy(theta_p, gamma_p, x)
    negative = gauss_energy(theta_n, gamma_n, x)
    energy = torch.where(x >= 0, positive, negative)
    return torch.where(x == 0, torch.zeros_like(energy), energy)


def drelu_branch_free(
    theta_p: torch.Tensor,
    theta_n: torch.Tensor,
    gamma_p: torch.Tensor,
    gamma_n: torch.Tensor
) -> Tuple[torch.Tensor, torch.Tensor]:
    """Free energies of the positive and negative halves."""
    return relu_free(theta_p, gamma_p), relu_free(-theta_n, gamma_n)


def drelu_free(
    theta_p: torch.Tensor,
    theta_n: torch.Tensor,
    gamma_p: torch.Tensor,
    gamma_n: torch.Tensor
) -> torch.Tensor:
    free_p, free_n = drelu_branch_free(theta_p, theta_n, gamma_p, gamma_n)
    return -torch.logaddexp(-free_p, -free_n)


def drelu_branch_probs(
    theta_p: torch.Tensor,
    theta_n: torch.Tensor,
    gamma_p: torch.Tensor,
    gamma_n: torch.Tensor
) -> Tuple[torch.Tensor, torch.Tensor]:
    """
    Mixing weights of the two branches.

    A branch with infinite free energy gets exactly zero weight. When both
    branches are degenerate in the same way the weights are split evenly.
    """
    free_p, free_n = drelu_branch_free(theta_p, theta_n, gamma_p, gamma_n)
    prob_p = torch.nan_to_num(torch.sigmoid(free_n - free_p), nan=0.5)
    prob_n = torch.nan_to_num(torch.sigmoid(free_p - free_n), nan=0.5)
    return prob_p, prob_n


def drelu_moments(
    theta_p: torch.Tensor,
    theta_n: torch.Tensor,
    gamma_p: torch.Tensor,
    gamma_n: torch.Tensor
) -> Tuple[torch.Tensor, ...]:
    """
    Branch weights and branch moments.

    Returns:
        prob_p, prob_n, mean_p, var_p, mean_n, var_n where the negative branch
        moments refer to -x (a ReLU unit with location -θn)
    """
    prob_p, prob_n = drelu_branch_probs(theta_p, theta_n, gamma_p, gamma_n)
    mean_p, var_p = relu_meanvar(theta_p, gamma_p)
    mean_n, var_n = relu_meanvar(-theta_n, gamma_n)
    return prob_p, prob_n, mean_p, var_p, mean_n, var_n


def drelu_meanvar(
    theta_p: torch.Tensor,
    theta_n: torch.Tensor,
    gamma_p: torch.Tensor,
    gamma_n: torch.Tensor
) -> Tuple[torch.Tensor, torch.Tensor]:
    prob_p, prob_n, mean_p, var_p, mean_n, var_n = drelu_moments(theta_p, theta_n, gamma_p, gamma_n)
    mean = _weighted(prob_p, mean_p) - _weighted(prob_n, mean_n)
    second = _weighted(prob_p, var_p + mean_p ** 2) + _weighted(prob_n, var_n + mean_n ** 2)
    return mean, torch.clamp(second - mean ** 2, min=0.0)


def drelu_mean_abs(
    theta_p: torch.Tensor,
    theta_n: torch.Tensor,
    gamma_p: torch.Tensor,
    gamma_n: torch.Tensor
) -> torch.Tensor:
    prob_p, prob_n, mean_p, _, mean_n, _ = drelu_moments(theta_p, theta_n, gamma_p, gamma_n)
    return _weighted(prob_p, mean_p) + _weighted(prob_n, mean_n)


def drelu_sample(
    theta_p: torch.Tensor,
    theta_n: torch.Tensor,
    gamma_p: torch.Tensor,
    gamma_n: torch.Tensor
) -> torch.Tensor:
    prob_p, _ = drelu_branch_probs(theta_p, theta_n, gamma_p, gamma_n)
    positive = relu_sample(theta_p, gamma_p)
    negative = -relu_sample(-theta_n, gamma_n)
    positive, negative = torch.broadcast_tensors(positive, negative)
    return torch.where(torch.rand_like(prob_p) < prob_p, positive, negative)


def drelu_mode(
    theta_p: torch.Tensor,
    theta_n: torch.Tensor,
    gamma_p: torch.Tensor,
    gamma_n: torch.Tensor
) -> torch.Tensor:
    """Mode of the mixture: zero when θp <= 0 <= θn, else the taller branch peak."""
    mode_p, height_p = _relu_peak(theta_p, gamma_p)
    mode_n, height_n = _relu_peak(-theta_n, gamma_n)
    mode_p, mode_n = torch.broadcast_tensors(mode_p, mode_n)
    return torch.where(height_p >= height_n, mode_p, -mode_n)


def drelu_free_grad(
    theta_p: torch.Tensor,
    theta_n: torch.Tensor,
    gamma_p: torch.Tensor,
    gamma_n: torch.Tensor
) -> Tuple[torch.Tensor, torch.Tensor, torch.Tensor, torch.Tensor]:
    """Derivatives of drelu_free with respect to (θp, θn, γp, γn)."""
    prob_p, prob_n, mean_p, var_p, mean_n, var_n = drelu_moments(theta_p, theta_n, gamma_p, gamma_n)
    return (
        -_weighted(prob_p, mean_p),
        _weighted(prob_n, mean_n),
        _weighted(prob_p, var_p + mean_p ** 2) / 2 * torch.sign(gamma_p),
        _weighted(prob_n, var_n + mean_n ** 2) / 2 * torch.sign(gamma_n),
    )
