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
Rectified unit layers

This module implements the rectified-Gaussian families:
- ReLU: Gaussian energy restricted to x >= 0
- dReLU: independent positive and negative half-Gaussian branches
- pReLU: dReLU parameterized by scale γ, location θ, offset Δ and asymmetry η
- xReLU: dReLU parameterized by scale γ, location θ, offset Δ and asymmetry ξ

pReLU and xReLU evaluate everything through their equivalent dReLU and pull
gradients back through the closed-form reparameterization.
"""

from typing import Dict, Tuple
import math
import torch

from ..errors import DomainError
from . import functional as fn
from .layers import Gaussian, Inputs, Layer


class ReLU(Layer):
    """Truncated Gaussian units on [0, ∞)."""

    param_names = ("theta", "gamma")
    default_values = {"theta": 0.0, "gamma": 1.0}

    def energies(self, x: torch.Tensor) -> torch.Tensor:
        return fn.relu_energy(self.theta, self.gamma, x)

    def free_energies(self, inputs: Inputs = 0.0) -> torch.Tensor:
        return fn.relu_free(self.theta + inputs, self.gamma)

    def transfer_sample(self, inputs: Inputs = 0.0) -> torch.Tensor:
        return fn.relu_sample(self.theta + inputs, self.gamma)

    def transfer_meanvar(self, inputs: Inputs = 0.0) -> Tuple[torch.Tensor, torch.Tensor]:
        return fn.relu_meanvar(self.theta + inputs, self.gamma)

    def transfer_mode(self, inputs: Inputs = 0.0) -> torch.Tensor:
        return fn.relu_mode(self.theta + inputs, self.gamma)

    def transfer_mean_abs(self, inputs: Inputs = 0.0) -> torch.Tensor:
        return self.transfer_mean(inputs)

    def sufficient_statistics(self, x, weights=None):
        x1, x2 = self._moments(x, weights, lambda t: t, lambda t: t ** 2)
        return {"x1": x1, "x2": x2}

    def grad_energy(self, stats):
        return {"theta": -stats["x1"], "gamma": torch.sign(self.gamma) * stats["x2"] / 2}

    def grad_free_energy(self, inputs: Inputs = 0.0):
        mean, var = self.transfer_meanvar(inputs)
        return {"theta": -mean, "gamma": torch.sign(self.gamma) * (var + mean ** 2) / 2}

    def tempered(self, beta: float) -> "ReLU":
        return ReLU(theta=beta * self.theta, gamma=beta * self.gamma)

    def anneal(self, beta: float) -> "ReLU":
        return ReLU(theta=beta * self.theta, gamma=self.gamma.clone())

    @torch.no_grad()
    def match_statistics_(self, data, weights=None, eps=1e-6):
        # Gaussian-equivalent parameters, as for the other rectified layers
        mean, second = self._moments(data, weights, lambda t: t, lambda t: t ** 2)
        var = torch.clamp(second - mean ** 2, min=eps)
        self.gamma.copy_(1 / var)
        self.theta.copy_(mean / var)


class _Rectified(Layer):
    """
    Shared implementation for layers equivalent to a dReLU.

    Subclasses provide `drelu_parameters` (θp, θn, γp, γn) and `pullback`,
    the transpose Jacobian mapping dReLU parameter gradients to their own.
    """

    def drelu_parameters(self) -> Tuple[torch.Tensor, ...]:
        raise NotImplementedError

    def pullback(self, grads: Tuple[torch.Tensor, ...]) -> Dict[str, torch.Tensor]:
        raise NotImplementedError

    def _tilted(self, inputs: Inputs) -> Tuple[torch.Tensor, ...]:
        theta_p, theta_n, gamma_p, gamma_n = self.drelu_parameters()
        return theta_p + inputs, theta_n + inputs, gamma_p, gamma_n

    def energies(self, x: torch.Tensor) -> torch.Tensor:
        return fn.drelu_energy(*self.drelu_parameters(), x)

    def free_energies(self, inputs: Inputs = 0.0) -> torch.Tensor:
        return fn.drelu_free(*self._tilted(inputs))

    def transfer_sample(self, inputs: Inputs = 0.0) -> torch.Tensor:
        return fn.drelu_sample(*(t.detach() for t in self._tilted(inputs)))

    def transfer_meanvar(self, inputs: Inputs = 0.0) -> Tuple[torch.Tensor, torch.Tensor]:
        return fn.drelu_meanvar(*self._tilted(inputs))

    def transfer_mode(self, inputs: Inputs = 0.0) -> torch.Tensor:
        return fn.drelu_mode(*self._tilted(inputs))

    def transfer_mean_abs(self, inputs: Inputs = 0.0) -> torch.Tensor:
        return fn.drelu_mean_abs(*self._tilted(inputs))

    def sufficient_statistics(self, x, weights=None):
        xp1, xn1, xp2, xn2 = self._moments(
            x, weights,
            lambda t: torch.clamp(t, min=0),
            lambda t: torch.clamp(t, max=0),
            lambda t: torch.clamp(t, min=0) ** 2,
            lambda t: torch.clamp(t, max=0) ** 2,
        )
        return {"xp1": xp1, "xn1": xn1, "xp2": xp2, "xn2": xn2}

    def grad_energy(self, stats):
        _, _, gamma_p, gamma_n = self.drelu_parameters()
        return self.pullback((
            -stats["xp1"],
            -stats["xn1"],
            torch.sign(gamma_p) * stats["xp2"] / 2,
            torch.sign(gamma_n) * stats["xn2"] / 2,
        ))

    def grad_free_energy(self, inputs: Inputs = 0.0):
        return self.pullback(fn.drelu_free_grad(*self._tilted(inputs)))

    @torch.no_grad()
    def match_statistics_(self, data, weights=None, eps=1e-6):
        # Gaussian-equivalent parameters: both branches share location and scale
        mean, second = self._moments(data, weights, lambda t: t, lambda t: t ** 2)
        var = torch.clamp(second - mean ** 2, min=eps)
        self.reset_parameters()
        for name in self.field_names:
            getattr(self, name).copy_(mean / var)
        for name in self.param_names:
            if name.startswith("gamma"):
                getattr(self, name).copy_(1 / var)


class dReLU(_Rectified):
    """Double rectified units with independent positive and negative branches."""

    param_names = ("theta_p", "theta_n", "gamma_p", "gamma_n")
    field_names = ("theta_p", "theta_n")
    default_values = {"theta_p": 0.0, "theta_n": 0.0, "gamma_p": 1.0, "gamma_n": 1.0}

    def drelu_parameters(self):
        return self.theta_p, self.theta_n, self.gamma_p, self.gamma_n

    def pullback(self, grads):
        return dict(zip(self.param_names, grads))

    def tempered(self, beta: float) -> "dReLU":
        return dReLU(**{name: beta * value for name, value in self.parameter_dict().items()})

    def anneal(self, beta: float) -> "dReLU":
        return dReLU(
            theta_p=beta * self.theta_p,
            theta_n=beta * self.theta_n,
            gamma_p=self.gamma_p.clone(),
            gamma_n=self.gamma_n.clone(),
        )

    @classmethod
    def from_layer(cls, layer: Layer) -> "dReLU":
        """Equivalent dReLU of a Gaussian, ReLU, pReLU or xReLU layer."""
        if isinstance(layer, dReLU):
            return cls(**{name: value.clone() for name, value in layer.parameter_dict().items()})
        if isinstance(layer, _Rectified):
            theta_p, theta_n, gamma_p, gamma_n = layer.drelu_parameters()
            return cls(theta_p=theta_p, theta_n=theta_n, gamma_p=gamma_p, gamma_n=gamma_n)
        if isinstance(layer, Gaussian):
            return drelu_from_gaussian(layer)
        if isinstance(layer, ReLU):
            return drelu_from_relu(layer)
        raise TypeError(f"Cannot convert {type(layer).__name__} to dReLU")


def _prelu_factors(eta: torch.Tensor) -> Tuple[torch.Tensor, torch.Tensor]:
    return 1 / (1 + eta), 1 / (1 - eta)


class pReLU(_Rectified):
    """
    dReLU with scale γ, location θ, offset Δ and asymmetry η ∈ (-1, 1).

    γp = γ/(1+η), γn = γ/(1-η), θp = θ + Δ/(1+η), θn = θ - Δ/(1-η).
    """

    param_names = ("theta", "gamma", "delta", "eta")
    field_names = ("theta",)
    default_values = {"theta": 0.0, "gamma": 1.0, "delta": 0.0, "eta": 0.0}

    def drelu_parameters(self):
        fp, fn_ = _prelu_factors(self.eta)
        return (
            self.theta + self.delta * fp,
            self.theta - self.delta * fn_,
            self.gamma * fp,
            self.gamma * fn_,
        )

    def pullback(self, grads):
        g_theta_p, g_theta_n, g_gamma_p, g_gamma_n = grads
        fp, fn_ = _prelu_factors(self.eta)
        return {
            "theta": g_theta_p + g_theta_n,
            "gamma": g_gamma_p * fp + g_gamma_n * fn_,
            "delta": g_theta_p * fp - g_theta_n * fn_,
            "eta": (
                -(g_theta_p * self.delta + g_gamma_p * self.gamma) * fp ** 2
                + (-g_theta_n * self.delta + g_gamma_n * self.gamma) * fn_ ** 2
            ),
        }

    def tempered(self, beta: float) -> "pReLU":
        return pReLU(
            theta=beta * self.theta,
            gamma=beta * self.gamma,
            delta=beta * self.delta,
            eta=self.eta.clone(),
        )

    def anneal(self, beta: float) -> "pReLU":
        return pReLU(
            theta=beta * self.theta,
            gamma=self.gamma.clone(),
            delta=beta * self.delta,
            eta=self.eta.clone(),
        )

    @classmethod
    def from_layer(cls, layer: Layer) -> "pReLU":
        if isinstance(layer, pReLU):
            return cls(**{name: value.clone() for name, value in layer.parameter_dict().items()})
        if isinstance(layer, xReLU):
            return prelu_from_xrelu(layer)
        if isinstance(layer, (dReLU, Gaussian)):
            return prelu_from_drelu(dReLU.from_layer(layer))
        if isinstance(layer, ReLU):
            raise DomainError("A one-sided ReLU has no pReLU representation; use dReLU.from_layer")
        raise TypeError(f"Cannot convert {type(layer).__name__} to pReLU")


def _xrelu_factors(xi: torch.Tensor) -> Tuple[torch.Tensor, ...]:
    """ξp, ξn and their derivatives with respect to ξ."""
    xi_p = (1 + xi.abs()) / (1 + torch.clamp(2 * xi, min=0))
    xi_n = (1 + xi.abs()) / (1 - torch.clamp(2 * xi, max=0))
    dxi_p = torch.where(xi >= 0, -1 / (1 + 2 * torch.clamp(xi, min=0)) ** 2, -torch.ones_like(xi))
    dxi_n = torch.where(xi >= 0, torch.ones_like(xi), 1 / (1 - 2 * torch.clamp(xi, max=0)) ** 2)
    return xi_p, xi_n, dxi_p, dxi_n


class xReLU(_Rectified):
    """
    dReLU with scale γ, location θ, offset Δ and unbounded asymmetry ξ.

    γp = γξp, γn = γξn, θp = θ + Δξp, θn = θ - Δξn with
    ξp = (1+|ξ|)/(1+max(2ξ,0)) and ξn = (1+|ξ|)/(1-min(2ξ,0)).
    """

    param_names = ("theta", "gamma", "delta", "xi")
    field_names = ("theta",)
    default_values = {"theta": 0.0, "gamma": 1.0, "delta": 0.0, "xi": 0.0}

    def drelu_parameters(self):
        xi_p, xi_n, _, _ = _xrelu_factors(self.xi)
        return (
            self.theta + self.delta * xi_p,
            self.theta - self.delta * xi_n,
            self.gamma * xi_p,
            self.gamma * xi_n,
        )

    def pullback(self, grads):
        g_theta_p, g_theta_n, g_gamma_p, g_gamma_n = grads
        xi_p, xi_n, dxi_p, dxi_n = _xrelu_factors(self.xi)
        return {
            "theta": g_theta_p + g_theta_n,
            "gamma": g_gamma_p * xi_p + g_gamma_n * xi_n,
            "delta": g_theta_p * xi_p - g_theta_n * xi_n,
            "xi": (
                (g_theta_p * self.delta + g_gamma_p * self.gamma) * dxi_p
                + (-g_theta_n * self.delta + g_gamma_n * self.gamma) * dxi_n
            ),
        }

    def tempered(self, beta: float) -> "xReLU":
        return xReLU(
            theta=beta * self.theta,
            gamma=beta * self.gamma,
            delta=beta * self.delta,
            xi=self.xi.clone(),
        )

    def anneal(self, beta: float) -> "xReLU":
        return xReLU(
            theta=beta * self.theta,
            gamma=self.gamma.clone(),
            delta=beta * self.delta,
            xi=self.xi.clone(),
        )

    @classmethod
    def from_layer(cls, layer: Layer) -> "xReLU":
        if isinstance(layer, xReLU):
            return cls(**{name: value.clone() for name, value in layer.parameter_dict().items()})
        if isinstance(layer, pReLU):
            return xrelu_from_prelu(layer)
        if isinstance(layer, (dReLU, Gaussian)):
            return xrelu_from_drelu(dReLU.from_layer(layer))
        if isinstance(layer, ReLU):
            raise DomainError("A one-sided ReLU has no xReLU representation; use dReLU.from_layer")
        raise TypeError(f"Cannot convert {type(layer).__name__} to xReLU")


# Conversions between parameterizations


def _common_parameters(layer: dReLU) -> Tuple[torch.Tensor, ...]:
    gamma_p, gamma_n = layer.gamma_p, layer.gamma_n
    total = gamma_p + gamma_n
    gamma = 2 * gamma_p * gamma_n / total
    theta = (layer.theta_p * gamma_n + layer.theta_n * gamma_p) / total
    delta = gamma * (layer.theta_p - layer.theta_n) / total
    return theta, gamma, delta


def prelu_from_drelu(layer: dReLU) -> pReLU:
    theta, gamma, delta = _common_parameters(layer)
    eta = (layer.gamma_n - layer.gamma_p) / (layer.gamma_p + layer.gamma_n)
    return pReLU(theta=theta, gamma=gamma, delta=delta, eta=eta)


def xrelu_from_drelu(layer: dReLU) -> xReLU:
    theta, gamma, delta = _common_parameters(layer)
    diff = layer.gamma_n - layer.gamma_p
    xi = diff / (layer.gamma_p + layer.gamma_n - diff.abs())
    return xReLU(theta=theta, gamma=gamma, delta=delta, xi=xi)


def drelu_from_prelu(layer: pReLU) -> dReLU:
    return dReLU.from_layer(layer)


def drelu_from_xrelu(layer: xReLU) -> dReLU:
    return dReLU.from_layer(layer)


def xrelu_from_prelu(layer: pReLU) -> xReLU:
    xi = layer.eta / (1 - layer.eta.abs())
    return xReLU(theta=layer.theta.clone(), gamma=layer.gamma.clone(), delta=layer.delta.clone(), xi=xi)


def prelu_from_xrelu(layer: xReLU) -> pReLU:
    eta = layer.xi / (1 + layer.xi.abs())
    return pReLU(theta=layer.theta.clone(), gamma=layer.gamma.clone(), delta=layer.delta.clone(), eta=eta)


def drelu_from_gaussian(layer: Gaussian) -> dReLU:
    return dReLU(
        theta_p=layer.theta.clone(),
        theta_n=layer.theta.clone(),
        gamma_p=layer.gamma.clone(),
        gamma_n=layer.gamma.clone(),
    )


def drelu_from_relu(layer: ReLU) -> dReLU:
    """
    dReLU equivalent of a ReLU layer.

    The negative branch gets infinite scale, which collapses it to a point
    mass at zero with zero mixing weight.
    """
    return dReLU(
        theta_p=layer.theta.clone(),
        theta_n=torch.zeros_like(layer.theta),
        gamma_p=layer.gamma.clone(),
        gamma_n=torch.full_like(layer.gamma, math.inf),
    )
