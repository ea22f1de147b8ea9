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
Unit layers for Restricted Boltzmann Machines

This module implements the layer contract and the non-rectified families:
- Layer: common base with energy, free energy, moments and statistics
- Binary: Bernoulli units in {0, 1}
- Spin: ±1 units
- Potts: one-hot categorical units (category axis first)
- Gaussian: real-valued units with quadratic energy

Tensors are laid out as (*batch, *layer.shape). `inputs` is the external
field coupled into the layer and may be a scalar or any tensor broadcastable
to that layout.
"""

from abc import ABC, abstractmethod
from typing import Dict, Optional, Tuple, Union
import math
import torch
import torch.nn as nn
import torch.nn.functional as F

from ..errors import ShapeMismatchError
from . import functional as fn
from .utils import batch_mean, batch_shape, unit_sum

Inputs = Union[float, torch.Tensor]


class Layer(nn.Module, ABC):
    """
    Base class for a layer of units of one exponential-family type.

    Subclasses declare `param_names` (all parameters, identical shapes) and
    `field_names` (the location parameters that inputs shift).
    """

    param_names: Tuple[str, ...] = ("theta",)
    field_names: Tuple[str, ...] = ("theta",)
    default_values: Dict[str, float] = {"theta": 0.0}

    def __init__(self, **params: torch.Tensor):
        super().__init__()
        if set(params) != set(self.param_names):
            raise ValueError(
                f"{type(self).__name__} expects parameters {self.param_names}, got {tuple(params)}"
            )
        tensors = {name: torch.as_tensor(params[name]) for name in self.param_names}
        shapes = {name: tuple(t.shape) for name, t in tensors.items()}
        if len(set(shapes.values())) > 1:
            raise ShapeMismatchError(
                f"{type(self).__name__} parameters must share one shape, got {shapes}"
            )
        for name in self.param_names:
            tensor = tensors[name]
            if not tensor.is_floating_point():
                tensor = tensor.to(torch.get_default_dtype())
            setattr(self, name, nn.Parameter(tensor, requires_grad=False))

    @classmethod
    def from_shape(
        cls,
        *shape: int,
        dtype: Optional[torch.dtype] = None,
        device: Optional[torch.device] = None
    ) -> "Layer":
        """
        Create a layer with default parameters (zero locations, unit scales).

        Args:
            *shape: Unit layout of the layer
            dtype: Parameter dtype
            device: Parameter device
        """
        return cls(**{
            name: torch.full(shape, cls.default_values[name], dtype=dtype, device=device)
            for name in cls.param_names
        })

    @property
    def shape(self) -> torch.Size:
        return getattr(self, self.param_names[0]).shape

    @property
    def ndim(self) -> int:
        return len(self.shape)

    @property
    def num_units(self) -> int:
        return math.prod(self.shape)

    def parameter_dict(self) -> Dict[str, torch.Tensor]:
        return {name: getattr(self, name) for name in self.param_names}

    def batch_shape(self, x: torch.Tensor) -> Tuple[int, ...]:
        return batch_shape(self.shape, x)

    def reduce(self, x: torch.Tensor) -> torch.Tensor:
        """Sum an elementwise quantity over the unit axes."""
        return unit_sum(x, self.ndim)

    def extra_repr(self) -> str:
        return f"shape={tuple(self.shape)}"

    def forward(self, inputs: Inputs = 0.0) -> torch.Tensor:
        return self.free_energy(inputs)

    # Energies

    @abstractmethod
    def energies(self, x: torch.Tensor) -> torch.Tensor:
        """Elementwise energies of configuration x."""

    def energy(self, x: torch.Tensor) -> torch.Tensor:
        """
        Energy of configuration x, reduced over units.

        Args:
            x: Configuration of shape (*batch, *shape)

        Returns:
            Energy of shape batch
        """
        self.batch_shape(x)
        return self.reduce(self.energies(x.to(self.shape_dtype)))

    @abstractmethod
    def free_energies(self, inputs: Inputs = 0.0) -> torch.Tensor:
        """Elementwise free energies -log ∫ exp(-E(x) + inputs·x) dx."""

    def free_energy(self, inputs: Inputs = 0.0) -> torch.Tensor:
        """Free energy (negative cumulant generating function) reduced over units."""
        return self.reduce(self.free_energies(inputs))

    def log_partition(self) -> torch.Tensor:
        return -self.free_energy()

    @property
    def shape_dtype(self) -> torch.dtype:
        return getattr(self, self.param_names[0]).dtype

    # Conditional distribution given inputs

    @abstractmethod
    def transfer_sample(self, inputs: Inputs = 0.0) -> torch.Tensor:
        """Draw one sample per unit from exp(-E(x) + inputs·x)."""

    @abstractmethod
    def transfer_meanvar(self, inputs: Inputs = 0.0) -> Tuple[torch.Tensor, torch.Tensor]:
        """Mean and variance of each unit given inputs."""

    @abstractmethod
    def transfer_mode(self, inputs: Inputs = 0.0) -> torch.Tensor:
        """Most probable configuration given inputs."""

    @abstractmethod
    def transfer_mean_abs(self, inputs: Inputs = 0.0) -> torch.Tensor:
        """Mean absolute value of each unit given inputs."""

    def transfer_mean(self, inputs: Inputs = 0.0) -> torch.Tensor:
        return self.transfer_meanvar(inputs)[0]

    def transfer_var(self, inputs: Inputs = 0.0) -> torch.Tensor:
        return self.transfer_meanvar(inputs)[1]

    def transfer_std(self, inputs: Inputs = 0.0) -> torch.Tensor:
        return torch.sqrt(self.transfer_var(inputs))

    def sample_from_prior(self, n_samples: Optional[int] = None) -> torch.Tensor:
        """Sample the layer with zero inputs, optionally with a batch of n_samples."""
        shape = tuple(self.shape) if n_samples is None else (n_samples, *self.shape)
        ref = getattr(self, self.param_names[0])
        return self.transfer_sample(torch.zeros(shape, dtype=ref.dtype, device=ref.device))

    # Gradients

    @abstractmethod
    def sufficient_statistics(
        self,
        x: torch.Tensor,
        weights: Optional[torch.Tensor] = None
    ) -> Dict[str, torch.Tensor]:
        """Batch-averaged moments of x needed by grad_energy."""

    @abstractmethod
    def grad_energy(self, stats: Dict[str, torch.Tensor]) -> Dict[str, torch.Tensor]:
        """Gradient of the mean energy with respect to each parameter."""

    @abstractmethod
    def grad_free_energy(self, inputs: Inputs = 0.0) -> Dict[str, torch.Tensor]:
        """Per-sample gradient of the free energy with respect to each parameter."""

    def field_gradient(self, grad: Dict[str, torch.Tensor]) -> torch.Tensor:
        """Total gradient with respect to a uniform shift of the location."""
        return sum(grad[name] for name in self.field_names)

    def mean_from_gradient(self, grad: Dict[str, torch.Tensor]) -> torch.Tensor:
        """Recover mean unit activity from a free-energy gradient."""
        return -self.field_gradient(grad)

    def _moments(self, x: torch.Tensor, weights: Optional[torch.Tensor], *fns) -> Tuple[torch.Tensor, ...]:
        batch_ndim = len(self.batch_shape(x))
        x = x.to(self.shape_dtype)
        return tuple(batch_mean(f(x), batch_ndim, weights) for f in fns)

    # Derived layers

    @abstractmethod
    def tempered(self, beta: float) -> "Layer":
        """Layer whose energy is beta times this layer's energy."""

    def anneal(self, beta: float) -> "Layer":
        """
        Layer for the AIS path: location-type parameters scaled by beta.

        Scale parameters are kept so that the layer stays normalizable at
        beta = 0. For discrete layers this equals `tempered`.
        """
        return self.tempered(beta)

    def interpolate(self, other: "Layer", beta: float) -> "Layer":
        """Linear interpolation (1 - beta) * self + beta * other of all parameters."""
        if type(other) is not type(self) or other.shape != self.shape:
            raise ShapeMismatchError(
                f"Cannot interpolate {type(self).__name__}{tuple(self.shape)} "
                f"with {type(other).__name__}{tuple(other.shape)}"
            )
        return type(self)(**{
            name: (1 - beta) * getattr(self, name) + beta * getattr(other, name)
            for name in self.param_names
        })

    # Initialization

    @torch.no_grad()
    def reset_parameters(self) -> None:
        for name in self.param_names:
            getattr(self, name).fill_(self.default_values[name])

    def match_statistics_(
        self,
        data: torch.Tensor,
        weights: Optional[torch.Tensor] = None,
        eps: float = 1e-6
    ) -> None:
        """Set parameters so the layer marginals match the data; defaults if unsupported."""
        self.reset_parameters()


class Binary(Layer):
    """Bernoulli units taking values in {0, 1}."""

    def energies(self, x: torch.Tensor) -> torch.Tensor:
        return -self.theta * x

    def free_energies(self, inputs: Inputs = 0.0) -> torch.Tensor:
        return -F.softplus(self.theta + inputs)

    def transfer_sample(self, inputs: Inputs = 0.0) -> torch.Tensor:
        return torch.bernoulli(torch.sigmoid(self.theta + inputs).detach())

    def transfer_meanvar(self, inputs: Inputs = 0.0) -> Tuple[torch.Tensor, torch.Tensor]:
        mean = torch.sigmoid(self.theta + inputs)
        return mean, mean * (1 - mean)

    def transfer_mode(self, inputs: Inputs = 0.0) -> torch.Tensor:
        return (self.theta + inputs > 0).to(self.shape_dtype)

    def transfer_mean_abs(self, inputs: Inputs = 0.0) -> torch.Tensor:
        return self.transfer_mean(inputs)

    def sufficient_statistics(self, x, weights=None):
        (mean,) = self._moments(x, weights, lambda t: t)
        return {"x": mean}

    def grad_energy(self, stats):
        return {"theta": -stats["x"]}

    def grad_free_energy(self, inputs: Inputs = 0.0):
        return {"theta": -self.transfer_mean(inputs)}

    def tempered(self, beta: float) -> "Binary":
        return Binary(theta=beta * self.theta)

    @torch.no_grad()
    def match_statistics_(self, data, weights=None, eps=1e-6):
        (mean,) = self._moments(data, weights, lambda t: t)
        self.theta.copy_(torch.logit(torch.clamp(mean, eps, 1 - eps)))


class Spin(Layer):
    """Ising spins taking values in {-1, +1}."""

    def energies(self, x: torch.Tensor) -> torch.Tensor:
        return -self.theta * x

    def free_energies(self, inputs: Inputs = 0.0) -> torch.Tensor:
        theta = self.theta + inputs
        return -torch.logaddexp(theta, -theta)

    def transfer_sample(self, inputs: Inputs = 0.0) -> torch.Tensor:
        prob = torch.sigmoid(2 * (self.theta + inputs)).detach()
        return 2 * torch.bernoulli(prob) - 1

    def transfer_meanvar(self, inputs: Inputs = 0.0) -> Tuple[torch.Tensor, torch.Tensor]:
        mean = torch.tanh(self.theta + inputs)
        return mean, 1 - mean ** 2

    def transfer_mode(self, inputs: Inputs = 0.0) -> torch.Tensor:
        theta = self.theta + inputs
        return torch.where(theta >= 0, torch.ones_like(theta), -torch.ones_like(theta))

    def transfer_mean_abs(self, inputs: Inputs = 0.0) -> torch.Tensor:
        return torch.ones_like(self.theta + inputs)

    def sufficient_statistics(self, x, weights=None):
        (mean,) = self._moments(x, weights, lambda t: t)
        return {"x": mean}

    def grad_energy(self, stats):
        return {"theta": -stats["x"]}

    def grad_free_energy(self, inputs: Inputs = 0.0):
        return {"theta": -self.transfer_mean(inputs)}

    def tempered(self, beta: float) -> "Spin":
        return Spin(theta=beta * self.theta)

    @torch.no_grad()
    def match_statistics_(self, data, weights=None, eps=1e-6):
        (mean,) = self._moments(data, weights, lambda t: t)
        self.theta.copy_(torch.atanh(torch.clamp(mean, eps - 1, 1 - eps)))


class Potts(Layer):
    """
    Categorical units in one-hot encoding.

    The first axis of the layer shape indexes the categories, so a layer of
    shape (q, n) holds n sites with q colors each.
    """

    @property
    def n_colors(self) -> int:
        return self.shape[0]

    @property
    def category_dim(self) -> int:
        return -self.ndim

    def energies(self, x: torch.Tensor) -> torch.Tensor:
        return -self.theta * x

    def free_energies(self, inputs: Inputs = 0.0) -> torch.Tensor:
        # keepdim leaves a singleton category axis so unit reductions still apply
        return -torch.logsumexp(self.theta + inputs, dim=self.category_dim, keepdim=True)

    def _one_hot(self, index: torch.Tensor) -> torch.Tensor:
        onehot = F.one_hot(index, self.n_colors).to(self.shape_dtype)
        return onehot.movedim(-1, self.category_dim)

    def transfer_sample(self, inputs: Inputs = 0.0) -> torch.Tensor:
        logits = (self.theta + inputs).detach()
        gumbel = -torch.log(-torch.log(1 - torch.rand_like(logits)))
        return self._one_hot(torch.argmax(logits + gumbel, dim=self.category_dim))

    def transfer_meanvar(self, inputs: Inputs = 0.0) -> Tuple[torch.Tensor, torch.Tensor]:
        mean = torch.softmax(self.theta + inputs, dim=self.category_dim)
        return mean, mean * (1 - mean)

    def transfer_mode(self, inputs: Inputs = 0.0) -> torch.Tensor:
        return self._one_hot(torch.argmax(self.theta + inputs, dim=self.category_dim))

    def transfer_mean_abs(self, inputs: Inputs = 0.0) -> torch.Tensor:
        return self.transfer_mean(inputs)

    def sufficient_statistics(self, x, weights=None):
        (mean,) = self._moments(x, weights, lambda t: t)
        return {"x": mean}

    def grad_energy(self, stats):
        return {"theta": -stats["x"]}

    def grad_free_energy(self, inputs: Inputs = 0.0):
        return {"theta": -self.transfer_mean(inputs)}

    def tempered(self, beta: float) -> "Potts":
        return Potts(theta=beta * self.theta)

    @torch.no_grad()
    def match_statistics_(self, data, weights=None, eps=1e-6):
        (mean,) = self._moments(data, weights, lambda t: t)
        theta = torch.log(torch.clamp(mean, eps, 1 - eps))
        self.theta.copy_(theta - theta.mean(dim=0, keepdim=True))


class Gaussian(Layer):
    """Real-valued units with energy |γ|x²/2 - θx."""

    param_names = ("theta", "gamma")
    default_values = {"theta": 0.0, "gamma": 1.0}

    def energies(self, x: torch.Tensor) -> torch.Tensor:
        return fn.gauss_energy(self.theta, self.gamma, x)

    def free_energies(self, inputs: Inputs = 0.0) -> torch.Tensor:
        return fn.gauss_free(self.theta + inputs, self.gamma)

    def transfer_sample(self, inputs: Inputs = 0.0) -> torch.Tensor:
        return fn.gauss_sample((self.theta + inputs).detach(), self.gamma.detach())

    def transfer_meanvar(self, inputs: Inputs = 0.0) -> Tuple[torch.Tensor, torch.Tensor]:
        return fn.gauss_meanvar(self.theta + inputs, self.gamma)

    def transfer_mode(self, inputs: Inputs = 0.0) -> torch.Tensor:
        return self.transfer_mean(inputs)

    def transfer_mean_abs(self, inputs: Inputs = 0.0) -> torch.Tensor:
        return fn.gauss_mean_abs(self.theta + inputs, self.gamma)

    def sufficient_statistics(self, x, weights=None):
        x1, x2 = self._moments(x, weights, lambda t: t, lambda t: t ** 2)
        return {"x1": x1, "x2": x2}

    def grad_energy(self, stats):
        return {"theta": -stats["x1"], "gamma": torch.sign(self.gamma) * stats["x2"] / 2}

    def grad_free_energy(self, inputs: Inputs = 0.0):
        mean, var = self.transfer_meanvar(inputs)
        return {"theta": -mean, "gamma": torch.sign(self.gamma) * (var + mean ** 2) / 2}

    def tempered(self, beta: float) -> "Gaussian":
        return Gaussian(theta=beta * self.theta, gamma=beta * self.gamma)

    def anneal(self, beta: float) -> "Gaussian":
        return Gaussian(theta=beta * self.theta, gamma=self.gamma.clone())

    @torch.no_grad()
    def match_statistics_(self, data, weights=None, eps=1e-6):
        mean, second = self._moments(data, weights, lambda t: t, lambda t: t ** 2)
        var = torch.clamp(second - mean ** 2, min=eps)
        self.gamma.copy_(1 / var)
        self.theta.copy_(mean / var)
