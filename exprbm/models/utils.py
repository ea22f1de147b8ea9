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
Utility functions for batched tensors and importance weights

This module provides helpers shared by layers, RBMs and estimators:
- Batch shape validation against a unit layout
- Reductions over unit axes and (weighted) batch axes
- Log-mean-exp and effective sample size for importance weights
- Exhaustive enumeration of small discrete configurations
"""

from typing import Optional, Sequence, Tuple
import itertools
import torch

from ..errors import ShapeMismatchError


def batch_shape(unit_shape: Sequence[int], x: torch.Tensor) -> Tuple[int, ...]:
    """
    Split off the leading batch axes of a tensor laid out as batch + unit shape.

    Args:
        unit_shape: Shape of the unit layout
        x: Tensor of shape (*batch, *unit_shape)

    Returns:
        The batch shape

    Raises:
        ShapeMismatchError: If the trailing axes do not match unit_shape
    """
    unit_shape = tuple(unit_shape)
    ndim = len(unit_shape)
    if x.ndim < ndim or tuple(x.shape[x.ndim - ndim:]) != unit_shape:
        raise ShapeMismatchError(
            f"Expected a tensor with trailing shape {unit_shape}, got {tuple(x.shape)}"
        )
    return tuple(x.shape[:x.ndim - ndim])


def unit_sum(x: torch.Tensor, ndim: int) -> torch.Tensor:
    """Sum over the trailing ndim unit axes."""
    if ndim == 0:
        return x
    return x.sum(dim=tuple(range(-ndim, 0)))


def batch_mean(
    x: torch.Tensor,
    batch_ndim: int,
    weights: Optional[torch.Tensor] = None
) -> torch.Tensor:
    """
    Mean over the leading batch axes, optionally weighted per sample.

    Weights are not normalized: the result is mean(x * weights), so uniform
    weights of one recover the plain mean.

    Args:
        x: Tensor of shape (*batch, *units)
        batch_ndim: Number of leading batch axes
        weights: Per-sample weights of shape batch (optional)

    Returns:
        Tensor with the unit shape
    """
    if batch_ndim == 0:
        return x
    dims = tuple(range(batch_ndim))
    if weights is None:
        return x.mean(dim=dims)
    if tuple(weights.shape) != tuple(x.shape[:batch_ndim]):
        raise ShapeMismatchError(
            f"Weights of shape {tuple(weights.shape)} do not match batch shape {tuple(x.shape[:batch_ndim])}"
        )
    weights = weights.to(x.dtype).reshape(weights.shape + (1,) * (x.ndim - batch_ndim))
    return (x * weights).mean(dim=dims)


def weighted_mean(values: torch.Tensor, weights: Optional[torch.Tensor] = None) -> torch.Tensor:
    """Unnormalized weighted mean of a batch of scalars."""
    if weights is None:
        return values.mean()
    return (values * weights.to(values.dtype)).mean()


def compute_effective_sample_size(log_weights: torch.Tensor) -> float:
    """
    Compute effective sample size from log importance weights.

    Args:
        log_weights: Log importance weights [n_samples]

    Returns:
        Effective sample size
    """
    # Normalize log weights
    log_weights = log_weights - torch.logsumexp(log_weights, dim=0)
    weights = torch.exp(log_weights)

    # ESS = 1 / sum(w_i^2)
    ess = 1.0 / torch.sum(weights**2)
    return ess.item()


def log_mean_exp(log_values: torch.Tensor, dim: int = 0) -> torch.Tensor:
    """
    Compute log(mean(exp(log_values))) in a numerically stable way.

    Args:
        log_values: Log values
        dim: Dimension to average over

    Returns:
        Log of mean of exponentials
    """
    return torch.logsumexp(log_values, dim=dim) - torch.log(
        torch.tensor(float(log_values.shape[dim]), dtype=log_values.dtype)
    )


def enumerate_states(layer) -> torch.Tensor:
    """
    Enumerate every configuration of a small discrete layer.

    Args:
        layer: Binary, Spin or Potts layer

    Returns:
        Tensor of shape (n_states, *layer.shape)
    """
    # Local import: the layer classes depend on this module.
    from .layers import Binary, Potts, Spin

    dtype = layer.theta.dtype
    if isinstance(layer, (Binary, Spin)):
        values = (0.0, 1.0) if isinstance(layer, Binary) else (-1.0, 1.0)
        states = list(itertools.product(values, repeat=layer.num_units))
        return torch.tensor(states, dtype=dtype).reshape(len(states), *layer.shape)
    if isinstance(layer, Potts):
        n_colors = layer.shape[0]
        n_sites = layer.num_units // n_colors
        colors = torch.tensor(list(itertools.product(range(n_colors), repeat=n_sites)), dtype=torch.long)
        onehot = torch.nn.functional.one_hot(colors.reshape(-1, n_sites), n_colors).to(dtype)
        return onehot.movedim(-1, 1).reshape(onehot.shape[0], *layer.shape)
    raise TypeError(f"Cannot enumerate states of {type(layer).__name__} layers")
