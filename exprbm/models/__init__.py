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
Models module for ExpRBM.

This module provides the building blocks of Restricted Boltzmann Machines:
- Layer types: Binary, Spin, Potts, Gaussian, ReLU, dReLU, pReLU, xReLU
- RBM: bipartite energy model with Gibbs sampling and free energies
- RBMGradient: gradient records mirroring an RBM's parameters
- Samplers: block Gibbs and single-site Metropolis chains
"""

from .layers import Layer, Binary, Spin, Potts, Gaussian
from .rectified import (
    ReLU,
    dReLU,
    pReLU,
    xReLU,
    drelu_from_prelu,
    prelu_from_drelu,
    drelu_from_xrelu,
    xrelu_from_drelu,
    prelu_from_xrelu,
    xrelu_from_prelu,
    drelu_from_gaussian,
    drelu_from_relu,
)
from .gradients import RBMGradient
from .rbm import RBM, BinaryRBM, HopfieldRBM, anneal
from .sampling import GibbsSampler, metropolis, metropolis_step
from .utils import (
    batch_mean,
    weighted_mean,
    compute_effective_sample_size,
    log_mean_exp,
    enumerate_states,
)

LAYER_TYPES = {
    "binary": Binary,
    "spin": Spin,
    "potts": Potts,
    "gaussian": Gaussian,
    "relu": ReLU,
    "drelu": dReLU,
    "prelu": pReLU,
    "xrelu": xReLU,
}

__version__ = "0.1.0"
__all__ = [
    # Layers
    "Layer",
    "Binary",
    "Spin",
    "Potts",
    "Gaussian",
    "ReLU",
    "dReLU",
    "pReLU",
    "xReLU",
    "LAYER_TYPES",

    # Conversions
    "drelu_from_prelu",
    "prelu_from_drelu",
    "drelu_from_xrelu",
    "xrelu_from_drelu",
    "prelu_from_xrelu",
    "xrelu_from_prelu",
    "drelu_from_gaussian",
    "drelu_from_relu",

    # Core model
    "RBM",
    "BinaryRBM",
    "HopfieldRBM",
    "RBMGradient",
    "anneal",

    # Sampling
    "GibbsSampler",
    "metropolis",
    "metropolis_step",

    # Utility functions
    "batch_mean",
    "weighted_mean",
    "compute_effective_sample_size",
    "log_mean_exp",
    "enumerate_states",
]
