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
ExpRBM: Restricted Boltzmann Machines with exponential-family layers.

This package provides:
- models: layer types, the RBM energy model, Gibbs and Metropolis sampling
- training: contrastive-divergence trainers, AIS and pseudolikelihood
- configs: typed training options and experiment configuration files
"""

from .errors import RBMError, ShapeMismatchError, DomainError, GradientConsistencyError
from .models import (
    Layer,
    Binary,
    Spin,
    Potts,
    Gaussian,
    ReLU,
    dReLU,
    pReLU,
    xReLU,
    RBM,
    BinaryRBM,
    HopfieldRBM,
    RBMGradient,
)
from .configs import TrainingConfig, OptimizerConfig, RegularizationConfig, ConfigManager

__version__ = "0.1.0"
__all__ = [
    "RBMError",
    "ShapeMismatchError",
    "DomainError",
    "GradientConsistencyError",
    "Layer",
    "Binary",
    "Spin",
    "Potts",
    "Gaussian",
    "ReLU",
    "dReLU",
    "pReLU",
    "xReLU",
    "RBM",
    "BinaryRBM",
    "HopfieldRBM",
    "RBMGradient",
    "TrainingConfig",
    "OptimizerConfig",
    "RegularizationConfig",
    "ConfigManager",
]
