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
Training module for ExpRBM.

This module provides training and evaluation infrastructure for RBMs:
- cd, rdm, pcd, pcd_centered, train_norm: contrastive-divergence trainers
- TrainingLoop and its subclasses, driven by callbacks and a History
- Regularization, initialization and optimizer plumbing
- AnnealedImportanceSampling: partition function estimation via AIS
- Pseudolikelihood and brute-force likelihood diagnostics
"""

from .loop import (
    TrainingLoop,
    ContrastiveDivergence,
    PersistentContrastiveDivergence,
    contrastive_divergence,
    cd,
    rdm,
    pcd,
)
from .centering import CenteredPCD, center_gradient, pcd_centered
from .weight_norm import WeightNormPCD, train_norm, weight_norm, weights_from_norm
from .ais import AnnealedImportanceSampling, ais
from .callbacks import (
    Callback,
    History,
    EarlyStopping,
    ModelCheckpoint,
    MetricMonitor,
    ProgressLogger,
)
from .eval import (
    log_pseudolikelihood,
    log_pseudolikelihood_exact,
    log_pseudolikelihood_stochastic,
    log_pseudolikelihood_sites,
    log_partition_bruteforce,
)
from .initialization import initialize_, initialize_weights_
from .optim import RBMOptimizer, apply_gradients_, build_optimizer
from .regularize import regularization_loss, regularize_gradient_

__version__ = "0.1.0"
__all__ = [
    # Trainers
    "TrainingLoop",
    "ContrastiveDivergence",
    "PersistentContrastiveDivergence",
    "CenteredPCD",
    "WeightNormPCD",
    "contrastive_divergence",
    "cd",
    "rdm",
    "pcd",
    "pcd_centered",
    "train_norm",
    "center_gradient",
    "weight_norm",
    "weights_from_norm",

    # Partition function
    "AnnealedImportanceSampling",
    "ais",

    # Callbacks
    "Callback",
    "History",
    "EarlyStopping",
    "ModelCheckpoint",
    "MetricMonitor",
    "ProgressLogger",

    # Evaluation
    "log_pseudolikelihood",
    "log_pseudolikelihood_exact",
    "log_pseudolikelihood_stochastic",
    "log_pseudolikelihood_sites",
    "log_partition_bruteforce",

    # Parameters
    "initialize_",
    "initialize_weights_",
    "RBMOptimizer",
    "apply_gradients_",
    "build_optimizer",
    "regularization_loss",
    "regularize_gradient_",
]
