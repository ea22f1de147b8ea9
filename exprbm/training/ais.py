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
Annealed Importance Sampling for likelihood estimation

This module implements AIS for estimating the partition function of RBMs
with any layer types. Based on:
- Salakhutdinov & Murray (2008)
- Neal (2001) annealed importance sampling

The annealing path runs from an independent model (visible layer `init`,
hidden layer with zero fields, no coupling) to the target RBM, see
`exprbm.models.rbm.anneal`.

Features:
- Linear, geometric and sigmoid annealing schedules
- Effective sample size diagnostics
- Variance estimation and repeated independent runs
"""

from typing import Any, Dict, Optional, Tuple, Union
import torch
import numpy as np
import logging
from tqdm import tqdm

from ..models.layers import Layer
from ..models.rbm import RBM, anneal
from ..models.utils import compute_effective_sample_size, log_mean_exp

logger = logging.getLogger(__name__)


class AnnealedImportanceSampling:
    """
    Annealed Importance Sampling estimator of log Z for an RBM.

    Particles start from the independent model at β = 0 and are moved by one
    Gibbs sweep of each intermediate machine; their log weights accumulate the
    free-energy differences between consecutive machines.
    """

    def __init__(
        self,
        rbm: RBM,
        n_particles: int = 100,
        n_intermediate: int = 1000,
        schedule: str = 'linear',
        init: Optional[Layer] = None,
        device: Optional[torch.device] = None
    ):
        """
        Initialize AIS estimator.

        Args:
            rbm: Target model
            n_particles: Number of AIS particles/chains
            n_intermediate: Number of annealing steps (betas minus one)
            schedule: Annealing schedule ('linear', 'geometric', 'sigmoid')
            init: Visible layer of the β = 0 model; defaults to the visible
                layer with zero fields
            device: Device for computation
        """
        if n_particles < 1 or n_intermediate < 1:
            raise ValueError("AIS needs at least one particle and one annealing step")
        self.rbm = rbm
        self.n_particles = n_particles
        self.n_intermediate = n_intermediate
        self.schedule = schedule
        self.device = device or rbm.weights.device
        self.init = rbm.visible.anneal(0.0) if init is None else init

        self.rbm.to(self.device)
        self.init.to(self.device)

        # Generate annealing schedule
        self.betas = self._generate_schedule()

        # Results storage
        self.log_weights = None
        self.log_z_estimate = None
        self.log_z_variance = None
        self.effective_sample_size = None

    def _generate_schedule(self) -> torch.Tensor:
        """Generate annealing schedule β_k ∈ [0, 1]."""
        dtype = self.rbm.weights.dtype
        if self.schedule == 'linear':
            betas = torch.linspace(0, 1, self.n_intermediate + 1, dtype=dtype)
        elif self.schedule == 'geometric':
            # β_k = (k/K)^2, denser near β = 0
            betas = torch.linspace(0, 1, self.n_intermediate + 1, dtype=dtype) ** 2
        elif self.schedule == 'sigmoid':
            x = torch.sigmoid(torch.linspace(-6, 6, self.n_intermediate + 1, dtype=dtype))
            betas = (x - x[0]) / (x[-1] - x[0])
        else:
            raise ValueError(f"Unknown schedule: {self.schedule}")
        return betas

    @torch.no_grad()
    def estimate_log_partition_function(
        self,
        verbose: bool = True,
        return_diagnostics: bool = False
    ) -> Union[float, Tuple[float, Dict[str, Any]]]:
        """
        Estimate log partition function using AIS.

        Args:
            verbose: Whether to show progress
            return_diagnostics: Whether to return diagnostic information

        Returns:
            log_z_estimate: Estimated log partition function
            diagnostics: Diagnostic information (if requested)
        """
        logger.info(f"Starting AIS with {self.n_particles} particles, {self.n_intermediate} steps")

        betas = self.betas.tolist()
        path = anneal(self.init, self.rbm, betas[0])
        log_z_zero = path.log_partition_zero_weight()

        particles = self.init.sample_from_prior(self.n_particles)
        log_weights = torch.zeros(self.n_particles, dtype=self.rbm.weights.dtype, device=self.device)

        progress_bar = tqdm(
            range(self.n_intermediate),
            desc="AIS Progress",
            disable=not verbose
        )

        for k in progress_bar:
            next_path = anneal(self.init, self.rbm, betas[k + 1])
            log_weights += path.free_energy(particles) - next_path.free_energy(particles)
            particles = next_path.sample_v_from_v(particles)
            path = next_path

            if k % 100 == 0:
                current_ess = compute_effective_sample_size(log_weights)
                progress_bar.set_postfix({'ESS': f'{current_ess:.1f}'})

        self.log_weights = log_weights
        self.log_z_estimate = (log_z_zero + log_mean_exp(log_weights)).item()
        self.log_z_variance = torch.var(log_weights).item() if self.n_particles > 1 else 0.0
        self.effective_sample_size = compute_effective_sample_size(log_weights)

        logger.info(f"AIS completed: log Z = {self.log_z_estimate:.4f} ± {np.sqrt(self.log_z_variance):.4f}")
        logger.info(f"Effective sample size: {self.effective_sample_size:.1f}/{self.n_particles}")

        if return_diagnostics:
            diagnostics = {
                'log_weights': log_weights.cpu().numpy(),
                'log_z_zero_weight': log_z_zero.item(),
                'log_z_variance': self.log_z_variance,
                'effective_sample_size': self.effective_sample_size,
                'ess_ratio': self.effective_sample_size / self.n_particles,
                'schedule': self.betas.cpu().numpy()
            }
            return self.log_z_estimate, diagnostics
        return self.log_z_estimate

    def estimate_log_likelihood(
        self,
        data: torch.Tensor,
        use_cached_z: bool = True
    ) -> torch.Tensor:
        """
        Estimate log-likelihood of data as -F(v) - log Z.

        Args:
            data: Visible configurations (*batch, *visible.shape)
            use_cached_z: Whether to use cached partition function estimate

        Returns:
            log_likelihood: Log-likelihood estimates with the batch shape
        """
        if not use_cached_z or self.log_z_estimate is None:
            self.estimate_log_partition_function(verbose=False)

        with torch.no_grad():
            return -self.rbm.free_energy(data.to(self.device)) - self.log_z_estimate

    def run_multiple_chains(
        self,
        n_runs: int = 5,
        verbose: bool = True
    ) -> Dict[str, Any]:
        """
        Run multiple independent AIS chains for better estimates.

        Args:
            n_runs: Number of independent runs
            verbose: Whether to log each run

        Returns:
            results: Dictionary with aggregated results
        """
        logger.info(f"Running {n_runs} independent AIS chains")

        estimates = []
        variances = []
        ess_values = []

        for run in range(n_runs):
            if verbose:
                logger.info(f"AIS run {run + 1}/{n_runs}")

            log_z, diagnostics = self.estimate_log_partition_function(
                verbose=False, return_diagnostics=True
            )

            estimates.append(log_z)
            variances.append(diagnostics['log_z_variance'])
            ess_values.append(diagnostics['effective_sample_size'])

        estimates = np.array(estimates)
        mean_estimate = float(np.mean(estimates))
        std_estimate = float(np.std(estimates))
        mean_ess = float(np.mean(ess_values))

        results = {
            'mean_log_z': mean_estimate,
            'std_log_z': std_estimate,
            'individual_estimates': estimates,
            'mean_variance': float(np.mean(variances)),
            'mean_ess': mean_ess,
            'ess_ratio': mean_ess / self.n_particles,
            'n_runs': n_runs
        }

        logger.info(f"Multi-chain AIS: log Z = {mean_estimate:.4f} ± {std_estimate:.4f}")
        logger.info(f"Average ESS: {mean_ess:.1f}/{self.n_particles}")

        self.log_z_estimate = mean_estimate
        self.log_z_variance = std_estimate ** 2
        self.effective_sample_size = mean_ess

        return results


def ais(
    rbm: RBM,
    nbetas: int = 10000,
    nsamples: int = 1,
    init: Optional[Layer] = None,
    schedule: str = 'linear'
) -> float:
    """
    AIS estimate of the log partition function.

    Args:
        rbm: Target model
        nbetas: Number of inverse temperatures including both endpoints
        nsamples: Number of particles
        init: Visible layer of the independent starting model
        schedule: Annealing schedule

    Returns:
        Estimate of log Z
    """
    if nbetas < 2:
        raise ValueError(f"nbetas must be at least 2, got {nbetas}")
    estimator = AnnealedImportanceSampling(
        rbm,
        n_particles=nsamples,
        n_intermediate=nbetas - 1,
        schedule=schedule,
        init=init
    )
    return estimator.estimate_log_partition_function(verbose=logger.isEnabledFor(logging.DEBUG))
