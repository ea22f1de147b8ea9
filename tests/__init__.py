"""
ExpRBM Test Suite

This package contains tests for all ExpRBM components.

Test Structure:
- test_layers.py: Layer energies, moments, sampling and conversions
- test_rbm.py: RBM energies, free energies, partition functions and gradients
- test_sampling.py: Gibbs and Metropolis samplers
- test_estimators.py: AIS and pseudolikelihood
- test_training.py: Trainers, regularization, optimizers and callbacks
- test_config.py: Configuration loading, validation and comparison

Usage:
    # Run all tests
    python -m pytest tests

    # Run specific test module
    python -m unittest tests.test_layers

    # Summary runner
    python tests/run_tests.py --test test_rbm
"""

import os
import warnings

# Configure test environment
os.environ['EXPRBM_TEST_MODE'] = '1'

# Suppress warnings during testing
warnings.filterwarnings('ignore', category=UserWarning)
warnings.filterwarnings('ignore', category=FutureWarning)

# Test configuration
TEST_CONFIG = {
    'random_seed': 42,
    'device': 'cpu',  # Use CPU for consistent testing
    'dtype': 'float64',
    'n_chains': 50000,
    'tolerance': 1e-6,
}

# Make config available to test modules
__all__ = ['TEST_CONFIG']
