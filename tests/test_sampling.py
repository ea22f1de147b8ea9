#!/usr/bin/env python3
"""
Unit tests for ExpRBM samplers.

This module checks that block Gibbs and Metropolis chains reproduce the
exact visible distribution of small machines, where the probabilities can be
computed by enumeration.
"""

import unittest
import numpy as np
import torch

from exprbm.models import (
    RBM,
    BinaryRBM,
    GibbsSampler,
    Gaussian,
    Potts,
    Binary,
    enumerate_states,
    metropolis,
    metropolis_step,
)
from tests import TEST_CONFIG

DTYPE = torch.float64


def state_codes(v):
    powers = 2 ** torch.arange(v.shape[-1] - 1, -1, -1, dtype=DTYPE)
    return (v @ powers).long()


def exact_probabilities(rbm):
    states = enumerate_states(rbm.visible)
    probs = torch.zeros(2 ** rbm.visible.num_units, dtype=DTYPE)
    probs[state_codes(states)] = torch.softmax(-rbm.free_energy(states), dim=0)
    return probs


def empirical_probabilities(v):
    counts = torch.bincount(state_codes(v), minlength=2 ** v.shape[-1])
    return counts.to(DTYPE) / v.shape[0]


def correlation(a, b):
    return np.corrcoef(a.numpy(), b.numpy())[0, 1]


class TestGibbsSampling(unittest.TestCase):
    """Block Gibbs chains."""

    def setUp(self):
        torch.manual_seed(TEST_CONFIG['random_seed'])
        self.n_chains = TEST_CONFIG['n_chains']
        self.rbm = BinaryRBM(
            torch.randn(5, dtype=DTYPE),
            torch.randn(2, dtype=DTYPE),
            torch.randn(5, 2, dtype=DTYPE),
        )

    def test_gibbs_matches_exact_distribution(self):
        v0 = self.rbm.visible.sample_from_prior(self.n_chains)
        samples = GibbsSampler(n_steps=100).sample(self.rbm, v0, n_samples=1)
        self.assertEqual(samples.shape, (1, self.n_chains, 5))

        empirical = empirical_probabilities(samples[0])
        exact = exact_probabilities(self.rbm)
        self.assertGreater(correlation(empirical, exact), 0.99)

    def test_tempered_gibbs_matches_tempered_machine(self):
        v0 = self.rbm.visible.sample_from_prior(self.n_chains)
        v = self.rbm.sample_v_from_v(v0, steps=100, beta=0.5)
        empirical = empirical_probabilities(v)
        exact = exact_probabilities(self.rbm.tempered(0.5))
        self.assertGreater(correlation(empirical, exact), 0.99)

    def test_mean_and_mode_chains(self):
        v0 = self.rbm.visible.sample_from_prior(10)
        mean = self.rbm.mean_v_from_v(v0, steps=3)
        self.assertTrue(torch.all((mean > 0) & (mean < 1)))
        mode = self.rbm.mode_v_from_v(v0, steps=3)
        self.assertTrue(torch.all((mode == 0) | (mode == 1)))
        h = self.rbm.sample_h_from_h(self.rbm.hidden.sample_from_prior(10), steps=2)
        self.assertEqual(h.shape, (10, 2))


class TestMetropolis(unittest.TestCase):
    """Metropolis-within-Gibbs chains."""

    def setUp(self):
        torch.manual_seed(TEST_CONFIG['random_seed'])
        self.n_chains = TEST_CONFIG['n_chains']
        self.rbm = BinaryRBM(
            torch.randn(5, dtype=DTYPE),
            torch.randn(2, dtype=DTYPE),
            torch.randn(5, 2, dtype=DTYPE),
        )

    def test_metropolis_matches_exact_distribution(self):
        for beta in (1.0, 0.5):
            with self.subTest(beta=beta):
                v0 = self.rbm.visible.sample_from_prior(self.n_chains)
                v = metropolis(self.rbm, v0, steps=200, beta=beta)
                empirical = empirical_probabilities(v)
                exact = exact_probabilities(self.rbm.tempered(beta))
                self.assertGreater(correlation(empirical, exact), 0.99)

    def test_step_changes_at_most_one_site(self):
        v = self.rbm.visible.sample_from_prior(100)
        h = self.rbm.sample_h_from_v(v)
        updated = metropolis_step(self.rbm, v, h)
        self.assertTrue(torch.all((updated != v).sum(-1) <= 1))

    def test_potts_moves_keep_one_hot(self):
        rbm = RBM(
            Potts(theta=torch.randn(4, 3, dtype=DTYPE)),
            Binary(theta=torch.randn(2, dtype=DTYPE)),
            torch.randn(4, 3, 2, dtype=DTYPE),
        )
        v = metropolis(rbm, rbm.visible.sample_from_prior(50), steps=20)
        self.assertEqual(v.shape, (50, 4, 3))
        self.assertTrue(torch.all(v.sum(dim=1) == 1))

    def test_continuous_layers_rejected(self):
        rbm = RBM(Gaussian.from_shape(3, dtype=DTYPE), Binary.from_shape(2, dtype=DTYPE), torch.zeros(3, 2, dtype=DTYPE))
        v = torch.zeros(4, 3, dtype=DTYPE)
        with self.assertRaises(TypeError):
            metropolis_step(rbm, v, torch.zeros(4, 2, dtype=DTYPE))


if __name__ == '__main__':
    unittest.main()
