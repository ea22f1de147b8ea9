#!/usr/bin/env python3
"""
Unit tests for the ExpRBM model.

This module tests the joint energy, free energies, partition functions,
gradients and the gradient record against brute-force enumeration,
numerical quadrature and autograd.
"""

import math
import unittest
import torch
from scipy import integrate
from torch.func import functional_call

from exprbm.errors import DomainError, ShapeMismatchError
from exprbm.models import (
    RBM,
    BinaryRBM,
    HopfieldRBM,
    RBMGradient,
    Binary,
    Potts,
    Gaussian,
    dReLU,
    xReLU,
    enumerate_states,
)
from tests import TEST_CONFIG

DTYPE = torch.float64


def random_binary_rbm(nv=3, nh=2, scale=1.0):
    return BinaryRBM(
        torch.randn(nv, dtype=DTYPE),
        torch.randn(nh, dtype=DTYPE),
        scale * torch.randn(nv, nh, dtype=DTYPE),
    )


def brute_force_free_energy(rbm, v):
    """-log Σ_h exp(-E(v, h)) by enumerating the hidden states."""
    h = enumerate_states(rbm.hidden)
    energies = rbm.energy(v.unsqueeze(1), h.unsqueeze(0))
    return -torch.logsumexp(-energies, dim=1)


class TestEnergies(unittest.TestCase):
    """Joint energy and free energies."""

    def setUp(self):
        torch.manual_seed(TEST_CONFIG['random_seed'])
        self.rbm = random_binary_rbm()

    def test_energy_decomposition(self):
        v = self.rbm.visible.sample_from_prior(6)
        h = self.rbm.hidden.sample_from_prior(6)
        expected = (
            self.rbm.visible.energy(v)
            + self.rbm.hidden.energy(h)
            - torch.einsum('bi,ij,bj->b', v, self.rbm.weights, h)
        )
        self.assertTrue(torch.allclose(self.rbm.energy(v, h), expected))

    def test_energy_broadcasts_batch_axes(self):
        v = self.rbm.visible.sample_from_prior(5).unsqueeze(1)
        h = self.rbm.hidden.sample_from_prior(4).unsqueeze(0)
        energy = self.rbm.energy(v, h)
        self.assertEqual(energy.shape, (5, 4))
        self.assertTrue(torch.allclose(energy[2, 3], self.rbm.energy(v[2, 0], h[0, 3])))

    def test_free_energy_matches_enumeration(self):
        v = enumerate_states(self.rbm.visible)
        self.assertTrue(torch.allclose(self.rbm.free_energy(v), brute_force_free_energy(self.rbm, v)))

    def test_free_energy_h_matches_enumeration(self):
        h = enumerate_states(self.rbm.hidden)
        v = enumerate_states(self.rbm.visible)
        energies = self.rbm.energy(v.unsqueeze(0), h.unsqueeze(1))
        expected = -torch.logsumexp(-energies, dim=1)
        self.assertTrue(torch.allclose(self.rbm.free_energy_h(h), expected))

    def test_potts_visible_layer(self):
        rbm = RBM(
            Potts(theta=torch.randn(3, 2, dtype=DTYPE)),
            Binary(theta=torch.randn(2, dtype=DTYPE)),
            torch.randn(3, 2, 2, dtype=DTYPE),
        )
        v = enumerate_states(rbm.visible)
        self.assertEqual(v.shape, (9, 3, 2))
        self.assertTrue(torch.allclose(rbm.free_energy(v), brute_force_free_energy(rbm, v)))
        self.assertEqual(rbm.inputs_h_from_v(v).shape, (9, 2))
        self.assertEqual(rbm.inputs_v_from_h(torch.ones(4, 2, dtype=DTYPE)).shape, (4, 3, 2))

    def test_mirror_swaps_roles(self):
        mirror = self.rbm.mirror()
        v = self.rbm.visible.sample_from_prior(5)
        h = self.rbm.hidden.sample_from_prior(5)
        self.assertTrue(torch.allclose(mirror.energy(h, v), self.rbm.energy(v, h)))
        self.assertTrue(torch.allclose(mirror.free_energy(h), self.rbm.free_energy_h(h)))
        self.assertIs(mirror.visible, self.rbm.hidden)

    def test_tempered_scales_energy(self):
        tempered = self.rbm.tempered(0.4)
        v = self.rbm.visible.sample_from_prior(5)
        h = self.rbm.hidden.sample_from_prior(5)
        self.assertTrue(torch.allclose(tempered.energy(v, h), 0.4 * self.rbm.energy(v, h)))

    def test_hopfield_free_energy(self):
        g = torch.randn(4, dtype=DTYPE)
        w = torch.randn(4, 3, dtype=DTYPE)
        rbm = HopfieldRBM(g, w)
        v = torch.sign(torch.randn(6, 4, dtype=DTYPE))
        inputs = v @ w
        expected = -v @ g - (inputs ** 2).sum(-1) / 2 + 3 * 0.5 * math.log(1 / (2 * math.pi))
        self.assertTrue(torch.allclose(rbm.free_energy(v), expected))

        theta = torch.randn(3, dtype=DTYPE)
        gamma = torch.rand(3, dtype=DTYPE) + 0.5
        rbm = HopfieldRBM(g, w, theta=theta, gamma=gamma)
        self.assertTrue(torch.equal(rbm.hidden.theta, theta))
        self.assertTrue(torch.equal(rbm.hidden.gamma, gamma))

    def test_reconstruction_error(self):
        v = self.rbm.visible.sample_from_prior(10)
        error = self.rbm.reconstruction_error(v, steps=2)
        self.assertEqual(error.shape, (10,))
        self.assertTrue(torch.all((error >= 0) & (error <= 1)))


class TestPartitionFunction(unittest.TestCase):
    """Closed-form and zero-coupling partition functions."""

    def setUp(self):
        torch.manual_seed(TEST_CONFIG['random_seed'])

    def test_zero_weight_partition_matches_enumeration(self):
        rbm = random_binary_rbm(scale=0.0)
        v = enumerate_states(rbm.visible)
        h = enumerate_states(rbm.hidden)
        energies = rbm.energy(v.unsqueeze(1), h.unsqueeze(0))
        self.assertTrue(torch.allclose(rbm.log_partition_zero_weight(), torch.logsumexp(-energies.flatten(), 0)))

    def test_gaussian_partition_matches_quadrature(self):
        rbm = RBM(
            Gaussian(theta=torch.tensor([0.3], dtype=DTYPE), gamma=torch.tensor([2.0], dtype=DTYPE)),
            Gaussian(theta=torch.tensor([0.5, -1.0], dtype=DTYPE), gamma=torch.tensor([1.0, 1.5], dtype=DTYPE)),
            torch.tensor([[0.6, -0.4]], dtype=DTYPE),
        )

        def density(x):
            v = torch.tensor([[x]], dtype=DTYPE)
            return math.exp(-rbm.free_energy(v).item())

        integral, _ = integrate.quad(density, -math.inf, math.inf)
        self.assertAlmostEqual(rbm.log_partition().item(), math.log(integral), places=6)

    def test_gaussian_partition_without_coupling(self):
        rbm = RBM(
            Gaussian(theta=torch.randn(3, dtype=DTYPE), gamma=torch.rand(3, dtype=DTYPE) + 0.5),
            Gaussian(theta=torch.randn(2, dtype=DTYPE), gamma=torch.rand(2, dtype=DTYPE) + 0.5),
            torch.zeros(3, 2, dtype=DTYPE),
        )
        self.assertTrue(torch.allclose(rbm.log_partition(), rbm.log_partition_zero_weight()))

    def test_log_likelihood_normalizes(self):
        rbm = RBM(
            Gaussian(theta=torch.tensor([0.3], dtype=DTYPE), gamma=torch.tensor([2.0], dtype=DTYPE)),
            Gaussian.from_shape(1, dtype=DTYPE),
            torch.tensor([[0.5]], dtype=DTYPE),
        )
        integral, _ = integrate.quad(
            lambda x: math.exp(rbm.log_likelihood(torch.tensor([[x]], dtype=DTYPE)).item()),
            -math.inf, math.inf,
        )
        self.assertAlmostEqual(integral, 1.0, places=6)

    def test_divergent_coupling(self):
        rbm = RBM(
            Gaussian.from_shape(1, dtype=DTYPE),
            Gaussian.from_shape(1, dtype=DTYPE),
            torch.tensor([[2.0]], dtype=DTYPE),
        )
        with self.assertRaises(DomainError):
            rbm.log_partition()

    def test_no_closed_form_for_discrete_layers(self):
        with self.assertRaises(NotImplementedError):
            random_binary_rbm().log_partition()


class TestGradients(unittest.TestCase):
    """Analytic free-energy gradients agree with autograd."""

    def setUp(self):
        torch.manual_seed(TEST_CONFIG['random_seed'])
        self.machines = {
            'binary-binary': random_binary_rbm(4, 3),
            'binary-drelu': RBM(
                Binary(theta=torch.randn(4, dtype=DTYPE)),
                dReLU(
                    theta_p=torch.randn(3, dtype=DTYPE),
                    theta_n=torch.randn(3, dtype=DTYPE),
                    gamma_p=torch.rand(3, dtype=DTYPE) + 0.5,
                    gamma_n=torch.rand(3, dtype=DTYPE) + 0.5,
                ),
                torch.randn(4, 3, dtype=DTYPE),
            ),
            'gaussian-xrelu': RBM(
                Gaussian(theta=torch.randn(4, dtype=DTYPE), gamma=torch.rand(4, dtype=DTYPE) + 0.5),
                xReLU(
                    theta=torch.randn(3, dtype=DTYPE),
                    gamma=torch.rand(3, dtype=DTYPE) + 0.5,
                    delta=torch.randn(3, dtype=DTYPE),
                    xi=torch.randn(3, dtype=DTYPE),
                ),
                0.3 * torch.randn(4, 3, dtype=DTYPE),
            ),
        }

    def _autograd(self, rbm, v, weights=None):
        params = {name: p.detach().clone().requires_grad_() for name, p in rbm.named_parameters()}
        free = functional_call(rbm, params, (v,))
        if weights is not None:
            free = free * weights
        grads = torch.autograd.grad(free.mean(), list(params.values()))
        return dict(zip(params, grads))

    def test_grad_free_energy_matches_autograd(self):
        for name, rbm in self.machines.items():
            with self.subTest(rbm=name):
                v = rbm.visible.sample_from_prior(8)
                expected = self._autograd(rbm, v)
                actual = rbm.grad_free_energy(v).flatten()
                self.assertEqual(set(actual), set(expected))
                for key, value in expected.items():
                    self.assertTrue(torch.allclose(actual[key], value, atol=1e-6), f"{name}: {key}")

    def test_weighted_gradient(self):
        rbm = self.machines['binary-drelu']
        v = rbm.visible.sample_from_prior(8)
        weights = torch.rand(8, dtype=DTYPE) * 2
        expected = self._autograd(rbm, v, weights)
        actual = rbm.grad_free_energy(v, weights).flatten()
        for key, value in expected.items():
            self.assertTrue(torch.allclose(actual[key], value, atol=1e-6), key)

    def test_precomputed_statistics(self):
        rbm = self.machines['binary-binary']
        v = rbm.visible.sample_from_prior(8)
        other = rbm.visible.sample_from_prior(20)
        stats = rbm.visible.sufficient_statistics(other)
        grad = rbm.grad_free_energy(v, stats=stats)
        self.assertTrue(torch.allclose(grad.visible['theta'], -other.mean(0)))
        self.assertTrue(torch.allclose(grad.hidden['theta'], rbm.grad_free_energy(v).hidden['theta']))


class TestRBMGradient(unittest.TestCase):
    """Arithmetic on gradient records."""

    def setUp(self):
        torch.manual_seed(TEST_CONFIG['random_seed'])
        self.rbm = random_binary_rbm()
        v = self.rbm.visible.sample_from_prior(5)
        self.a = self.rbm.grad_free_energy(v)
        self.b = self.rbm.grad_free_energy(self.rbm.visible.sample_from_prior(5))

    def test_arithmetic(self):
        total = self.a + self.b
        self.assertTrue(torch.allclose(total.weights, self.a.weights + self.b.weights))
        self.assertTrue(torch.allclose((total - self.b).visible['theta'], self.a.visible['theta']))
        self.assertTrue(torch.allclose((2 * self.a).hidden['theta'], self.a.hidden['theta'] * 2))
        self.assertTrue(torch.allclose((self.a * 2 / 4).weights, self.a.weights / 2))
        self.assertTrue(torch.allclose((-self.a).weights, -self.a.weights))

    def test_flatten_matches_parameter_names(self):
        self.assertEqual(set(self.a.flatten()), {name for name, _ in self.rbm.named_parameters()})
        self.assertEqual(set(self.a.norm()), set(self.a.flatten()))

    def test_zeros_like(self):
        zero = RBMGradient.zeros_like(self.rbm)
        self.assertTrue(torch.equal((self.a + zero).weights, self.a.weights))
        self.assertEqual(zero.weights.shape, self.rbm.weights.shape)

    def test_clone_is_independent(self):
        copy = self.a.clone()
        copy.weights.add_(1.0)
        self.assertFalse(torch.allclose(copy.weights, self.a.weights))

    def test_mismatched_records(self):
        gaussian = RBMGradient.zeros_like(RBM(
            Gaussian.from_shape(3, dtype=DTYPE), Binary.from_shape(2, dtype=DTYPE), torch.zeros(3, 2, dtype=DTYPE)
        ))
        with self.assertRaises(ValueError):
            self.a + gaussian


class TestStructure(unittest.TestCase):
    """Shape validation and degenerate layers."""

    def setUp(self):
        torch.manual_seed(TEST_CONFIG['random_seed'])

    def test_weight_shape_mismatch(self):
        with self.assertRaises(ShapeMismatchError):
            RBM(Binary.from_shape(3), Binary.from_shape(2), torch.zeros(2, 3))

    def test_configuration_shape_mismatch(self):
        rbm = random_binary_rbm()
        with self.assertRaises(ShapeMismatchError):
            rbm.free_energy(torch.zeros(5, 4, dtype=DTYPE))
        with self.assertRaises(ShapeMismatchError):
            rbm.energy(torch.zeros(5, 3, dtype=DTYPE), torch.zeros(4, 2, dtype=DTYPE))

    def test_zero_hidden_units(self):
        rbm = RBM(
            Binary(theta=torch.randn(3, dtype=DTYPE)),
            Binary.from_shape(0, dtype=DTYPE),
            torch.zeros(3, 0, dtype=DTYPE),
        )
        v = rbm.visible.sample_from_prior(4)
        self.assertTrue(torch.allclose(rbm.free_energy(v), rbm.visible.energy(v)))
        self.assertEqual(rbm.sample_h_from_v(v).shape, (4, 0))
        self.assertEqual(rbm.sample_v_from_v(v, steps=2).shape, (4, 3))
        grad = rbm.grad_free_energy(v)
        self.assertEqual(grad.weights.shape, (3, 0))

    def test_parameters_are_frozen(self):
        rbm = random_binary_rbm()
        self.assertTrue(all(not p.requires_grad for p in rbm.parameters()))
        self.assertEqual(
            {name for name, _ in rbm.named_parameters()},
            {'visible.theta', 'hidden.theta', 'weights'},
        )


if __name__ == '__main__':
    unittest.main()
