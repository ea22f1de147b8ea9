#!/usr/bin/env python3
"""
Unit tests for ExpRBM training.

This module exercises the trainers end to end on small machines together
with their supporting pieces: optimizers, regularization, initialization,
centering, weight normalization and callbacks.
"""

import math
import tempfile
import unittest
from pathlib import Path
import torch

from exprbm.configs import OptimizerConfig, RegularizationConfig, TrainingConfig
from exprbm.errors import DomainError, GradientConsistencyError, ShapeMismatchError
from exprbm.models import RBM, BinaryRBM, RBMGradient, Binary, Potts, Gaussian, ReLU, dReLU
from exprbm.training import (
    Callback,
    EarlyStopping,
    History,
    MetricMonitor,
    ModelCheckpoint,
    RBMOptimizer,
    WeightNormPCD,
    apply_gradients_,
    build_optimizer,
    cd,
    center_gradient,
    contrastive_divergence,
    initialize_,
    log_pseudolikelihood_exact,
    pcd,
    pcd_centered,
    rdm,
    regularization_loss,
    regularize_gradient_,
    train_norm,
    weight_norm,
)
from exprbm.training.regularize import _penalty
from tests import TEST_CONFIG

DTYPE = torch.float64


def sample_dataset(n_samples, nv=5, nh=3):
    """Visible samples of a randomly coupled binary RBM."""
    source = BinaryRBM(
        0.5 * torch.randn(nv, dtype=DTYPE),
        torch.zeros(nh, dtype=DTYPE),
        1.5 * torch.randn(nv, nh, dtype=DTYPE),
    )
    v = source.visible.sample_from_prior(n_samples)
    return source.sample_v_from_v(v, steps=200)


def fresh_rbm(nv=5, nh=3):
    return BinaryRBM(torch.zeros(nv, dtype=DTYPE), torch.zeros(nh, dtype=DTYPE), torch.zeros(nv, nh, dtype=DTYPE))


class TestPersistentContrastiveDivergence(unittest.TestCase):
    """End-to-end PCD training."""

    def setUp(self):
        torch.manual_seed(TEST_CONFIG['random_seed'])
        data = sample_dataset(1200)
        self.train_data, self.test_data = data[:1000], data[1000:]
        self.config = TrainingConfig(
            epochs=5,
            batch_size=16,
            steps=10,
            optimizer=OptimizerConfig(lr=0.01),
        )

    def test_pcd_improves_pseudolikelihood(self):
        rbm = initialize_(fresh_rbm(), self.train_data)
        before = log_pseudolikelihood_exact(rbm, self.test_data).mean().item()

        history = pcd(rbm, self.train_data, self.config)

        after = log_pseudolikelihood_exact(rbm, self.test_data).mean().item()
        self.assertEqual(len(history['lpl']), 5)
        self.assertTrue(all(math.isfinite(value) for value in history['lpl']))
        self.assertGreaterEqual(after, before - 0.05)

        n_batches = math.ceil(1000 / 16)
        self.assertEqual(len(history['epoch']), 5 * n_batches)
        self.assertEqual(len(history['cd_loss']), 5 * n_batches)
        self.assertEqual(len(history['Δt']), 5)
        self.assertTrue(all(not p.requires_grad and p.grad is None for p in rbm.parameters()))

    def test_chains_can_be_continued(self):
        rbm = initialize_(fresh_rbm(), self.train_data)
        config = TrainingConfig(epochs=1, batch_size=16, steps=2)
        history, chains = pcd(rbm, self.train_data, config, return_chains=True)
        self.assertIsInstance(history, History)
        self.assertEqual(chains.shape, (16, 5))

        start = rbm.visible.sample_from_prior(7)
        _, chains = pcd(rbm, self.train_data, config, init_chains=start, return_chains=True)
        self.assertEqual(chains.shape, (7, 5))

        with self.assertRaises(ShapeMismatchError):
            pcd(rbm, self.train_data, config, init_chains=torch.zeros(7, 4, dtype=DTYPE))

    def test_sample_weights(self):
        rbm = initialize_(fresh_rbm(), self.train_data)
        weights = torch.ones(1000, dtype=DTYPE)
        weights[500:] = 0
        history = pcd(rbm, self.train_data, TrainingConfig(epochs=1, batch_size=50), weights=weights)
        self.assertTrue(all(math.isfinite(value) for value in history['cd_loss']))

    def test_data_shape_errors(self):
        rbm = fresh_rbm()
        with self.assertRaises(ShapeMismatchError):
            pcd(rbm, torch.zeros(10, 4, dtype=DTYPE))
        with self.assertRaises(ShapeMismatchError):
            pcd(rbm, torch.zeros(10, 5, dtype=DTYPE), weights=torch.ones(9, dtype=DTYPE))


class TestOtherTrainers(unittest.TestCase):
    """CD, rdm, centered PCD and weight-normalized PCD."""

    def setUp(self):
        torch.manual_seed(TEST_CONFIG['random_seed'])
        self.data = sample_dataset(200)
        self.config = TrainingConfig(epochs=2, batch_size=20, steps=3, optimizer=OptimizerConfig(lr=0.01))

    def assertFiniteHistory(self, history):
        self.assertTrue(all(math.isfinite(value) for value in history['cd_loss']))
        self.assertTrue(all(math.isfinite(value) for value in history['lpl']))
        self.assertEqual(len(history['lpl']), 2)

    def test_cd(self):
        rbm = initialize_(fresh_rbm(), self.data)
        history, chains = cd(rbm, self.data, self.config, return_chains=True)
        self.assertFiniteHistory(history)
        self.assertEqual(tuple(chains.shape[1:]), (5,))

    def test_rdm(self):
        rbm = initialize_(fresh_rbm(), self.data)
        self.assertFiniteHistory(rdm(rbm, self.data, self.config))

    def test_pcd_centered(self):
        rbm = initialize_(fresh_rbm(), self.data)
        history, chains = pcd_centered(rbm, self.data, self.config, return_chains=True)
        self.assertFiniteHistory(history)
        self.assertEqual(chains.shape, (20, 5))

    def test_pcd_centered_without_offsets(self):
        rbm = initialize_(fresh_rbm(), self.data)
        config = TrainingConfig(epochs=2, batch_size=20, center_visible=False, center_hidden=False)
        self.assertFiniteHistory(pcd_centered(rbm, self.data, config))

    def test_train_norm(self):
        rbm = initialize_(fresh_rbm(), self.data)
        trainer = WeightNormPCD(rbm, self.config)
        history = trainer.fit(self.data)
        self.assertFiniteHistory(history)

        norm, direction = weight_norm(rbm)
        self.assertTrue(torch.allclose(norm, trainer.norm.detach().abs(), atol=1e-8))
        self.assertTrue(torch.allclose(direction.pow(2).sum(0), torch.ones(3, dtype=DTYPE)))

    def test_train_norm_with_regularization(self):
        rbm = initialize_(fresh_rbm(), self.data)
        config = TrainingConfig(
            epochs=1,
            batch_size=20,
            regularization=RegularizationConfig(l2_fields=0.01, l1_weights=0.001, l2l1_weights=0.01),
        )
        history, chains = train_norm(rbm, self.data, config, return_chains=True)
        self.assertTrue(all(math.isfinite(value) for value in history['reg_loss']))
        self.assertEqual(chains.shape, (20, 5))

    def test_continuous_visible_layer(self):
        rbm = RBM(
            Gaussian.from_shape(4, dtype=DTYPE),
            dReLU.from_shape(3, dtype=DTYPE),
            torch.zeros(4, 3, dtype=DTYPE),
        )
        data = torch.randn(100, 4, dtype=DTYPE)
        initialize_(rbm, data)
        history = pcd(rbm, data, TrainingConfig(epochs=1, batch_size=20, optimizer=OptimizerConfig(lr=1e-3)))
        self.assertNotIn('lpl', history)
        self.assertTrue(all(math.isfinite(value) for value in history['cd_loss']))

    def test_unknown_chain_initialization(self):
        from exprbm.training import ContrastiveDivergence
        with self.assertRaises(ValueError):
            ContrastiveDivergence(fresh_rbm(), chain_init='uniform')


class TestWeightNormalization(unittest.TestCase):
    """Norm/direction split of the weights."""

    def setUp(self):
        torch.manual_seed(TEST_CONFIG['random_seed'])

    def test_zero_column_rejected(self):
        rbm = fresh_rbm()
        with self.assertRaises(DomainError):
            weight_norm(rbm)

    def test_inconsistent_gradients_rejected(self):
        rbm = initialize_(fresh_rbm())
        trainer = WeightNormPCD(rbm, TrainingConfig())
        with self.assertRaises(GradientConsistencyError):
            trainer.check_gradients(
                torch.randn(5, 3, dtype=DTYPE),
                torch.zeros(1, 3, dtype=DTYPE),
                torch.zeros(5, 3, dtype=DTYPE),
            )


class TestCentering(unittest.TestCase):
    """Centered gradient transformation."""

    def setUp(self):
        torch.manual_seed(TEST_CONFIG['random_seed'])
        self.rbm = BinaryRBM(torch.randn(4, dtype=DTYPE), torch.randn(3, dtype=DTYPE), torch.randn(4, 3, dtype=DTYPE))
        self.grad = self.rbm.grad_free_energy(self.rbm.visible.sample_from_prior(10))

    def test_zero_offsets_leave_gradient_unchanged(self):
        centered = center_gradient(self.rbm, self.grad, torch.zeros(4, dtype=DTYPE), torch.zeros(3, dtype=DTYPE))
        for key, value in self.grad.flatten().items():
            self.assertTrue(torch.allclose(centered.flatten()[key], value))

    def test_centered_weight_gradient(self):
        lv = torch.rand(4, dtype=DTYPE)
        lh = torch.rand(3, dtype=DTYPE)
        centered = center_gradient(self.rbm, self.grad, lv, lh)
        expected = (
            self.grad.weights
            - torch.outer(lv, self.grad.hidden['theta'])
            - torch.outer(self.grad.visible['theta'], lh)
        )
        self.assertTrue(torch.allclose(centered.weights, expected))
        self.assertTrue(torch.allclose(centered.visible['theta'], self.grad.visible['theta'] - expected @ lh))
        self.assertTrue(torch.allclose(centered.hidden['theta'], self.grad.hidden['theta'] - expected.T @ lv))


class TestRegularization(unittest.TestCase):
    """Penalty gradients and values."""

    def setUp(self):
        torch.manual_seed(TEST_CONFIG['random_seed'])
        self.rbm = BinaryRBM(torch.randn(4, dtype=DTYPE), torch.randn(3, dtype=DTYPE), torch.randn(4, 3, dtype=DTYPE))

    def test_inactive_regularization_is_a_noop(self):
        config = RegularizationConfig()
        self.assertFalse(config.is_active())
        grad = self.rbm.grad_free_energy(self.rbm.visible.sample_from_prior(5))
        before = {key: value.clone() for key, value in grad.flatten().items()}
        regularize_gradient_(grad, self.rbm, config)
        for key, value in before.items():
            self.assertTrue(torch.equal(grad.flatten()[key], value))
        self.assertEqual(regularization_loss(self.rbm, config).item(), 0.0)

    def test_penalty_gradient_matches_autograd(self):
        config = RegularizationConfig(l2_fields=0.1, l1_weights=0.01, l2_weights=0.05, l2l1_weights=0.02)
        theta = self.rbm.visible.theta.detach().clone().requires_grad_()
        weights = self.rbm.weights.detach().clone().requires_grad_()
        loss = _penalty({'theta': theta}, weights, 1, config)
        grad_theta, grad_weights = torch.autograd.grad(loss, [theta, weights])

        grad = regularize_gradient_(RBMGradient.zeros_like(self.rbm), self.rbm, config)
        self.assertTrue(torch.allclose(grad.visible['theta'], grad_theta))
        self.assertTrue(torch.allclose(grad.weights, grad_weights))
        self.assertTrue(torch.all(grad.hidden['theta'] == 0))
        self.assertAlmostEqual(regularization_loss(self.rbm, config).item(), loss.item())


class TestInitialization(unittest.TestCase):
    """Parameter initialization."""

    def setUp(self):
        torch.manual_seed(TEST_CONFIG['random_seed'])

    def test_eps_bounds(self):
        for eps in (0.0, 0.5, 0.6):
            with self.assertRaises(DomainError):
                initialize_(fresh_rbm(), eps=eps)

    def test_visible_fields_match_data(self):
        data = torch.tensor([[1, 0, 1, 1, 0], [1, 1, 0, 1, 0]], dtype=DTYPE)
        rbm = initialize_(fresh_rbm(), data, eps=1e-3)
        expected = torch.logit(torch.tensor([0.999, 0.5, 0.5, 0.999, 0.001], dtype=DTYPE))
        self.assertTrue(torch.allclose(rbm.visible.theta, expected))
        self.assertTrue(torch.all(rbm.hidden.theta == 0))
        self.assertGreater(rbm.weights.abs().sum().item(), 0)

    def test_relu_fields_match_data(self):
        data = 1 + 3 * torch.rand(500, 4, dtype=DTYPE)
        rbm = RBM(ReLU.from_shape(4, dtype=DTYPE), Binary.from_shape(2, dtype=DTYPE), torch.zeros(4, 2, dtype=DTYPE))
        initialize_(rbm, data)
        var = data.var(0, unbiased=False)
        self.assertTrue(torch.allclose(rbm.visible.gamma, 1 / var))
        self.assertTrue(torch.allclose(rbm.visible.theta, data.mean(0) / var))
        self.assertTrue(torch.all(rbm.visible.theta > 0))

    def test_potts_weights_are_zero_sum(self):
        rbm = RBM(Potts.from_shape(3, 4, dtype=DTYPE), Binary.from_shape(2, dtype=DTYPE), torch.zeros(3, 4, 2, dtype=DTYPE))
        initialize_(rbm)
        self.assertTrue(torch.allclose(rbm.weights.sum(dim=0), torch.zeros(4, 2, dtype=DTYPE), atol=1e-12))

    def test_weight_scale(self):
        rbm = BinaryRBM(torch.zeros(400, dtype=DTYPE), torch.zeros(50, dtype=DTYPE), torch.zeros(400, 50, dtype=DTYPE))
        initialize_(rbm, weight_scale=2.0)
        self.assertAlmostEqual(rbm.weights.std().item(), 2.0 / math.sqrt(400), places=2)


class TestOptimizer(unittest.TestCase):
    """Descent steps with external gradients."""

    def setUp(self):
        torch.manual_seed(TEST_CONFIG['random_seed'])
        self.rbm = BinaryRBM(torch.randn(4, dtype=DTYPE), torch.randn(3, dtype=DTYPE), torch.randn(4, 3, dtype=DTYPE))

    def test_sgd_step(self):
        before = {name: p.clone() for name, p in self.rbm.named_parameters()}
        gradient = RBMGradient.zeros_like(self.rbm)._map(torch.ones_like)
        RBMOptimizer(self.rbm, OptimizerConfig(name='sgd', lr=0.1)).step(gradient)
        for name, p in self.rbm.named_parameters():
            self.assertTrue(torch.allclose(p, before[name] - 0.1))
            self.assertIsNone(p.grad)

    def test_adam_descends(self):
        before = self.rbm.weights.clone()
        gradient = RBMGradient.zeros_like(self.rbm)._map(torch.ones_like)
        RBMOptimizer(self.rbm, OptimizerConfig(lr=0.01)).step(gradient)
        self.assertTrue(torch.all(self.rbm.weights < before))

    def test_invalid_gradients(self):
        params = dict(self.rbm.named_parameters())
        optimizer = build_optimizer(params.values(), OptimizerConfig(name='sgd', lr=0.1))
        with self.assertRaises(ValueError):
            apply_gradients_(optimizer, params, {'weights': torch.zeros(4, 3, dtype=DTYPE)})
        grads = {name: torch.zeros_like(p) for name, p in params.items()}
        grads['weights'] = torch.zeros(3, 4, dtype=DTYPE)
        with self.assertRaises(ShapeMismatchError):
            apply_gradients_(optimizer, params, grads)

    def test_unknown_optimizer(self):
        with self.assertRaises(ValueError):
            build_optimizer(self.rbm.parameters(), OptimizerConfig(name='rmsprop'))


class ExplodingCallback(Callback):
    def on_epoch_end(self, epoch, logs, model):
        raise RuntimeError("callback failure")


class TestCallbacks(unittest.TestCase):
    """Callbacks and training history."""

    def setUp(self):
        torch.manual_seed(TEST_CONFIG['random_seed'])
        self.data = sample_dataset(100)
        self.rbm = initialize_(fresh_rbm(), self.data)
        self.config = TrainingConfig(epochs=3, batch_size=20)

    def test_failing_callback_does_not_abort_training(self):
        with self.assertLogs('exprbm.training.loop', level='WARNING') as logs:
            history = pcd(self.rbm, self.data, self.config, callbacks=[ExplodingCallback()])
        self.assertEqual(len(history['Δt']), 3)
        self.assertTrue(any('callback failure' in message for message in logs.output))

    def test_early_stopping(self):
        stopper = EarlyStopping(monitor='cd_loss', patience=1, min_delta=1e9, restore_best_weights=False, verbose=False)
        history = pcd(self.rbm, self.data, TrainingConfig(epochs=10, batch_size=20), callbacks=[stopper])
        self.assertEqual(len(history['Δt']), 2)
        self.assertTrue(stopper.should_stop())

    def test_metric_monitor(self):
        monitor = MetricMonitor({'weight_norm': lambda model, logs: model.weights.norm()}, verbose=False)
        pcd(self.rbm, self.data, self.config, callbacks=[monitor])
        values = monitor.get_metric_history()['weight_norm']
        self.assertEqual(len(values), 3)
        self.assertTrue(all(isinstance(value, float) for value in values))

    def test_model_checkpoint(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            checkpoint = ModelCheckpoint(
                Path(tmpdir) / 'rbm_{epoch}.pt',
                monitor='cd_loss',
                save_best_only=False,
                verbose=False,
            )
            pcd(self.rbm, self.data, self.config, callbacks=[checkpoint])
            self.assertEqual(len(checkpoint.saved_paths), 3)
            self.assertTrue(all(path.exists() for path in checkpoint.saved_paths))

            restored = fresh_rbm()
            restored.load_state_dict(torch.load(checkpoint.saved_paths[-1]))
            self.assertTrue(torch.allclose(restored.weights, self.rbm.weights))

    def test_history(self):
        history = History()
        history.push('loss', torch.tensor(1.5))
        history.push('loss', 0.5)
        self.assertIn('loss', history)
        self.assertEqual(history['loss'], [1.5, 0.5])
        self.assertEqual(history.last('loss'), 0.5)
        self.assertIsNone(history.last('missing'))
        self.assertEqual(history.to_dict(), {'loss': [1.5, 0.5]})
        self.assertEqual(len(history), 1)

    def test_contrastive_divergence_loss(self):
        vd = self.data[:10]
        vm = self.rbm.visible.sample_from_prior(10)
        expected = self.rbm.free_energy(vd).mean() - self.rbm.free_energy(vm).mean()
        self.assertTrue(torch.allclose(contrastive_divergence(self.rbm, vd, vm), expected))


if __name__ == '__main__':
    unittest.main()
