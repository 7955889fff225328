"""
End-to-end tests of the PGURE-SVT pipeline.
"""

import array
import unittest

import numpy as np
import pandas as pd
import pytest

from pgure_svt import pipeline
from pgure_svt.base import GeometryError, ParameterError, PGURESVTConfig, get_pgure_svt_parameters
from pgure_svt.pipeline import LambdaHint, PGURESVTDenoiser, denoise_buffer, denoise_sequence
from pgure_svt.windows import extract_window


def _noisy_disk_sequence(alpha=2.0, mu=5.0, sigma=3.0, T=20, H=16, W=16, seed=42):
    """Static bright disk with Poisson-Gaussian noise; returns (noisy, expected)."""
    rng = np.random.default_rng(seed)
    yy, xx = np.mgrid[0:H, 0:W]
    disk = ((yy - 7.5) ** 2 + (xx - 7.5) ** 2) <= 4.5 ** 2
    signal = np.where(disk, 110.0, 10.0)
    signal = np.broadcast_to(signal, (T, H, W))
    noisy = alpha * rng.poisson(signal / alpha) + rng.normal(mu, sigma, size=(T, H, W))
    return noisy, signal + mu


class TestConfigValidation(unittest.TestCase):
    """Invalid runs are rejected before any work is scheduled."""

    def test_patch_larger_than_frame(self):
        with self.assertRaises(GeometryError):
            PGURESVTConfig(patch_size=20, window_length=3).validate((5, 16, 16))

    def test_even_window_length(self):
        with self.assertRaises(GeometryError):
            PGURESVTConfig(window_length=4).validate((10, 16, 16))

    def test_window_longer_than_sequence(self):
        with self.assertRaises(GeometryError):
            PGURESVTConfig(window_length=15).validate((10, 16, 16))

    def test_stride_larger_than_patch(self):
        with self.assertRaises(GeometryError):
            PGURESVTConfig(patch_size=4, patch_stride=5).validate()
        # Stride equal to the patch size tiles the frame exactly
        PGURESVTConfig(patch_size=4, patch_stride=4, window_length=3).validate((5, 16, 16))
        self.assertIn('at most patch_size', get_pgure_svt_parameters()['patch_stride']['description'])

    def test_non_positive_tolerance(self):
        with self.assertRaises(ParameterError):
            PGURESVTConfig(tol=0.0).validate()

    def test_noise_required_when_estimation_disabled(self):
        with self.assertRaises(ParameterError):
            PGURESVTConfig(estimate_noise=False, alpha=1.0, mu=0.0).validate()
        # Manual threshold does not need a noise model
        PGURESVTConfig(estimate_noise=False, optimize_lambda=False).validate()

    def test_from_parameters_ignores_unknown_keys(self):
        config = PGURESVTConfig.from_parameters({'patch_size': 6, 'pixel_size': 0.1})
        self.assertEqual(config.patch_size, 6)
        self.assertEqual(config.frame_window, 7)

    def test_parameter_table_matches_defaults(self):
        table = get_pgure_svt_parameters()
        defaults = PGURESVTConfig()
        for name, spec in table.items():
            self.assertEqual(spec['default'], getattr(defaults, name))


def test_output_has_input_shape_with_manual_threshold():
    noisy, _ = _noisy_disk_sequence(T=6, H=12, W=10)
    denoised = denoise_sequence(noisy, window_length=3, optimize_lambda=False,
                                manual_lambda=0.05, num_threads=2)
    assert denoised.shape == noisy.shape
    assert np.all(np.isfinite(denoised))


def test_zero_manual_threshold_returns_corrected_input():
    noisy, _ = _noisy_disk_sequence(T=6, H=12, W=12)
    denoised = denoise_sequence(noisy, window_length=5, optimize_lambda=False,
                                manual_lambda=0.0, hot_pixel_threshold=0.0)
    np.testing.assert_allclose(denoised, noisy, rtol=1e-9)


def test_denoising_reduces_error_against_ground_truth():
    noisy, expected = _noisy_disk_sequence()
    config = PGURESVTConfig(
        patch_size=4,
        patch_stride=1,
        window_length=7,
        estimate_noise=False,
        alpha=2.0,
        mu=5.0,
        sigma=3.0,
        median_size=3,
        hot_pixel_threshold=0.0,
        num_threads=2,
        random_state=0,
    )
    result = PGURESVTDenoiser(config).denoise(noisy)

    mse_noisy = np.mean((noisy - expected) ** 2)
    mse_denoised = np.mean((result.denoised - expected) ** 2)
    assert result.denoised.shape == noisy.shape
    assert mse_denoised < 0.6 * mse_noisy

    log = result.frame_log
    assert list(log.columns) == pipeline.FRAME_LOG_COLUMNS
    assert sorted(log['frame']) == list(range(20))
    assert (log['lambda'] >= 0).all()
    assert log['gain'].iloc[0] == pytest.approx(2.0)


def test_noise_is_estimated_when_not_supplied():
    noisy, _ = _noisy_disk_sequence(T=5, H=32, W=32, seed=3)
    result = PGURESVTDenoiser(window_length=5, median_size=3, num_threads=1).denoise(noisy)
    assert (result.frame_log['gain'] >= 0).all()
    assert (result.frame_log['sigma'] >= 0).all()


def test_blank_sequence_passes_through():
    blank = np.zeros((5, 8, 8))
    with pytest.warns(UserWarning):
        denoised = denoise_sequence(blank, window_length=3, num_threads=1)
    assert np.all(denoised == 0.0)


def test_denoise_buffer_fills_output_in_place():
    noisy, _ = _noisy_disk_sequence(T=6, H=12, W=10)
    flat = noisy.ravel().copy()
    out = np.zeros_like(flat)

    status = denoise_buffer(flat, out, (10, 12, 6), window_length=3, optimize_lambda=False,
                            manual_lambda=0.0, hot_pixel_threshold=0.0, num_threads=2)
    assert status == 0
    np.testing.assert_allclose(out.reshape(6, 12, 10), noisy, rtol=1e-9)


def test_denoise_buffer_rejects_bad_geometry_before_work(monkeypatch):
    called = []
    monkeypatch.setattr(pipeline.PGURESVTDenoiser, 'denoise',
                        lambda self, stack: called.append(True))
    with pytest.raises(GeometryError):
        denoise_buffer(np.zeros(80), np.zeros(80), (4, 4, 5), patch_size=5, window_length=3)
    with pytest.raises(GeometryError):
        denoise_buffer(np.zeros(79), np.zeros(80), (4, 4, 5), window_length=3)
    assert called == []


def test_denoise_buffer_reports_worker_fault(monkeypatch):
    def fail(self, noisy, filtered, index, hint=None):
        raise RuntimeError("boom")

    monkeypatch.setattr(pipeline.PGURESVTDenoiser, 'denoise_frame', fail)
    out = np.zeros(6 * 8 * 8)
    status = denoise_buffer(np.ones(6 * 8 * 8), out, (8, 8, 6), window_length=3, num_threads=3)
    assert status == 1
    assert np.all(out == 0.0)


def test_denoise_buffer_fills_buffer_protocol_output():
    noisy, _ = _noisy_disk_sequence(T=6, H=12, W=10)
    out = array.array('d', [0.0]) * noisy.size

    status = denoise_buffer(noisy.ravel().tolist(), out, (10, 12, 6), window_length=3,
                            optimize_lambda=False, manual_lambda=0.0,
                            hot_pixel_threshold=0.0, num_threads=1)
    assert status == 0
    np.testing.assert_allclose(np.asarray(out).reshape(6, 12, 10), noisy, rtol=1e-9)


def test_denoise_buffer_rejects_outputs_it_cannot_fill(monkeypatch):
    called = []
    monkeypatch.setattr(pipeline.PGURESVTDenoiser, 'denoise',
                        lambda self, stack: called.append(True))
    n = 6 * 8 * 8
    readonly = np.zeros(n)
    readonly.flags.writeable = False

    for output in ([0.0] * n, readonly, np.zeros(n, dtype=np.int32)):
        with pytest.raises(ParameterError):
            denoise_buffer(np.ones(n), output, (8, 8, 6), window_length=3)
    assert called == []


def test_lambda_hint():
    hint = LambdaHint()
    assert hint.get() is None
    hint.update(0.2)
    assert hint.get() == 0.2


def test_threshold_search_seed(monkeypatch):
    starts = []

    def record_start(self, tol, start=None, upper=None, max_evaluations=1000):
        starts.append(start)
        return 0.125

    monkeypatch.setattr(pipeline.PGUREOptimizer, 'optimize', record_start)
    noisy, _ = _noisy_disk_sequence(T=6, H=12, W=12)
    denoiser = PGURESVTDenoiser(window_length=3, estimate_noise=False,
                                alpha=2.0, mu=5.0, sigma=3.0, num_threads=1)

    # First frame always starts from the window mean
    hint = LambdaHint(0.25)
    denoiser.denoise_frame(noisy, noisy, 0, hint)
    assert starts[-1] == pytest.approx(extract_window(noisy, 0, 3).frames.mean())
    assert hint.get() == 0.125

    # Later frames start from the most recent threshold
    hint.update(0.25)
    result = denoiser.denoise_frame(noisy, noisy, 3, hint)
    assert starts[-1] == 0.25
    assert result.lam == 0.125
    assert hint.get() == 0.125

    # ... unless no frame has converged yet
    denoiser.denoise_frame(noisy, noisy, 3, LambdaHint())
    assert starts[-1] == pytest.approx(extract_window(noisy, 3, 3).frames.mean())


class TestAnalyze(unittest.TestCase):
    """Status dictionary interface."""

    def setUp(self):
        self.denoiser = PGURESVTDenoiser(window_length=3, optimize_lambda=False,
                                         manual_lambda=0.02, num_threads=1)

    def test_success(self):
        noisy, _ = _noisy_disk_sequence(T=4, H=8, W=8)
        result = self.denoiser.analyze(noisy, {'patch_size': 3})
        self.assertEqual(result['status'], 'success')
        self.assertEqual(result['denoised'].shape, noisy.shape)
        self.assertIsInstance(result['frame_log'], pd.DataFrame)
        self.assertEqual(result['parameters_used']['patch_size'], 3)

    def test_2d_input_is_an_error(self):
        result = self.denoiser.analyze(np.ones((8, 8)))
        self.assertEqual(result['status'], 'error')

    def test_invalid_geometry_is_an_error(self):
        result = self.denoiser.analyze(np.ones((4, 8, 8)), {'patch_size': 9})
        self.assertEqual(result['status'], 'error')
        self.assertIn('patch_size', result['message'])
