"""
Mixed Poisson-Gaussian Noise Estimation

Observed intensities are modelled as

    y = alpha * Poisson(x / alpha) + N(mu, sigma^2)

so the noise variance is affine in the mean intensity:

    Var[y] = alpha * (E[y] - mu) + sigma^2

The estimator collects (local mean, local noise variance) samples from small
blocks of every frame and fits this line robustly, so textured blocks where
signal leaks into the variance estimate are treated as outliers.

References:
- Foi, A. et al. (2008) "Practical Poissonian-Gaussian noise modeling and
  fitting for single-image raw-data" IEEE TIP 17(10):1737-1754
- Le Montagner, Y. et al. (2014) "An Unbiased Risk Estimator for Image
  Denoising in the Presence of Mixed Poisson-Gaussian Noise" IEEE TIP
  23(3):1255-1268
"""

import warnings
from dataclasses import dataclass
from typing import Tuple

import numpy as np
from scipy.stats import siegelslopes, theilslopes
from skimage.util import view_as_blocks

from .base import NOISE_METHODS, ParameterError


@dataclass
class NoiseModel:
    """Gain ``alpha``, offset ``mu`` and read noise ``sigma``."""

    alpha: float = 0.0
    mu: float = 0.0
    sigma: float = 0.0

    def normalized(self, scale: float) -> 'NoiseModel':
        """Express the model in units of intensity / *scale*."""
        return NoiseModel(self.alpha / scale, self.mu / scale, self.sigma / scale)

    def denormalized(self, scale: float) -> 'NoiseModel':
        return NoiseModel(self.alpha * scale, self.mu * scale, self.sigma * scale)

    def variance(self, y: np.ndarray) -> np.ndarray:
        """Unbiased estimate of the per-pixel noise variance given *y*."""
        return self.alpha * (y - self.mu) + self.sigma ** 2

    def as_tuple(self) -> Tuple[float, float, float]:
        return self.alpha, self.mu, self.sigma


class NoiseEstimator:
    """
    Estimate Poisson-Gaussian parameters from a normalized window.

    Parameters
    ----------
    block_size : int
        Edge length of the blocks providing one (mean, variance) sample.
    method : str
        'siegel' (repeated medians), 'theil' (Theil-Sen) or
        'least_squares' (ordinary fit, not robust).
    """

    def __init__(self, block_size: int = 8, method: str = 'siegel'):
        if method not in NOISE_METHODS:
            raise ParameterError(f"Unknown noise method '{method}'. Choose from {NOISE_METHODS}")
        self.block_size = int(block_size)
        self.method = method

    def estimate(self, frames: np.ndarray, alpha: float = -1.0, mu: float = -1.0,
                 sigma: float = -1.0) -> NoiseModel:
        """
        Fill in the negative (unknown) parameters from *frames*.

        Non-negative arguments are taken as known and returned unchanged.
        Windows without measurable noise give zeros for the unknowns and a
        warning instead of an error.
        """
        if alpha >= 0 and mu >= 0 and sigma >= 0:
            return NoiseModel(alpha, mu, sigma)

        means, variances = self.block_statistics(frames)

        if means.size == 0 or not np.any(variances > 0):
            warnings.warn(
                "Window has no measurable noise; using zero noise parameters",
                UserWarning
            )
            return NoiseModel(max(alpha, 0.0), max(mu, 0.0), max(sigma, 0.0))

        spread = float(np.ptp(means))
        if alpha >= 0:
            slope = float(alpha)
            intercept = float(np.median(variances - slope * means))
        elif means.size < 3 or spread <= 1e-12 * max(float(np.abs(means).max()), 1.0):
            warnings.warn(
                "Window intensity is constant; gain cannot be estimated and is set to zero",
                UserWarning
            )
            slope = 0.0
            intercept = float(np.median(variances))
        else:
            slope, intercept = self._fit_line(means, variances)
            slope = max(slope, 0.0)

        if mu < 0:
            # Dark level: the Poisson contribution vanishes here
            mu = float(np.percentile(means, 1))
        if sigma < 0:
            sigma = float(np.sqrt(max(intercept + slope * mu, 0.0)))

        return NoiseModel(float(slope), float(mu), float(sigma))

    def block_statistics(self, frames: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """
        Per-block local means and noise variances of every frame.

        The residual ``(a - b - c + d) / 2`` over each 2x2 cell has the
        average variance of the four pixels and vanishes on locally planar
        signal.
        """
        means = []
        variances = []
        for frame in np.asarray(frames, dtype=float):
            a = frame[:-1, :-1]
            b = frame[:-1, 1:]
            c = frame[1:, :-1]
            d = frame[1:, 1:]
            residual = (a - b - c + d) / 2.0
            local_mean = (a + b + c + d) / 4.0

            h, w = residual.shape
            if h == 0 or w == 0:
                continue
            bh = min(self.block_size, h)
            bw = min(self.block_size, w)
            h_crop = h - h % bh
            w_crop = w - w % bw

            r_blocks = view_as_blocks(np.ascontiguousarray(residual[:h_crop, :w_crop]), (bh, bw))
            m_blocks = view_as_blocks(np.ascontiguousarray(local_mean[:h_crop, :w_crop]), (bh, bw))
            means.append(m_blocks.mean(axis=(2, 3)).ravel())
            variances.append((r_blocks ** 2).mean(axis=(2, 3)).ravel())

        if not means:
            return np.empty(0), np.empty(0)
        return np.concatenate(means), np.concatenate(variances)

    def _fit_line(self, x: np.ndarray, y: np.ndarray) -> Tuple[float, float]:
        if self.method == 'siegel':
            result = siegelslopes(y, x)
            return float(result[0]), float(result[1])
        elif self.method == 'theil':
            result = theilslopes(y, x)
            return float(result[0]), float(result[1])
        slope, intercept = np.polyfit(x, y, 1)
        return float(slope), float(intercept)
