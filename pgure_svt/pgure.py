"""
Singular Value Thresholding with PGURE-optimal threshold

Each sampled patch location contributes a Bs^2 x T matrix built from the
motion-compensated patches of every frame in the window. Soft thresholding
of its singular values gives a low-rank estimate; overlapping estimates are
averaged back into the window.

The threshold is chosen by minimizing the Poisson-Gaussian unbiased risk
estimate (PGURE), which approximates the mean squared error without access
to the clean signal:

    PGURE(f) = ||f(y) - y||^2 / N - <v> + 2/N sum_n v_n df_n/dy_n
               - 2 alpha sigma^2 / N sum_n d^2 f_n/dy_n^2,
    v = alpha (y - mu) + sigma^2

Both divergence terms are estimated by Monte-Carlo finite differences.

References:
- Candes, E.J. et al. (2013) "Unbiased Risk Estimates for Singular Value
  Thresholding and Spectral Estimators" IEEE TSP 61(19):4643-4657
- Le Montagner, Y. et al. (2014) "An Unbiased Risk Estimator for Image
  Denoising in the Presence of Mixed Poisson-Gaussian Noise" IEEE TIP
  23(3):1255-1268
- Furnival, T. et al. (2017) "Denoising time-resolved microscopy image
  sequences with singular value thresholding" Ultramicroscopy 178:112-124
"""

import warnings
from typing import Optional

import numpy as np
from scipy.optimize import minimize_scalar

from .motion import CorrespondenceMap
from .noise import NoiseModel
from .windows import FrameWindow


# Two-point probe with zero mean, unit variance and unit third moment,
# needed to isolate the diagonal of the second derivative.
_SKEW_P = (5.0 - np.sqrt(5.0)) / 10.0
_SKEW_HIGH = np.sqrt((1.0 - _SKEW_P) / _SKEW_P)
_SKEW_LOW = -np.sqrt(_SKEW_P / (1.0 - _SKEW_P))


def soft_threshold(values: np.ndarray, lam: float) -> np.ndarray:
    """Shrink *values* towards zero by *lam*, zeroing those below it."""
    return np.maximum(values - lam, 0.0)


class PGUREOptimizer:
    """
    SVT denoiser of one window with a risk-minimizing threshold.

    Usage is ``initialize()``, then optionally ``optimize()``, then
    ``reconstruct(lam)``.

    Patch stacks are processed ``batch_size`` locations at a time, so the
    scratch memory of one pass does not grow with the frame size. Batch
    decompositions are kept while they fit in ``cache_size`` bytes and
    recomputed on demand otherwise.

    Parameters
    ----------
    window : FrameWindow
        Normalized noisy window.
    correspondence : CorrespondenceMap
        Patch matches for the window.
    patch_size : int
        Patch edge length used to build the correspondence map.
    noise : NoiseModel
        Noise parameters in normalized units.
    random_state : int or numpy.random.Generator, optional
        Seed for the divergence probes.
    epsilon : float
        Finite difference step of the first-order divergence.
    epsilon2 : float
        Finite difference step of the second-order divergence.
    batch_size : int
        Number of patch locations decomposed together.
    cache_size : int
        Byte budget for stored decompositions.
    """

    def __init__(self, window: FrameWindow, correspondence: CorrespondenceMap,
                 patch_size: int, noise: NoiseModel, random_state=None,
                 epsilon: float = 1e-2, epsilon2: float = 1e-2,
                 batch_size: int = 4096, cache_size: int = 2 ** 27):
        if correspondence.n_frames != window.length:
            raise ValueError(
                f"Correspondence map covers {correspondence.n_frames} frames, "
                f"window has {window.length}"
            )
        if batch_size < 1:
            raise ValueError(f"batch_size must be positive, got {batch_size}")
        self.window = window
        self.correspondence = correspondence
        self.patch_size = int(patch_size)
        self.noise = noise
        self.random_state = random_state
        self.epsilon = float(epsilon)
        self.epsilon2 = float(epsilon2)
        self.batch_size = int(batch_size)
        self.cache_size = int(cache_size)

        self.lambda_: Optional[float] = None
        self.risk_: Optional[float] = None
        self.n_evaluations = 0

        self._y = window.frames.ravel()
        self._base = None
        self._within = None
        self._counts = None
        self._delta1 = None
        self._delta2 = None
        self._cache = {}
        self._cached_bytes = 0

    def initialize(self):
        """Index the patch stacks and decompose those of the window."""
        T, H, W = self.window.frames.shape
        B = self.patch_size
        positions = self.correspondence.positions()

        # (P, T) flat index of each patch corner, (Bs^2,) offsets within a patch
        self._base = (np.arange(T)[None, :] * (H * W)
                      + positions[..., 0] * W + positions[..., 1])
        rows, cols = np.meshgrid(np.arange(B), np.arange(B), indexing='ij')
        self._within = (rows * W + cols).ravel()

        self._counts = np.zeros(self._y.size, dtype=np.int64)
        for b, index in self._batches():
            self._counts += np.bincount(index.ravel(), minlength=self._y.size)
            self._decomposition(0, b, self._y, index)
        return self

    @property
    def n_patches(self) -> int:
        return 0 if self._base is None else self._base.shape[0]

    def _batches(self):
        """Yield ``(batch number, (n, Bs^2, T) flat indices)``."""
        for b, first in enumerate(range(0, self.n_patches, self.batch_size)):
            base = self._base[first:first + self.batch_size]
            yield b, base[:, None, :] + self._within[None, :, None]

    def _decomposition(self, k: int, b: int, x: np.ndarray, index: np.ndarray):
        cached = self._cache.get((k, b))
        if cached is not None:
            return cached
        usv = np.linalg.svd(x[index], full_matrices=False)
        nbytes = sum(a.nbytes for a in usv)
        if self._cached_bytes + nbytes <= self.cache_size:
            self._cache[(k, b)] = usv
            self._cached_bytes += nbytes
        return usv

    def _prepare_probes(self):
        rng = np.random.default_rng(self.random_state)
        n = self._y.size
        self._delta1 = rng.choice(np.array([-1.0, 1.0]), size=n)
        self._delta2 = np.where(rng.random(n) < _SKEW_P, _SKEW_HIGH, _SKEW_LOW)

    def _input(self, k: int) -> np.ndarray:
        """Window (k=0) or one of its perturbed copies, flat."""
        if k == 0:
            return self._y
        if k == 1:
            return self._y + self.epsilon * self._delta1
        sign = 1.0 if k == 2 else -1.0
        return self._y + sign * self.epsilon2 * self._delta2

    def _apply(self, k: int, lam: float) -> np.ndarray:
        """Thresholded, aggregated estimate of input *k* (flat, normalized)."""
        x = self._input(k)
        sums = np.zeros(x.size)
        for b, index in self._batches():
            U, s, Vt = self._decomposition(k, b, x, index)
            stacks = np.matmul(U * soft_threshold(s, lam)[:, None, :], Vt)
            sums += np.bincount(index.ravel(), weights=stacks.ravel(), minlength=x.size)

        estimate = x.copy()
        covered = self._counts > 0
        estimate[covered] = sums[covered] / self._counts[covered]
        return estimate

    def singular_values(self) -> np.ndarray:
        """Singular values of every window stack, shape (P, min(Bs^2, T))."""
        if self._base is None:
            self.initialize()
        return np.concatenate([self._decomposition(0, b, self._y, index)[1]
                               for b, index in self._batches()])

    def risk(self, lam: float) -> float:
        """PGURE estimate of the per-pixel MSE of the threshold *lam*."""
        if self._base is None:
            self.initialize()
        if self._delta1 is None:
            self._prepare_probes()
        self.n_evaluations += 1

        lam = max(float(lam), 0.0)
        y = self._y
        N = y.size
        f = self._apply(0, lam)

        v = self.noise.variance(y)
        data_term = np.sum((f - y) ** 2) / N - np.mean(v)
        divergence = np.sum(v * self._delta1 * (self._apply(1, lam) - f)) / (self.epsilon * N)

        second = self._apply(2, lam) - 2.0 * f
        second += self._apply(3, lam)
        curvature = np.sum(self._delta2 * second) / (self.epsilon2 ** 2 * N)

        alpha, sigma = self.noise.alpha, self.noise.sigma
        return float(data_term + 2.0 * divergence - 2.0 * alpha * sigma ** 2 * curvature)

    def optimize(self, tol: float, start: Optional[float] = None,
                 upper: Optional[float] = None, max_evaluations: int = 1000) -> float:
        """
        Minimize the risk over ``lambda in [0, upper]``.

        Args:
            tol: Absolute tolerance on lambda.
            start: Hint (e.g. the previous frame's threshold); it is kept
                only if its risk beats the bounded search result.
            upper: Upper bound; defaults to the window maximum.
            max_evaluations: Iteration budget of the bounded search.

        Returns:
            The selected threshold. Non-convergence is reported with a
            warning and the best value found is returned.
        """
        if self._base is None:
            self.initialize()
        if upper is None:
            upper = float(self.window.frames.max())
        if not upper > 0:
            self.lambda_, self.risk_ = 0.0, None
            return 0.0

        result = minimize_scalar(
            self.risk,
            bounds=(0.0, upper),
            method='bounded',
            options={'xatol': tol, 'maxiter': int(max_evaluations)}
        )
        lam, best = float(result.x), float(result.fun)
        if not result.success:
            warnings.warn(
                f"Threshold search did not converge after {result.nfev} evaluations; "
                f"using lambda={lam:.6g}",
                UserWarning
            )

        if start is not None and 0.0 <= start <= upper:
            start_risk = self.risk(start)
            if start_risk < best:
                lam, best = float(start), start_risk

        self.lambda_, self.risk_ = lam, best
        return lam

    def reconstruct(self, lam: float) -> np.ndarray:
        """Denoised window at threshold *lam*, in original intensity units."""
        if self._base is None:
            self.initialize()
        estimate = self._apply(0, max(float(lam), 0.0))
        return self.window.rescale(estimate.reshape(self.window.frames.shape))
