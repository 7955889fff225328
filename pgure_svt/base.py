"""
PGURE-SVT Configuration

Defines the run configuration shared by every stage of the denoising
pipeline, the parameter table used by front ends, and the exception types
raised when a run is rejected before any work is scheduled.
"""

from dataclasses import dataclass, fields, replace
from typing import Any, Dict, Optional, Tuple

import numpy as np


NOISE_METHODS = ('siegel', 'theil', 'least_squares')


class GeometryError(ValueError):
    """Raised when patch or window geometry does not fit the sequence."""
    pass


class ParameterError(ValueError):
    """Raised when numerical parameters are invalid."""
    pass


@dataclass
class PGURESVTConfig:
    """
    Configuration for PGURE-SVT denoising.

    Parameters
    ----------
    patch_size : int
        Patch edge length ``Bs`` in pixels.
    patch_stride : int
        Spacing ``Bo`` between sampled patch locations. Smaller strides give
        more overlap (better quality, slower). At most ``patch_size`` so
        that the reference frame is fully covered.
    window_length : int
        Number of frames ``T`` in each temporal window. Must be odd.
    optimize_lambda : bool
        Choose the threshold per window by minimizing PGURE. When False the
        fixed ``manual_lambda`` is used.
    manual_lambda : float
        Threshold used when ``optimize_lambda`` is False, in normalized
        intensity units.
    estimate_noise : bool
        Estimate noise parameters given as negative sentinels.
    alpha, mu, sigma : float
        Detector gain, offset and read noise in raw intensity units.
        Negative values request estimation.
    noise_method : str
        Robust regression used by the noise estimator.
    noise_block_size : int
        Block edge length for local mean/variance samples.
    motion_search : int
        Search effort of the motion estimator (refinement iteration bound).
    tol : float
        Convergence tolerance on lambda.
    max_evaluations : int
        Maximum risk evaluations during the lambda search.
    median_size : int
        Kernel size of the median pre-filter used for motion estimation.
    hot_pixel_threshold : float
        Outlier threshold in units of the median absolute deviation.
        Non-positive disables hot-pixel correction.
    num_threads : int | None
        Worker threads. None uses the hardware concurrency.
    parallel_threshold : int
        Ranges of at most this many frames run sequentially.
    random_state : int | None
        Seed for the divergence probes; each frame derives its own stream.
    """

    patch_size: int = 4
    patch_stride: int = 1
    window_length: int = 15
    optimize_lambda: bool = True
    manual_lambda: float = 0.5
    estimate_noise: bool = True
    alpha: float = -1.0
    mu: float = -1.0
    sigma: float = -1.0
    noise_method: str = 'siegel'
    noise_block_size: int = 8
    motion_search: int = 7
    tol: float = 1e-7
    max_evaluations: int = 1000
    median_size: int = 5
    hot_pixel_threshold: float = 10.0
    num_threads: Optional[int] = None
    parallel_threshold: int = 1
    random_state: Optional[int] = 0

    @classmethod
    def from_parameters(cls, parameters: Optional[Dict[str, Any]] = None) -> 'PGURESVTConfig':
        """Build a config from a parameter dict, ignoring unknown keys."""
        if parameters is None:
            parameters = {}
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in parameters.items() if k in known})

    def replace(self, **changes) -> 'PGURESVTConfig':
        return replace(self, **changes)

    @property
    def frame_window(self) -> int:
        return self.window_length // 2

    def noise_parameters(self) -> Tuple[float, float, float]:
        return float(self.alpha), float(self.mu), float(self.sigma)

    def validate(self, shape: Optional[Tuple[int, ...]] = None):
        """
        Reject invalid geometry and parameters.

        Parameters
        ----------
        shape : tuple, optional
            Sequence shape ``(frames, height, width)`` to check the geometry
            against.

        Raises
        ------
        GeometryError
            If patches or windows do not fit.
        ParameterError
            If a numerical parameter is out of range.
        """
        if self.patch_size < 1:
            raise GeometryError(f"patch_size must be positive, got {self.patch_size}")
        if self.patch_stride < 1 or self.patch_stride > self.patch_size:
            raise GeometryError(
                f"patch_stride must be in [1, patch_size={self.patch_size}], got {self.patch_stride}"
            )
        if self.window_length < 1:
            raise GeometryError(f"window_length must be positive, got {self.window_length}")
        if self.window_length % 2 == 0:
            raise GeometryError(f"window_length must be odd, got {self.window_length}")

        if self.tol <= 0:
            raise ParameterError(f"tol must be positive, got {self.tol}")
        if self.max_evaluations < 1:
            raise ParameterError(f"max_evaluations must be positive, got {self.max_evaluations}")
        if self.motion_search < 1:
            raise ParameterError(f"motion_search must be positive, got {self.motion_search}")
        if not self.optimize_lambda and self.manual_lambda < 0:
            raise ParameterError(f"manual_lambda must be non-negative, got {self.manual_lambda}")
        if self.median_size < 1:
            raise ParameterError(f"median_size must be positive, got {self.median_size}")
        if self.noise_block_size < 2:
            raise ParameterError(f"noise_block_size must be at least 2, got {self.noise_block_size}")
        if self.noise_method not in NOISE_METHODS:
            raise ParameterError(
                f"Unknown noise method '{self.noise_method}'. Choose from {NOISE_METHODS}"
            )
        if self.num_threads is not None and self.num_threads < 1:
            raise ParameterError(f"num_threads must be positive, got {self.num_threads}")
        if self.optimize_lambda and not self.estimate_noise:
            unknown = [name for name, value in zip(('alpha', 'mu', 'sigma'), self.noise_parameters())
                       if value < 0]
            if unknown:
                raise ParameterError(
                    f"Noise estimation is disabled but {', '.join(unknown)} not supplied"
                )

        if shape is not None:
            if len(shape) != 3:
                raise GeometryError(f"Sequence must be 3D (frames, height, width), got shape {shape}")
            n_frames, height, width = shape
            if self.patch_size > min(height, width):
                raise GeometryError(
                    f"patch_size {self.patch_size} exceeds frame size {height}x{width}"
                )
            if self.window_length > n_frames:
                raise GeometryError(
                    f"window_length {self.window_length} exceeds number of frames {n_frames}"
                )


def get_pgure_svt_parameters() -> Dict[str, Any]:
    """Get default parameters for PGURE-SVT denoising"""
    return {
        'patch_size': {
            'default': 4,
            'min': 2,
            'max': 16,
            'description': 'Patch size Bs in pixels'
        },
        'patch_stride': {
            'default': 1,
            'min': 1,
            'max': 16,
            'description': 'Stride Bo between patches, at most patch_size (1 = maximum overlap)'
        },
        'window_length': {
            'default': 15,
            'min': 3,
            'max': 51,
            'description': 'Temporal window length T (odd number of frames)'
        },
        'manual_lambda': {
            'default': 0.5,
            'min': 0.0,
            'max': 1.0,
            'description': 'Fixed singular value threshold when optimization is off'
        },
        'motion_search': {
            'default': 7,
            'min': 1,
            'max': 50,
            'description': 'Motion search effort (ARPS refinement steps)'
        },
        'tol': {
            'default': 1e-7,
            'min': 1e-12,
            'max': 1e-2,
            'description': 'Convergence tolerance on the threshold'
        },
        'median_size': {
            'default': 5,
            'min': 1,
            'max': 15,
            'description': 'Median pre-filter size for motion estimation'
        },
        'hot_pixel_threshold': {
            'default': 10.0,
            'min': 0.0,
            'max': 50.0,
            'description': 'Hot pixel threshold in median absolute deviations (0 disables)'
        },
        'num_threads': {
            'default': None,
            'min': 1,
            'max': 256,
            'description': 'Worker threads (default: hardware concurrency)'
        }
    }


def as_sequence(image_stack) -> np.ndarray:
    """Return *image_stack* as a float64 (frames, height, width) array."""
    sequence = np.asarray(image_stack, dtype=float)
    if sequence.ndim != 3:
        raise GeometryError(
            f"Input must be a 3D image stack (frames, height, width), got {sequence.ndim}D"
        )
    return sequence
