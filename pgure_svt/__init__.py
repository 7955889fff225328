"""
PGURE-SVT Module

Denoising of time-resolved microscopy image sequences by singular value
thresholding of motion-compensated patch stacks, with the threshold chosen
by minimizing an unbiased risk estimate for mixed Poisson-Gaussian noise.
"""

from .base import (
    GeometryError,
    ParameterError,
    PGURESVTConfig,
    get_pgure_svt_parameters,
)
from .parallel import Scheduler, parallel_for
from .windows import FrameWindow, extract_window, window_bounds
from .preprocessing import median_filter_sequence, hot_pixel_filter
from .noise import NoiseModel, NoiseEstimator
from .motion import CorrespondenceMap, MotionEstimator, patch_grid
from .pgure import PGUREOptimizer, soft_threshold
from .pipeline import (
    DenoiseResult,
    PGURESVTDenoiser,
    denoise_buffer,
    denoise_sequence,
)
from .sequence_io import load_sequence, save_sequence

__all__ = [
    'GeometryError',
    'ParameterError',
    'PGURESVTConfig',
    'get_pgure_svt_parameters',
    'Scheduler',
    'parallel_for',
    'FrameWindow',
    'extract_window',
    'window_bounds',
    'median_filter_sequence',
    'hot_pixel_filter',
    'NoiseModel',
    'NoiseEstimator',
    'CorrespondenceMap',
    'MotionEstimator',
    'patch_grid',
    'PGUREOptimizer',
    'soft_threshold',
    'DenoiseResult',
    'PGURESVTDenoiser',
    'denoise_buffer',
    'denoise_sequence',
    'load_sequence',
    'save_sequence',
]
