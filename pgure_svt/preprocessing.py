"""
Sequence pre-processing.

- Median pre-filter: a noise-suppressed copy of the sequence used only to
  stabilize motion estimation.
- Hot pixel correction: isolated outliers are detected with a median
  absolute deviation test and replaced by their local median.
"""

from typing import Optional

import numpy as np
from scipy import ndimage
from scipy.stats import median_abs_deviation

from .parallel import Scheduler


def median_filter_sequence(sequence: np.ndarray, size: int,
                           scheduler: Optional[Scheduler] = None) -> np.ndarray:
    """
    Median filter every frame of *sequence* independently.

    Args:
        sequence: (frames, height, width) array.
        size: Square kernel size in pixels. ``size <= 1`` returns a copy.
        scheduler: Scheduler used to spread frames over threads.

    Returns:
        Filtered float array with the same shape as *sequence*.
    """
    sequence = np.asarray(sequence, dtype=float)
    if size <= 1:
        return sequence.copy()

    filtered = np.empty_like(sequence)

    def filter_frame(i):
        filtered[i] = ndimage.median_filter(sequence[i], size=size, mode='reflect')

    if scheduler is None:
        scheduler = Scheduler(num_workers=1)
    scheduler.map_range(filter_frame, 0, sequence.shape[0])
    return filtered


def hot_pixel_filter(sequence: np.ndarray, threshold: float) -> np.ndarray:
    """
    Replace hot pixels by the median of their 3x3 neighbourhood.

    A pixel is an outlier when its residual against the local median
    exceeds ``threshold`` times the frame's (normal-scaled) median absolute
    deviation of residuals. The input is not modified.

    Args:
        sequence: (frames, height, width) array.
        threshold: Outlier threshold in MAD units. Non-positive disables
            the correction.

    Returns:
        Corrected copy of *sequence*.
    """
    corrected = np.array(sequence, dtype=float)
    if threshold <= 0:
        return corrected

    for t in range(corrected.shape[0]):
        frame = corrected[t]
        local_median = ndimage.median_filter(frame, size=3, mode='reflect')
        residual = frame - local_median
        mad = median_abs_deviation(residual, axis=None, scale='normal')
        if not mad > 0:
            continue
        outliers = np.abs(residual) > threshold * mad
        frame[outliers] = local_median[outliers]

    return corrected
