"""
Image Sequence Loading

Reads and writes time-lapse stacks as multi-page TIFF files with tifffile.
"""

import os
import warnings
from typing import Optional

import numpy as np
from tifffile import imread, imwrite

from .base import GeometryError


def load_sequence(path) -> np.ndarray:
    """
    Load a TIFF stack as a float64 (frames, height, width) array.

    A single 2D image is returned as a one-frame sequence. Multi-channel or
    volumetric files are rejected.
    """
    image_data = imread(path)
    if image_data.ndim == 2:
        warnings.warn(f"{os.fspath(path)} holds a single image; treating it as one frame.")
        image_data = image_data[np.newaxis]
    if image_data.ndim != 3:
        raise GeometryError(
            f"Expected a (frames, height, width) stack, got shape {image_data.shape}"
        )
    return image_data.astype(float)


def save_sequence(path, sequence: np.ndarray, dtype: Optional[np.dtype] = None):
    """Write *sequence* to *path*, optionally cast (and clipped) to *dtype*."""
    data = np.asarray(sequence)
    if dtype is not None:
        dtype = np.dtype(dtype)
        if np.issubdtype(dtype, np.integer):
            info = np.iinfo(dtype)
            data = np.clip(np.rint(data), info.min, info.max)
        data = data.astype(dtype)
    directory = os.path.dirname(os.fspath(path))
    if directory:
        os.makedirs(directory, exist_ok=True)
    imwrite(path, data)
