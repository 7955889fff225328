"""
Temporal window extraction.

A window of ``T`` consecutive frames is cut around each target frame. Near
the ends of the sequence the window is clamped to the first or last ``T``
frames instead of shrinking, and the target is located inside it by offset.
"""

from dataclasses import dataclass

import numpy as np


@dataclass
class FrameWindow:
    """Normalized temporal neighbourhood of one target frame."""

    frames: np.ndarray
    start: int
    offset: int
    scale: float

    @property
    def length(self) -> int:
        return self.frames.shape[0]

    @property
    def index(self) -> int:
        """Sequence index of the target frame."""
        return self.start + self.offset

    def rescale(self, data: np.ndarray) -> np.ndarray:
        """Undo the normalization applied at extraction."""
        return data * self.scale


def window_bounds(index: int, n_frames: int, window_length: int):
    """
    Return ``(start, offset)`` of the window for frame *index*.

    Examples
    --------
    >>> window_bounds(0, 10, 5)
    (0, 0)
    >>> window_bounds(9, 10, 5)
    (5, 4)
    >>> window_bounds(5, 10, 5)
    (3, 2)
    """
    if not 0 <= index < n_frames:
        raise IndexError(f"Frame index {index} out of range for {n_frames} frames")
    half = window_length // 2
    if index < half:
        start = 0
    elif index >= n_frames - half:
        start = n_frames - window_length
    else:
        start = index - half
    return start, index - start


def extract_window(sequence: np.ndarray, index: int, window_length: int) -> FrameWindow:
    """
    Copy and normalize the window around frame *index*.

    The copy is divided by its own maximum. A window without a positive
    maximum (e.g. blank frames) keeps a scale of 1 so it passes through
    unchanged.
    """
    start, offset = window_bounds(index, sequence.shape[0], window_length)
    frames = np.array(sequence[start:start + window_length], dtype=float)

    scale = float(frames.max()) if frames.size else 0.0
    if not scale > 0:
        scale = 1.0
    frames /= scale

    return FrameWindow(frames=frames, start=start, offset=offset, scale=scale)
