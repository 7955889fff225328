"""
Motion Estimation by Adaptive Rood Pattern Search (ARPS)

For every sampled patch of the reference frame, finds the best matching
patch (sum of squared differences) in each other frame of the window.
Frames are visited outward from the reference so each search is seeded with
the motion found for the neighbouring frame.

Reference:
Nie, Y. & Ma, K.-K. (2002). Adaptive rood pattern search for fast
block-matching motion estimation. IEEE TIP, 11(12), 1442-1449.
"""

from dataclasses import dataclass
from typing import Dict, Tuple

import numpy as np


_UNIT_ROOD = ((-1, 0), (1, 0), (0, -1), (0, 1))


def patch_grid(height: int, width: int, patch_size: int, stride: int) -> np.ndarray:
    """
    Top-left corners of the sampled patches, shape (P, 2) as (row, col).

    The last valid row and column are always included so every pixel of the
    frame is covered when ``stride <= patch_size``.
    """
    def axis_positions(length):
        positions = list(range(0, length - patch_size + 1, stride))
        if positions[-1] != length - patch_size:
            positions.append(length - patch_size)
        return positions

    rows = axis_positions(height)
    cols = axis_positions(width)
    rr, cc = np.meshgrid(rows, cols, indexing='ij')
    return np.stack([rr.ravel(), cc.ravel()], axis=1).astype(np.intp)


@dataclass
class CorrespondenceMap:
    """Per patch, per frame displacement of the matched patch."""

    locations: np.ndarray
    offsets: np.ndarray
    reference: int

    @property
    def n_patches(self) -> int:
        return self.locations.shape[0]

    @property
    def n_frames(self) -> int:
        return self.offsets.shape[1]

    def positions(self) -> np.ndarray:
        """Absolute top-left corners, shape (P, T, 2)."""
        return self.locations[:, None, :] + self.offsets

    @classmethod
    def static(cls, locations: np.ndarray, n_frames: int, reference: int = 0) -> 'CorrespondenceMap':
        """Map with zero motion for every patch and frame."""
        offsets = np.zeros((locations.shape[0], n_frames, 2), dtype=np.intp)
        return cls(locations=np.asarray(locations, dtype=np.intp), offsets=offsets,
                   reference=reference)


class MotionEstimator:
    """
    Block matching between the reference frame and the rest of a window.

    Parameters
    ----------
    patch_size : int
        Patch edge length.
    stride : int
        Spacing of sampled patch locations.
    search : int
        Maximum number of unit-rood refinement steps per match.
    """

    def __init__(self, patch_size: int, stride: int = 1, search: int = 7):
        self.patch_size = int(patch_size)
        self.stride = int(stride)
        self.search = int(search)

    def estimate(self, frames: np.ndarray, reference: int) -> CorrespondenceMap:
        """
        Build the correspondence map of *frames* relative to frame *reference*.

        Args:
            frames: (T, H, W) normalized, preferably pre-filtered window.
            reference: Index of the reference frame inside the window.

        Returns:
            CorrespondenceMap with zero offsets on the reference frame.
        """
        frames = np.asarray(frames, dtype=float)
        T, H, W = frames.shape
        locations = patch_grid(H, W, self.patch_size, self.stride)
        offsets = np.zeros((locations.shape[0], T, 2), dtype=np.intp)
        B = self.patch_size

        for p, (r, c) in enumerate(locations.tolist()):
            template = frames[reference, r:r + B, c:c + B]
            for direction in (1, -1):
                prediction = (0, 0)
                t = reference + direction
                while 0 <= t < T:
                    prediction = self._search_frame(frames[t], template, r, c, prediction)
                    offsets[p, t] = prediction
                    t += direction

        return CorrespondenceMap(locations=locations, offsets=offsets, reference=reference)

    def _search_frame(self, frame: np.ndarray, template: np.ndarray, r: int, c: int,
                      prediction: Tuple[int, int]) -> Tuple[int, int]:
        B = self.patch_size
        H, W = frame.shape
        costs: Dict[Tuple[int, int], float] = {}

        def clip(dy, dx):
            return (min(max(r + dy, 0), H - B) - r, min(max(c + dx, 0), W - B) - c)

        def cost(offset):
            if offset not in costs:
                y, x = r + offset[0], c + offset[1]
                diff = frame[y:y + B, x:x + B] - template
                costs[offset] = float(np.sum(diff * diff))
            return costs[offset]

        best = clip(0, 0)
        best_cost = cost(best)
        if best_cost == 0.0:
            return best

        # Initial adaptive rood around zero motion plus the predicted vector
        arm = max(abs(prediction[0]), abs(prediction[1])) or 2
        candidates = [(-arm, 0), (arm, 0), (0, -arm), (0, arm), prediction]
        for dy, dx in candidates:
            candidate = clip(dy, dx)
            candidate_cost = cost(candidate)
            if candidate_cost < best_cost:
                best, best_cost = candidate, candidate_cost

        # Unit rood refinement
        for _ in range(self.search):
            center = best
            for dy, dx in _UNIT_ROOD:
                candidate = clip(center[0] + dy, center[1] + dx)
                candidate_cost = cost(candidate)
                if candidate_cost < best_cost:
                    best, best_cost = candidate, candidate_cost
            if best == center:
                break

        return best
