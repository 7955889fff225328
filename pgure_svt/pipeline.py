"""
PGURE-SVT Denoising Pipeline

Denoises a microscopy image sequence frame by frame:

1. Median pre-filter (for motion estimation) and hot pixel correction
2. For every frame, in parallel:
   - extract and normalize its temporal window
   - estimate Poisson-Gaussian noise parameters if unknown
   - estimate patch motion on the pre-filtered window
   - choose the SVT threshold by PGURE minimization
   - reconstruct the window and keep the target frame

Frames are independent; the only value passed between them is the
threshold hint used to start the next search, which affects speed, not
results.
"""

import logging
import threading
import time
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional, Sequence

import numpy as np
import pandas as pd

from .base import GeometryError, ParameterError, PGURESVTConfig, as_sequence
from .motion import MotionEstimator
from .noise import NoiseEstimator, NoiseModel
from .parallel import Scheduler
from .pgure import PGUREOptimizer
from .preprocessing import hot_pixel_filter, median_filter_sequence
from .windows import extract_window


logger = logging.getLogger(__name__)

FRAME_LOG_COLUMNS = ['frame', 'gain', 'offset', 'sigma', 'lambda', 'time_s']
_COL = 10


@dataclass
class FrameResult:
    """Output of one frame of the pipeline."""

    frame: np.ndarray
    noise: NoiseModel
    lam: float


@dataclass
class DenoiseResult:
    """Denoised sequence with per-frame diagnostics."""

    denoised: np.ndarray
    frame_log: pd.DataFrame
    elapsed_s: float


class LambdaHint:
    """Most recently converged threshold, shared between frames."""

    def __init__(self, value: Optional[float] = None):
        self._value = value
        self._lock = threading.Lock()

    def get(self) -> Optional[float]:
        with self._lock:
            return self._value

    def update(self, value: float):
        with self._lock:
            self._value = value


class PGURESVTDenoiser:
    """
    PGURE-SVT denoising of image sequences.

    Args:
        config: Run configuration; defaults to ``PGURESVTConfig()``.
        **overrides: Individual configuration fields to replace.
    """

    def __init__(self, config: Optional[PGURESVTConfig] = None, **overrides):
        if config is None:
            config = PGURESVTConfig()
        if overrides:
            config = config.replace(**overrides)
        self.config = config
        self.name = "PGURE-SVT Denoising"

    def denoise(self, image_stack: np.ndarray) -> DenoiseResult:
        """
        Denoise every frame of *image_stack* (frames, height, width).

        Raises:
            GeometryError, ParameterError: before any work is scheduled.
            Exception: any failure inside a frame aborts the whole run.
        """
        sequence = as_sequence(image_stack)
        cfg = self.config
        cfg.validate(sequence.shape)

        start = time.perf_counter()
        scheduler = Scheduler(cfg.num_threads, cfg.parallel_threshold)

        filtered = median_filter_sequence(sequence, cfg.median_size, scheduler)
        noisy = hot_pixel_filter(sequence, cfg.hot_pixel_threshold)

        n_frames = sequence.shape[0]
        denoised = np.zeros_like(noisy)
        records = [None] * n_frames
        hint = LambdaHint()

        self._log_header()

        def process(index):
            frame_start = time.perf_counter()
            result = self.denoise_frame(noisy, filtered, index, hint)
            denoised[index] = result.frame
            elapsed = time.perf_counter() - frame_start
            records[index] = (index, result.noise.alpha, result.noise.mu,
                              result.noise.sigma, result.lam, elapsed)
            logger.info("%5d%10.4g%10.4g%10.4g%10.4g%10.3f", *records[index])

        scheduler.map_range(process, 0, n_frames)

        total = time.perf_counter() - start
        logger.info("-" * (5 * _COL + 5))
        logger.info("Total time: %.5g seconds", total)

        frame_log = pd.DataFrame.from_records(records, columns=FRAME_LOG_COLUMNS)
        return DenoiseResult(denoised=denoised, frame_log=frame_log, elapsed_s=total)

    def denoise_frame(self, noisy: np.ndarray, filtered: np.ndarray, index: int,
                      hint: Optional[LambdaHint] = None) -> FrameResult:
        """Run window extraction, noise, motion and SVT for frame *index*."""
        cfg = self.config
        window = extract_window(noisy, index, cfg.window_length)
        filtered_window = extract_window(filtered, index, cfg.window_length)

        noise = self._noise_model(window.frames, window.scale)

        motion = MotionEstimator(cfg.patch_size, cfg.patch_stride, cfg.motion_search)
        correspondence = motion.estimate(filtered_window.frames, window.offset)

        seed = None if cfg.random_state is None else cfg.random_state + index
        optimizer = PGUREOptimizer(window, correspondence, cfg.patch_size, noise,
                                   random_state=seed).initialize()

        if cfg.optimize_lambda:
            previous = hint.get() if hint is not None else None
            if index == 0 or previous is None:
                start = float(window.frames.mean())
            else:
                start = previous
            lam = optimizer.optimize(cfg.tol, start=start, upper=float(window.frames.max()),
                                     max_evaluations=cfg.max_evaluations)
            if hint is not None:
                hint.update(lam)
        else:
            lam = float(cfg.manual_lambda)

        reconstruction = optimizer.reconstruct(lam)
        return FrameResult(frame=reconstruction[window.offset],
                           noise=noise.denormalized(window.scale), lam=lam)

    def _noise_model(self, frames: np.ndarray, scale: float) -> NoiseModel:
        """Noise model of a window in normalized units."""
        cfg = self.config
        normalized = [v / scale if v >= 0 else -1.0 for v in cfg.noise_parameters()]
        if cfg.optimize_lambda and cfg.estimate_noise and min(normalized) < 0:
            estimator = NoiseEstimator(cfg.noise_block_size, cfg.noise_method)
            return estimator.estimate(frames, *normalized)
        return NoiseModel(*(max(v, 0.0) for v in normalized))

    def _log_header(self):
        rule = "-" * (5 * _COL + 5)
        logger.info(rule)
        logger.info("%5s%10s%10s%10s%10s%10s", "Frame", "Gain", "Offset", "Sigma", "Lambda", "Time (s)")
        logger.info(rule)

    def analyze(self, image_stack: np.ndarray, parameters: Dict[str, Any] = None) -> Dict[str, Any]:
        """
        Denoise a stack and report the result as a status dictionary.

        Args:
            image_stack: 3D array (frames, height, width).
            parameters: Configuration fields overriding this denoiser's config.

        Returns:
            Dictionary with 'status', 'denoised', 'frame_log', 'elapsed_s',
            'parameters_used' and 'message'.
        """
        if parameters is None:
            parameters = {}

        try:
            config = PGURESVTConfig.from_parameters({**asdict(self.config), **parameters})
            result = PGURESVTDenoiser(config).denoise(image_stack)
        except (GeometryError, ParameterError) as e:
            return {'status': 'error', 'message': str(e)}
        except Exception as e:
            return {'status': 'error', 'message': f'PGURE-SVT denoising failed: {e}'}

        return {
            'status': 'success',
            'method': self.name,
            'denoised': result.denoised,
            'frame_log': result.frame_log,
            'elapsed_s': result.elapsed_s,
            'parameters_used': asdict(config),
            'message': f'Denoised {result.denoised.shape[0]} frames in {result.elapsed_s:.2f} s.'
        }


def denoise_sequence(sequence: np.ndarray, config: Optional[PGURESVTConfig] = None,
                     **overrides) -> np.ndarray:
    """Denoise *sequence* and return the denoised array."""
    return PGURESVTDenoiser(config, **overrides).denoise(sequence).denoised


def denoise_buffer(input_buffer, output_buffer, dims: Sequence[int],
                   patch_size: int = 4,
                   patch_stride: int = 1,
                   window_length: int = 15,
                   optimize_lambda: bool = True,
                   manual_lambda: float = 0.5,
                   alpha: float = -1.0,
                   mu: float = -1.0,
                   sigma: float = -1.0,
                   motion_search: int = 7,
                   tol: float = 1e-7,
                   median_size: int = 5,
                   hot_pixel_threshold: float = 10.0,
                   num_threads: Optional[int] = None,
                   estimate_noise: bool = True) -> int:
    """
    Denoise a flat buffer in place.

    Args:
        input_buffer: Flat C-ordered (frames, height, width) intensities.
        output_buffer: Writable buffer (ndarray, array.array, ...) with the
            same number of elements;
            receives the denoised sequence.
        dims: (width, height, frames).
        Remaining arguments map onto :class:`PGURESVTConfig` fields; noise
        parameters use negative values to request estimation.

    Returns:
        0 on success, 1 if processing failed inside a frame.

    Raises:
        GeometryError, ParameterError: invalid input, before any work starts.
    """
    if len(dims) != 3:
        raise GeometryError(f"dims must be (width, height, frames), got {dims}")
    width, height, n_frames = (int(d) for d in dims)

    values = np.asarray(input_buffer, dtype=float).reshape(-1)
    try:
        output = np.asarray(memoryview(output_buffer))
    except TypeError:
        raise ParameterError(
            f"Output buffer must support the buffer protocol, got {type(output_buffer).__name__}"
        ) from None
    if not output.flags.writeable:
        raise ParameterError("Output buffer is read-only")
    if not np.can_cast(np.float64, output.dtype, casting='same_kind'):
        raise ParameterError(f"Output buffer dtype {output.dtype} cannot hold denoised values")
    expected = width * height * n_frames
    if values.size != expected:
        raise GeometryError(f"Input buffer has {values.size} values, dims require {expected}")
    if output.size != expected:
        raise GeometryError(f"Output buffer has {output.size} values, dims require {expected}")

    config = PGURESVTConfig(
        patch_size=patch_size,
        patch_stride=patch_stride,
        window_length=window_length,
        optimize_lambda=optimize_lambda,
        manual_lambda=manual_lambda,
        estimate_noise=estimate_noise,
        alpha=alpha,
        mu=mu,
        sigma=sigma,
        motion_search=motion_search,
        tol=tol,
        median_size=median_size,
        hot_pixel_threshold=hot_pixel_threshold,
        num_threads=num_threads,
    )
    config.validate((n_frames, height, width))

    try:
        result = PGURESVTDenoiser(config).denoise(values.reshape(n_frames, height, width))
    except Exception:
        logger.exception("PGURE-SVT denoising failed")
        return 1

    np.copyto(output, result.denoised.reshape(output.shape), casting='same_kind')
    return 0
