import numpy as np
import pytest
from tifffile import imwrite

from pgure_svt.base import GeometryError
from pgure_svt.sequence_io import load_sequence, save_sequence


def test_round_trip(tmp_path):
    rng = np.random.default_rng(0)
    sequence = rng.uniform(0, 1000, size=(4, 6, 5))
    path = tmp_path / "out" / "stack.tif"

    save_sequence(path, sequence)
    loaded = load_sequence(path)

    assert loaded.dtype == np.float64
    np.testing.assert_allclose(loaded, sequence)


def test_integer_output_is_rounded_and_clipped(tmp_path):
    sequence = np.array([[[-5.0, 12.4], [70000.0, 3.6]]])
    path = tmp_path / "stack16.tif"

    save_sequence(path, sequence, dtype=np.uint16)
    loaded = load_sequence(path)

    np.testing.assert_array_equal(loaded, [[[0, 12], [65535, 4]]])


def test_single_image_becomes_one_frame(tmp_path):
    path = tmp_path / "single.tif"
    imwrite(path, np.ones((6, 7), dtype=np.uint16))
    with pytest.warns(UserWarning):
        loaded = load_sequence(path)
    assert loaded.shape == (1, 6, 7)


def test_four_dimensional_stack_is_rejected(tmp_path):
    path = tmp_path / "volume.tif"
    imwrite(path, np.ones((2, 3, 6, 7), dtype=np.uint16))
    with pytest.raises(GeometryError):
        load_sequence(path)
