import numpy as np
import pytest

from sift import (
    HIST_DTYPE,
    Keypoint,
    OrientationMap,
    assign_orientation,
    compute_descriptor,
    compute_descriptors,
    descriptor_length,
)


@pytest.mark.parametrize("hist_border,expected", [(8, 128), (6, 72), (4, 32), (2, 8)])
def test_descriptor_length_formula(hist_border, expected):
    assert descriptor_length(hist_border) == expected
    assert descriptor_length(hist_border) == 8 * (2 * hist_border // 4) ** 2


@pytest.mark.parametrize("hist_border", [2, 4, 6, 8, 10])
def test_descriptor_length_matches_window(hist_border):
    img = np.random.default_rng(hist_border).random((48, 48), dtype=np.float32)
    kp, omap = assign_orientation(Keypoint(x=24, y=24, octave=0, interval=1), img, hist_border)
    assert kp.angle is not None

    desc = compute_descriptor(omap.direction)
    assert desc.shape == (descriptor_length(hist_border),)
    assert desc.dtype == HIST_DTYPE
    assert (desc >= 0).all()
    # every 4x4 block contributes exactly 16 counts
    np.testing.assert_array_equal(desc.reshape(-1, 8).sum(axis=1), 16)


def test_partial_blocks_are_ignored():
    direction = np.zeros((10, 10), np.float32)
    desc = compute_descriptor(direction)
    assert desc.shape == (32,)
    assert desc.sum() == 4 * 16


def test_blocks_are_visited_column_major():
    direction = np.zeros((16, 16), np.float32)
    direction[4:8, 0:4] = 100.0  # second row block of the first column block
    direction[0:4, 4:8] = 200.0  # first row block of the second column block

    blocks = compute_descriptor(direction).reshape(16, 8)

    assert blocks[1].tolist() == [0, 0, 16, 0, 0, 0, 0, 0]
    assert blocks[4].tolist() == [0, 0, 0, 0, 16, 0, 0, 0]
    for i in set(range(16)) - {1, 4}:
        assert blocks[i].tolist() == [16, 0, 0, 0, 0, 0, 0, 0]


def test_block_histogram_uses_45_degree_bins():
    direction = np.array(
        [
            [0.0, 44.9, 45.0, 89.9],
            [90.0, 135.0, 180.0, 225.0],
            [270.0, 315.0, 359.9, 359.99],
            [1.0, 2.0, 3.0, 4.0],
        ],
        np.float32,
    )
    assert compute_descriptor(direction).tolist() == [6, 2, 1, 1, 1, 1, 1, 3]


def test_compute_descriptors_keeps_input_order():
    maps = []
    for angle in (10.0, 100.0, 350.0):
        direction = np.full((16, 16), angle, np.float32)
        maps.append(OrientationMap(magnitude=np.ones_like(direction), direction=direction))

    descriptors = compute_descriptors(maps)

    assert len(descriptors) == 3
    assert [int(np.argmax(d[:8])) for d in descriptors] == [0, 2, 7]
    assert compute_descriptors([]) == []
