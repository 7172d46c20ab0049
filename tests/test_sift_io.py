import json

import cv2
import numpy as np
import pytest

from helpers_compare import assert_pyramids_close
from sift import Feature, InvalidDimension, Keypoint, build_dog_pyr, build_gaussian_pyramid
from sift_io import (
    draw_keypoints,
    dump_scalespace,
    load_image,
    load_scalespace,
    normalize,
    read_gray,
    to_gray,
)


def test_to_gray_handles_channel_layouts():
    bgr = np.full((5, 6, 3), 77, dtype=np.uint8)
    bgra = np.dstack([bgr, np.full((5, 6), 255, np.uint8)])

    for im in (bgr, bgra, bgr[..., 0]):
        gray = to_gray(im)
        assert gray.shape == (5, 6)
        assert gray.dtype == np.float32
        np.testing.assert_array_equal(gray, 77.0)

    assert to_gray(np.zeros((4, 4, 3), np.float64)).dtype == np.float32
    with pytest.raises(InvalidDimension):
        to_gray(np.zeros((4, 4, 2), np.uint8))


def test_read_gray_and_load_image(tmp_path):
    ramp = np.tile(np.arange(0, 250, 10, dtype=np.uint8), (12, 1))
    path = tmp_path / "ramp.png"
    assert cv2.imwrite(str(path), cv2.cvtColor(ramp, cv2.COLOR_GRAY2BGR))

    gray = read_gray(path)
    np.testing.assert_array_equal(gray, ramp.astype(np.float32))

    img = load_image(path)
    assert img.dtype == np.float32
    assert img.min() == 0.0 and img.max() == 1.0
    np.testing.assert_allclose(img[0, :3], [0.0, 10 / 240, 20 / 240], atol=1e-6)


def test_read_gray_rejects_undecodable_file(tmp_path):
    path = tmp_path / "broken.png"
    path.write_bytes(b"not an image")
    with pytest.raises(ValueError):
        read_gray(path)


def test_normalize():
    np.testing.assert_allclose(normalize(np.array([[2.0, 4.0, 6.0]])), [[0.0, 0.5, 1.0]])
    np.testing.assert_array_equal(normalize(np.full((3, 3), 9.0)), 0.0)
    with pytest.raises(InvalidDimension):
        normalize(np.zeros((0, 3)))


def test_dump_and_load_scalespace(tmp_path, blob_image):
    gss = build_gaussian_pyramid(blob_image, 2, 1)
    dog = build_dog_pyr(gss)

    meta_path = dump_scalespace(dog, tmp_path, prefix="dog")
    meta = json.loads(meta_path.read_text())
    assert [(o["h"], o["w"], len(o["files"])) for o in meta["octaves"]] == [(64, 64, 3), (32, 32, 3)]

    loaded, loaded_meta = load_scalespace(tmp_path, prefix="dog")
    assert loaded_meta == meta
    assert_pyramids_close(loaded, dog)


def test_draw_keypoints_scales_by_octave():
    img = np.zeros((64, 64), np.float32)
    features = [
        Feature(keypoint=Keypoint(x=16, y=16, octave=1, interval=1, angle=0.0)),
        Keypoint(x=10, y=50, octave=0, interval=1),
    ]
    out = draw_keypoints(img, features)

    assert out.shape == (64, 64, 3)
    assert out.dtype == np.uint8
    assert out[32, 32].tolist() == [0, 69, 255]
    assert out[50, 10].tolist() == [0, 69, 255]
    assert out[5, 5].tolist() == [0, 0, 0]
    assert img.max() == 0.0
