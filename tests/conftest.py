from __future__ import annotations

import sys
from pathlib import Path

import numpy as np
import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))


def gaussian_blob(shape, center, sigma, amplitude=1.0, background=0.0) -> np.ndarray:
    """Sampled isotropic Gaussian bump on a constant background (float32)."""
    h, w = shape
    yy, xx = np.mgrid[0:h, 0:w].astype(np.float64)
    cy, cx = center
    r2 = (yy - cy) ** 2 + (xx - cx) ** 2
    img = background + amplitude * np.exp(-r2 / (2.0 * sigma * sigma))
    return img.astype(np.float32)


def peak_octave(shape=(3, 11, 11), center=(1, 5, 5), value=1.0, fill=0.0) -> np.ndarray:
    """A DoG octave stack that is `fill` everywhere except one sample."""
    dog = np.full(shape, fill, dtype=np.float32)
    dog[center] = value
    return dog


@pytest.fixture
def flat_image():
    return np.full((64, 64), 0.5, dtype=np.float32)


@pytest.fixture
def blob_image():
    return gaussian_blob((64, 64), (32, 32), sigma=3.0)


@pytest.fixture
def vertical_ramp():
    rows = np.arange(40, dtype=np.float32)[:, None] * np.float32(0.01)
    return np.repeat(rows, 40, axis=1)


@pytest.fixture
def horizontal_ramp():
    cols = np.arange(40, dtype=np.float32)[None, :] * np.float32(0.01)
    return np.repeat(cols, 40, axis=0)
