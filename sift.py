from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field, replace
from typing import Iterable, Optional, Sequence

import cv2
import numba
import numpy as np

logger = logging.getLogger(__name__)

SIFT_INIT_SIGMA = 1.6
SIFT_STEP_SIGMA = math.sqrt(2.0)
INTERPOLATION_SIGMA = 0.5
IMG_BORDER = 5
HIST_BORDER = 8

CONTRAST_THRESHOLD = 0.03
CURVATURE_THRESHOLD = 10.0
DET_THRESHOLD = 0.0
DET_EPS = 1e-12

ORI_BIN_WIDTH = 10
DESC_BIN_WIDTH = 45
DESC_BLOCK = 4
ANGLE_SPAN = 360

HIST_DTYPE = np.int64


class InvalidDimension(ValueError):
    pass


@dataclass(frozen=True)
class Keypoint:
    x: int  # octave-local column
    y: int  # octave-local row
    octave: int
    interval: int
    response: float = 0.0  # DoG value at (interval, y, x)
    angle: Optional[float] = None  # degrees, bin centre

    @property
    def scale(self) -> int:
        return 1 << self.octave

    @property
    def image_point(self) -> tuple[float, float]:
        return float(self.x * self.scale), float(self.y * self.scale)

    def with_angle(self, angle: float) -> "Keypoint":
        return replace(self, angle=float(angle))


@dataclass(frozen=True)
class OrientationMap:
    magnitude: np.ndarray  # (2B, 2B) float32, [y offset, x offset]
    direction: np.ndarray  # (2B, 2B) float32 degrees in [0, 360)


@dataclass(frozen=True)
class Feature:
    keypoint: Keypoint
    orientation_map: Optional[OrientationMap] = None
    descriptor: Optional[np.ndarray] = None


@dataclass
class KeypointArrays:
    int_buffer: np.ndarray  # o, s, y, x
    float_buffer: np.ndarray  # y_image, x_image, angle, response
    descriptors: np.ndarray  # block histograms, -1 rows for unoriented keypoints

    def copy(self) -> "KeypointArrays":
        return KeypointArrays(
            int_buffer=self.int_buffer.copy(),
            float_buffer=self.float_buffer.copy(),
            descriptors=self.descriptors.copy(),
        )


@dataclass
class SiftParams:
    img_dims: tuple[int, int]
    n_oct: int = -1
    n_intervals: int = 3

    sigma_init: float = SIFT_INIT_SIGMA
    sigma_step: float = SIFT_STEP_SIGMA
    sigma_interp: float = INTERPOLATION_SIGMA

    img_border: int = IMG_BORDER
    hist_border: int = HIST_BORDER

    C_contrast: float = CONTRAST_THRESHOLD
    C_edge: float = CURVATURE_THRESHOLD
    C_det: float = DET_THRESHOLD

    max_extrema: int = 100_000
    keep_unoriented: bool = False

    sigmas: np.ndarray | None = None
    gss_shapes: np.ndarray | None = None
    n_desc: int = field(init=False, default=0)

    def __post_init__(self) -> None:
        self._check_scalars()
        self.img_dims = (int(self.img_dims[0]), int(self.img_dims[1]))
        self._update_octave_count()
        self.sigmas = self._make_sigmas()
        self.gss_shapes = self._make_gss_shapes()
        self.n_desc = descriptor_length(self.hist_border)

    @property
    def min_octave_side(self) -> int:
        return 2 * self.img_border + 1

    def _check_scalars(self) -> None:
        if len(self.img_dims) != 2 or min(self.img_dims) <= 0:
            raise InvalidDimension(f"img_dims must be a positive (h, w), got {self.img_dims}")
        if self.n_oct != -1 and self.n_oct < 1:
            raise ValueError(f"n_oct must be >= 1 (or -1 for automatic), got {self.n_oct}")
        if self.n_intervals < 1:
            raise ValueError(f"n_intervals must be >= 1, got {self.n_intervals}")
        if self.sigma_init <= 0.0 or self.sigma_step <= 0.0 or self.sigma_interp < 0.0:
            raise ValueError(
                f"invalid sigmas: init={self.sigma_init}, step={self.sigma_step},"
                f" interp={self.sigma_interp}"
            )
        if self.img_border < 1:
            raise ValueError(f"img_border must be >= 1, got {self.img_border}")
        if self.hist_border < DESC_BLOCK // 2:
            raise ValueError(
                f"hist_border must be >= {DESC_BLOCK // 2}, got {self.hist_border}"
            )
        if self.max_extrema < 1:
            raise ValueError(f"max_extrema must be >= 1, got {self.max_extrema}")

    def _update_octave_count(self) -> None:
        max_n_oct = 0
        h, w = self.img_dims
        while min(h, w) >= self.min_octave_side:
            max_n_oct += 1
            h, w = h // 2, w // 2
        if max_n_oct == 0:
            raise InvalidDimension(
                f"image {self.img_dims} is smaller than the {self.min_octave_side}px"
                f" minimum implied by img_border={self.img_border}"
            )
        if self.n_oct == -1:
            self.n_oct = max_n_oct
        elif self.n_oct > max_n_oct:
            raise InvalidDimension(
                f"image {self.img_dims} supports at most {max_n_oct} octaves"
                f" with img_border={self.img_border}, requested {self.n_oct}"
            )

    def _make_sigmas(self) -> np.ndarray:
        return octave_sigmas(self.n_intervals, self.sigma_init, self.sigma_step)

    def _make_gss_shapes(self) -> np.ndarray:
        return np.array(octave_shapes(self.img_dims, self.n_oct), dtype=np.int64)


def descriptor_length(hist_border: int) -> int:
    blocks = (2 * hist_border) // DESC_BLOCK
    return (ANGLE_SPAN // DESC_BIN_WIDTH) * blocks * blocks


def octave_sigmas(
    n_intervals: int,
    sigma_init: float = SIFT_INIT_SIGMA,
    sigma_step: float = SIFT_STEP_SIGMA,
) -> np.ndarray:
    return sigma_init * sigma_step ** np.arange(n_intervals + 3, dtype=np.float64)


def octave_shapes(img_dims: Sequence[int], n_oct: int) -> list[tuple[int, int]]:
    h, w = int(img_dims[0]), int(img_dims[1])
    shapes = []
    for _ in range(n_oct):
        shapes.append((h, w))
        h, w = h // 2, w // 2
    return shapes


def check_image(img: np.ndarray) -> np.ndarray:
    img = np.asarray(img)
    if img.ndim != 2:
        raise InvalidDimension(f"expected a single-channel 2-D image, got shape {img.shape}")
    if img.size == 0:
        raise InvalidDimension("image is empty")
    img = np.ascontiguousarray(img, dtype=np.float32)
    if not np.isfinite(img).all():
        raise ValueError("image contains non-finite samples")
    lo, hi = float(img.min()), float(img.max())
    if lo < 0.0 or hi > 1.0:
        raise ValueError(
            f"image samples must lie in [0, 1], got [{lo}, {hi}]; normalize first"
        )
    return img


def gaussian_blur(img: np.ndarray, sigma: float) -> np.ndarray:
    src = np.ascontiguousarray(img, dtype=np.float32)
    if sigma <= 0.0:
        return src.copy()
    return cv2.GaussianBlur(src, (0, 0), sigmaX=float(sigma), sigmaY=float(sigma))


def decimate_columns(img: np.ndarray) -> np.ndarray:
    w = img.shape[1] // 2
    return np.ascontiguousarray(img[:, 0 : 2 * w : 2])


def decimate_rows(img: np.ndarray) -> np.ndarray:
    h = img.shape[0] // 2
    return np.ascontiguousarray(img[0 : 2 * h : 2, :])


def down_sample(img: np.ndarray, sigma_interp: float = INTERPOLATION_SIGMA) -> np.ndarray:
    blurred = gaussian_blur(img, sigma_interp)
    return decimate_rows(decimate_columns(blurred))


def build_gaussian_pyramid(
    base: np.ndarray,
    n_oct: int,
    n_intervals: int,
    sigma_init: float = SIFT_INIT_SIGMA,
    sigma_step: float = SIFT_STEP_SIGMA,
    sigma_interp: float = INTERPOLATION_SIGMA,
) -> list[list[np.ndarray]]:
    if n_oct < 1:
        raise ValueError(f"n_oct must be >= 1, got {n_oct}")
    if n_intervals < 1:
        raise ValueError(f"n_intervals must be >= 1, got {n_intervals}")
    working = np.ascontiguousarray(base, dtype=np.float32)
    if working.ndim != 2 or working.size == 0:
        raise InvalidDimension(f"expected a non-empty 2-D image, got shape {working.shape}")
    deepest = octave_shapes(working.shape, n_oct)[-1]
    if min(deepest) < 1:
        raise InvalidDimension(
            f"image {working.shape} cannot be halved {n_oct - 1} times"
        )

    logger.debug("Building Gaussian pyramid: %d octaves x %d images", n_oct, n_intervals + 3)
    sigmas = octave_sigmas(n_intervals, sigma_init, sigma_step)
    pyramid = []
    for octave_index in range(n_oct):
        pyramid.append([gaussian_blur(working, sigma) for sigma in sigmas])
        if octave_index < n_oct - 1:
            working = down_sample(working, sigma_interp)
    return pyramid


def build_dog_pyr(gss: list[list[np.ndarray]]) -> list[list[np.ndarray]]:
    if not gss:
        raise ValueError("Gaussian pyramid has no octaves")
    logger.debug("Building DoG pyramid")
    dog = []
    for octave_index, octave in enumerate(gss):
        if len(octave) < 2:
            raise ValueError(
                f"octave {octave_index} needs at least 2 intervals, got {len(octave)}"
            )
        dog.append([np.subtract(a, b) for a, b in zip(octave, octave[1:])])
    return dog


@numba.njit(cache=True)
def is_extremum(dog_oct, s, y, x):
    v = dog_oct[s, y, x]
    if v > 0:
        for ds in range(-1, 2):
            for dy in range(-1, 2):
                for dx in range(-1, 2):
                    if ds == 0 and dy == 0 and dx == 0:
                        continue
                    if v <= dog_oct[s + ds, y + dy, x + dx]:
                        return False
    else:
        for ds in range(-1, 2):
            for dy in range(-1, 2):
                for dx in range(-1, 2):
                    if ds == 0 and dy == 0 and dx == 0:
                        continue
                    if v >= dog_oct[s + ds, y + dy, x + dx]:
                        return False
    return True


@numba.njit(cache=True)
def clean_points(img, x, y, contrast_thr, curvature_thr, det_thr):
    v = img[y, x]
    if abs(v) < contrast_thr:
        return False
    fxx = img[y, x - 1] + img[y, x + 1] - 2.0 * v
    fyy = img[y - 1, x] + img[y + 1, x] - 2.0 * v
    fxy = img[y - 1, x - 1] + img[y + 1, x + 1] - img[y - 1, x + 1] - img[y + 1, x - 1]
    trace = fxx + fyy
    det = fxx * fyy - fxy * fxy
    if det < det_thr or abs(det) < DET_EPS:
        return False
    if trace * trace / det > curvature_thr:
        return False
    return True


@numba.njit(cache=True, fastmath=True)
def find_extrema_kernel(dog_oct, border, out, counter):
    ns, h, w = dog_oct.shape
    for s in range(1, ns - 1):
        for y in range(border, h - border):
            for x in range(border, w - border):
                if not is_extremum(dog_oct, s, y, x):
                    continue
                idx = counter[0]
                if idx >= out.shape[0]:
                    counter[1] += 1
                    continue
                out[idx, 0] = s
                out[idx, 1] = y
                out[idx, 2] = x
                counter[0] = idx + 1


@numba.njit(cache=True)
def clean_points_kernel(dog_oct, candidates, contrast_thr, curvature_thr, det_thr, keep):
    for k in range(candidates.shape[0]):
        s = candidates[k, 0]
        y = candidates[k, 1]
        x = candidates[k, 2]
        keep[k] = clean_points(dog_oct[s], x, y, contrast_thr, curvature_thr, det_thr)


def detect_extrema(
    dog_oct: np.ndarray, img_border: int = IMG_BORDER, max_extrema: int = 100_000
) -> np.ndarray:
    dog_oct = np.ascontiguousarray(dog_oct, dtype=np.float32)
    out = np.empty((max_extrema, 3), dtype=np.int32)
    counter = np.zeros(2, dtype=np.int64)
    find_extrema_kernel(dog_oct, img_border, out, counter)
    if counter[1] > 0:
        raise RuntimeError(
            f"extrema buffer overflow: {int(counter[0] + counter[1])} candidates"
            f" for max_extrema={max_extrema}"
        )
    return out[: counter[0]].copy()


def discard_unclean(
    dog_oct: np.ndarray,
    candidates: np.ndarray,
    contrast_threshold: float = CONTRAST_THRESHOLD,
    curvature_threshold: float = CURVATURE_THRESHOLD,
    det_threshold: float = DET_THRESHOLD,
) -> np.ndarray:
    dog_oct = np.ascontiguousarray(dog_oct, dtype=np.float32)
    candidates = np.ascontiguousarray(candidates, dtype=np.int32).reshape(-1, 3)
    keep = np.zeros(candidates.shape[0], dtype=np.bool_)
    clean_points_kernel(
        dog_oct,
        candidates,
        float(contrast_threshold),
        float(curvature_threshold),
        float(det_threshold),
        keep,
    )
    return candidates[keep]


def _make_keypoints(dog_oct: np.ndarray, octave_index: int, rows: np.ndarray) -> list[Keypoint]:
    return [
        Keypoint(
            x=int(x),
            y=int(y),
            octave=octave_index,
            interval=int(s),
            response=float(dog_oct[s, y, x]),
        )
        for s, y, x in rows
    ]


def stack_octave(dog: list[list[np.ndarray]], octave_index: int) -> np.ndarray:
    octave = dog[octave_index]
    if len(octave) < 3:
        raise ValueError(
            f"DoG octave {octave_index} needs at least 3 intervals, got {len(octave)}"
        )
    return np.stack(octave).astype(np.float32, copy=False)


def detect_octave_extrema(
    dog_oct: np.ndarray,
    octave_index: int,
    contrast_threshold: float = CONTRAST_THRESHOLD,
    curvature_threshold: float = CURVATURE_THRESHOLD,
    det_threshold: float = DET_THRESHOLD,
    img_border: int = IMG_BORDER,
    max_extrema: int = 100_000,
) -> tuple[np.ndarray, np.ndarray]:
    candidates = detect_extrema(dog_oct, img_border, max_extrema)
    clean = discard_unclean(
        dog_oct, candidates, contrast_threshold, curvature_threshold, det_threshold
    )
    logger.debug(
        "Octave %d: %d extrema, %d after contrast/edge filtering",
        octave_index,
        len(candidates),
        len(clean),
    )
    return candidates, clean


def get_scale_space_extrema(
    dog: list[list[np.ndarray]],
    contrast_threshold: float = CONTRAST_THRESHOLD,
    curvature_threshold: float = CURVATURE_THRESHOLD,
    det_threshold: float = DET_THRESHOLD,
    img_border: int = IMG_BORDER,
    max_extrema: int = 100_000,
) -> list[Keypoint]:
    if not dog:
        raise ValueError("DoG pyramid has no octaves")
    keypoints: list[Keypoint] = []
    for octave_index in range(len(dog)):
        dog_oct = stack_octave(dog, octave_index)
        _, clean = detect_octave_extrema(
            dog_oct,
            octave_index,
            contrast_threshold,
            curvature_threshold,
            det_threshold,
            img_border,
            max_extrema,
        )
        keypoints.extend(_make_keypoints(dog_oct, octave_index, clean))
    return keypoints


def build_histogram(values: np.ndarray, bin_width: float, span: float = ANGLE_SPAN) -> np.ndarray:
    n_bins = int(span // bin_width)
    idx = np.floor_divide(np.asarray(values, dtype=np.float64).ravel(), bin_width)
    idx = np.clip(idx.astype(np.intp), 0, n_bins - 1)
    return np.bincount(idx, minlength=n_bins).astype(HIST_DTYPE, copy=False)


def histogram_max(hist: np.ndarray) -> tuple[int, int]:
    index = int(np.argmax(hist))
    return int(hist[index]), index


def orientation_map(
    img: np.ndarray, x: int, y: int, hist_border: int = HIST_BORDER
) -> Optional[OrientationMap]:
    h, w = img.shape
    b = hist_border
    if x - b - 1 < 0 or x + b + 1 > w or y - b - 1 < 0 or y + b + 1 > h:
        return None

    rows = slice(y - b, y + b)
    cols = slice(x - b, x + b)
    gx = img[rows, x - b + 1 : x + b + 1] - img[rows, x - b - 1 : x + b - 1]
    gy = img[y - b + 1 : y + b + 1, cols] - img[y - b - 1 : y + b - 1, cols]
    gx = gx.astype(np.float64)
    gy = gy.astype(np.float64)

    magnitude = np.hypot(gx, gy).astype(np.float32)
    direction = np.degrees(np.arctan2(gy, gx))
    direction = np.where(direction < 0.0, direction + ANGLE_SPAN, direction).astype(np.float32)
    direction[direction >= ANGLE_SPAN] = 0.0
    return OrientationMap(magnitude=magnitude, direction=direction)


def assign_orientation(
    keypoint: Keypoint, img: np.ndarray, hist_border: int = HIST_BORDER
) -> tuple[Keypoint, Optional[OrientationMap]]:
    omap = orientation_map(img, keypoint.x, keypoint.y, hist_border)
    if omap is None:
        return keypoint, None
    hist = build_histogram(omap.direction, ORI_BIN_WIDTH)
    _, index = histogram_max(hist)
    angle = index * ORI_BIN_WIDTH + ORI_BIN_WIDTH / 2
    return keypoint.with_angle(angle), omap


def compute_orientation_hist(
    dog: list[list[np.ndarray]],
    keypoints: Iterable[Keypoint],
    hist_border: int = HIST_BORDER,
) -> list[tuple[Keypoint, Optional[OrientationMap]]]:
    oriented = [
        assign_orientation(kp, dog[kp.octave][kp.interval], hist_border) for kp in keypoints
    ]
    logger.debug(
        "Assigned orientations to %d of %d keypoints",
        sum(omap is not None for _, omap in oriented),
        len(oriented),
    )
    return oriented


def compute_descriptor(direction: np.ndarray) -> np.ndarray:
    rows, cols = direction.shape
    parts = [
        build_histogram(direction[r0 : r0 + DESC_BLOCK, c0 : c0 + DESC_BLOCK], DESC_BIN_WIDTH)
        for c0 in range(0, cols - DESC_BLOCK + 1, DESC_BLOCK)
        for r0 in range(0, rows - DESC_BLOCK + 1, DESC_BLOCK)
    ]
    if not parts:
        return np.zeros(0, dtype=HIST_DTYPE)
    return np.concatenate(parts)


def compute_descriptors(orientation_maps: Iterable[OrientationMap]) -> list[np.ndarray]:
    descriptors = [compute_descriptor(omap.direction) for omap in orientation_maps]
    logger.debug("Built %d descriptors", len(descriptors))
    return descriptors


def build_features(
    oriented: Iterable[tuple[Keypoint, Optional[OrientationMap]]],
    keep_unoriented: bool = False,
) -> list[Feature]:
    features = []
    for kp, omap in oriented:
        if omap is None:
            if keep_unoriented:
                features.append(Feature(keypoint=kp))
            continue
        features.append(
            Feature(keypoint=kp, orientation_map=omap, descriptor=compute_descriptor(omap.direction))
        )
    return features


def compute_octave(
    dog: list[list[np.ndarray]],
    params: SiftParams,
    octave_index: int,
    record: bool = False,
) -> tuple[list[Feature], Optional[dict[str, object]]]:
    dog_oct = stack_octave(dog, octave_index)
    candidates, clean = detect_octave_extrema(
        dog_oct,
        octave_index,
        params.C_contrast,
        params.C_edge,
        params.C_det,
        params.img_border,
        params.max_extrema,
    )
    keypoints = _make_keypoints(dog_oct, octave_index, clean)
    oriented = compute_orientation_hist(dog, keypoints, params.hist_border)
    features = build_features(oriented, params.keep_unoriented)
    if not record:
        return features, None
    return features, {
        "dog": dog_oct.copy(),
        "extrema": candidates,
        "clean": clean,
        "keys": [kp for kp, _ in oriented],
    }


def compute(
    params: SiftParams, img: np.ndarray, record: bool = False
) -> tuple[list[Feature], list[dict[str, object]]]:
    base = check_image(img)
    gss = build_gaussian_pyramid(
        base,
        params.n_oct,
        params.n_intervals,
        params.sigma_init,
        params.sigma_step,
        params.sigma_interp,
    )
    dog = build_dog_pyr(gss)

    features: list[Feature] = []
    snapshots: list[dict[str, object]] = []
    for o in range(params.n_oct):
        octave_features, snapshot = compute_octave(dog, params, o, record)
        features.extend(octave_features)
        if record:
            snapshot["gss"] = np.stack(gss[o])
            snapshots.append(snapshot)
    logger.debug("Detected %d features", len(features))
    return features, snapshots


def to_arrays(features: Sequence[Feature], n_desc: int) -> KeypointArrays:
    n = len(features)
    int_buffer = np.empty((n, 4), dtype=np.int32)
    float_buffer = np.empty((n, 4), dtype=np.float32)
    descriptors = np.full((n, n_desc), -1, dtype=HIST_DTYPE)
    for i, feat in enumerate(features):
        kp = feat.keypoint
        x_img, y_img = kp.image_point
        int_buffer[i] = (kp.octave, kp.interval, kp.y, kp.x)
        float_buffer[i] = (
            y_img,
            x_img,
            np.nan if kp.angle is None else kp.angle,
            kp.response,
        )
        if feat.descriptor is not None:
            descriptors[i] = feat.descriptor
    return KeypointArrays(int_buffer, float_buffer, descriptors)


def detect(img: np.ndarray, n_oct: int, n_intervals: int, **overrides) -> list[Feature]:
    if n_oct < 1:
        raise ValueError(f"n_oct must be >= 1, got {n_oct}")
    base = check_image(img)
    params = SiftParams(base.shape, n_oct=n_oct, n_intervals=n_intervals, **overrides)
    features, _ = compute(params, base)
    return features


class Sift:
    def __init__(self, params: SiftParams):
        self.params = params

    def compute(
        self, img: np.ndarray, record: bool = False
    ) -> tuple[list[Feature], list[dict[str, object]]]:
        if tuple(np.shape(img)) != self.params.img_dims:
            raise InvalidDimension(f"got {np.shape(img)}, expected {self.params.img_dims}")
        return compute(self.params, img, record=record)

    def compute_arrays(self, img: np.ndarray) -> KeypointArrays:
        features, _ = self.compute(img)
        return to_arrays(features, self.params.n_desc)


if __name__ == "__main__":
    import sys
    from pathlib import Path

    from sift_io import draw_keypoints, load_image, read_color

    logging.basicConfig(level=logging.DEBUG, format="%(levelname)s %(name)s: %(message)s")
    paths = [Path(p) for p in sys.argv[1:]]
    if not paths:
        raise SystemExit("usage: python sift.py IMAGE [IMAGE ...]")
    for path in paths:
        img = load_image(path)
        sift = Sift(SiftParams(img_dims=img.shape))
        features, _ = sift.compute(img)
        print(f"{path.name}: {len(features)} keypoints")
        overlay = draw_keypoints(read_color(path), features)
        cv2.imwrite(f"{path.stem}_keypoints.png", overlay)
