from __future__ import annotations

import json
import math
from pathlib import Path
from typing import Iterable, Union

import cv2
import numpy as np

from sift import Feature, InvalidDimension, Keypoint


def read_color(path: str | Path) -> np.ndarray:
    im = cv2.imdecode(np.fromfile(str(path), np.uint8), cv2.IMREAD_COLOR)
    if im is None:
        raise ValueError(f"could not decode image: {path}")
    return im


def to_gray(im: np.ndarray) -> np.ndarray:
    im = np.asarray(im)
    if im.dtype == np.float64:
        im = im.astype(np.float32)
    if im.ndim == 2:
        return im.astype(np.float32)
    if im.ndim != 3 or im.shape[2] not in (3, 4):
        raise InvalidDimension(f"cannot convert image of shape {im.shape} to grayscale")
    code = cv2.COLOR_BGRA2GRAY if im.shape[2] == 4 else cv2.COLOR_BGR2GRAY
    return cv2.cvtColor(im, code).astype(np.float32)


def read_gray(path: str | Path) -> np.ndarray:
    im = cv2.imdecode(np.fromfile(str(path), np.uint8), cv2.IMREAD_UNCHANGED)
    if im is None:
        raise ValueError(f"could not decode image: {path}")
    return to_gray(im)


def normalize(img: np.ndarray) -> np.ndarray:
    img = np.asarray(img, dtype=np.float32)
    if img.size == 0:
        raise InvalidDimension("image is empty")
    if float(img.max()) <= float(img.min()):
        return np.zeros_like(img)
    return cv2.normalize(img, None, 0.0, 1.0, cv2.NORM_MINMAX, dtype=cv2.CV_32F)


def load_image(path: str | Path) -> np.ndarray:
    return normalize(read_gray(path))


def draw_keypoints(
    img: np.ndarray,
    features: Iterable[Union[Feature, Keypoint]],
    *,
    color=(0, 69, 255),
    outline=(80, 80, 80),
    line_color=(150, 0, 0),
    radius: int = 3,
) -> np.ndarray:
    out = np.asarray(img)
    if out.dtype != np.uint8:
        scale = 255.0 if float(out.max(initial=0.0)) <= 1.0 else 1.0
        out = np.clip(out.astype(np.float32) * scale, 0, 255).astype(np.uint8)
    out = cv2.cvtColor(out, cv2.COLOR_GRAY2BGR) if out.ndim == 2 else out.copy()

    for item in features:
        kp = item.keypoint if isinstance(item, Feature) else item
        s = kp.scale
        ctr = (int(round(kp.x * s)), int(round(kp.y * s)))
        if kp.angle is not None:
            a = math.radians(kp.angle)
            tip = (
                int(round((kp.x + math.cos(a) * s) * s)),
                int(round((kp.y + math.sin(a) * s) * s)),
            )
            cv2.line(out, ctr, tip, line_color, 1, lineType=cv2.LINE_AA)
        cv2.circle(out, ctr, radius + 1, outline, -1, lineType=cv2.LINE_AA)
        cv2.circle(out, ctr, radius, color, -1, lineType=cv2.LINE_AA)
    return out


def dump_scalespace(
    pyramid: list[list[np.ndarray]], dir_path: str | Path, prefix: str = "gss"
) -> Path:
    d = Path(dir_path)
    d.mkdir(parents=True, exist_ok=True)
    meta: dict[str, object] = {"prefix": prefix, "octaves": []}
    for o, octave in enumerate(pyramid):
        h, w = octave[0].shape
        files = []
        for s, img in enumerate(octave):
            fname = f"{prefix}_o{o:02d}_s{s:02d}.f32"
            np.ascontiguousarray(img, dtype=np.float32).tofile(d / fname)
            files.append(fname)
        meta["octaves"].append({"o": o, "h": int(h), "w": int(w), "files": files})
    meta_path = d / f"{prefix}_meta.json"
    meta_path.write_text(json.dumps(meta, indent=2))
    return meta_path


def load_scalespace(
    dir_path: str | Path, prefix: str = "gss"
) -> tuple[list[list[np.ndarray]], dict]:
    d = Path(dir_path)
    meta = json.loads((d / f"{prefix}_meta.json").read_text())
    pyramid = []
    for octave in meta["octaves"]:
        h, w = octave["h"], octave["w"]
        pyramid.append(
            [np.fromfile(d / fname, dtype=np.float32).reshape(h, w) for fname in octave["files"]]
        )
    return pyramid, meta
