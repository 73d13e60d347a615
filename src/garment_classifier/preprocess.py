from __future__ import annotations

import io
import math
from typing import Final

import torch
from PIL import Image
from torch import Tensor

from .config import PreprocessConfig, Resample
from .errors import InvalidImageDimensions
from .inference.types import FEATURE_SIDE, FeatureVector, RawImage

_SIGNATURE_VERSION: Final[str] = "v1"
_PREVIEW_SCALE: Final[int] = 4

PreprocessOptions = PreprocessConfig


def preprocess(image: RawImage, opts: PreprocessOptions | None = None) -> FeatureVector:
    """Turn a decoded image into the 28x28 feature vector the forest expects.

    Grayscale (luma weights, alpha ignored), per-axis resample to 28x28,
    divide by 255 and clamp to [0, 1], flatten row-major.
    """
    o = opts if opts is not None else PreprocessOptions()
    if image.width <= 0 or image.height <= 0:
        raise InvalidImageDimensions(
            f"image has zero extent ({image.width}x{image.height})"
        )
    gray = _to_grayscale(image, o.luma_weights)
    resized = _resize(gray, FEATURE_SIDE, FEATURE_SIDE, o.downscale, o.upscale)
    scaled = (resized / 255.0).clamp_(0.0, 1.0)
    return FeatureVector(values=scaled.to(torch.float32).reshape(-1).contiguous())


def preprocess_signature(opts: PreprocessOptions | None = None) -> str:
    o = opts if opts is not None else PreprocessOptions()
    wr, wg, wb = o.luma_weights
    return (
        f"{_SIGNATURE_VERSION}/luma({wr:g},{wg:g},{wb:g})"
        f"+down-{o.downscale}+up-{o.upscale}+resize{FEATURE_SIDE}+div255"
    )


def render_preview(features: FeatureVector, max_kb: int) -> bytes | None:
    """PNG of the model input, upscaled for viewing; None when over ``max_kb``."""
    grid = features.as_grid()
    data = bytes((grid * 255.0).round().clamp(0, 255).to(torch.uint8).reshape(-1).tolist())
    img = Image.frombytes("L", (FEATURE_SIDE, FEATURE_SIDE), data)
    side = FEATURE_SIDE * _PREVIEW_SCALE
    vis = img.resize((side, side), resample=Image.Resampling.NEAREST)
    buf = io.BytesIO()
    vis.save(buf, format="PNG", optimize=True)
    b = buf.getvalue()
    if len(b) > max_kb * 1024:
        return None
    return b


def _to_grayscale(image: RawImage, weights: tuple[float, float, float]) -> Tensor:
    px = torch.frombuffer(bytearray(image.samples), dtype=torch.uint8)
    px = px.reshape(image.height, image.width, image.channels).to(torch.float64)
    if image.channels == 1:
        return px[:, :, 0]
    wr, wg, wb = weights
    # Channel 3 (alpha), when present, is dropped rather than composited.
    return px[:, :, 0] * wr + px[:, :, 1] * wg + px[:, :, 2] * wb


def _resize(
    gray: Tensor, out_h: int, out_w: int, downscale: Resample, upscale: Resample
) -> Tensor:
    in_h, in_w = int(gray.shape[0]), int(gray.shape[1])
    out = gray
    if in_w != out_w:
        wx = _weights(in_w, out_w, downscale if out_w < in_w else upscale)
        out = out @ wx.T
    if in_h != out_h:
        wy = _weights(in_h, out_h, downscale if out_h < in_h else upscale)
        out = wy @ out
    return out


def _weights(n_in: int, n_out: int, kind: Resample) -> Tensor:
    if kind == "box":
        return _box_weights(n_in, n_out)
    return _bilinear_weights(n_in, n_out)


def _box_weights(n_in: int, n_out: int) -> Tensor:
    # Row i averages source cells over [i*scale, (i+1)*scale), weighted by overlap.
    w = torch.zeros((n_out, n_in), dtype=torch.float64)
    scale = n_in / n_out
    for i in range(n_out):
        lo = i * scale
        hi = min((i + 1) * scale, float(n_in))
        j = int(math.floor(lo))
        while j < n_in and j < hi:
            overlap = min(hi, j + 1.0) - max(lo, float(j))
            if overlap > 0.0:
                w[i, j] = overlap
            j += 1
        row_sum = float(w[i].sum())
        if row_sum > 0.0:
            w[i] /= row_sum
    return w


def _bilinear_weights(n_in: int, n_out: int) -> Tensor:
    # Half-pixel centres, edges clamped (align_corners=False convention).
    w = torch.zeros((n_out, n_in), dtype=torch.float64)
    scale = n_in / n_out
    for i in range(n_out):
        src = (i + 0.5) * scale - 0.5
        src = min(max(src, 0.0), float(n_in - 1))
        j0 = int(math.floor(src))
        j1 = min(j0 + 1, n_in - 1)
        frac = src - j0
        w[i, j0] += 1.0 - frac
        w[i, j1] += frac
    return w
