from __future__ import annotations

import io
from typing import Final

from PIL import Image, UnidentifiedImageError

from .errors import CorruptData, UnsupportedFormat
from .inference.types import RawImage

_SIGNATURES: Final[tuple[tuple[bytes, str], ...]] = (
    (b"\x89PNG\r\n\x1a\n", "png"),
    (b"\xff\xd8\xff", "jpeg"),
    (b"GIF87a", "gif"),
    (b"GIF89a", "gif"),
)
_PIL_FORMATS: Final[dict[str, str]] = {"png": "PNG", "jpeg": "JPEG", "gif": "GIF"}
_CHANNELS: Final[dict[str, int]] = {"L": 1, "RGB": 3, "RGBA": 4}
_DECODE_ERRORS: Final[tuple[type[BaseException], ...]] = (
    OSError,
    SyntaxError,
    ValueError,
    EOFError,
    Image.DecompressionBombError,
)


def sniff_format(raw: bytes) -> str | None:
    for magic, name in _SIGNATURES:
        if raw.startswith(magic):
            return name
    return None


def decode_image(raw: bytes) -> RawImage:
    """Decode PNG, JPEG or GIF bytes into a :class:`RawImage`.

    Only the first frame of an animated GIF is used. Raises
    :class:`UnsupportedFormat` when the bytes carry no known signature and
    :class:`CorruptData` when a known container cannot be decoded in full.
    """
    if not raw:
        raise UnsupportedFormat("empty image payload")
    fmt = sniff_format(raw)
    if fmt is None:
        raise UnsupportedFormat("unrecognised image signature; expected PNG, JPEG or GIF")
    try:
        with Image.open(io.BytesIO(raw), formats=[_PIL_FORMATS[fmt]]) as img:
            img.seek(0)
            img.load()
            norm = _normalise_mode(img)
            width, height = norm.size
            samples = norm.tobytes()
            channels = _CHANNELS[norm.mode]
    except UnidentifiedImageError as exc:
        raise CorruptData(f"{fmt} header is unreadable: {exc}") from None
    except _DECODE_ERRORS as exc:
        # Truncated uploads fail here rather than decode with grey padding.
        raise CorruptData(f"{fmt} data could not be decoded: {exc}") from None
    return RawImage(width=width, height=height, channels=channels, samples=samples)


def _normalise_mode(img: Image.Image) -> Image.Image:
    mode = img.mode
    if mode in _CHANNELS:
        return img
    if mode in ("P", "PA"):
        has_alpha = mode == "PA" or "transparency" in img.info
        return img.convert("RGBA" if has_alpha else "RGB")
    if mode in ("1", "LA"):
        return img.convert("L")
    if mode.startswith("I"):
        # 16-bit greyscale PNG: keep the high byte of each sample
        return img.convert("I").point(lambda v: v * (1 / 256)).convert("L")
    if mode == "F":
        return img.convert("L")
    return img.convert("RGB")
