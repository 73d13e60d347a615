from __future__ import annotations

import importlib
from io import BytesIO

import pytest
from _forest_fixtures import png_bytes
from PIL import Image, ImageFile

from garment_classifier.errors import CorruptData, UnsupportedFormat
import garment_classifier.imaging as imaging_mod
from garment_classifier.imaging import decode_image, sniff_format


def _encode(img: Image.Image, fmt: str, **kw: object) -> bytes:
    b = BytesIO()
    img.save(b, format=fmt, **kw)
    return b.getvalue()


def test_sniff_format_known_and_unknown() -> None:
    assert sniff_format(png_bytes()) == "png"
    assert sniff_format(_encode(Image.new("RGB", (4, 4)), "JPEG")) == "jpeg"
    assert sniff_format(_encode(Image.new("L", (4, 4)), "GIF")) == "gif"
    assert sniff_format(b"BM\x00\x00") is None
    assert sniff_format(b"") is None


def test_decode_png_grayscale_and_rgb() -> None:
    g = decode_image(png_bytes("L", (5, 3), 200))
    assert (g.width, g.height, g.channels) == (5, 3, 1)
    assert g.samples == bytes([200]) * 15

    c = decode_image(png_bytes("RGB", (2, 2), (10, 20, 30)))
    assert c.channels == 3
    assert c.samples[:3] == bytes([10, 20, 30])


def test_decode_rgba_keeps_alpha_channel() -> None:
    raw = png_bytes("RGBA", (3, 3), (1, 2, 3, 0))
    img = decode_image(raw)
    assert img.channels == 4
    assert img.samples[:4] == bytes([1, 2, 3, 0])


def test_decode_jpeg() -> None:
    raw = _encode(Image.new("RGB", (16, 8), (128, 128, 128)), "JPEG", quality=95)
    img = decode_image(raw)
    assert (img.width, img.height) == (16, 8)
    assert len(img.samples) == 16 * 8 * img.channels


def test_decode_gif_uses_first_frame() -> None:
    first = Image.new("L", (4, 4), 0)
    second = Image.new("L", (4, 4), 255)
    raw = _encode(first, "GIF", save_all=True, append_images=[second], duration=10, loop=0)
    img = decode_image(raw)
    assert img.width == 4 and img.height == 4
    # Palette entries may expand to RGB; frame one is black, frame two white.
    assert img.samples[0] == 0


def test_decode_16bit_png_reduces_to_8bit() -> None:
    img16 = Image.new("I;16", (2, 2))
    img16.putdata([65535, 0, 32768, 256])
    out = decode_image(_encode(img16, "PNG"))
    assert out.channels == 1
    assert out.samples[0] == 255 and out.samples[1] == 0


def test_decode_empty_and_unknown_signature() -> None:
    with pytest.raises(UnsupportedFormat):
        decode_image(b"")
    with pytest.raises(UnsupportedFormat):
        decode_image(b"hello world, not an image")


def test_decode_truncated_png_is_corrupt() -> None:
    raw = _encode(Image.linear_gradient("L"), "PNG")
    with pytest.raises(CorruptData):
        decode_image(raw[: len(raw) // 2])


def test_decode_png_signature_only_is_corrupt() -> None:
    with pytest.raises(CorruptData):
        decode_image(b"\x89PNG\r\n\x1a\n")


def test_decode_truncated_jpeg_is_corrupt() -> None:
    raw = _encode(Image.new("RGB", (64, 64), (90, 10, 200)), "JPEG")
    with pytest.raises(CorruptData):
        decode_image(raw[:40])


def test_import_leaves_pillow_truncation_flag_alone(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(ImageFile, "LOAD_TRUNCATED_IMAGES", True)
    importlib.reload(imaging_mod)
    assert ImageFile.LOAD_TRUNCATED_IMAGES is True
