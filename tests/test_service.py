from __future__ import annotations

import pytest
from _forest_fixtures import centre_dot_png, fixed_forest, png_bytes

from garment_classifier.errors import (
    CorruptData,
    InternalError,
    InvalidImageDimensions,
    UnsupportedFormat,
)
from garment_classifier.inference.types import FEATURE_LENGTH
from garment_classifier.service import PredictionService


def test_classify_known_images() -> None:
    svc = PredictionService(model=fixed_forest())
    assert svc.classify(png_bytes("L", (28, 28), 0)).predicted_class == "T-shirt/top"
    assert svc.classify(png_bytes("RGB", (200, 90), (255, 255, 255))).predicted_class == "Bag"
    assert svc.classify(centre_dot_png()).predicted_class == "Trouser"


def test_classify_detailed_returns_features() -> None:
    svc = PredictionService(model=fixed_forest())
    features, res = svc.classify_detailed(png_bytes("L", (1, 1), 0))
    assert features.values.numel() == FEATURE_LENGTH
    assert res.class_index == 0
    assert svc.features(png_bytes("L", (1, 1), 0)).values.numel() == FEATURE_LENGTH


def test_errors_propagate_unchanged() -> None:
    svc = PredictionService(model=fixed_forest())
    with pytest.raises(UnsupportedFormat):
        svc.classify(b"GIF00-not-really")
    truncated = png_bytes("L", (256, 256), 0)[:30]
    with pytest.raises(CorruptData):
        svc.classify(truncated)


def test_invalid_dimensions_propagate(monkeypatch: pytest.MonkeyPatch) -> None:
    import garment_classifier.service as service_mod
    from garment_classifier.inference.types import RawImage

    monkeypatch.setattr(
        service_mod,
        "decode_image",
        lambda raw: RawImage(width=0, height=0, channels=1, samples=b""),
    )
    svc = PredictionService(model=fixed_forest())
    with pytest.raises(InvalidImageDimensions):
        svc.classify(b"ignored")


def test_unexpected_failures_become_internal_error(monkeypatch: pytest.MonkeyPatch) -> None:
    import garment_classifier.service as service_mod

    def _boom(_: object) -> object:
        raise ZeroDivisionError("bad math")

    monkeypatch.setattr(service_mod, "decode_image", _boom)
    svc = PredictionService(model=fixed_forest())
    with pytest.raises(InternalError) as ei:
        svc.classify(png_bytes())
    assert "decode failed" in ei.value.message
    assert isinstance(ei.value.__cause__, ZeroDivisionError)
