from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TypeVar

from .errors import CoreError, InternalError
from .imaging import decode_image
from .inference.forest import ClassifierModel
from .inference.types import FeatureVector, PredictionResult
from .preprocess import PreprocessOptions, preprocess

_A = TypeVar("_A")
_R = TypeVar("_R")


@dataclass(frozen=True)
class PredictionService:
    """Bytes in, label out: decode, preprocess, then walk the forest.

    Holds no per-call state, so one instance serves any number of concurrent
    callers. Typed pipeline errors propagate untouched; anything else is
    reported as :class:`InternalError` naming the stage that failed.
    """

    model: ClassifierModel
    options: PreprocessOptions = field(default_factory=PreprocessOptions)

    def classify(self, raw: bytes) -> PredictionResult:
        return self.classify_detailed(raw)[1]

    def classify_detailed(self, raw: bytes) -> tuple[FeatureVector, PredictionResult]:
        features = self.features(raw)
        return features, _stage("inference", self.model.predict, features)

    def features(self, raw: bytes) -> FeatureVector:
        image = _stage("decode", decode_image, raw)
        return _stage("preprocess", lambda img: preprocess(img, self.options), image)


def _stage(name: str, fn: Callable[[_A], _R], arg: _A) -> _R:
    try:
        return fn(arg)
    except CoreError:
        raise
    except Exception as exc:
        raise InternalError(f"{name} failed: {type(exc).__name__}: {exc}") from exc
