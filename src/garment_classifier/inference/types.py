from __future__ import annotations

from dataclasses import dataclass
from typing import Final

import torch
from torch import Tensor

from ..errors import InternalError

FEATURE_SIDE: Final[int] = 28
FEATURE_LENGTH: Final[int] = FEATURE_SIDE * FEATURE_SIDE
N_CLASSES: Final[int] = 10

FASHION_MNIST_CLASSES: Final[tuple[str, ...]] = (
    "T-shirt/top",
    "Trouser",
    "Pullover",
    "Dress",
    "Coat",
    "Sandal",
    "Shirt",
    "Sneaker",
    "Bag",
    "Ankle boot",
)


@dataclass(frozen=True)
class RawImage:
    """Decoded pixels: row-major, channels interleaved, one byte per sample."""

    width: int
    height: int
    channels: int
    samples: bytes

    def __post_init__(self) -> None:
        if self.channels not in (1, 3, 4):
            raise ValueError(f"unsupported channel count {self.channels}")
        expected = self.width * self.height * self.channels
        if len(self.samples) != expected:
            raise ValueError(f"expected {expected} samples, got {len(self.samples)}")


@dataclass(frozen=True)
class FeatureVector:
    values: Tensor  # float32, shape (784,), each value in [0, 1]

    def __post_init__(self) -> None:
        v = self.values
        if v.ndim != 1 or int(v.shape[0]) != FEATURE_LENGTH:
            raise InternalError(
                f"feature vector must have shape ({FEATURE_LENGTH},), got {tuple(v.shape)}"
            )
        if v.dtype != torch.float32:
            raise InternalError(f"feature vector must be float32, got {v.dtype}")

    @staticmethod
    def zeros() -> FeatureVector:
        return FeatureVector(values=torch.zeros(FEATURE_LENGTH, dtype=torch.float32))

    def as_grid(self) -> Tensor:
        return self.values.reshape(FEATURE_SIDE, FEATURE_SIDE)


@dataclass(frozen=True)
class PredictionResult:
    predicted_class: str
    class_index: int
    confidence: float
    probabilities: tuple[float, ...]  # one entry per class, sums to 1
    class_names: tuple[str, ...]

    def breakdown(self) -> dict[str, float]:
        return dict(zip(self.class_names, self.probabilities, strict=True))

    def to_dict(self) -> dict[str, object]:
        return {
            "predicted_class": self.predicted_class,
            "confidence": self.confidence,
            "probabilities": list(self.probabilities),
        }


@dataclass(frozen=True)
class ClassifyOutput:
    result: PredictionResult
    features: FeatureVector
    model_id: str
