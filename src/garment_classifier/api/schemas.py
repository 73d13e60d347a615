from __future__ import annotations

from pydantic.dataclasses import dataclass as pydantic_dataclass


@pydantic_dataclass(frozen=True)
class ClassifyResponse:
    predicted_class: str
    class_index: int
    confidence: float
    probabilities: dict[str, float]
    model_id: str
    uncertain: bool
    latency_ms: int
    preview_png_b64: str | None
