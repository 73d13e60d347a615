from __future__ import annotations

from io import BytesIO
from pathlib import Path

from PIL import Image

from garment_classifier.config import (
    AppConfig,
    ClassifierConfig,
    PreprocessConfig,
    SecurityConfig,
    Settings,
)
from garment_classifier.inference.engine import save_artifact
from garment_classifier.inference.forest import ClassifierModel, DecisionTree
from garment_classifier.inference.types import FASHION_MNIST_CLASSES

# Row 14, column 14 of the 28x28 grid.
CENTER: int = 14 * 28 + 14


def _dist(**counts: float) -> list[float]:
    row = [0.0] * 10
    for k, v in counts.items():
        row[int(k[1:])] = v
    return row


def fixed_trees() -> list[DecisionTree]:
    """Three small trees with hand-computed votes.

    - all-black input: class 0 (T-shirt/top) with 7/8
    - all-white input: class 8 (Bag) with 5/10
    - black with a white centre pixel: class 1 (Trouser) with 5/9
    """
    t0 = DecisionTree.from_lists(
        feature_indices=[0, CENTER, 0, 0, 0],
        thresholds=[0.5, 0.5, 0.0, 0.0, 0.0],
        left_children=[1, 3, -1, -1, -1],
        right_children=[2, 4, -1, -1, -1],
        leaf_distributions=[_dist(), _dist(), _dist(c8=5), _dist(c0=4), _dist(c1=4)],
    )
    t1 = DecisionTree.from_lists(
        feature_indices=[0],
        thresholds=[0.0],
        left_children=[-1],
        right_children=[-1],
        leaf_distributions=[_dist(c0=1, c1=1)],
    )
    t2 = DecisionTree.from_lists(
        feature_indices=[CENTER, 0, 0],
        thresholds=[0.25, 0.0, 0.0],
        left_children=[1, -1, -1],
        right_children=[2, -1, -1],
        leaf_distributions=[_dist(), _dist(c0=2), _dist(c7=3)],
    )
    return [t0, t1, t2]


def fixed_forest() -> ClassifierModel:
    return ClassifierModel(fixed_trees(), FASHION_MNIST_CLASSES)


def single_leaf_forest(dist: list[float]) -> ClassifierModel:
    tree = DecisionTree.from_lists(
        feature_indices=[0],
        thresholds=[0.0],
        left_children=[-1],
        right_children=[-1],
        leaf_distributions=[dist],
    )
    return ClassifierModel([tree], FASHION_MNIST_CLASSES)


def png_bytes(mode: str = "L", size: tuple[int, int] = (28, 28), color: object = 0) -> bytes:
    img = Image.new(mode, size, color)  # type: ignore[arg-type]
    b = BytesIO()
    img.save(b, format="PNG")
    return b.getvalue()


def centre_dot_png() -> bytes:
    img = Image.new("L", (28, 28), 0)
    img.putpixel((14, 14), 255)
    b = BytesIO()
    img.save(b, format="PNG")
    return b.getvalue()


def make_settings(
    model_dir: Path,
    active_model: str = "forest_test",
    *,
    preprocess: PreprocessConfig | None = None,
    api_key: str = "",
    **classifier: object,
) -> Settings:
    cls_cfg = ClassifierConfig(model_dir=model_dir, active_model=active_model, **classifier)  # type: ignore[arg-type]
    return Settings(
        app=AppConfig(threads=2),
        classifier=cls_cfg,
        preprocess=preprocess or PreprocessConfig(),
        security=SecurityConfig(api_key=api_key),
    )


def write_model(
    model_dir: Path,
    active_model: str = "forest_test",
    *,
    model: ClassifierModel | None = None,
    preprocess: PreprocessConfig | None = None,
    version: str = "1.0.0",
) -> Path:
    dst = model_dir / active_model
    save_artifact(
        model or fixed_forest(),
        dst,
        model_id=active_model,
        version=version,
        preprocess=preprocess or PreprocessConfig(),
        val_acc=0.9,
    )
    return dst
