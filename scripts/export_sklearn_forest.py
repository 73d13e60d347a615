from __future__ import annotations

import argparse
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

import torch
from torch import Tensor

from garment_classifier.config import PreprocessConfig
from garment_classifier.inference.engine import save_artifact
from garment_classifier.inference.forest import LEAF, ClassifierModel, DecisionTree
from garment_classifier.inference.manifest import ModelManifest
from garment_classifier.inference.types import FASHION_MNIST_CLASSES, FEATURE_LENGTH


class SklearnTreeArrays(Protocol):
    """The parts of ``sklearn.tree._tree.Tree`` the export reads."""

    feature: object
    threshold: object
    children_left: object
    children_right: object
    value: object
    weighted_n_node_samples: object


class SklearnEstimator(Protocol):
    tree_: SklearnTreeArrays


class SklearnForest(Protocol):
    estimators_: list[SklearnEstimator]
    classes_: object
    n_features_in_: int


@dataclass(frozen=True)
class ExportArgs:
    pickle_path: Path
    out_dir: Path
    model_id: str
    version: str
    val_acc: float


def parse_args(argv: list[str] | None = None) -> ExportArgs:
    ap = argparse.ArgumentParser(
        description="Convert a pickled scikit-learn RandomForestClassifier into a forest artifact"
    )
    ap.add_argument("--pickle", required=True, help="joblib/pickle file holding the forest")
    ap.add_argument("--out-dir", default="./artifacts/garments/models", help="Models root")
    ap.add_argument("--model-id", default="fashion_mnist_forest_v1", help="Model id folder name")
    ap.add_argument("--version", default="1.0.0", help="Version recorded in the manifest")
    ap.add_argument("--val-acc", type=float, default=0.0, help="Validation accuracy in [0,1]")
    a = ap.parse_args(argv)
    return ExportArgs(
        pickle_path=Path(str(a.pickle)),
        out_dir=Path(str(a.out_dir)),
        model_id=str(a.model_id),
        version=str(a.version),
        val_acc=float(a.val_acc),
    )


def class_names_for(classes: object) -> tuple[str, ...]:
    """Map the estimator's ``classes_`` onto display names.

    Integer labels 0..9 become the Fashion-MNIST names; anything else is used
    as-is after ``str()``.
    """
    labels = list(classes)  # type: ignore[call-overload]
    if len(labels) != len(FASHION_MNIST_CLASSES):
        raise SystemExit(
            f"forest has {len(labels)} classes, expected {len(FASHION_MNIST_CLASSES)}"
        )
    try:
        as_ints = [int(x) for x in labels]
    except (TypeError, ValueError):
        return tuple(str(x) for x in labels)
    if as_ints == list(range(len(FASHION_MNIST_CLASSES))):
        return FASHION_MNIST_CLASSES
    return tuple(str(x) for x in labels)


def tree_from_sklearn(tree: SklearnTreeArrays) -> DecisionTree:
    """Convert one fitted sklearn tree into flat forest arrays.

    Depending on the sklearn release ``value`` holds either class counts or
    per-node fractions; both are rescaled to weighted sample counts so that
    larger leaves carry more weight in the summed vote.
    """
    value = torch.as_tensor(tree.value, dtype=torch.float64)
    if value.ndim == 3:
        value = value[:, 0, :]
    weights = torch.as_tensor(tree.weighted_n_node_samples, dtype=torch.float64)
    totals = value.sum(dim=1, keepdim=True).clamp_min(torch.finfo(torch.float64).tiny)
    dist: Tensor = value / totals * weights.unsqueeze(1)
    left = torch.as_tensor(tree.children_left, dtype=torch.int64)
    right = torch.as_tensor(tree.children_right, dtype=torch.int64)
    leaf = left < 0
    # sklearn marks leaves with feature -2 and threshold -2.0.
    feature = torch.as_tensor(tree.feature, dtype=torch.int64).masked_fill(leaf, 0)
    threshold = torch.as_tensor(tree.threshold, dtype=torch.float64).masked_fill(leaf, 0.0)
    return DecisionTree(
        feature_indices=feature,
        thresholds=threshold,
        left_children=left.masked_fill(leaf, LEAF),
        right_children=right.masked_fill(leaf, LEAF),
        leaf_distributions=dist,
    )


def forest_from_sklearn(estimator: SklearnForest) -> ClassifierModel:
    n_features = int(estimator.n_features_in_)
    if n_features != FEATURE_LENGTH:
        raise SystemExit(f"forest expects {n_features} features, service produces {FEATURE_LENGTH}")
    names = class_names_for(estimator.classes_)
    trees = [tree_from_sklearn(est.tree_) for est in estimator.estimators_]
    return ClassifierModel(trees, names)


def export(args: ExportArgs, estimator: SklearnForest) -> ModelManifest:
    model = forest_from_sklearn(estimator)
    dst = args.out_dir / args.model_id
    manifest = save_artifact(
        model,
        dst,
        model_id=args.model_id,
        version=args.version,
        preprocess=PreprocessConfig(),
        val_acc=args.val_acc,
    )
    logging.getLogger("garment_classifier").info(
        "forest_exported model_id=%s n_trees=%d max_depth=%d dst=%s",
        manifest.model_id,
        manifest.n_trees,
        manifest.max_depth,
        dst.as_posix(),
    )
    return manifest


def main() -> None:  # pragma: no cover - tiny glue
    import joblib

    from garment_classifier.logging import init_logging

    init_logging()
    args = parse_args()
    estimator: SklearnForest = joblib.load(args.pickle_path)
    export(args, estimator)


if __name__ == "__main__":
    main()
