from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path

import pytest
import torch
from scripts.export_sklearn_forest import (
    ExportArgs,
    class_names_for,
    export,
    forest_from_sklearn,
    parse_args,
    tree_from_sklearn,
)

from garment_classifier.config import Settings
from garment_classifier.inference.engine import load_artifact
from garment_classifier.inference.types import FASHION_MNIST_CLASSES, FEATURE_LENGTH, FeatureVector


@dataclass
class _Tree:
    feature: object
    threshold: object
    children_left: object
    children_right: object
    value: object
    weighted_n_node_samples: object


@dataclass
class _Estimator:
    tree_: _Tree


@dataclass
class _Forest:
    estimators_: list[_Estimator]
    classes_: object
    n_features_in_: int


def _stump_tree() -> _Tree:
    # Root splits on pixel 3 at 0.5; left leaf 6 samples (all class 2), right 2 (all class 5).
    value = torch.zeros((3, 1, 10), dtype=torch.float64)
    value[0, 0, 2] = 0.75
    value[0, 0, 5] = 0.25
    value[1, 0, 2] = 1.0
    value[2, 0, 5] = 1.0
    return _Tree(
        feature=torch.tensor([3, -2, -2]),
        threshold=torch.tensor([0.5, -2.0, -2.0], dtype=torch.float64),
        children_left=torch.tensor([1, -1, -1]),
        children_right=torch.tensor([2, -1, -1]),
        value=value,
        weighted_n_node_samples=torch.tensor([8.0, 6.0, 2.0], dtype=torch.float64),
    )


def test_tree_conversion_scales_fractions_to_counts() -> None:
    tree = tree_from_sklearn(_stump_tree())
    assert tree.left_children.tolist() == [1, -1, -1]
    assert tree.feature_indices.tolist() == [3, 0, 0]
    assert tree.thresholds.tolist() == [0.5, 0.0, 0.0]
    assert float(tree.leaf_distributions[1, 2]) == pytest.approx(6.0)
    assert float(tree.leaf_distributions[2, 5]) == pytest.approx(2.0)


def test_forest_conversion_and_prediction() -> None:
    fake = _Forest(
        estimators_=[_Estimator(_stump_tree()), _Estimator(_stump_tree())],
        classes_=list(range(10)),
        n_features_in_=FEATURE_LENGTH,
    )
    model = forest_from_sklearn(fake)
    assert model.class_names == FASHION_MNIST_CLASSES
    assert model.predict(FeatureVector.zeros()).predicted_class == "Pullover"
    bright = torch.zeros(FEATURE_LENGTH, dtype=torch.float32)
    bright[3] = 1.0
    assert model.predict(FeatureVector(values=bright)).predicted_class == "Sandal"


def test_class_names_and_feature_checks() -> None:
    assert class_names_for(list(range(10))) == FASHION_MNIST_CLASSES
    custom = [f"c{i}" for i in range(10)]
    assert class_names_for(custom) == tuple(custom)
    with pytest.raises(SystemExit):
        class_names_for([0, 1])
    wrong = _Forest(estimators_=[], classes_=list(range(10)), n_features_in_=100)
    with pytest.raises(SystemExit):
        forest_from_sklearn(wrong)


def test_export_writes_loadable_artifact(tmp_path: Path) -> None:
    fake = _Forest(
        estimators_=[_Estimator(_stump_tree())],
        classes_=list(range(10)),
        n_features_in_=FEATURE_LENGTH,
    )
    args = ExportArgs(
        pickle_path=tmp_path / "unused.joblib",
        out_dir=tmp_path / "models",
        model_id="rf_test",
        version="0.1.0",
        val_acc=0.5,
    )
    manifest = export(args, fake)
    assert manifest.n_trees == 1 and manifest.max_depth == 1
    on_disk = json.loads((tmp_path / "models/rf_test/manifest.json").read_text(encoding="utf-8"))
    assert on_disk["val_acc"] == 0.5
    snap = load_artifact(tmp_path / "models/rf_test", Settings())
    assert snap.service.model.n_trees == 1


def test_parse_args_defaults() -> None:
    args = parse_args(["--pickle", "rf.joblib"])
    assert args.pickle_path == Path("rf.joblib")
    assert args.model_id == "fashion_mnist_forest_v1"
    assert args.val_acc == 0.0


def test_real_sklearn_forest_matches_predict_proba_argmax(tmp_path: Path) -> None:
    ensemble = pytest.importorskip("sklearn.ensemble")
    gen = torch.Generator().manual_seed(0)
    x = torch.rand((200, FEATURE_LENGTH), generator=gen, dtype=torch.float32)
    y = (x[:, 0] * 10).floor().clamp(max=9).to(torch.int64)
    clf = ensemble.RandomForestClassifier(n_estimators=5, max_depth=6, random_state=0)
    clf.fit(x.numpy(), y.numpy())
    model = forest_from_sklearn(clf)
    for row in range(20):
        fv = FeatureVector(values=x[row].clone())
        got = model.predict(fv)
        leaves = clf.apply(x[row : row + 1].numpy())[0].tolist()
        assert model.leaves(fv).tolist() == leaves
        assert abs(sum(got.probabilities) - 1.0) < 1e-6
