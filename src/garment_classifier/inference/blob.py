from __future__ import annotations

import json
from typing import Final

from ..errors import ModelCorrupt, ModelVersionMismatch
from .forest import DEFAULT_MAX_DEPTH, ClassifierModel, DecisionTree

FORMAT_VERSION: Final[int] = 1

_TREE_KEYS: Final[tuple[str, ...]] = (
    "featureIndices",
    "thresholds",
    "leftChildren",
    "rightChildren",
    "leafDistributions",
)
_INT_KEYS: Final[tuple[str, ...]] = ("featureIndices", "leftChildren", "rightChildren")


def load(blob: bytes | str, *, max_depth: int = DEFAULT_MAX_DEPTH) -> ClassifierModel:
    """Parse a serialized forest.

    The blob is a JSON object ``{formatVersion, classNames, trees}`` where each
    tree holds the five parallel node arrays. Raises
    :class:`ModelVersionMismatch` for an unexpected ``formatVersion`` and
    :class:`ModelCorrupt` for anything structurally wrong.
    """
    try:
        obj: object = json.loads(blob)
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ModelCorrupt(f"model blob is not valid JSON: {exc}") from None
    if not isinstance(obj, dict):
        raise ModelCorrupt("model blob must be a JSON object")

    version = obj.get("formatVersion")
    if not isinstance(version, int) or isinstance(version, bool):
        raise ModelVersionMismatch("model blob has no integer formatVersion")
    if version != FORMAT_VERSION:
        raise ModelVersionMismatch(
            f"model blob formatVersion {version} is not supported (expected {FORMAT_VERSION})"
        )

    names = obj.get("classNames")
    if not isinstance(names, list) or not all(isinstance(n, str) for n in names):
        raise ModelCorrupt("classNames must be a list of strings")
    trees_raw = obj.get("trees")
    if not isinstance(trees_raw, list):
        raise ModelCorrupt("trees must be a list")

    trees = [_tree_from_dict(i, t) for i, t in enumerate(trees_raw)]
    return ClassifierModel(trees, names, max_depth=max_depth)


def dumps(model: ClassifierModel) -> bytes:
    payload = {
        "formatVersion": FORMAT_VERSION,
        "classNames": list(model.class_names),
        "trees": [_tree_to_dict(t) for t in model.trees],
    }
    return json.dumps(payload, separators=(",", ":")).encode("utf-8")


def _tree_from_dict(index: int, raw: object) -> DecisionTree:
    if not isinstance(raw, dict):
        raise ModelCorrupt(f"tree {index} must be a JSON object")
    missing = [k for k in _TREE_KEYS if not isinstance(raw.get(k), list)]
    if missing:
        raise ModelCorrupt(f"tree {index} is missing arrays: {', '.join(missing)}")
    for key in _INT_KEYS:
        if not all(isinstance(v, int) and not isinstance(v, bool) for v in raw[key]):
            raise ModelCorrupt(f"tree {index}: {key} must hold integers")
    try:
        return DecisionTree.from_lists(
            feature_indices=raw["featureIndices"],
            thresholds=raw["thresholds"],
            left_children=raw["leftChildren"],
            right_children=raw["rightChildren"],
            leaf_distributions=raw["leafDistributions"],
        )
    except ModelCorrupt as exc:
        raise ModelCorrupt(f"tree {index}: {exc.message}") from None


def _tree_to_dict(tree: DecisionTree) -> dict[str, object]:
    return {
        "featureIndices": tree.feature_indices.tolist(),
        "thresholds": tree.thresholds.tolist(),
        "leftChildren": tree.left_children.tolist(),
        "rightChildren": tree.right_children.tolist(),
        "leafDistributions": tree.leaf_distributions.tolist(),
    }
