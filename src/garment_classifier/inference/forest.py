from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Final

import torch
from torch import Tensor

from ..errors import ModelCorrupt
from .types import FEATURE_LENGTH, N_CLASSES, FeatureVector, PredictionResult

LEAF: Final[int] = -1
DEFAULT_MAX_DEPTH: Final[int] = 64


@dataclass(frozen=True)
class DecisionTree:
    """One tree as parallel arrays indexed by node id; the root is node 0.

    A node whose children are both ``LEAF`` is a leaf and votes with its row
    of ``leaf_distributions``. Internal nodes send a sample left when
    ``x[feature_index] <= threshold``.
    """

    feature_indices: Tensor  # int64 (n,)
    thresholds: Tensor  # float64 (n,)
    left_children: Tensor  # int64 (n,)
    right_children: Tensor  # int64 (n,)
    leaf_distributions: Tensor  # float64 (n, n_classes)

    @staticmethod
    def from_lists(
        feature_indices: Sequence[int],
        thresholds: Sequence[float],
        left_children: Sequence[int],
        right_children: Sequence[int],
        leaf_distributions: Sequence[Sequence[float]],
    ) -> DecisionTree:
        try:
            return DecisionTree(
                feature_indices=torch.tensor(list(feature_indices), dtype=torch.int64),
                thresholds=torch.tensor(list(thresholds), dtype=torch.float64),
                left_children=torch.tensor(list(left_children), dtype=torch.int64),
                right_children=torch.tensor(list(right_children), dtype=torch.int64),
                leaf_distributions=torch.tensor(
                    [list(row) for row in leaf_distributions], dtype=torch.float64
                ),
            )
        except (TypeError, ValueError, RuntimeError, OverflowError) as exc:
            raise ModelCorrupt(f"tree arrays are malformed: {exc}") from None

    @property
    def n_nodes(self) -> int:
        return int(self.left_children.shape[0])

    def is_leaf(self) -> Tensor:
        return (self.left_children == LEAF) & (self.right_children == LEAF)

    def validate(self, n_features: int, n_classes: int, max_depth: int) -> int:
        """Check structural invariants and return the tree depth.

        Raises :class:`ModelCorrupt` on the first violation found.
        """
        if self.left_children.ndim != 1:
            raise ModelCorrupt("leftChildren must be a flat array")
        n = self.n_nodes
        if n == 0:
            raise ModelCorrupt("tree has no nodes")
        for name, arr in (
            ("featureIndices", self.feature_indices),
            ("thresholds", self.thresholds),
            ("rightChildren", self.right_children),
        ):
            if arr.ndim != 1 or int(arr.shape[0]) != n:
                raise ModelCorrupt(f"{name} length does not match leftChildren ({n})")
        dist = self.leaf_distributions
        if dist.ndim != 2 or tuple(dist.shape) != (n, n_classes):
            raise ModelCorrupt(f"leafDistributions must have shape ({n}, {n_classes})")
        if not bool(torch.isfinite(dist).all()) or bool((dist < 0).any()):
            raise ModelCorrupt("leafDistributions must be finite and non-negative")

        left, right = self.left_children, self.right_children
        leaf = self.is_leaf()
        internal = ~leaf
        if bool(((left == LEAF) ^ (right == LEAF)).any()):
            raise ModelCorrupt("internal node with a single child")
        ids = torch.arange(n, dtype=torch.int64)
        # Children must point forward, which also rules out cycles.
        for name, child in (("left", left), ("right", right)):
            bad = internal & ((child <= ids) | (child >= n))
            if bool(bad.any()):
                node = int(torch.nonzero(bad)[0])
                raise ModelCorrupt(f"node {node} has out-of-range {name} child {int(child[node])}")
        feats = self.feature_indices[internal]
        if bool(((feats < 0) | (feats >= n_features)).any()):
            raise ModelCorrupt(f"feature index outside [0, {n_features})")
        if not bool(torch.isfinite(self.thresholds[internal]).all()):
            raise ModelCorrupt("thresholds must be finite")
        if bool((dist[leaf].sum(dim=1) <= 0).any()):
            raise ModelCorrupt("leaf with an empty class distribution")

        parents = torch.bincount(torch.cat((left[internal], right[internal])), minlength=n)
        if int(parents[0]) != 0 or bool((parents[1:] != 1).any()):
            raise ModelCorrupt("nodes must form a single tree rooted at node 0")

        depth = [0] * n
        lefts = left.tolist()
        rights = right.tolist()
        deepest = 0
        for i in range(n):
            if lefts[i] == LEAF:
                continue
            d = depth[i] + 1
            depth[lefts[i]] = d
            depth[rights[i]] = d
            deepest = max(deepest, d)
        if deepest > max_depth:
            raise ModelCorrupt(f"tree depth {deepest} exceeds configured maximum {max_depth}")
        return deepest


class ClassifierModel:
    """Immutable random-forest classifier over 784-length feature vectors.

    The trees are stacked into padded ``(n_trees, max_nodes)`` tensors so one
    prediction walks every tree at once, one level per step. Leaves (and
    padding) point at themselves, so after ``depth`` steps every tree sits on
    its leaf. Instances are never mutated after construction and may be shared
    freely between threads.
    """

    def __init__(
        self,
        trees: Sequence[DecisionTree],
        class_names: Sequence[str],
        *,
        max_depth: int = DEFAULT_MAX_DEPTH,
    ) -> None:
        names = tuple(str(c) for c in class_names)
        if len(names) != N_CLASSES:
            raise ModelCorrupt(f"expected {N_CLASSES} class names, got {len(names)}")
        if len(set(names)) != len(names):
            raise ModelCorrupt("class names must be unique")
        if not trees:
            raise ModelCorrupt("forest has no trees")
        depths: list[int] = []
        for k, t in enumerate(trees):
            try:
                depths.append(t.validate(FEATURE_LENGTH, N_CLASSES, max_depth))
            except ModelCorrupt as exc:
                raise ModelCorrupt(f"tree {k}: {exc.message}") from None

        self._trees: tuple[DecisionTree, ...] = tuple(trees)
        self._class_names = names
        self._depth = max(depths)

        n_trees = len(trees)
        width = max(t.n_nodes for t in trees)
        self._rows = torch.arange(n_trees, dtype=torch.int64)
        self_ids = torch.arange(width, dtype=torch.int64).repeat(n_trees, 1)
        self._feature = torch.zeros((n_trees, width), dtype=torch.int64)
        self._threshold = torch.zeros((n_trees, width), dtype=torch.float64)
        self._left = self_ids.clone()
        self._right = self_ids.clone()
        self._votes = torch.zeros((n_trees, width, N_CLASSES), dtype=torch.float64)
        for k, t in enumerate(trees):
            n = t.n_nodes
            internal = ~t.is_leaf()
            own = torch.arange(n, dtype=torch.int64)
            self._feature[k, :n] = torch.where(internal, t.feature_indices, 0)
            self._threshold[k, :n] = t.thresholds
            self._left[k, :n] = torch.where(internal, t.left_children, own)
            self._right[k, :n] = torch.where(internal, t.right_children, own)
            self._votes[k, :n] = t.leaf_distributions

    @property
    def trees(self) -> tuple[DecisionTree, ...]:
        return self._trees

    @property
    def class_names(self) -> tuple[str, ...]:
        return self._class_names

    @property
    def n_trees(self) -> int:
        return len(self._trees)

    @property
    def depth(self) -> int:
        return self._depth

    def leaves(self, features: FeatureVector) -> Tensor:
        """Leaf node id reached in each tree, shape ``(n_trees,)``."""
        x = features.values.to(torch.float64)
        rows = self._rows
        node = torch.zeros(rows.shape[0], dtype=torch.int64)
        for _ in range(self._depth):
            go_left = x[self._feature[rows, node]] <= self._threshold[rows, node]
            node = torch.where(go_left, self._left[rows, node], self._right[rows, node])
        return node

    def predict(self, features: FeatureVector) -> PredictionResult:
        votes = self._votes[self._rows, self.leaves(features)].sum(dim=0).tolist()
        total = float(sum(votes))
        probs = tuple(float(v) / total for v in votes)
        # First maximum wins: ties resolve to the lowest class index.
        top = 0
        for i in range(1, len(probs)):
            if probs[i] > probs[top]:
                top = i
        return PredictionResult(
            predicted_class=self._class_names[top],
            class_index=top,
            confidence=probs[top],
            probabilities=probs,
            class_names=self._class_names,
        )
