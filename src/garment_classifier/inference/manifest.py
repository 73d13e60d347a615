from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Final

from ..errors import ModelCorrupt, ModelVersionMismatch

SCHEMA_VERSION: Final[str] = "v1"
FOREST_ARCH: Final[str] = "random_forest"


@dataclass(frozen=True)
class ModelManifest:
    schema_version: str
    model_id: str
    arch: str
    n_classes: int
    n_trees: int
    max_depth: int
    version: str
    created_at: datetime
    preprocess_hash: str
    val_acc: float

    @staticmethod
    def from_path(path: Path) -> ModelManifest:
        try:
            text = path.read_bytes().decode("utf-8")
        except UnicodeDecodeError as exc:
            raise ModelCorrupt(f"manifest is not valid UTF-8: {exc}") from None
        return ModelManifest.from_json(text)

    @staticmethod
    def from_json(s: str) -> ModelManifest:
        try:
            obj: object = json.loads(s)
        except json.JSONDecodeError as exc:
            raise ModelCorrupt(f"manifest is not valid JSON: {exc}") from None
        if not isinstance(obj, dict):
            raise ModelCorrupt("manifest must be a JSON object")
        return ModelManifest.from_dict({str(k): v for k, v in obj.items()})

    @staticmethod
    def from_dict(d: dict[str, object]) -> ModelManifest:
        schema_version = str(d.get("schema_version", "")).strip()
        if schema_version != SCHEMA_VERSION:
            raise ModelVersionMismatch(
                f"unsupported manifest schema version {schema_version!r}"
            )
        try:
            created_at_str = str(d["created_at"]) if "created_at" in d else ""
            created = (
                datetime.fromisoformat(created_at_str) if created_at_str else datetime.now(UTC)
            )
            n_classes = int(str(d.get("n_classes", 10)))
            n_trees = int(str(d.get("n_trees", 0)))
            max_depth = int(str(d.get("max_depth", 0)))
            val_acc = float(str(d.get("val_acc", 0.0)))
        except ValueError as exc:
            raise ModelCorrupt(f"manifest field has the wrong type: {exc}") from None
        if n_classes < 2:
            raise ModelCorrupt("n_classes must be >= 2")
        if n_trees < 1:
            raise ModelCorrupt("n_trees must be >= 1")
        if max_depth < 0:
            raise ModelCorrupt("max_depth must be >= 0")
        if not (0.0 <= val_acc <= 1.0):
            raise ModelCorrupt("val_acc must be within [0,1]")
        model_id = str(d.get("model_id", "")).strip()
        arch = str(d.get("arch", "")).strip()
        version = str(d.get("version", "")).strip()
        preprocess_hash = str(d.get("preprocess_hash", "")).strip()
        if not model_id or not arch or not version or not preprocess_hash:
            raise ModelCorrupt("manifest is missing required fields")
        if arch != FOREST_ARCH:
            raise ModelVersionMismatch(f"unsupported model arch {arch!r}")
        return ModelManifest(
            schema_version=schema_version,
            model_id=model_id,
            arch=arch,
            n_classes=n_classes,
            n_trees=n_trees,
            max_depth=max_depth,
            version=version,
            created_at=created,
            preprocess_hash=preprocess_hash,
            val_acc=val_acc,
        )

    def to_dict(self) -> dict[str, object]:
        return {
            "schema_version": self.schema_version,
            "model_id": self.model_id,
            "arch": self.arch,
            "n_classes": self.n_classes,
            "n_trees": self.n_trees,
            "max_depth": self.max_depth,
            "version": self.version,
            "created_at": self.created_at.isoformat(),
            "preprocess_hash": self.preprocess_hash,
            "val_acc": self.val_acc,
        }
