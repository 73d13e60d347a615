from __future__ import annotations

import json
import logging
import os
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Final

import torch

from ..config import PreprocessConfig, Settings
from ..errors import CoreError, ModelVersionMismatch
from ..logging import log_event
from ..preprocess import preprocess_signature
from ..service import PredictionService
from . import blob
from .forest import ClassifierModel
from .manifest import FOREST_ARCH, SCHEMA_VERSION, ModelManifest
from .types import ClassifyOutput

MANIFEST_FILE: Final[str] = "manifest.json"
FOREST_FILE: Final[str] = "forest.json"


class ModelNotLoaded(RuntimeError):
    pass


@dataclass(frozen=True)
class ModelSnapshot:
    """Everything a request needs from one model version.

    Requests grab the engine's current snapshot once and keep using it even if
    a reload swaps in a newer one mid-flight.
    """

    manifest: ModelManifest
    service: PredictionService
    artifacts_dir: Path
    manifest_mtime: float | None
    forest_mtime: float | None

    @property
    def model_id(self) -> str:
        return self.manifest.model_id


def load_artifact(artifacts_dir: Path, settings: Settings) -> ModelSnapshot:
    """Read ``manifest.json`` + ``forest.json`` from ``artifacts_dir``.

    Raises ``FileNotFoundError`` when either file is absent,
    :class:`ModelCorrupt` or :class:`ModelVersionMismatch` when they do not
    describe a usable forest for the configured preprocessing.
    """
    manifest_path = artifacts_dir / MANIFEST_FILE
    forest_path = artifacts_dir / FOREST_FILE
    for p in (manifest_path, forest_path):
        if not p.is_file():
            raise FileNotFoundError(f"model artifact missing: {p.as_posix()}")
    manifest = ModelManifest.from_path(manifest_path)
    expected_sig = preprocess_signature(settings.preprocess)
    if manifest.preprocess_hash != expected_sig:
        raise ModelVersionMismatch(
            f"model was built for preprocessing {manifest.preprocess_hash!r}, "
            f"service runs {expected_sig!r}"
        )
    model = blob.load(forest_path.read_bytes(), max_depth=settings.classifier.max_depth)
    if model.n_trees != manifest.n_trees:
        raise ModelVersionMismatch(
            f"manifest lists {manifest.n_trees} trees, forest has {model.n_trees}"
        )
    if len(model.class_names) != manifest.n_classes:
        raise ModelVersionMismatch(
            f"manifest lists {manifest.n_classes} classes, forest has {len(model.class_names)}"
        )
    m1, m2 = _mtimes(manifest_path, forest_path)
    return ModelSnapshot(
        manifest=manifest,
        service=PredictionService(model=model, options=settings.preprocess),
        artifacts_dir=artifacts_dir,
        manifest_mtime=m1,
        forest_mtime=m2,
    )


def save_artifact(
    model: ClassifierModel,
    artifacts_dir: Path,
    *,
    model_id: str,
    version: str,
    preprocess: PreprocessConfig,
    val_acc: float = 0.0,
) -> ModelManifest:
    """Write ``forest.json`` then ``manifest.json`` into ``artifacts_dir``.

    Each file is written to a temporary sibling and renamed into place, so a
    concurrent reader sees either the old file or the new one.
    """
    manifest = ModelManifest(
        schema_version=SCHEMA_VERSION,
        model_id=model_id,
        arch=FOREST_ARCH,
        n_classes=len(model.class_names),
        n_trees=model.n_trees,
        max_depth=model.depth,
        version=version,
        created_at=datetime.now(UTC),
        preprocess_hash=preprocess_signature(preprocess),
        val_acc=val_acc,
    )
    artifacts_dir.mkdir(parents=True, exist_ok=True)
    _write_atomic(artifacts_dir / FOREST_FILE, blob.dumps(model))
    _write_atomic(
        artifacts_dir / MANIFEST_FILE,
        json.dumps(manifest.to_dict(), indent=2).encode("utf-8"),
    )
    return manifest


def _write_atomic(path: Path, data: bytes) -> None:
    tmp = path.with_name(f".{path.name}.tmp")
    tmp.write_bytes(data)
    os.replace(tmp, path)


class InferenceEngine:
    """Bounded thread-pool front end over the active model snapshot."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._pool = _make_pool(settings)
        self._reload_lock = threading.Lock()
        self._snapshot: ModelSnapshot | None = None
        self._failed_mtimes: tuple[float, float] | None = None
        torch.set_num_threads(1)

    @property
    def ready(self) -> bool:
        return self._snapshot is not None

    @property
    def snapshot(self) -> ModelSnapshot | None:
        return self._snapshot

    @property
    def manifest(self) -> ModelManifest | None:
        snap = self._snapshot
        return snap.manifest if snap is not None else None

    @property
    def model_id(self) -> str | None:
        snap = self._snapshot
        return snap.model_id if snap is not None else None

    def active_dir(self) -> Path:
        c = self._settings.classifier
        return c.model_dir / c.active_model

    def install(self, snapshot: ModelSnapshot) -> None:
        with self._reload_lock:
            self._snapshot = snapshot
            self._failed_mtimes = None

    def load_active(self) -> ModelSnapshot:
        """Load the configured artifact; any failure propagates to the caller."""
        snap = load_artifact(self.active_dir(), self._settings)
        self.install(snap)
        log_event(
            "model_loaded",
            {"model_id": snap.model_id, "n_trees": snap.manifest.n_trees},
        )
        return snap

    def submit_classify(self, raw: bytes) -> Future[ClassifyOutput]:
        snap = self._snapshot
        if snap is None:
            raise ModelNotLoaded("Model not loaded")
        return self._pool.submit(_classify, snap, raw)

    def classify(self, raw: bytes) -> ClassifyOutput:
        return self.submit_classify(raw).result()

    def reload_if_changed(self) -> bool:
        """Swap in a fresh snapshot when the artifact files changed on disk.

        Returns True only when a new snapshot was installed. A failed reload
        keeps the current snapshot serving and is not retried until the files
        change again.
        """
        snap = self._snapshot
        if snap is None or snap.manifest_mtime is None or snap.forest_mtime is None:
            return False
        current = _mtimes(snap.artifacts_dir / MANIFEST_FILE, snap.artifacts_dir / FOREST_FILE)
        if current[0] is None or current[1] is None:
            return False
        m1, m2 = current[0], current[1]
        if m1 <= snap.manifest_mtime and m2 <= snap.forest_mtime:
            return False
        if self._failed_mtimes == (m1, m2):
            return False
        with self._reload_lock:
            try:
                fresh = load_artifact(snap.artifacts_dir, self._settings)
            except (CoreError, OSError) as exc:
                self._failed_mtimes = (m1, m2)
                kind = exc.kind if isinstance(exc, CoreError) else type(exc).__name__
                log_event(
                    "model_reload_failed",
                    {"model_id": snap.model_id, "kind": kind},
                    level=logging.WARNING,
                )
                return False
            self._snapshot = fresh
            self._failed_mtimes = None
        log_event(
            "model_reloaded",
            {"model_id": fresh.model_id, "n_trees": fresh.manifest.n_trees},
        )
        return True

    def close(self) -> None:
        self._pool.shutdown(wait=False, cancel_futures=True)


def _classify(snap: ModelSnapshot, raw: bytes) -> ClassifyOutput:
    features, result = snap.service.classify_detailed(raw)
    return ClassifyOutput(result=result, features=features, model_id=snap.model_id)


def _mtimes(manifest_path: Path, forest_path: Path) -> tuple[float | None, float | None]:
    try:
        return manifest_path.stat().st_mtime, forest_path.stat().st_mtime
    except OSError:
        # Hot reload is disabled for this snapshot when mtimes are unreadable.
        return None, None


def _make_pool(settings: Settings) -> ThreadPoolExecutor:
    if settings.app.threads == 0:
        size = min(8, os.cpu_count() or 1)
    else:
        size = settings.app.threads
    return ThreadPoolExecutor(max_workers=size, thread_name_prefix="classify")
