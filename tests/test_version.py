from __future__ import annotations

from importlib.metadata import PackageNotFoundError

import pytest

import garment_classifier.version as version_mod
from garment_classifier.version import get_version


def test_version_reads_build_metadata(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(version_mod, "version", lambda _: "9.9.9")
    monkeypatch.setenv("BUILD_ID", "b-17")
    monkeypatch.delenv("GIT_COMMIT", raising=False)
    monkeypatch.setenv("COMMIT_SHA", "abc123")
    v = get_version()
    assert v.service == "garment-classifier"
    assert v.version == "9.9.9"
    assert v.build == "b-17" and v.commit == "abc123"


def test_missing_distribution_raises(monkeypatch: pytest.MonkeyPatch) -> None:
    def _missing(name: str) -> str:
        raise PackageNotFoundError(name)

    monkeypatch.setattr(version_mod, "version", _missing)
    with pytest.raises(RuntimeError):
        get_version()
