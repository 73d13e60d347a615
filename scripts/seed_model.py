from __future__ import annotations

import argparse
import logging
import shutil
from dataclasses import dataclass
from pathlib import Path

from garment_classifier.inference.engine import FOREST_FILE, MANIFEST_FILE


@dataclass(frozen=True)
class SeedArgs:
    model_id: str
    from_dir: Path
    to_dir: Path


def parse_args(argv: list[str] | None = None) -> SeedArgs:
    ap = argparse.ArgumentParser(description="Copy an exported forest into the seed directory")
    ap.add_argument("--model-id", required=True, help="Model id folder name")
    ap.add_argument("--from-dir", default="./artifacts/garments/models", help="Source models root")
    ap.add_argument("--to-dir", default="./seed/garments/models", help="Destination seed root")
    a = ap.parse_args(argv)
    return SeedArgs(
        model_id=str(a.model_id),
        from_dir=Path(str(a.from_dir)),
        to_dir=Path(str(a.to_dir)),
    )


def copy_model(args: SeedArgs) -> None:
    src = args.from_dir / args.model_id
    dst = args.to_dir / args.model_id
    src_forest = src / FOREST_FILE
    src_manifest = src / MANIFEST_FILE
    if not (src_forest.exists() and src_manifest.exists()):
        raise SystemExit(
            f"Source files not found: {src_forest.as_posix()} and {src_manifest.as_posix()}"
        )
    dst.mkdir(parents=True, exist_ok=True)
    shutil.copy2(src_forest, dst / FOREST_FILE)
    shutil.copy2(src_manifest, dst / MANIFEST_FILE)
    logging.getLogger("garment_classifier").info(
        "seed_model_copied model_id=%s src=%s dst=%s",
        args.model_id,
        src.as_posix(),
        dst.as_posix(),
    )


def main() -> None:  # pragma: no cover - tiny glue
    from garment_classifier.logging import init_logging

    init_logging()
    args = parse_args()
    copy_model(args)


if __name__ == "__main__":
    main()
