from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Final, Literal

_DEFAULT_CONFIG_PATH: Final[Path] = Path("config/garment.toml")

Resample = Literal["box", "bilinear"]
_RESAMPLE_CHOICES: Final[tuple[str, ...]] = ("box", "bilinear")


@dataclass(frozen=True)
class AppConfig:
    threads: int = 0
    port: int = 8081


@dataclass(frozen=True)
class ClassifierConfig:
    model_dir: Path = Path("/data/garments/models")
    active_model: str = "fashion_mnist_forest_v1"
    max_depth: int = 64
    uncertain_threshold: float = 0.50
    max_image_mb: int = 5
    max_image_side_px: int = 4096
    predict_timeout_seconds: int = 5
    reload_interval_seconds: float = 0.0
    preview_max_kb: int = 16


@dataclass(frozen=True)
class PreprocessConfig:
    luma_weights: tuple[float, float, float] = (0.299, 0.587, 0.114)
    downscale: Resample = "box"
    upscale: Resample = "bilinear"


@dataclass(frozen=True)
class SecurityConfig:
    # Empty string disables the API key check
    api_key: str = ""


@dataclass(frozen=True)
class CorsConfig:
    allow_origins: tuple[str, ...] = field(default_factory=lambda: ("*",))


@dataclass(frozen=True)
class Settings:
    app: AppConfig = field(default_factory=AppConfig)
    classifier: ClassifierConfig = field(default_factory=ClassifierConfig)
    preprocess: PreprocessConfig = field(default_factory=PreprocessConfig)
    security: SecurityConfig = field(default_factory=SecurityConfig)
    cors: CorsConfig = field(default_factory=CorsConfig)

    @staticmethod
    def _toml_path() -> Path:
        env_val = os.getenv("GARMENT_CONFIG")
        if env_val:
            return Path(env_val)
        return _DEFAULT_CONFIG_PATH

    @classmethod
    def load(cls) -> Settings:
        # Env first, then TOML overrides when the file exists.
        base = cls(
            app=_load_app_from_env(),
            classifier=_load_classifier_from_env(),
            preprocess=_load_preprocess_from_env(),
            security=_load_security_from_env(),
            cors=_load_cors_from_env(),
        )
        cfg_path = cls._toml_path()
        if not cfg_path.exists():
            return base
        try:
            raw: object = tomllib.loads(cfg_path.read_text(encoding="utf-8"))
        except OSError as exc:
            raise RuntimeError(f"Failed to read config TOML: {cfg_path}") from exc
        except tomllib.TOMLDecodeError as exc:
            raise RuntimeError(f"Invalid TOML config: {cfg_path}") from exc
        return cls(
            app=_merge_app(base.app, _toml_table(raw, "app")),
            classifier=_merge_classifier(base.classifier, _toml_table(raw, "classifier")),
            preprocess=_merge_preprocess(base.preprocess, _toml_table(raw, "preprocess")),
            security=_merge_security(base.security, _toml_table(raw, "security")),
            cors=_merge_cors(base.cors, _toml_table(raw, "cors")),
        )


def _load_app_from_env() -> AppConfig:
    a = AppConfig()
    th = os.getenv("APP__THREADS")
    pt = os.getenv("APP__PORT")
    if th is not None and th.isdigit():
        a = replace(a, threads=int(th))
    if pt is not None and pt.isdigit():
        a = replace(a, port=_checked_port(int(pt), "APP__PORT"))
    return a


def _load_classifier_from_env() -> ClassifierConfig:
    c = ClassifierConfig()
    md = os.getenv("CLASSIFIER__MODEL_DIR")
    am = os.getenv("CLASSIFIER__ACTIVE_MODEL")
    depth = os.getenv("CLASSIFIER__MAX_DEPTH")
    ut = os.getenv("CLASSIFIER__UNCERTAIN_THRESHOLD")
    mb = os.getenv("CLASSIFIER__MAX_IMAGE_MB")
    mx = os.getenv("CLASSIFIER__MAX_IMAGE_SIDE_PX")
    to = os.getenv("CLASSIFIER__PREDICT_TIMEOUT_SECONDS")
    ri = os.getenv("CLASSIFIER__RELOAD_INTERVAL_SECONDS")
    pk = os.getenv("CLASSIFIER__PREVIEW_MAX_KB")
    if md:
        c = replace(c, model_dir=Path(md))
    if am:
        c = replace(c, active_model=am)
    if depth is not None:
        c = replace(c, max_depth=int(depth))
    if ut is not None:
        c = replace(c, uncertain_threshold=float(ut))
    if mb is not None:
        c = replace(c, max_image_mb=int(mb))
    if mx is not None:
        c = replace(c, max_image_side_px=int(mx))
    if to is not None:
        c = replace(c, predict_timeout_seconds=int(to))
    if ri is not None:
        c = replace(c, reload_interval_seconds=float(ri))
    if pk is not None:
        c = replace(c, preview_max_kb=int(pk))
    return c


def _load_preprocess_from_env() -> PreprocessConfig:
    p = PreprocessConfig()
    luma = os.getenv("PREPROCESS__LUMA_WEIGHTS")
    down = os.getenv("PREPROCESS__DOWNSCALE")
    up = os.getenv("PREPROCESS__UPSCALE")
    if luma:
        p = replace(p, luma_weights=_parse_luma(luma.split(",")))
    if down:
        p = replace(p, downscale=_parse_resample(down, "PREPROCESS__DOWNSCALE"))
    if up:
        p = replace(p, upscale=_parse_resample(up, "PREPROCESS__UPSCALE"))
    return p


def _load_security_from_env() -> SecurityConfig:
    s = SecurityConfig()
    key = os.getenv("SECURITY__API_KEY")
    if key is not None:
        s = replace(s, api_key=key)
    return s


def _load_cors_from_env() -> CorsConfig:
    c = CorsConfig()
    origins = os.getenv("CORS__ALLOW_ORIGINS")
    if origins is not None:
        c = replace(c, allow_origins=_split_origins(origins))
    return c


def _merge_app(base: AppConfig, data: dict[str, object]) -> AppConfig:
    out = base
    if "threads" in data:
        out = replace(out, threads=int(str(data["threads"])))
    if "port" in data:
        out = replace(out, port=_checked_port(int(str(data["port"])), "port"))
    return out


def _merge_classifier(base: ClassifierConfig, data: dict[str, object]) -> ClassifierConfig:
    out = base
    if "model_dir" in data:
        out = replace(out, model_dir=Path(str(data["model_dir"])))
    if "active_model" in data:
        out = replace(out, active_model=str(data["active_model"]))
    if "max_depth" in data:
        out = replace(out, max_depth=int(str(data["max_depth"])))
    if "uncertain_threshold" in data:
        out = replace(out, uncertain_threshold=float(str(data["uncertain_threshold"])))
    if "max_image_mb" in data:
        out = replace(out, max_image_mb=int(str(data["max_image_mb"])))
    if "max_image_side_px" in data:
        out = replace(out, max_image_side_px=int(str(data["max_image_side_px"])))
    if "predict_timeout_seconds" in data:
        out = replace(out, predict_timeout_seconds=int(str(data["predict_timeout_seconds"])))
    if "reload_interval_seconds" in data:
        out = replace(out, reload_interval_seconds=float(str(data["reload_interval_seconds"])))
    if "preview_max_kb" in data:
        out = replace(out, preview_max_kb=int(str(data["preview_max_kb"])))
    return out


def _merge_preprocess(base: PreprocessConfig, data: dict[str, object]) -> PreprocessConfig:
    out = base
    if "luma_weights" in data:
        raw = data["luma_weights"]
        parts = raw if isinstance(raw, list) else str(raw).split(",")
        out = replace(out, luma_weights=_parse_luma([str(v) for v in parts]))
    if "downscale" in data:
        out = replace(out, downscale=_parse_resample(str(data["downscale"]), "downscale"))
    if "upscale" in data:
        out = replace(out, upscale=_parse_resample(str(data["upscale"]), "upscale"))
    return out


def _merge_security(base: SecurityConfig, data: dict[str, object]) -> SecurityConfig:
    out = base
    api_key_val = data.get("api_key")
    if isinstance(api_key_val, str):
        out = replace(out, api_key=api_key_val)
    enabled = data.get("api_key_enabled")
    if isinstance(enabled, bool) and not enabled:
        out = replace(out, api_key="")
    return out


def _merge_cors(base: CorsConfig, data: dict[str, object]) -> CorsConfig:
    if "allow_origins" not in data:
        return base
    raw = data["allow_origins"]
    if isinstance(raw, list):
        return replace(base, allow_origins=tuple(str(o).strip() for o in raw if str(o).strip()))
    return replace(base, allow_origins=_split_origins(str(raw)))


def _toml_table(raw: object, key: str) -> dict[str, object]:
    if isinstance(raw, dict):
        tab: object = raw.get(key, {})
        if isinstance(tab, dict):
            return {str(k): v for k, v in tab.items()}
    return {}


def _checked_port(port: int, name: str) -> int:
    if not (1 <= port <= 65535):
        raise RuntimeError(f"{name} out of range")
    return port


def _parse_luma(parts: list[str]) -> tuple[float, float, float]:
    vals = [float(p.strip()) for p in parts if p.strip()]
    if len(vals) != 3:
        raise RuntimeError("luma_weights needs exactly three values")
    if any(v < 0.0 for v in vals) or sum(vals) <= 0.0:
        raise RuntimeError("luma_weights must be non-negative with a positive sum")
    return (vals[0], vals[1], vals[2])


def _parse_resample(value: str, name: str) -> Resample:
    v = value.strip().lower()
    if v == "box":
        return "box"
    if v == "bilinear":
        return "bilinear"
    raise RuntimeError(f"{name} must be one of {', '.join(_RESAMPLE_CHOICES)}")


def _split_origins(value: str) -> tuple[str, ...]:
    return tuple(o.strip() for o in value.split(",") if o.strip())


@dataclass(frozen=True)
class Limits:
    max_bytes: int
    max_side_px: int

    @staticmethod
    def from_settings(s: Settings) -> Limits:
        return Limits(
            max_bytes=int(s.classifier.max_image_mb) * 1024 * 1024,
            max_side_px=int(s.classifier.max_image_side_px),
        )
