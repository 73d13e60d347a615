from __future__ import annotations

import asyncio
import base64
import io
import logging
import threading
import time
from collections.abc import AsyncIterator, Callable
from contextlib import AbstractAsyncContextManager, asynccontextmanager

from fastapi import Depends, FastAPI, Header, Request
from fastapi.params import Depends as DependsParamType
from fastapi.responses import JSONResponse
from PIL import Image, UnidentifiedImageError
from starlette.datastructures import FormData, UploadFile

from ..config import Limits, Settings
from ..errors import AppError, CoreError, ErrorCode, code_for, new_error, status_for
from ..inference.engine import InferenceEngine, ModelNotLoaded
from ..logging import get_logger, init_logging, log_event
from ..middleware import RequestIdMiddleware, api_key_dependency, install_cors
from ..preprocess import render_preview
from ..request_context import request_id_var
from ..version import get_version
from .schemas import ClassifyResponse

_UPLOAD_FIELDS: tuple[str, ...] = ("image", "file")


def _reloader_lifespan(
    engine: InferenceEngine, reload_interval_seconds: float
) -> Callable[[FastAPI], AbstractAsyncContextManager[None]]:
    """Lifespan that polls model artifacts while the app is serving.

    A non-positive interval disables polling; the engine pool is shut down on
    exit either way.
    """

    @asynccontextmanager
    async def _lifespan(_: FastAPI) -> AsyncIterator[None]:
        stop_evt = threading.Event()
        thread: threading.Thread | None = None
        if reload_interval_seconds > 0.0:

            def _loop() -> None:
                while not stop_evt.is_set():
                    try:
                        engine.reload_if_changed()
                    except Exception as exc:
                        log_event(
                            "model_reload_failed",
                            {"model_id": engine.model_id or "", "kind": type(exc).__name__},
                            level=logging.ERROR,
                        )
                    stop_evt.wait(reload_interval_seconds)

            thread = threading.Thread(target=_loop, name="model-reloader", daemon=True)
            thread.start()
        try:
            yield
        finally:
            stop_evt.set()
            if thread is not None:
                thread.join(timeout=1.0)
            engine.close()

    return _lifespan


async def _handle_app_error(_: Request, exc: Exception) -> JSONResponse:
    rid = request_id_var.get()
    if not isinstance(exc, AppError):
        body = new_error(ErrorCode.internal_error, rid)
        return JSONResponse(status_code=500, content=body.to_dict())
    body = new_error(exc.code, rid, message=exc.message)
    return JSONResponse(status_code=exc.http_status, content=body.to_dict())


async def _handle_core_error(_: Request, exc: Exception) -> JSONResponse:
    rid = request_id_var.get()
    if not isinstance(exc, CoreError):
        body = new_error(ErrorCode.internal_error, rid)
        return JSONResponse(status_code=500, content=body.to_dict())
    code = code_for(exc)
    level = logging.ERROR if code is ErrorCode.internal_error else logging.INFO
    log_event("classify_failed", {"kind": exc.kind}, level=level)
    body = new_error(code, rid, message=exc.message)
    return JSONResponse(status_code=status_for(code), content=body.to_dict())


async def _handle_unexpected(_: Request, exc: Exception) -> JSONResponse:
    get_logger().error("unhandled_exception type=%s", type(exc).__name__, exc_info=exc)
    body = new_error(ErrorCode.internal_error, request_id_var.get())
    return JSONResponse(status_code=500, content=body.to_dict())


def _create_engine(settings: Settings) -> InferenceEngine:
    engine = InferenceEngine(settings)
    try:
        engine.load_active()
    except (CoreError, OSError) as exc:
        kind = exc.kind if isinstance(exc, CoreError) else type(exc).__name__
        log_event(
            "model_load_failed",
            {"kind": kind, "path": engine.active_dir().as_posix()},
            level=logging.CRITICAL,
        )
        engine.close()
        raise
    return engine


def _register_basic(app: FastAPI, engine: InferenceEngine) -> None:
    async def _healthz() -> dict[str, str]:
        return {"status": "ok"}

    async def _readyz() -> dict[str, object]:
        if engine.ready:
            return {"status": "ready", "model_id": engine.model_id}
        return {"status": "not_ready", "model_loaded": False, "build": get_version().build}

    async def _version() -> dict[str, object]:
        v = get_version()
        return {"service": v.service, "version": v.version, "build": v.build, "commit": v.commit}

    app.add_api_route("/healthz", _healthz, methods=["GET"])
    app.add_api_route("/readyz", _readyz, methods=["GET"])
    app.add_api_route("/version", _version, methods=["GET"])


def _register_models(app: FastAPI, engine: InferenceEngine) -> None:
    async def _model_active() -> dict[str, object]:
        snap = engine.snapshot
        if snap is None:
            return {"model_loaded": False, "model_id": None}
        man = snap.manifest
        return {
            "model_loaded": True,
            "model_id": man.model_id,
            "arch": man.arch,
            "n_classes": man.n_classes,
            "n_trees": man.n_trees,
            "max_depth": man.max_depth,
            "version": man.version,
            "created_at": man.created_at.isoformat(),
            "schema_version": man.schema_version,
            "preprocess_hash": man.preprocess_hash,
            "val_acc": man.val_acc,
            "class_names": list(snap.service.model.class_names),
        }

    app.add_api_route("/v1/models/active", _model_active, methods=["GET"])


def _multipart_error(message: str) -> AppError:
    return AppError(
        ErrorCode.malformed_multipart, status_for(ErrorCode.malformed_multipart), message
    )


def _pick_upload(form: FormData) -> UploadFile:
    if any(key not in _UPLOAD_FIELDS for key in form):
        raise _multipart_error("Unexpected form field")
    parts = [p for name in _UPLOAD_FIELDS for p in form.getlist(name)]
    if not parts:
        raise _multipart_error("No image file provided")
    if len(parts) > 1:
        raise _multipart_error("Multiple file parts not allowed")
    upload = parts[0]
    if not isinstance(upload, UploadFile):
        raise _multipart_error("Image field must be a file upload")
    return upload


def _ensure_image_content_type(upload: UploadFile) -> None:
    ctype = (upload.content_type or "").lower()
    if not ctype.startswith("image/"):
        raise AppError(
            ErrorCode.unsupported_media_type,
            status_for(ErrorCode.unsupported_media_type),
            "Invalid file type. Please upload an image.",
        )


def _raise_if_too_large(size: int, limits: Limits, message: str) -> None:
    if size > limits.max_bytes:
        raise AppError(ErrorCode.too_large, status_for(ErrorCode.too_large), message)


def _check_dimensions(raw: bytes, limits: Limits) -> None:
    # Header-only peek; the decoder owns error reporting for unreadable bytes.
    try:
        with Image.open(io.BytesIO(raw)) as img:
            w, h = img.size
    except (UnidentifiedImageError, OSError, SyntaxError, ValueError):
        return
    except Image.DecompressionBombError:
        w, h = limits.max_side_px + 1, 1
    if max(w, h) > limits.max_side_px:
        raise AppError(
            ErrorCode.bad_dimensions,
            status_for(ErrorCode.bad_dimensions),
            "Image dimensions too large",
        )


def _register_classify(
    app: FastAPI,
    dep_api_key: Callable[[str | None], None],
    engine: InferenceEngine,
    settings: Settings,
    limits: Limits,
) -> None:
    async def _classify(
        request: Request,
        preview: bool = False,
        content_length: int | None = Header(default=None, alias="Content-Length"),
    ) -> dict[str, object]:
        if content_length is not None:
            _raise_if_too_large(content_length, limits, "Request body too large")
        form = await request.form()
        upload = _pick_upload(form)
        _ensure_image_content_type(upload)
        raw = await upload.read()
        _raise_if_too_large(len(raw), limits, "File exceeds size limit")
        _check_dimensions(raw, limits)

        t0 = time.perf_counter()
        try:
            fut = engine.submit_classify(raw)
        except ModelNotLoaded:
            raise AppError(
                ErrorCode.service_not_ready,
                status_for(ErrorCode.service_not_ready),
                "Model not loaded.",
            ) from None
        try:
            out = await asyncio.wait_for(
                asyncio.wrap_future(fut),
                timeout=float(settings.classifier.predict_timeout_seconds),
            )
        except TimeoutError:
            fut.cancel()
            raise AppError(
                ErrorCode.timeout, status_for(ErrorCode.timeout), "Classification timed out"
            ) from None
        dt_ms = int((time.perf_counter() - t0) * 1000.0)

        res = out.result
        uncertain = res.confidence < float(settings.classifier.uncertain_threshold)
        preview_b64: str | None = None
        if preview:
            png = render_preview(out.features, int(settings.classifier.preview_max_kb))
            preview_b64 = base64.b64encode(png).decode("ascii") if png else None
        log_event(
            "classify_finished",
            {
                "latency_ms": dt_ms,
                "class_index": res.class_index,
                "label": res.predicted_class,
                "confidence": float(res.confidence),
                "model_id": out.model_id,
                "uncertain": bool(uncertain),
            },
        )
        return {
            "predicted_class": res.predicted_class,
            "class_index": res.class_index,
            "confidence": float(res.confidence),
            "probabilities": res.breakdown(),
            "model_id": out.model_id,
            "uncertain": bool(uncertain),
            "latency_ms": dt_ms,
            "preview_png_b64": preview_b64,
        }

    api_dep: DependsParamType = Depends(dep_api_key)
    for path in ("/v1/classify", "/predict"):
        app.add_api_route(
            path,
            _classify,
            methods=["POST"],
            response_model=ClassifyResponse,
            dependencies=[api_dep],
        )


def create_app(
    settings: Settings | None = None,
    engine_provider: Callable[[], InferenceEngine] | None = None,
    *,
    reload_interval_seconds: float | None = None,
) -> FastAPI:
    """Application factory.

    Parameters:
    - `settings`: pre-loaded settings; loaded from env/TOML when omitted.
    - `engine_provider`: supplies a ready `InferenceEngine` (mainly for tests).
      Without it the configured model is loaded here, and any load failure
      propagates so the process refuses to start.
    - `reload_interval_seconds`: overrides `classifier.reload_interval_seconds`;
      when > 0 a background thread polls the artifact files for changes.
    """
    s = settings or Settings.load()
    init_logging()
    engine = engine_provider() if engine_provider is not None else _create_engine(s)
    interval = (
        float(reload_interval_seconds)
        if reload_interval_seconds is not None
        else float(s.classifier.reload_interval_seconds)
    )
    app = FastAPI(
        title="garment-classifier",
        version=get_version().version,
        lifespan=_reloader_lifespan(engine, interval),
    )
    app.add_middleware(RequestIdMiddleware)
    install_cors(app, s)

    app.add_exception_handler(AppError, _handle_app_error)
    app.add_exception_handler(CoreError, _handle_core_error)
    app.add_exception_handler(Exception, _handle_unexpected)

    limits = Limits.from_settings(s)
    app.state.engine = engine
    app.state.settings = s

    _register_basic(app, engine)
    _register_models(app, engine)
    _register_classify(app, api_key_dependency(s), engine, s, limits)
    return app


def serve(settings: Settings | None = None) -> None:
    """Run the service with uvicorn on ``app.port``."""
    import uvicorn

    s = settings or Settings.load()
    uvicorn.run(create_app(s), host="0.0.0.0", port=int(s.app.port), log_config=None)
