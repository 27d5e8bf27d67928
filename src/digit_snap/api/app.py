from __future__ import annotations

import base64
import threading
import time
from collections.abc import Callable
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Annotated

from fastapi import Depends, FastAPI, File, Header, Request, UploadFile
from fastapi.params import Depends as DependsParamType
from fastapi.responses import JSONResponse
from PIL import Image, ImageFile
from starlette.datastructures import FormData

from ..config import Limits, Settings
from ..decode import open_image_bytes, raw_image_from_pil
from ..errors import AppError, ErrorCode, new_error, status_for
from ..inference.engine import InferenceEngine
from ..logging import get_logger, init_logging, log_event
from ..middleware import RequestIdMiddleware, api_key_dependency
from ..preprocess import PipelineConfig, run_preprocess
from ..render import grid_rows
from ..request_context import request_id_var
from ..version import get_version
from .schemas import ReadResponse

ImageFile.LOAD_TRUNCATED_IMAGES = False

_SUPPORTED_TYPES = ("image/png", "image/jpeg", "image/jpg")


def _setup_optional_reloader(
    app: FastAPI, engine: InferenceEngine, reload_interval_seconds: float | None
) -> None:
    """Attach a background thread that polls the model artifacts for changes.

    Nothing is registered when the interval is missing or non-positive.
    """
    if reload_interval_seconds is None or float(reload_interval_seconds) <= 0.0:
        return
    interval = float(reload_interval_seconds)
    stop_evt = threading.Event()
    holder: list[threading.Thread] = []

    def _loop() -> None:
        while not stop_evt.is_set():
            engine.reload_if_changed()
            stop_evt.wait(interval)

    def _start() -> None:
        stop_evt.clear()
        thread = threading.Thread(target=_loop, name="model-reloader", daemon=True)
        thread.start()
        holder.append(thread)

    def _stop() -> None:
        stop_evt.set()
        while holder:
            holder.pop().join(timeout=1.0)

    app.add_event_handler("startup", _start)
    app.add_event_handler("shutdown", _stop)


async def _handle_app_error(_: Request, exc: Exception) -> JSONResponse:
    rid = request_id_var.get()
    if not isinstance(exc, AppError):
        body = new_error(ErrorCode.internal_error, rid)
        return JSONResponse(status_code=500, content=body.to_dict())
    body = new_error(exc.code, rid, message=exc.message)
    return JSONResponse(status_code=exc.http_status, content=body.to_dict())


async def _handle_unexpected(_: Request, exc: Exception) -> JSONResponse:
    get_logger().error("unhandled_error type=%s", type(exc).__name__, exc_info=exc)
    body = new_error(ErrorCode.internal_error, request_id_var.get())
    return JSONResponse(status_code=500, content=body.to_dict())


def _create_engine(settings: Settings) -> InferenceEngine:
    engine = InferenceEngine(settings)
    engine.try_load_active()
    return engine


def _register_basic(app: FastAPI, engine: InferenceEngine) -> None:
    async def _healthz() -> dict[str, str]:
        return {"status": "ok"}

    async def _readyz() -> dict[str, object]:
        man = engine.manifest
        if engine.ready and man is not None:
            return {"status": "ready"}
        return {
            "status": "not_ready",
            "model_loaded": engine.ready,
            "model_id": engine.model_id,
            "preprocess_signature": engine.signature,
            "build": get_version().build,
        }

    async def _version() -> dict[str, object]:
        v = get_version()
        return {"service": v.service, "version": v.version, "build": v.build, "commit": v.commit}

    app.add_api_route("/healthz", _healthz, methods=["GET"])
    app.add_api_route("/readyz", _readyz, methods=["GET"])
    app.add_api_route("/version", _version, methods=["GET"])


def _register_models(app: FastAPI, engine: InferenceEngine) -> None:
    async def _model_active() -> dict[str, object]:
        man = engine.manifest
        if man is None:
            return {"model_loaded": False, "model_id": None}
        out: dict[str, object] = {"model_loaded": True}
        out.update(man.to_dict())
        return out

    app.add_api_route("/v1/models/active", _model_active, methods=["GET"])


def _strict_validate_multipart(form: FormData) -> None:
    for key in form:
        if key != "file":
            raise AppError(
                ErrorCode.malformed_multipart,
                status_for(ErrorCode.malformed_multipart),
                "Unexpected form field",
            )
    n_files = len(form.getlist("file"))
    if n_files != 1:
        raise AppError(
            ErrorCode.malformed_multipart,
            status_for(ErrorCode.malformed_multipart),
            "Multiple file parts not allowed" if n_files > 1 else "Missing file part",
        )


def _ensure_supported_content_type(ctype: str) -> None:
    if ctype not in _SUPPORTED_TYPES:
        raise AppError(
            ErrorCode.unsupported_media_type,
            status_for(ErrorCode.unsupported_media_type),
            "Only PNG and JPEG are supported",
        )


def _raise_if_too_large(n_bytes: int, limits: Limits) -> None:
    if n_bytes > limits.max_bytes:
        raise AppError(
            ErrorCode.too_large, status_for(ErrorCode.too_large), "File exceeds size limit"
        )


def _validate_image_dimensions(img: Image.Image, limits: Limits) -> None:
    w, h = img.size
    if max(w, h) > limits.max_side_px:
        raise AppError(
            ErrorCode.bad_dimensions,
            status_for(ErrorCode.bad_dimensions),
            "Image dimensions too large",
        )


def _register_read(
    app: FastAPI,
    dep_api_key: Callable[[str | None], None],
    provide_engine: Callable[[], InferenceEngine],
    provide_settings: Callable[[], Settings],
    provide_limits: Callable[[], Limits],
) -> None:
    async def _read_digit(
        request: Request,
        file: Annotated[UploadFile, File(...)],
        visualize: bool = False,
        content_length: int | None = Header(default=None, alias="Content-Length"),
    ) -> dict[str, object]:
        engine = provide_engine()
        settings = provide_settings()
        limits = provide_limits()

        form = await request.form()
        _strict_validate_multipart(form)
        _ensure_supported_content_type((file.content_type or "").lower())
        if content_length is not None:
            _raise_if_too_large(content_length, limits)

        raw_bytes = await file.read()
        _raise_if_too_large(len(raw_bytes), limits)
        img = open_image_bytes(raw_bytes)
        _validate_image_dimensions(img, limits)

        cfg = PipelineConfig.from_settings(
            settings.pipeline,
            visualize=visualize,
            visualize_max_kb=int(settings.digits.visualize_max_kb),
        )
        t0 = time.perf_counter()
        pre = run_preprocess(raw_image_from_pil(img), cfg, engine.input_layout)

        fut = engine.submit_predict(pre.tensor)
        try:
            out = fut.result(timeout=float(settings.digits.predict_timeout_seconds))
        except FutureTimeout:
            fut.cancel()
            raise AppError(
                ErrorCode.timeout, status_for(ErrorCode.timeout), "Prediction timed out"
            ) from None
        except RuntimeError as err:
            if "Model not loaded" in str(err):
                raise AppError(
                    ErrorCode.service_not_ready,
                    status_for(ErrorCode.service_not_ready),
                    "Model not loaded. Install a model artifact.",
                ) from None
            raise

        dt_ms = int((time.perf_counter() - t0) * 1000.0)
        visual_b64 = base64.b64encode(pre.visual_png).decode("ascii") if pre.visual_png else None
        log_event(
            "read_finished",
            fields={
                "latency_ms": dt_ms,
                "digit": int(out.digit),
                "confidence": float(out.confidence),
                "model_id": out.model_id,
                "inverted": pre.inverted,
                "binarize": cfg.binarize,
            },
        )
        return {
            "digit": int(out.digit),
            "confidence": float(out.confidence),
            "probs": [float(p) for p in out.display_probs],
            "grid": grid_rows(pre.grid),
            "input_shape": [pre.input_shape[0], pre.input_shape[1]],
            "inverted": pre.inverted,
            "model_id": out.model_id,
            "visual_png_b64": visual_b64,
            "latency_ms": dt_ms,
        }

    api_dep: DependsParamType = Depends(dep_api_key)
    for path in ("/v1/read", "/v1/predict"):
        app.add_api_route(
            path,
            _read_digit,
            methods=["POST"],
            response_model=ReadResponse,
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
    - `engine_provider`: builds the `InferenceEngine` (tests inject fakes here).
    - `reload_interval_seconds`: when > 0, poll model artifacts for changes.
    """
    s = settings or Settings.load()
    # misconfigured pipelines are rejected here rather than per request
    PipelineConfig.from_settings(s.pipeline)
    init_logging()
    app = FastAPI(title="digit-snap", version=get_version().version)
    app.add_middleware(RequestIdMiddleware)

    engine: InferenceEngine = (
        engine_provider() if engine_provider is not None else _create_engine(s)
    )
    limits = Limits.from_settings(s)
    api_key_dep = api_key_dependency(s)

    app.add_exception_handler(AppError, _handle_app_error)
    app.add_exception_handler(Exception, _handle_unexpected)

    def _provide_engine() -> InferenceEngine:
        return engine

    def _provide_settings() -> Settings:
        return s

    def _provide_limits() -> Limits:
        return limits

    _register_basic(app, engine)
    _register_models(app, engine)
    _register_read(app, api_key_dep, _provide_engine, _provide_settings, _provide_limits)
    _setup_optional_reloader(app, engine, reload_interval_seconds)
    return app


# Default ASGI app for uvicorn
app = create_app()
