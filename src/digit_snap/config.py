from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Final

_DEFAULT_CONFIG_PATH: Final[Path] = Path("config/digit_snap.toml")
_TRUTHY: Final[frozenset[str]] = frozenset({"1", "true", "yes", "on", "y"})


@dataclass(frozen=True)
class AppConfig:
    data_root: Path = Path("/data")
    threads: int = 0
    port: int = 8081


@dataclass(frozen=True)
class DigitsConfig:
    model_dir: Path = Path("/data/digits/models")
    active_model: str = "mnist_mlp_v1"
    max_image_mb: int = 4
    max_image_side_px: int = 4096
    predict_timeout_seconds: int = 5
    visualize_max_kb: int = 16
    display_precision: int = 2


@dataclass(frozen=True)
class PipelineSettings:
    canvas_side: int = 28
    digit_extent: int = 28
    polarity_threshold: float = 0.5
    binarize: bool = True


@dataclass(frozen=True)
class SecurityConfig:
    # Empty string disables the API key check
    api_key: str = ""


@dataclass(frozen=True)
class Settings:
    app: AppConfig
    digits: DigitsConfig
    pipeline: PipelineSettings
    security: SecurityConfig

    @staticmethod
    def default() -> Settings:
        return Settings(
            app=AppConfig(),
            digits=DigitsConfig(),
            pipeline=PipelineSettings(),
            security=SecurityConfig(),
        )

    @staticmethod
    def _toml_path() -> Path:
        env_val = os.getenv("DIGIT_SNAP_CONFIG")
        if env_val:
            return Path(env_val)
        return _DEFAULT_CONFIG_PATH

    @classmethod
    def load(cls) -> Settings:
        # Env first, then TOML overrides when the file exists.
        base = cls(
            app=_load_app_from_env(),
            digits=_load_digits_from_env(),
            pipeline=_load_pipeline_from_env(),
            security=_load_security_from_env(),
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
            digits=_merge_digits(base.digits, _toml_table(raw, "digits")),
            pipeline=_merge_pipeline(base.pipeline, _toml_table(raw, "pipeline")),
            security=_merge_security(base.security, _toml_table(raw, "security")),
        )


def _load_app_from_env() -> AppConfig:
    a = AppConfig()
    dr = os.getenv("APP__DATA_ROOT")
    th = os.getenv("APP__THREADS")
    pt = os.getenv("APP__PORT")
    if dr:
        a = replace(a, data_root=Path(dr))
    if th is not None and th.isdigit():
        a = replace(a, threads=int(th))
    if pt is not None and pt.isdigit():
        a = replace(a, port=_check_port(int(pt), "APP__PORT"))
    return a


def _load_digits_from_env() -> DigitsConfig:
    d = DigitsConfig()
    md = os.getenv("DIGITS__MODEL_DIR")
    am = os.getenv("DIGITS__ACTIVE_MODEL")
    mb = os.getenv("DIGITS__MAX_IMAGE_MB")
    mx = os.getenv("DIGITS__MAX_IMAGE_SIDE_PX")
    to = os.getenv("DIGITS__PREDICT_TIMEOUT_SECONDS")
    vk = os.getenv("DIGITS__VISUALIZE_MAX_KB")
    dp = os.getenv("DIGITS__DISPLAY_PRECISION")
    if md:
        d = replace(d, model_dir=Path(md))
    if am:
        d = replace(d, active_model=am)
    if mb is not None:
        d = replace(d, max_image_mb=_parse_int(mb, "DIGITS__MAX_IMAGE_MB"))
    if mx is not None:
        d = replace(d, max_image_side_px=_parse_int(mx, "DIGITS__MAX_IMAGE_SIDE_PX"))
    if to is not None:
        d = replace(d, predict_timeout_seconds=_parse_int(to, "DIGITS__PREDICT_TIMEOUT_SECONDS"))
    if vk is not None:
        d = replace(d, visualize_max_kb=_parse_int(vk, "DIGITS__VISUALIZE_MAX_KB"))
    if dp is not None:
        d = replace(d, display_precision=_parse_int(dp, "DIGITS__DISPLAY_PRECISION"))
    return d


def _load_pipeline_from_env() -> PipelineSettings:
    p = PipelineSettings()
    cs = os.getenv("PIPELINE__CANVAS_SIDE")
    de = os.getenv("PIPELINE__DIGIT_EXTENT")
    pt = os.getenv("PIPELINE__POLARITY_THRESHOLD")
    bz = os.getenv("PIPELINE__BINARIZE")
    if cs is not None:
        p = replace(p, canvas_side=_parse_int(cs, "PIPELINE__CANVAS_SIDE"))
    if de is not None:
        p = replace(p, digit_extent=_parse_int(de, "PIPELINE__DIGIT_EXTENT"))
    if pt is not None:
        p = replace(p, polarity_threshold=_parse_float(pt, "PIPELINE__POLARITY_THRESHOLD"))
    if bz is not None:
        p = replace(p, binarize=bz.strip().lower() in _TRUTHY)
    return p


def _load_security_from_env() -> SecurityConfig:
    s = SecurityConfig()
    key = os.getenv("SECURITY__API_KEY")
    if key is not None:
        s = replace(s, api_key=key)
    return s


def _merge_app(base: AppConfig, data: dict[str, object]) -> AppConfig:
    out = base
    if "data_root" in data:
        out = replace(out, data_root=Path(str(data["data_root"])))
    if "threads" in data:
        out = replace(out, threads=_parse_int(str(data["threads"]), "threads"))
    if "port" in data:
        out = replace(out, port=_check_port(_parse_int(str(data["port"]), "port"), "port"))
    return out


def _merge_digits(base: DigitsConfig, data: dict[str, object]) -> DigitsConfig:
    out = base
    if "model_dir" in data:
        out = replace(out, model_dir=Path(str(data["model_dir"])))
    if "active_model" in data:
        out = replace(out, active_model=str(data["active_model"]))
    if "max_image_mb" in data:
        out = replace(out, max_image_mb=_parse_int(str(data["max_image_mb"]), "max_image_mb"))
    if "max_image_side_px" in data:
        px = _parse_int(str(data["max_image_side_px"]), "max_image_side_px")
        out = replace(out, max_image_side_px=px)
    if "predict_timeout_seconds" in data:
        to = _parse_int(str(data["predict_timeout_seconds"]), "predict_timeout_seconds")
        out = replace(out, predict_timeout_seconds=to)
    if "visualize_max_kb" in data:
        vk = _parse_int(str(data["visualize_max_kb"]), "visualize_max_kb")
        out = replace(out, visualize_max_kb=vk)
    if "display_precision" in data:
        dp = _parse_int(str(data["display_precision"]), "display_precision")
        out = replace(out, display_precision=dp)
    return out


def _merge_pipeline(base: PipelineSettings, data: dict[str, object]) -> PipelineSettings:
    out = base
    if "canvas_side" in data:
        out = replace(out, canvas_side=_parse_int(str(data["canvas_side"]), "canvas_side"))
    if "digit_extent" in data:
        out = replace(out, digit_extent=_parse_int(str(data["digit_extent"]), "digit_extent"))
    if "polarity_threshold" in data:
        t = _parse_float(str(data["polarity_threshold"]), "polarity_threshold")
        out = replace(out, polarity_threshold=t)
    if "binarize" in data:
        bz = data["binarize"]
        if not isinstance(bz, bool):
            raise RuntimeError("binarize must be a boolean")
        out = replace(out, binarize=bz)
    return out


def _toml_table(raw: object, key: str) -> dict[str, object]:
    if isinstance(raw, dict):
        tab: object = raw.get(key, {})
        if isinstance(tab, dict):
            return {str(k): v for k, v in tab.items()}
    return {}


def _merge_security(base: SecurityConfig, data: dict[str, object]) -> SecurityConfig:
    out = base
    api_key_val = data.get("api_key")
    if isinstance(api_key_val, str):
        out = replace(out, api_key=api_key_val)
    enabled = data.get("api_key_enabled")
    if isinstance(enabled, bool) and not enabled:
        out = replace(out, api_key="")
    return out


def _parse_int(v: str, name: str) -> int:
    try:
        return int(v.strip())
    except ValueError as exc:
        raise RuntimeError(f"{name} must be an integer") from exc


def _parse_float(v: str, name: str) -> float:
    try:
        return float(v.strip())
    except ValueError as exc:
        raise RuntimeError(f"{name} must be a number") from exc


def _check_port(p: int, name: str) -> int:
    if not (1 <= p <= 65535):
        raise RuntimeError(f"{name} out of range")
    return p


@dataclass(frozen=True)
class Limits:
    max_bytes: int
    max_side_px: int

    @staticmethod
    def from_settings(s: Settings) -> Limits:
        return Limits(
            max_bytes=int(s.digits.max_image_mb) * 1024 * 1024,
            max_side_px=int(s.digits.max_image_side_px),
        )
