from __future__ import annotations

import os
from pathlib import Path

import pytest

from digit_snap.config import Limits, Settings


def _load_with_env(env: dict[str, str]) -> Settings:
    old = os.environ.copy()
    try:
        os.environ.clear()
        os.environ.update(env)
        return Settings.load()
    finally:
        os.environ.clear()
        os.environ.update(old)


def test_defaults_match_reference_pipeline(tmp_path: Path) -> None:
    s = _load_with_env({"DIGIT_SNAP_CONFIG": (tmp_path / "missing.toml").as_posix()})
    assert s.pipeline.canvas_side == 28
    assert s.pipeline.digit_extent == 28
    assert s.pipeline.polarity_threshold == 0.5
    assert s.pipeline.binarize is True
    assert s.digits.display_precision == 2
    assert s == Settings.default()


def test_env_overrides(tmp_path: Path) -> None:
    env = {
        "DIGIT_SNAP_CONFIG": (tmp_path / "missing.toml").as_posix(),
        "DIGITS__MODEL_DIR": (tmp_path / "models").as_posix(),
        "DIGITS__ACTIVE_MODEL": "cnn_v2",
        "DIGITS__PREDICT_TIMEOUT_SECONDS": "1",
        "PIPELINE__DIGIT_EXTENT": "20",
        "PIPELINE__POLARITY_THRESHOLD": "0.3",
        "PIPELINE__BINARIZE": "false",
        "APP__THREADS": "2",
    }
    s = _load_with_env(env)
    assert s.digits.model_dir.as_posix().endswith("models")
    assert s.digits.active_model == "cnn_v2"
    assert s.digits.predict_timeout_seconds == 1
    assert s.pipeline.digit_extent == 20
    assert s.pipeline.polarity_threshold == 0.3
    assert s.pipeline.binarize is False
    assert s.app.threads == 2


def test_toml_overrides_env(tmp_path: Path) -> None:
    p = tmp_path / "cfg.toml"
    p.write_text(
        """
[pipeline]
digit_extent = 20
polarity_threshold = 0.3
binarize = false

[digits]
display_precision = 3
active_model = "from_toml"
""".strip(),
        encoding="utf-8",
    )
    s = _load_with_env({"DIGIT_SNAP_CONFIG": p.as_posix(), "DIGITS__ACTIVE_MODEL": "from_env"})
    assert s.pipeline.digit_extent == 20
    assert s.pipeline.polarity_threshold == 0.3
    assert s.pipeline.binarize is False
    assert s.digits.display_precision == 3
    assert s.digits.active_model == "from_toml"


def test_security_api_key_enabled_false_disables_key(tmp_path: Path) -> None:
    p = tmp_path / "cfg.toml"
    p.write_text('[security]\napi_key = "secret"\napi_key_enabled = false\n', encoding="utf-8")
    s = _load_with_env({"DIGIT_SNAP_CONFIG": p.as_posix()})
    assert s.security.api_key == ""


def test_invalid_values_raise(tmp_path: Path) -> None:
    missing = (tmp_path / "missing.toml").as_posix()
    with pytest.raises(RuntimeError):
        _load_with_env({"DIGIT_SNAP_CONFIG": missing, "APP__PORT": "70000"})
    with pytest.raises(RuntimeError):
        _load_with_env({"DIGIT_SNAP_CONFIG": missing, "PIPELINE__CANVAS_SIDE": "big"})

    p = tmp_path / "cfg.toml"
    p.write_text('[pipeline]\nbinarize = "yes"\n', encoding="utf-8")
    with pytest.raises(RuntimeError):
        _load_with_env({"DIGIT_SNAP_CONFIG": p.as_posix()})

    bad = tmp_path / "bad.toml"
    bad.write_text("[pipeline\n", encoding="utf-8")
    with pytest.raises(RuntimeError):
        _load_with_env({"DIGIT_SNAP_CONFIG": bad.as_posix()})


def test_limits_from_settings() -> None:
    lim = Limits.from_settings(Settings.default())
    assert lim.max_bytes == 4 * 1024 * 1024
    assert lim.max_side_px == 4096
