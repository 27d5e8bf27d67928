from __future__ import annotations

import json
from datetime import UTC, datetime
from pathlib import Path

import pytest
import torch
from PIL import Image, ImageDraw

from digit_snap.config import AppConfig, DigitsConfig, PipelineSettings, SecurityConfig, Settings
from digit_snap.inference.engine import build_fresh_state_dict
from digit_snap.preprocess import PipelineConfig, preprocess_signature
from scripts.read_photo import apply_overrides, format_report, main, parse_args, run


def _photo(path: Path) -> Path:
    img = Image.new("RGB", (100, 200), (255, 255, 255))
    ImageDraw.Draw(img).rectangle([40, 45, 60, 147], fill=(0, 0, 0))
    img.save(path, format="PNG")
    return path


def _install_model(root: Path, model_id: str) -> None:
    d = root / model_id
    d.mkdir(parents=True)
    torch.save(build_fresh_state_dict("mlp", 10, 28), (d / "model.pt").as_posix())
    man = {
        "schema_version": "v1",
        "model_id": model_id,
        "arch": "mlp",
        "n_classes": 10,
        "version": "1.0.0",
        "created_at": datetime.now(UTC).isoformat(),
        "preprocess_hash": preprocess_signature(PipelineConfig()),
        "input_layout": "flat",
        "canvas_side": 28,
        "val_acc": 0.9,
        "temperature": 1.0,
    }
    (d / "manifest.json").write_text(json.dumps(man), encoding="utf-8")


def test_parse_args_and_overrides() -> None:
    args = parse_args(["photo.png", "--no-binarize", "--threshold", "0.3"])
    assert args.image == Path("photo.png")
    assert args.binarize is False and args.threshold == 0.3
    s = apply_overrides(Settings.default(), args)
    assert s.pipeline.binarize is False
    assert s.pipeline.polarity_threshold == 0.3
    untouched = apply_overrides(Settings.default(), parse_args(["p.png"]))
    assert untouched.pipeline == PipelineSettings()


def test_format_report_lists_grid_and_prediction() -> None:
    text = format_report((200, 100), (0.1, 0.9), ["01", "10"], 1)
    assert text.splitlines() == [
        "Input shape: 200 x 100",
        "[0.1, 0.9]",
        "0 1",
        "1 0",
        "Prediction: 1",
    ]


def test_run_prints_grid_for_installed_model(tmp_path: Path) -> None:
    _install_model(tmp_path / "models", "m1")
    s = Settings(
        app=AppConfig(threads=1),
        digits=DigitsConfig(model_dir=tmp_path / "models", active_model="m1"),
        pipeline=PipelineSettings(),
        security=SecurityConfig(),
    )
    report = run(parse_args([_photo(tmp_path / "p.png").as_posix()]), s)
    lines = report.splitlines()
    assert lines[0] == "Input shape: 200 x 100"
    assert len(lines) == 1 + 1 + 28 + 1
    assert lines[2 + 7].replace(" ", "")[13:16] == "111"
    assert lines[-1].startswith("Prediction: ")


def test_main_reports_missing_model(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DIGIT_SNAP_CONFIG", (tmp_path / "missing.toml").as_posix())
    monkeypatch.setenv("DIGITS__MODEL_DIR", (tmp_path / "none").as_posix())
    code = main([_photo(tmp_path / "p.png").as_posix()])
    assert code == 1
