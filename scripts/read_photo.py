from __future__ import annotations

import argparse
import sys
from dataclasses import dataclass, replace
from pathlib import Path

from digit_snap.config import Settings
from digit_snap.decode import open_image_bytes, raw_image_from_pil
from digit_snap.errors import AppError
from digit_snap.inference.engine import InferenceEngine
from digit_snap.logging import get_logger, init_logging
from digit_snap.preprocess import PipelineConfig, run_preprocess
from digit_snap.render import grid_rows


@dataclass(frozen=True)
class ReadArgs:
    image: Path
    binarize: bool | None
    threshold: float | None


def parse_args(argv: list[str] | None = None) -> ReadArgs:
    ap = argparse.ArgumentParser(description="Classify the handwritten digit in a photo")
    ap.add_argument("image", help="Path to a PNG or JPEG photo")
    grp = ap.add_mutually_exclusive_group()
    grp.add_argument("--binarize", dest="binarize", action="store_true", default=None)
    grp.add_argument("--no-binarize", dest="binarize", action="store_false")
    ap.add_argument("--threshold", type=float, default=None, help="Polarity threshold in (0, 1)")
    a = ap.parse_args(argv)
    return ReadArgs(image=Path(str(a.image)), binarize=a.binarize, threshold=a.threshold)


def apply_overrides(settings: Settings, args: ReadArgs) -> Settings:
    p = settings.pipeline
    if args.binarize is not None:
        p = replace(p, binarize=args.binarize)
    if args.threshold is not None:
        p = replace(p, polarity_threshold=args.threshold)
    return replace(settings, pipeline=p)


def format_report(
    shape: tuple[int, int], probs: tuple[float, ...], rows: list[str], digit: int
) -> str:
    lines = [f"Input shape: {shape[0]} x {shape[1]}"]
    lines.append("[" + ", ".join(f"{p}" for p in probs) + "]")
    lines.extend(" ".join(row) for row in rows)
    lines.append(f"Prediction: {digit}")
    return "\n".join(lines)


def run(args: ReadArgs, settings: Settings) -> str:
    engine = InferenceEngine(settings)
    try:
        engine.try_load_active()
        img = open_image_bytes(args.image.read_bytes())
        cfg = PipelineConfig.from_settings(settings.pipeline)
        pre = run_preprocess(raw_image_from_pil(img), cfg, engine.input_layout)
        out = engine.submit_predict(pre.tensor).result(
            timeout=float(settings.digits.predict_timeout_seconds)
        )
    finally:
        engine.shutdown()
    return format_report(pre.input_shape, out.display_probs, grid_rows(pre.grid), out.digit)


def main(argv: list[str] | None = None) -> int:
    init_logging()
    args = parse_args(argv)
    settings = apply_overrides(Settings.load(), args)
    try:
        report = run(args, settings)
    except AppError as exc:
        get_logger().error("read_failed code=%s message=%s", exc.code.value, exc.message)
        return 2
    except (RuntimeError, ValueError, OSError) as exc:
        get_logger().error("read_failed error=%s", exc)
        return 1
    sys.stdout.write(report + "\n")
    return 0


if __name__ == "__main__":  # pragma: no cover - used at runtime
    raise SystemExit(main())
