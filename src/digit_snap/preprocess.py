from __future__ import annotations

from dataclasses import dataclass
from typing import Final

import torch
from torch import Tensor

from .config import PipelineSettings
from .errors import (
    AppError,
    DecodeError,
    DegenerateImageError,
    ErrorCode,
    OversizeError,
    ShapeError,
    status_for,
)
from .inference.types import InputLayout, Padding, PreprocessOutput, RawImage

# ITU-R 601 luma weights
_LUMA_R: Final[float] = 0.2989
_LUMA_G: Final[float] = 0.5870
_LUMA_B: Final[float] = 0.1140
_MAX_INTENSITY: Final[float] = 255.0
_LAYOUTS: Final[tuple[str, ...]] = ("flat", "nhwc", "nchw")


@dataclass(frozen=True)
class PipelineConfig:
    canvas_side: int = 28
    digit_extent: int = 28
    polarity_threshold: float = 0.5
    binarize: bool = True
    visualize: bool = False
    visualize_max_kb: int = 16

    def validate(self) -> PipelineConfig:
        if self.canvas_side < 1 or self.digit_extent < 1:
            raise ValueError("canvas_side and digit_extent must be positive")
        if self.digit_extent > self.canvas_side:
            raise OversizeError(
                f"digit_extent {self.digit_extent} exceeds canvas_side {self.canvas_side}"
            )
        if not (0.0 < self.polarity_threshold < 1.0):
            raise ValueError("polarity_threshold must be within (0, 1)")
        return self

    @staticmethod
    def from_settings(
        p: PipelineSettings, *, visualize: bool = False, visualize_max_kb: int = 16
    ) -> PipelineConfig:
        return PipelineConfig(
            canvas_side=int(p.canvas_side),
            digit_extent=int(p.digit_extent),
            polarity_threshold=float(p.polarity_threshold),
            binarize=bool(p.binarize),
            visualize=visualize,
            visualize_max_kb=visualize_max_kb,
        ).validate()


def preprocess_signature(cfg: PipelineConfig) -> str:
    """Identify the tensor distribution a config produces.

    Model manifests record this string; a model is only served by a pipeline
    whose signature matches the one it was exported against.
    """
    final = "median-binarize" if cfg.binarize else "continuous"
    return (
        f"v1/luma+bilinear{cfg.digit_extent}+center{cfg.canvas_side}"
        f"+div255+invert-region>{cfg.polarity_threshold:g}+{final}"
    )


def run_preprocess(
    raw: RawImage, cfg: PipelineConfig, layout: InputLayout = "flat"
) -> PreprocessOutput:
    try:
        gray = to_grayscale(raw)
        scaled = resize_to_extent(gray, cfg.digit_extent)
        # Polarity is decided on the digit region before padding, so the
        # zero border is never part of the mean and never gets inverted.
        normalized = normalize_intensity(scaled)
        corrected, inverted = correct_polarity(normalized, cfg.polarity_threshold)
        canvas = composite(corrected, cfg.canvas_side)
        final = binarize(canvas) if cfg.binarize else canvas
        tensor = assemble(final, cfg.canvas_side, layout)

        visual: bytes | None = None
        if cfg.visualize:
            from .render import visualize_png

            visual = visualize_png(final, cfg.visualize_max_kb)
        return PreprocessOutput(
            tensor=tensor,
            grid=final,
            input_shape=(raw.height, raw.width),
            inverted=inverted,
            visual_png=visual,
        )
    except AppError:
        raise
    except (ValueError, RuntimeError, TypeError) as exc:
        raise AppError(
            ErrorCode.preprocessing_failed, status_for(ErrorCode.preprocessing_failed), str(exc)
        ) from None


def to_grayscale(raw: RawImage) -> Tensor:
    px = raw.pixels
    if px.ndim != 3 or int(px.shape[2]) < 3:
        raise DecodeError("pixel buffer must be H x W x 3")
    rgb = px[:, :, :3].to(dtype=torch.float32)
    return rgb[:, :, 0] * _LUMA_R + rgb[:, :, 1] * _LUMA_G + rgb[:, :, 2] * _LUMA_B


def scaled_size(height: int, width: int, extent: int) -> tuple[int, int]:
    if height <= 0 or width <= 0:
        raise DegenerateImageError(f"image has zero extent ({height}x{width})")
    max_dim = max(height, width)
    new_h = height * extent // max_dim
    new_w = width * extent // max_dim
    if new_h == 0 or new_w == 0:
        raise DegenerateImageError(
            f"image {height}x{width} collapses to {new_h}x{new_w} at extent {extent}"
        )
    return new_h, new_w


def resize_to_extent(grid: Tensor, extent: int) -> Tensor:
    """Scale the longer side to ``extent`` with bilinear sampling.

    Sampling has no half-pixel offset: output row ``y`` reads source row
    ``y * H / newH`` and its successor (clamped to the last row), and likewise
    for columns. Never crops.
    """
    if grid.ndim != 2:
        raise DecodeError("intensity grid must be two-dimensional")
    height, width = int(grid.shape[0]), int(grid.shape[1])
    new_h, new_w = scaled_size(height, width, extent)
    src = grid.to(dtype=torch.float32)

    y0, y1, dy = _sample_axis(height, new_h)
    x0, x1, dx = _sample_axis(width, new_w)
    rows_top = src.index_select(0, y0)
    rows_bottom = src.index_select(0, y1)
    top_left = rows_top.index_select(1, x0)
    top_right = rows_top.index_select(1, x1)
    bottom_left = rows_bottom.index_select(1, x0)
    bottom_right = rows_bottom.index_select(1, x1)

    dx_row = dx.unsqueeze(0)
    top = top_left + (top_right - top_left) * dx_row
    bottom = bottom_left + (bottom_right - bottom_left) * dx_row
    return top + (bottom - top) * dy.unsqueeze(1)


def _sample_axis(in_size: int, out_size: int) -> tuple[Tensor, Tensor, Tensor]:
    scale = in_size / out_size
    pos = torch.arange(out_size, dtype=torch.float32) * scale
    lo = pos.floor().to(dtype=torch.long).clamp(max=in_size - 1)
    hi = (lo + 1).clamp(max=in_size - 1)
    frac = pos - lo.to(dtype=torch.float32)
    return lo, hi, frac


def padding_for(height: int, width: int, side: int) -> Padding:
    if height > side or width > side:
        raise OversizeError(f"content {height}x{width} does not fit canvas {side}x{side}")
    pad_v = side - height
    pad_h = side - width
    return Padding(
        top=pad_v // 2,
        bottom=pad_v - pad_v // 2,
        left=pad_h // 2,
        right=pad_h - pad_h // 2,
    )


def composite(grid: Tensor, side: int) -> Tensor:
    if grid.ndim != 2:
        raise ShapeError("scaled grid must be two-dimensional")
    height, width = int(grid.shape[0]), int(grid.shape[1])
    pad = padding_for(height, width, side)
    canvas = torch.zeros((side, side), dtype=torch.float32)
    canvas[pad.top : pad.top + height, pad.left : pad.left + width] = grid
    return canvas


def normalize_intensity(grid: Tensor) -> Tensor:
    return grid.to(dtype=torch.float32) / _MAX_INTENSITY


def correct_polarity(grid: Tensor, threshold: float) -> tuple[Tensor, bool]:
    """Return the grid in bright-digit-on-dark form and whether it was flipped.

    A mean above ``threshold`` means the background dominates as the bright
    tone (dark ink on light paper), so the complement is returned.
    """
    if grid.numel() == 0:
        return grid, False
    mean = float(grid.mean().item())
    if mean > threshold:
        return 1.0 - grid, True
    return grid, False


def lower_median(grid: Tensor) -> float:
    flat = grid.reshape(-1)
    ordered = torch.sort(flat).values
    return float(ordered[(int(flat.shape[0]) - 1) // 2].item())


def binarize(grid: Tensor) -> Tensor:
    # strictly greater: cells equal to the median fall to 0.0
    threshold = lower_median(grid)
    return (grid > threshold).to(dtype=torch.float32)


def assemble(grid: Tensor, side: int, layout: InputLayout = "flat") -> Tensor:
    if grid.ndim != 2 or int(grid.shape[0]) != side or int(grid.shape[1]) != side:
        raise ShapeError(f"expected {side}x{side} grid, got {tuple(grid.shape)}")
    if layout not in _LAYOUTS:
        raise ShapeError(f"unknown input layout {layout!r}")
    t = grid.to(dtype=torch.float32).contiguous()
    if layout == "nhwc":
        return t.reshape(1, side, side, 1)
    if layout == "nchw":
        return t.reshape(1, 1, side, side)
    return t.reshape(1, side * side)
