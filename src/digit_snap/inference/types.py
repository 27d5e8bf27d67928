from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Literal

from torch import Tensor

InputLayout = Literal["flat", "nhwc", "nchw"]


@dataclass(frozen=True)
class RawImage:
    pixels: Tensor  # (H, W, C) uint8

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0]) if self.pixels.ndim >= 1 else 0

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1]) if self.pixels.ndim >= 2 else 0


@dataclass(frozen=True)
class Padding:
    top: int
    bottom: int
    left: int
    right: int


@dataclass(frozen=True)
class PredictOutput:
    digit: int
    confidence: float
    probs: tuple[float, ...]  # full precision, length n_classes
    display_probs: tuple[float, ...]
    model_id: str


@dataclass(frozen=True)
class PreprocessOutput:
    tensor: Tensor
    grid: Tensor  # (S, S) final canvas before reshape
    input_shape: tuple[int, int]
    inverted: bool
    visual_png: bytes | None


Probs = Sequence[float]
