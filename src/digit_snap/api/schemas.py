from __future__ import annotations

from pydantic.dataclasses import dataclass as pydantic_dataclass


@pydantic_dataclass(frozen=True)
class ReadResponse:
    digit: int
    confidence: float
    probs: list[float]
    grid: list[str]
    input_shape: list[int]
    inverted: bool
    model_id: str
    visual_png_b64: str | None
    latency_ms: int
