from __future__ import annotations

import io
import math

import torch
from PIL import Image
from torch import Tensor


def grid_rows(grid: Tensor) -> list[str]:
    """Render the canvas as one string per row, each cell rounded to an integer."""
    rows: list[str] = []
    vals = grid.to(dtype=torch.float32)
    for r in range(int(vals.shape[0])):
        cells = [str(math.floor(float(v) + 0.5)) for v in vals[r].tolist()]
        rows.append("".join(cells))
    return rows


def visualize_png(grid: Tensor, max_kb: int, scale: int = 4) -> bytes | None:
    side_h, side_w = int(grid.shape[0]), int(grid.shape[1])
    levels = (grid.clamp(0.0, 1.0) * 255.0).round().to(dtype=torch.uint8)
    img = Image.frombytes("L", (side_w, side_h), bytes(levels.contiguous().reshape(-1).tolist()))
    vis = img.resize((side_w * scale, side_h * scale), resample=Image.Resampling.NEAREST)
    buf = io.BytesIO()
    vis.save(buf, format="PNG", optimize=True)
    b = buf.getvalue()
    if len(b) > max_kb * 1024:
        return None
    return b
