from __future__ import annotations

from io import BytesIO

import pytest
import torch
from PIL import Image

from digit_snap.decode import open_image_bytes, raw_image_from_pil
from digit_snap.errors import DecodeError
from digit_snap.render import grid_rows, visualize_png


def test_raw_image_from_rgb_keeps_layout() -> None:
    img = Image.new("RGB", (3, 2), (10, 20, 30))
    img.putpixel((2, 1), (200, 100, 50))
    raw = raw_image_from_pil(img)
    assert list(raw.pixels.shape) == [2, 3, 3]
    assert raw.pixels.dtype == torch.uint8
    assert raw.pixels[0, 0].tolist() == [10, 20, 30]
    assert raw.pixels[1, 2].tolist() == [200, 100, 50]


def test_transparent_pixels_become_white() -> None:
    img = Image.new("RGBA", (2, 2), (0, 0, 0, 0))
    img.putpixel((0, 0), (0, 0, 0, 255))
    raw = raw_image_from_pil(img)
    assert raw.pixels[0, 0].tolist() == [0, 0, 0]
    assert raw.pixels[1, 1].tolist() == [255, 255, 255]


def test_grayscale_input_is_expanded_to_three_channels() -> None:
    raw = raw_image_from_pil(Image.new("L", (4, 5), 77))
    assert list(raw.pixels.shape) == [5, 4, 3]
    assert int(raw.pixels[2, 2, 1].item()) == 77


def test_open_image_bytes_rejects_garbage() -> None:
    with pytest.raises(DecodeError):
        open_image_bytes(b"definitely not an image")


def test_open_image_bytes_decodes_png() -> None:
    b = BytesIO()
    Image.new("RGB", (8, 6), (1, 2, 3)).save(b, format="PNG")
    img = open_image_bytes(b.getvalue())
    assert img.size == (8, 6)


def test_grid_rows_rounds_cells() -> None:
    grid = torch.tensor([[0.0, 1.0, 0.4], [0.6, 0.0, 1.0]])
    assert grid_rows(grid) == ["010", "101"]


def test_grid_rows_rounds_half_up() -> None:
    grid = torch.tensor([[0.5, 0.49, 0.0]])
    assert grid_rows(grid) == ["100"]


def test_visualize_png_scales_and_respects_budget() -> None:
    grid = torch.zeros((28, 28))
    grid[10:18, 12:16] = 1.0
    png = visualize_png(grid, max_kb=16)
    assert png is not None
    img = Image.open(BytesIO(png))
    assert img.size == (112, 112)
    assert visualize_png(grid, max_kb=0) is None
