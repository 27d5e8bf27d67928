from __future__ import annotations

import io

import torch
from PIL import Image, ImageOps, UnidentifiedImageError

from .errors import AppError, DecodeError, ErrorCode, status_for
from .inference.types import RawImage


def open_image_bytes(raw: bytes) -> Image.Image:
    try:
        img = Image.open(io.BytesIO(raw))
        img.load()
    except UnidentifiedImageError:
        raise DecodeError("Failed to decode image") from None
    except Image.DecompressionBombError:
        raise AppError(
            ErrorCode.too_large,
            status_for(ErrorCode.too_large),
            "Decompression bomb triggered",
        ) from None
    except OSError as exc:
        # truncated or corrupt payloads surface as OSError from load()
        raise DecodeError(f"Failed to decode image: {exc}") from None
    return img


def raw_image_from_pil(img: Image.Image) -> RawImage:
    """Flatten a decoded image into an interleaved (H, W, 3) uint8 buffer.

    EXIF orientation is applied and transparent areas are composited on white,
    which is how a photo of paper looks with its alpha dropped.
    """
    tmp = ImageOps.exif_transpose(img)
    if tmp is None:
        raise DecodeError("EXIF transpose failed")
    img2: Image.Image = tmp
    if img2.mode in ("RGBA", "LA") or (img2.mode == "P" and "transparency" in img2.info):
        img2 = img2.convert("RGBA")
        bg = Image.new("RGBA", img2.size, (255, 255, 255, 255))
        img2 = Image.alpha_composite(bg, img2)
    if img2.mode != "RGB":
        img2 = img2.convert("RGB")
    width, height = img2.size
    if width == 0 or height == 0:
        return RawImage(pixels=torch.zeros((height, width, 3), dtype=torch.uint8))
    buf = img2.tobytes()
    if len(buf) != width * height * 3:
        raise DecodeError("unexpected buffer size")
    pixels = torch.frombuffer(bytearray(buf), dtype=torch.uint8).reshape(height, width, 3)
    return RawImage(pixels=pixels)
