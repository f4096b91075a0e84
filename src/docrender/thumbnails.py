# src/docrender/thumbnails.py
from __future__ import annotations

from typing import Tuple

from PIL import Image

_HIGH_BIT_MODES = ("I", "I;16", "I;16B", "I;16L", "I;16N", "F")


def to_8bit(image: Image.Image) -> Image.Image:
    """
    Normalize any decoded page to 8-bit RGB, or RGBA when the source carries alpha.
    """
    mode = image.mode
    if mode in ("RGB", "RGBA"):
        return image
    if mode in _HIGH_BIT_MODES:
        # 16-bit greyscale scans, scale to 0..255 first
        return image.convert("I").point(lambda v: v * (1 / 256)).convert("L").convert("RGB")
    has_alpha = mode in ("LA", "PA", "La", "RGBa") or (mode == "P" and "transparency" in image.info)
    return image.convert("RGBA" if has_alpha else "RGB")


def fit_within(width: int, height: int, target: int) -> Tuple[int, int]:
    """
    Largest size with the same aspect ratio whose long edge is at most `target`.
    Never upscales.
    """
    if width <= 0 or height <= 0:
        raise ValueError(f"Image has no pixels ({width}x{height})")
    if max(width, height) <= target:
        return width, height
    if width >= height:
        return target, max(1, round(height * target / width))
    return max(1, round(width * target / height)), target


def make_thumbnail(image: Image.Image, target: int = 200, oversample: int = 3) -> Image.Image:
    """
    Two-step thumbnail. The source is first reduced to `oversample` times the target
    box with a box filter, then downscaled once more with Lanczos.
    """
    src = to_8bit(image)
    final = fit_within(src.width, src.height, target)
    if final == src.size:
        return src.copy()

    intermediate = fit_within(src.width, src.height, target * max(1, oversample))
    if intermediate != src.size:
        src = src.resize(intermediate, Image.Resampling.BOX)
    return src.resize(final, Image.Resampling.LANCZOS)
