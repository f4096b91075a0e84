# src/docrender/renderers.py
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional, Union

import fitz  # PyMuPDF
from PIL import Image, ImageOps, UnidentifiedImageError

from .exceptions import CorruptInputError, PageRenderError
from .models import InputKind

logger = logging.getLogger("docrender")


# --- Step 1, interface ---
class BasePageRenderer(ABC):
    """
    Opens one document and renders its pages to PIL images on demand.
    Use as a context manager so native handles are released before files are moved.
    """

    kind: InputKind

    def __init__(self, file_path: Union[str, Path], dpi: int = 150):
        self.file_path = Path(file_path)
        self.dpi = dpi

    @property
    @abstractmethod
    def page_count(self) -> int:
        raise NotImplementedError

    @abstractmethod
    def render_page(self, index: int, max_long_edge: Optional[int] = None) -> Image.Image:
        """
        Render page `index` (0-based). With max_long_edge the page is rendered or
        reduced so its longest side is at most that many pixels.
        Raises PageRenderError for page-level failures.
        """
        raise NotImplementedError

    def close(self) -> None:
        pass

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
        return False


# --- Step 2, PDF pages with PyMuPDF ---
class PyMuPDFRenderer(BasePageRenderer):
    kind = InputKind.PDF

    def __init__(self, file_path: Union[str, Path], dpi: int = 150):
        super().__init__(file_path, dpi)
        try:
            self._doc = fitz.open(self.file_path)
        except Exception as e:
            raise CorruptInputError(f"Error processing PDF {self.file_path.name}: {e}") from e
        if self._doc.needs_pass:
            self._doc.close()
            raise CorruptInputError(f"PDF {self.file_path.name} is password protected")

    @property
    def page_count(self) -> int:
        return len(self._doc)

    def render_page(self, index: int, max_long_edge: Optional[int] = None) -> Image.Image:
        try:
            page = self._doc.load_page(index)
            if max_long_edge:
                long_side = max(page.rect.width, page.rect.height) or 1.0
                zoom = max_long_edge / long_side
            else:
                zoom = self.dpi / 72.0
            pix = page.get_pixmap(matrix=fitz.Matrix(zoom, zoom), alpha=False)
            return Image.frombytes("RGB", (pix.width, pix.height), pix.samples)
        except Exception as e:
            raise PageRenderError(f"Page {index + 1} of {self.file_path.name} failed to render: {e}", index + 1) from e

    def close(self) -> None:
        if not self._doc.is_closed:
            self._doc.close()


# --- Step 3, raster images with Pillow ---
class RasterRenderer(BasePageRenderer):
    """Single-page raster input (PNG, JPEG, BMP, GIF, WebP). Animated inputs use the first frame."""

    kind = InputKind.RASTER

    def __init__(self, file_path: Union[str, Path], dpi: int = 150):
        super().__init__(file_path, dpi)
        try:
            self._im = Image.open(self.file_path)
            self._im.load()
        except (UnidentifiedImageError, OSError) as e:
            raise CorruptInputError(f"Cannot decode image {self.file_path.name}: {e}") from e

    @property
    def page_count(self) -> int:
        return 1

    def _frame(self, index: int) -> Image.Image:
        self._im.seek(index)
        return ImageOps.exif_transpose(self._im.copy())

    def render_page(self, index: int, max_long_edge: Optional[int] = None) -> Image.Image:
        if not 0 <= index < self.page_count:
            raise PageRenderError(f"Page {index + 1} out of range for {self.file_path.name}", index + 1)
        try:
            frame = self._frame(index)
            if max_long_edge and max(frame.size) > max_long_edge:
                frame.thumbnail((max_long_edge, max_long_edge), Image.Resampling.BOX)
            return frame
        except (OSError, ValueError, EOFError) as e:
            raise PageRenderError(f"Page {index + 1} of {self.file_path.name} failed to decode: {e}", index + 1) from e

    def close(self) -> None:
        self._im.close()


class TiffRenderer(RasterRenderer):
    """Multi-page TIFF, one page per frame."""

    kind = InputKind.TIFF

    @property
    def page_count(self) -> int:
        return getattr(self._im, "n_frames", 1)


# --- Step 4, factory ---
def get_page_renderer(kind: InputKind, file_path: Union[str, Path], dpi: int = 150) -> BasePageRenderer:
    if kind == InputKind.PDF:
        return PyMuPDFRenderer(file_path, dpi)
    if kind == InputKind.TIFF:
        return TiffRenderer(file_path, dpi)
    if kind == InputKind.RASTER:
        return RasterRenderer(file_path, dpi)
    raise ValueError(f"Unknown renderer kind, '{kind}'. Supported kinds, {[k.value for k in InputKind]}")
