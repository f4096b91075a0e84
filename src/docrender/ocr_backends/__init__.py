from .base import BaseOCREngine
from .loader import OcrEngineCache, load_ocr_engine, normalize_backend_alias

__all__ = ["BaseOCREngine", "OcrEngineCache", "load_ocr_engine", "normalize_backend_alias"]
