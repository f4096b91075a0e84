# docrender/ocr_backends/loader.py
from __future__ import annotations

import importlib
import json
import threading
from typing import Any, Dict, Optional, Tuple

from ..exceptions import ConfigurationError
from .base import BaseOCREngine

_ALIASES = {
    "tess": "docrender.ocr_backends.tesseract_backend.TesseractOCREngine",
    "tesseract": "docrender.ocr_backends.tesseract_backend.TesseractOCREngine",
    "pytesseract": "docrender.ocr_backends.tesseract_backend.TesseractOCREngine",
    "mistral": "docrender.ocr_backends.mistral_backend.MistralOCREngine",
    "mistral-ocr": "docrender.ocr_backends.mistral_backend.MistralOCREngine",
    "llm": "docrender.ocr_backends.mistral_backend.MistralOCREngine",
}


def normalize_backend_alias(name: str) -> str:
    """
    Allow short aliases (case-insensitive) and module-only shorthands.
    Returns a fully qualified dotted path 'module.Class'.
    """
    if not name:
        raise ConfigurationError("OCR backend name is empty", field="OcrBackend")
    original = name.strip().strip('"\'')
    alias = original.lower()
    if alias in _ALIASES:
        return _ALIASES[alias]
    if alias.endswith(".tesseract_backend"):
        return _ALIASES["tesseract"]
    if alias.endswith(".mistral_backend"):
        return _ALIASES["mistral"]
    return original


def import_backend_class(dotted: str) -> type:
    try:
        module_path, cls_name = dotted.rsplit(".", 1)
    except ValueError:
        raise ConfigurationError(f"OCR backend must be 'module.Class' or an alias, got: {dotted!r}", field="OcrBackend")
    try:
        mod = importlib.import_module(module_path)
    except ImportError as e:
        raise ConfigurationError(f"Cannot import OCR backend module {module_path!r} ({e})", field="OcrBackend") from e
    cls = getattr(mod, cls_name, None)
    if cls is None or not (isinstance(cls, type) and issubclass(cls, BaseOCREngine)):
        raise ConfigurationError(f"{dotted} is not an OCR backend class", field="OcrBackend")
    return cls


def normalize_backend_kwargs(d: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """hyphen-case -> snake_case, lowercase keys, 'lang' -> 'languages'."""
    if not d:
        return {}
    out = {k.strip().lower().replace("-", "_"): v for k, v in d.items()}
    if "languages" not in out and "lang" in out:
        out["languages"] = out.pop("lang")
    return out


class OcrEngineCache:
    """Builds each (backend, kwargs) engine once and shares it between jobs."""

    def __init__(self):
        self._engines: Dict[Tuple[str, str], BaseOCREngine] = {}
        self._lock = threading.Lock()

    def get(self, backend: str, kwargs: Optional[Dict[str, Any]] = None) -> BaseOCREngine:
        dotted = normalize_backend_alias(backend)
        kw = normalize_backend_kwargs(kwargs)
        key = (dotted, json.dumps(kw, sort_keys=True, default=str))
        with self._lock:
            engine = self._engines.get(key)
            if engine is None:
                engine = load_ocr_engine(dotted, kw)
                self._engines[key] = engine
            return engine


def load_ocr_engine(backend: str, kwargs: Optional[Dict[str, Any]] = None) -> BaseOCREngine:
    cls = import_backend_class(normalize_backend_alias(backend))
    return cls(**normalize_backend_kwargs(kwargs))
