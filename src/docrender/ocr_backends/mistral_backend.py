# docrender/ocr_backends/mistral_backend.py
from __future__ import annotations

import base64
import logging
import mimetypes
import os
import threading
import time
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Union

import requests

from ..exceptions import ConfigurationError, OcrBackendError
from ..models import OcrResult
from ..utils import file_digest
from .base import BaseOCREngine

logger = logging.getLogger("docrender")

DEFAULT_ENDPOINT = "https://api.mistral.ai/v1/ocr"
DEFAULT_MODEL = "mistral-ocr-latest"


class _TTLCache:
    """Small thread-safe result cache keyed by content digest."""

    def __init__(self, ttl_seconds: float, max_entries: int = 512):
        self.ttl = ttl_seconds
        self.max_entries = max_entries
        self._items: Dict[str, Tuple[float, OcrResult]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[OcrResult]:
        with self._lock:
            hit = self._items.get(key)
            if hit is None:
                return None
            expires, value = hit
            if expires < time.monotonic():
                del self._items[key]
                return None
            return value

    def put(self, key: str, value: OcrResult) -> None:
        with self._lock:
            if len(self._items) >= self.max_entries:
                oldest = min(self._items, key=lambda k: self._items[k][0])
                del self._items[oldest]
            self._items[key] = (time.monotonic() + self.ttl, value)


class MistralOCREngine(BaseOCREngine):
    """
    Remote LLM OCR over HTTPS.

    Kwargs supported (all optional):
      - api_key: bearer token, defaults to $MISTRAL_API_KEY
      - endpoint: OCR endpoint URL, defaults to $MISTRAL_OCR_ENDPOINT or the public API
      - model: model name (default "mistral-ocr-latest")
      - timeout: request timeout in seconds (default 120)
      - include_image_base64: ask the service to echo embedded images (default False)
      - cache_ttl: seconds to keep results per file digest, 0 disables (default 3600)
    """

    name = "mistral"

    def __init__(self, session: Optional[requests.Session] = None, **kwargs: Any):
        k = dict(kwargs)
        self.api_key = k.pop("api_key", None) or os.getenv("MISTRAL_API_KEY")
        if not self.api_key:
            raise ConfigurationError("Mistral OCR requires an API key (api_key or MISTRAL_API_KEY)", field="ApiKey")
        self.endpoint = k.pop("endpoint", None) or os.getenv("MISTRAL_OCR_ENDPOINT") or DEFAULT_ENDPOINT
        self.model = k.pop("model", DEFAULT_MODEL)
        self.timeout = float(k.pop("timeout", 120))
        self.include_image_base64 = bool(k.pop("include_image_base64", False))
        ttl = float(k.pop("cache_ttl", 3600))
        self._cache = _TTLCache(ttl) if ttl > 0 else None

        self._session = session or requests.Session()
        self._session.headers.update({
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        })
        if k:
            logger.debug("Ignoring unknown Mistral kwargs: %s", sorted(k))

    @staticmethod
    def _data_url(image_path: Path) -> str:
        mime = mimetypes.guess_type(str(image_path))[0] or "image/png"
        encoded = base64.b64encode(image_path.read_bytes()).decode("ascii")
        return f"data:{mime};base64,{encoded}"

    @staticmethod
    def _parse(body: Dict[str, Any]) -> Tuple[str, Optional[float]]:
        text = body.get("text")
        if text is None:
            pages = body.get("pages") or []
            text = "\n\n".join(str(p.get("markdown", "")) for p in pages if isinstance(p, dict))
        conf = body.get("confidence")
        try:
            conf = float(conf) if conf is not None else None
        except (TypeError, ValueError):
            conf = None
        return str(text).strip(), conf

    def extract_text(self, image_path: Union[str, Path]) -> OcrResult:
        start = time.perf_counter()
        p = Path(image_path)

        digest = None
        if self._cache is not None:
            digest = f"{self.model}:{file_digest(p)}"
            cached = self._cache.get(digest)
            if cached is not None:
                logger.debug("Mistral OCR cache hit for %s", p.name)
                return OcrResult(cached.text, cached.confidence, time.perf_counter() - start)

        payload = {
            "model": self.model,
            "document": {"type": "image_url", "image_url": self._data_url(p)},
            "include_image_base64": self.include_image_base64,
        }
        try:
            resp = self._session.post(self.endpoint, json=payload, timeout=self.timeout)
            resp.raise_for_status()
            body = resp.json()
        except requests.RequestException as e:
            raise OcrBackendError(f"Mistral OCR request for {p.name} failed: {e}") from e
        except ValueError as e:
            raise OcrBackendError(f"Mistral OCR returned invalid JSON for {p.name}: {e}") from e

        text, conf = self._parse(body)
        result = OcrResult(text=text, confidence=conf, duration=time.perf_counter() - start)
        if self._cache is not None and digest:
            self._cache.put(digest, result)
        logger.debug("Mistral OCR extracted %d chars from %s in %.2fs", len(text), p.name, result.duration)
        return result
