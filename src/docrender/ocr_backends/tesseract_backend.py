# docrender/ocr_backends/tesseract_backend.py
from __future__ import annotations

import logging
import os
import platform
import re
import shutil
import time
from pathlib import Path
from typing import Any, Dict, Optional, Union

from PIL import Image
import pytesseract as pt

from ..exceptions import OcrBackendError
from ..models import OcrResult
from .base import BaseOCREngine

logger = logging.getLogger("docrender")


def _as_int(x, default: int) -> int:
    try:
        if isinstance(x, str):
            x = x.strip().rstrip(",}] ")
        return int(x)
    except (TypeError, ValueError):
        m = re.search(r"-?\d+", str(x))
        return int(m.group()) if m else default


def resolve_tesseract_cmd() -> Optional[str]:
    # 1) explicit env override
    cmd = os.getenv("TESSERACT_CMD")
    if cmd and Path(cmd).exists():
        return cmd

    # 2) look on PATH
    cmd = shutil.which("tesseract")
    if cmd:
        return cmd

    # 3) common install locations
    system = platform.system()
    if system == "Windows":
        candidates = [
            r"C:\Program Files\Tesseract-OCR\tesseract.exe",
            r"C:\Program Files (x86)\Tesseract-OCR\tesseract.exe",
        ]
    elif system == "Darwin":
        candidates = ["/opt/homebrew/bin/tesseract", "/usr/local/bin/tesseract"]
    else:
        candidates = ["/usr/bin/tesseract", "/usr/local/bin/tesseract", "/snap/bin/tesseract"]

    for p in candidates:
        if Path(p).exists():
            return p
    return None


_TESS_LANG_MAP = {
    "en": "eng",
    "de": "deu",
    "fr": "fra",
    "es": "spa",
    "vi": "vie",
}


def _norm_langs_to_tesseract(kwargs: Dict[str, Any]) -> str:
    langs = kwargs.pop("languages", None) or kwargs.pop("lang", None)
    if isinstance(langs, str):
        langs = [s.strip() for s in re.split(r"[,+]", langs) if s.strip()]
    if not langs:
        langs = ["en"]
    codes = [_TESS_LANG_MAP.get(str(l).lower(), str(l).lower()) for l in langs]
    return "+".join(sorted(set(codes)))


class TesseractOCREngine(BaseOCREngine):
    """
    Local pytesseract backend.

    Kwargs supported (all optional):
      - languages / lang: list[str] or "en,de" → mapped to "eng+deu"
      - tesseract_cmd: full path to the tesseract binary
      - tessdata_prefix: path to the tessdata directory
      - oem: 0..3 (default 3 = LSTM)
      - psm: page segmentation mode (default 3 = fully automatic)
      - preserve_interword_spaces: bool (default True)
      - extra_config: extra flags appended to the config string
    """

    name = "tesseract"

    def __init__(self, **kwargs: Any):
        k = dict(kwargs)

        tesseract_cmd = k.pop("tesseract_cmd", None) or k.pop("tesseract_path", None) or resolve_tesseract_cmd()
        if tesseract_cmd:
            if not os.path.exists(str(tesseract_cmd)):
                raise OcrBackendError(f"Tesseract binary not found: {tesseract_cmd}")
            pt.pytesseract.tesseract_cmd = str(tesseract_cmd)

        tessdata_prefix = k.pop("tessdata_prefix", None)
        if tessdata_prefix:
            os.environ["TESSDATA_PREFIX"] = str(tessdata_prefix)

        self.lang = _norm_langs_to_tesseract(k)

        oem = _as_int(k.pop("oem", 3), 3)
        psm = _as_int(k.pop("psm", 3), 3)
        preserve_spaces = bool(k.pop("preserve_interword_spaces", True))
        extra_cfg = str(k.pop("extra_config", "")).strip()

        cfg_parts = [f"--oem {oem}", f"--psm {psm}"]
        if preserve_spaces:
            cfg_parts.append("-c preserve_interword_spaces=1")
        if extra_cfg:
            cfg_parts.append(extra_cfg)
        self._config = " ".join(cfg_parts)

        if k:
            logger.debug("Ignoring unknown Tesseract kwargs: %s", sorted(k))

    @staticmethod
    def _mean_confidence(data: Dict[str, Any]) -> Optional[float]:
        # Tesseract reports -1 for layout rows without text
        confs = []
        for c, word in zip(data.get("conf", []), data.get("text", [])):
            try:
                v = float(c)
            except (TypeError, ValueError):
                continue
            if v >= 0 and str(word).strip():
                confs.append(v)
        if not confs:
            return None
        return round(sum(confs) / len(confs) / 100.0, 4)

    def extract_text(self, image_path: Union[str, Path]) -> OcrResult:
        start = time.perf_counter()
        try:
            with Image.open(image_path) as im:
                im = im.convert("RGB")
                text = pt.image_to_string(im, lang=self.lang, config=self._config)
                data = pt.image_to_data(im, lang=self.lang, config=self._config, output_type=pt.Output.DICT)
        except (pt.TesseractError, pt.TesseractNotFoundError, OSError) as e:
            raise OcrBackendError(f"Tesseract failed on {Path(image_path).name}: {e}") from e
        return OcrResult(
            text=text.strip(),
            confidence=self._mean_confidence(data),
            duration=time.perf_counter() - start,
        )
