# docrender/ocr_backends/base.py
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Union

from ..models import OcrResult


class BaseOCREngine(ABC):
    name: str = "base"

    @abstractmethod
    def extract_text(self, image_path: Union[str, Path]) -> OcrResult:
        """Return text, confidence in [0, 1] (None when unknown) and duration in seconds."""
        pass
