import threading
import time
from pathlib import Path

import fitz
import pytest
from PIL import Image

from docrender.config import LocalStorageConfig, ProcessingOptions, RenderConfig
from docrender.engine import ConversionEngine
from docrender.exceptions import StorageKeyExistsError
from docrender.retrying_io import RetryingIO
from docrender.storage.base import RemoteStorageProvider
from docrender.storage.local import LocalStorageProvider


class MemoryStorage(RemoteStorageProvider):
    """Remote-style provider backed by a dict, with optional per-call latency."""

    name = "Memory"

    def __init__(self, exists_delay=0.0, put_delay=0.0):
        super().__init__()
        self.exists_delay = exists_delay
        self.put_delay = put_delay
        self.objects = {}
        self.put_keys = []
        # keys another writer holds that exists() does not see yet
        self.hidden = set()
        self._lock = threading.Lock()

    def put(self, source_path, destination_key, overwrite=True):
        key = self.normalize_key(destination_key)
        data = Path(source_path).read_bytes()
        time.sleep(self.put_delay)
        with self._lock:
            if not overwrite and (key in self.objects or key in self.hidden):
                raise StorageKeyExistsError(f"{key} already exists", key)
            self.objects[key] = data
            self.put_keys.append(key)
        return self.url_for(key)

    def get(self, key):
        local = self._temp_path_for(key)
        local.write_bytes(self.objects[self.normalize_key(key)])
        return local

    def delete(self, key):
        with self._lock:
            return self.objects.pop(self.normalize_key(key), None) is not None

    def exists(self, key):
        time.sleep(self.exists_delay)
        with self._lock:
            return self.normalize_key(key) in self.objects

    def url_for(self, key):
        return f"mem://bucket/{self.normalize_key(key)}"

    def list_files(self, prefix=""):
        with self._lock:
            return sorted(k for k in self.objects if k.startswith(prefix))


@pytest.fixture
def inputs_dir(tmp_path: Path) -> Path:
    d = tmp_path / "inputs"
    d.mkdir()
    return d


@pytest.fixture
def make_png(inputs_dir: Path):
    def _make(name: str = "scan.png", size=(640, 480), mode: str = "RGB", color=(200, 30, 30)) -> Path:
        p = inputs_dir / name
        fill = color if mode in ("RGB", "RGBA") else 128
        if mode == "RGBA":
            fill = color + (128,)
        Image.new(mode, size, fill).save(p)
        return p
    return _make


@pytest.fixture
def tiff_3pages(inputs_dir: Path) -> Path:
    p = inputs_dir / "stack.tiff"
    frames = [Image.new("RGB", (300, 200), c) for c in ((255, 0, 0), (0, 255, 0), (0, 0, 255))]
    frames[0].save(p, format="TIFF", save_all=True, append_images=frames[1:])
    return p


@pytest.fixture
def make_pdf(inputs_dir: Path):
    def _make(name: str = "doc.pdf", pages: int = 2) -> Path:
        p = inputs_dir / name
        doc = fitz.open()
        for n in range(pages):
            page = doc.new_page(width=595, height=842)
            page.insert_text((72, 72), f"Page {n + 1}", fontsize=24)
        doc.save(p)
        doc.close()
        return p
    return _make


@pytest.fixture
def store_dir(tmp_path: Path) -> Path:
    return tmp_path / "store"


@pytest.fixture
def local_storage(store_dir: Path) -> LocalStorageProvider:
    return LocalStorageProvider(store_dir)


@pytest.fixture
def engine(local_storage: LocalStorageProvider, tmp_path: Path) -> ConversionEngine:
    return ConversionEngine(local_storage, io=RetryingIO(), temp_dir=tmp_path / "tmp")


@pytest.fixture
def memory_storage() -> MemoryStorage:
    return MemoryStorage()


@pytest.fixture
def small_options() -> ProcessingOptions:
    return ProcessingOptions(thumbnail_size=64, dpi=72)


@pytest.fixture
def render_config(tmp_path: Path, store_dir: Path, small_options: ProcessingOptions) -> RenderConfig:
    return RenderConfig(
        num_workers=1,
        temp_dir=tmp_path / "tmp",
        storage=LocalStorageConfig(store_dir),
        default_options=small_options,
    )
