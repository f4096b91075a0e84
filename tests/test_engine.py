import threading
from pathlib import Path

import pytest
from PIL import Image

from docrender.config import ProcessingOptions
from docrender.engine import ConversionEngine
from docrender.exceptions import (
    CorruptInputError,
    InputFileNotFoundError,
    JobCancelledError,
    OcrBackendError,
    PageRenderError,
    TransientIoError,
    UnsupportedFormatError,
)
from docrender.models import OcrResult, ProgressStatus
from docrender.ocr_backends.base import BaseOCREngine
from docrender.progress import ProgressBroadcaster, ProgressReporter
from docrender.renderers import TiffRenderer
from docrender.retrying_io import RetryingIO
from docrender.storage.local import LocalStorageProvider


class StubOCR(BaseOCREngine):
    name = "stub"

    def __init__(self, fail_on=()):
        self.fail_on = set(fail_on)
        self.calls = 0

    def extract_text(self, image_path):
        self.calls += 1
        if self.calls in self.fail_on:
            raise OcrBackendError("engine crashed")
        return OcrResult(text=f"text {self.calls}", confidence=0.9)


def _stored_files(root: Path):
    return sorted(p.relative_to(root).as_posix() for p in root.rglob("*") if p.is_file())


def test_single_png(engine, local_storage, make_png, small_options):
    src = make_png(size=(640, 480))
    result = engine.process(src, small_options)

    assert result.success, result.message
    img = result.processed_image
    assert img.converted_png_path == str(local_storage.base_directory / "scan.png")
    assert (img.width, img.height) == (640, 480)
    assert img.is_multi_page is False and img.split_page_paths == ()
    assert result.split_pages == ()
    with Image.open(img.thumbnail_path) as thumb:
        assert thumb.size == (64, 48)
    assert _stored_files(local_storage.base_directory) == ["scan.png", "scan_thumb.png"]
    assert result.metrics.pages_rendered == 1
    assert result.processing_time > 0


def test_three_page_tiff(engine, local_storage, tiff_3pages, small_options):
    result = engine.process(tiff_3pages, small_options)

    assert result.success
    img = result.processed_image
    assert img.is_multi_page and img.page_count == 3
    assert [Path(p).name for p in img.split_page_paths] == [
        "stack_page_1.png", "stack_page_2.png", "stack_page_3.png",
    ]
    assert len(result.split_pages) == 3
    with Image.open(img.split_page_paths[1]) as page2:
        assert page2.getpixel((0, 0)) == (0, 255, 0)
    assert len(img.storage_keys) == 4


def test_pdf_pages_follow_dpi(engine, make_pdf):
    result = engine.process(make_pdf(pages=2), ProcessingOptions(thumbnail_size=64, dpi=72))
    assert result.success
    assert (result.processed_image.width, result.processed_image.height) == (595, 842)
    assert len(result.processed_image.split_page_paths) == 2


def test_one_bad_page_is_skipped(engine, tiff_3pages, small_options, monkeypatch):
    original = TiffRenderer.render_page

    def flaky(self, index, max_long_edge=None):
        if index == 1 and max_long_edge is None:
            raise PageRenderError("frame is damaged", page_number=2)
        return original(self, index, max_long_edge)

    monkeypatch.setattr(TiffRenderer, "render_page", flaky)
    result = engine.process(tiff_3pages, small_options)

    assert result.success
    assert result.metrics.failed_pages == [2]
    assert [Path(p).name for p in result.processed_image.split_page_paths] == [
        "stack_page_1.png", "stack_page_3.png",
    ]
    assert "failed pages: 2" in result.message
    assert result.warnings


def test_unsupported_format_writes_nothing(engine, local_storage, inputs_dir):
    txt = inputs_dir / "notes.txt"
    txt.write_text("not an image")
    result = engine.process(txt)

    assert not result.success
    assert isinstance(result.error, UnsupportedFormatError)
    assert ".txt" in result.message
    assert _stored_files(local_storage.base_directory) == []


def test_missing_input(engine, inputs_dir):
    result = engine.process(inputs_dir / "ghost.png")
    assert not result.success
    assert isinstance(result.error, InputFileNotFoundError)


def test_file_size_limit(engine, make_png):
    src = make_png(size=(2000, 2000))
    result = engine.process(src, ProcessingOptions(max_file_size_mb=0.0001))
    assert not result.success
    assert "limit" in result.message


def test_corrupt_image_fails_without_artifacts(engine, local_storage, inputs_dir):
    bad = inputs_dir / "broken.png"
    bad.write_bytes(b"\x89PNG\r\n\x1a\n" + b"\x00" * 32)
    result = engine.process(bad)
    assert not result.success
    assert isinstance(result.error, CorruptInputError)
    assert _stored_files(local_storage.base_directory) == []


def test_ocr_text_is_joined_per_page(engine, tiff_3pages, small_options):
    ocr = StubOCR()
    opts = small_options.with_overrides(run_ocr=True)
    result = engine.process(tiff_3pages, opts, ocr_engine=ocr)
    assert result.extracted_text == "text 1\n\ntext 2\n\ntext 3"


def test_ocr_failure_does_not_fail_the_document(engine, tiff_3pages, small_options):
    ocr = StubOCR(fail_on={2})
    result = engine.process(tiff_3pages, small_options.with_overrides(run_ocr=True), ocr_engine=ocr)
    assert result.success
    assert result.metrics.ocr_failures == 1
    assert result.extracted_text == "text 1\n\ntext 3"


def test_unavailable_ocr_backend_is_skipped(engine, make_png, small_options):
    opts = small_options.with_overrides(run_ocr=True, ocr_backend="no_such_module_xyz.Engine")
    result = engine.process(make_png(), opts)
    assert result.success
    assert result.extracted_text is None


def test_same_name_twice_gives_distinct_files(engine, local_storage, inputs_dir, small_options):
    for sub in ("a", "b"):
        (inputs_dir / sub).mkdir()
        Image.new("RGB", (40, 30)).save(inputs_dir / sub / "page.png")

    first = engine.process(inputs_dir / "a" / "page.png", small_options)
    second = engine.process(inputs_dir / "b" / "page.png", small_options)

    assert first.processed_image.converted_png_path != second.processed_image.converted_png_path
    assert Path(second.processed_image.converted_png_path).name == "page_1.png"
    assert Path(first.processed_image.converted_png_path).exists()


def test_input_inside_store_is_preserved(engine, local_storage, small_options):
    src = local_storage.base_directory / "scan.png"
    Image.new("RGB", (100, 80), (1, 2, 3)).save(src)
    before = src.read_bytes()

    result = engine.process(src, small_options)

    assert result.success
    assert src.read_bytes() == before
    assert Path(result.processed_image.converted_png_path).name == "scan_1.png"


def test_cancelled_before_start_rolls_back(engine, local_storage, tiff_3pages, small_options):
    cancel = threading.Event()
    cancel.set()
    with pytest.raises(JobCancelledError):
        engine.process(tiff_3pages, small_options, cancel_event=cancel)
    assert _stored_files(local_storage.base_directory) == []


def test_cancel_mid_document_removes_written_pages(engine, local_storage, tiff_3pages, small_options, monkeypatch):
    cancel = threading.Event()
    broadcaster = ProgressBroadcaster()
    sub = broadcaster.subscribe("job")

    original = TiffRenderer.render_page

    def render_then_cancel(self, index, max_long_edge=None):
        if index == 1:
            cancel.set()
        return original(self, index, max_long_edge)

    monkeypatch.setattr(TiffRenderer, "render_page", render_then_cancel)
    with pytest.raises(JobCancelledError):
        engine.process(
            tiff_3pages, small_options, job_id="job",
            reporter=ProgressReporter(broadcaster, "job", tiff_3pages.name),
            cancel_event=cancel,
        )

    assert _stored_files(local_storage.base_directory) == []
    statuses = [r.status for r in sub.drain()]
    assert statuses.count(ProgressStatus.CONVERTING_PAGE) == 2
    assert ProgressStatus.COMPLETED not in statuses


def test_preserve_original_and_prefix(engine, local_storage, make_png, small_options):
    src = make_png("photo.png", size=(50, 50))
    opts = small_options.with_overrides(preserve_original=True, output_prefix="batch-7/")
    result = engine.process(src, opts)

    assert result.success
    assert _stored_files(local_storage.base_directory) == [
        "batch-7/originals/photo.png", "batch-7/photo.png", "batch-7/photo_thumb.png",
    ]
    assert "batch-7/originals/photo.png" in result.processed_image.storage_keys


def test_progress_sequence_for_single_page(engine, make_png, small_options):
    broadcaster = ProgressBroadcaster()
    sub = broadcaster.subscribe("p1")
    engine.process(make_png(), small_options, job_id="p1",
                   reporter=ProgressReporter(broadcaster, "p1", "scan.png"))
    assert [r.status for r in sub.drain()] == [
        ProgressStatus.STARTING,
        ProgressStatus.LOADING_FILE,
        ProgressStatus.PROCESSING_FILE,
        ProgressStatus.CONVERTING_PAGE,
        ProgressStatus.GENERATING_THUMBNAIL,
    ]


def test_standalone_call_cleans_its_work_dir(engine, make_png, small_options, tmp_path):
    engine.process(make_png(), small_options, job_id="solo")
    assert not (tmp_path / "tmp" / "jobs" / "solo").exists()


@pytest.mark.parametrize("failing_name", ["scan.png", "scan_thumb.png"])
def test_failed_size_check_leaves_no_stored_files(engine, local_storage, make_png, small_options,
                                                   monkeypatch, failing_name):
    original = RetryingIO.read_size_with_retry

    def denied(self, path, *, on_retry=None):
        if Path(path).name == failing_name:
            raise PermissionError(13, "denied")
        return original(self, path, on_retry=on_retry)

    monkeypatch.setattr(RetryingIO, "read_size_with_retry", denied)
    result = engine.process(make_png(), small_options)

    assert not result.success
    assert isinstance(result.error, PermissionError)
    assert _stored_files(local_storage.base_directory) == []


def test_failed_copy_of_original_leaves_no_placeholder(engine, local_storage, make_png, small_options, monkeypatch):
    original_put = LocalStorageProvider.put

    def put(self, source_path, destination_key, overwrite=True):
        if "originals" in destination_key:
            raise OSError("disk full")
        return original_put(self, source_path, destination_key, overwrite)

    monkeypatch.setattr(LocalStorageProvider, "put", put)
    result = engine.process(make_png(), small_options.with_overrides(preserve_original=True))

    assert not result.success
    assert "disk full" in result.message
    assert _stored_files(local_storage.base_directory) == []


def test_write_locked_past_retries_is_transient_io_error(local_storage, make_png, small_options, tmp_path,
                                                        monkeypatch):
    engine = ConversionEngine(local_storage, io=RetryingIO(sleep=lambda _: None), temp_dir=tmp_path / "tmp")
    src = make_png()

    def locked(self, fp, format=None, **params):
        raise OSError("The process cannot access the file because it is being used by another process")

    monkeypatch.setattr(Image.Image, "save", locked)
    result = engine.process(src, small_options)

    assert not result.success
    assert isinstance(result.error, TransientIoError)
    assert isinstance(result.error.__cause__, OSError)
    assert "being used by another process" in result.message
    assert result.metrics.io_retries == 2
    assert _stored_files(local_storage.base_directory) == []


def test_remote_key_taken_by_another_writer(memory_storage, make_png, small_options, tmp_path):
    memory_storage.hidden.add("scan.png")
    engine = ConversionEngine(memory_storage, temp_dir=tmp_path / "tmp")

    result = engine.process(make_png(), small_options)

    assert result.success
    assert result.processed_image.converted_png_path == "mem://bucket/scan_1.png"
    assert sorted(memory_storage.objects) == ["scan_1.png", "scan_thumb.png"]
    assert engine._claimed == set()


def test_remote_names_already_stored_are_skipped(memory_storage, make_png, small_options, tmp_path):
    engine = ConversionEngine(memory_storage, temp_dir=tmp_path / "tmp")
    first = engine.process(make_png(), small_options)
    second = engine.process(make_png(), small_options.with_overrides(preserve_original=True))

    assert first.processed_image.converted_png_path == "mem://bucket/scan.png"
    assert second.processed_image.converted_png_path == "mem://bucket/scan_1.png"
    assert "originals/scan.png" in second.processed_image.storage_keys
    assert memory_storage.put_keys.count("scan.png") == 1
