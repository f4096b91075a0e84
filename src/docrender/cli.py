# src/docrender/cli.py
from __future__ import annotations

import argparse
import ast
import json
import logging
import re
import sys
import time
from pathlib import Path
from queue import Empty
from typing import List, Optional

from tqdm import tqdm

from .config import LocalStorageConfig, ProcessingOptions, RenderConfig, load_config
from .exceptions import ConfigurationError
from .logger import setup_logging, teardown_logging
from .models import ProgressStatus
from .ocr_backends.loader import import_backend_class, normalize_backend_alias, normalize_backend_kwargs
from .scheduler import JobScheduler
from .utils import supported_extensions

__all__ = ["collect_inputs", "run_pipeline", "main"]

logger = logging.getLogger("docrender")


def _parse_backend_kwargs(val) -> dict:
    """
    Accept several syntaxes for --ocr-backend-kwargs:
      1) JSON                                   {"languages":["en","de"],"psm":6}
      2) Python-literal dict with single quotes {'languages': ['en','de'], 'psm': 6}
      3) key=value pairs separated by ;         languages=en,de;psm=6
    """
    if isinstance(val, dict):
        return dict(val)
    if not isinstance(val, str) or not val.strip():
        return {}

    s = val.strip()
    if len(s) >= 2 and s[0] in ("'", '"') and s[-1] == s[0]:
        s = s[1:-1].strip()

    try:
        parsed = json.loads(s)
        if isinstance(parsed, dict):
            return parsed
    except ValueError:
        pass

    try:
        lit = ast.literal_eval(s)
        if isinstance(lit, dict):
            return lit
    except (ValueError, SyntaxError):
        pass

    out: dict = {}
    for part in re.split(r";\s*", s):
        if "=" not in part:
            continue
        k, v = part.split("=", 1)
        k = k.strip().strip('"\'')
        v = v.strip().strip('"\'')
        if "," in v:
            out[k] = [x.strip() for x in v.split(",") if x.strip()]
        elif v.lower() in ("true", "false"):
            out[k] = v.lower() == "true"
        elif re.fullmatch(r"-?\d+", v):
            out[k] = int(v)
        elif re.fullmatch(r"-?\d+\.\d*", v):
            out[k] = float(v)
        else:
            out[k] = v
    if out:
        return out

    raise SystemExit(f"Invalid --ocr-backend-kwargs. Could not parse: {val!r}")


def collect_inputs(input_path: Path) -> List[Path]:
    """A single file, or every supported file below a directory."""
    if input_path.is_file():
        return [input_path]
    if not input_path.is_dir():
        logger.error("Input path does not exist, %s", input_path)
        return []
    exts = set(supported_extensions())
    all_paths = sorted(input_path.rglob("*"))
    files = [p for p in tqdm(all_paths, desc="Scanning inputs", disable=len(all_paths) < 500)
             if p.is_file() and p.suffix.lower() in exts]
    logger.info("Selected %d of %d paths for processing", len(files), len(all_paths))
    return files


def run_pipeline(config: RenderConfig, inputs: List[Path], results_path: Optional[Path] = None) -> int:
    """Submit every input, follow progress with tqdm, write one JSON line per job. Returns failures."""
    failures = 0
    with JobScheduler(config) as scheduler:
        events = scheduler.broadcaster.subscribe(None)
        job_ids = scheduler.submit_batch(inputs)
        pending = set(job_ids)

        with tqdm(total=len(job_ids), desc="Converting", unit="file") as bar:
            while pending:
                try:
                    report = events.get(timeout=0.5)
                except Empty:
                    continue
                if report is None:
                    break
                if report.job_id not in pending:
                    continue
                bar.set_postfix_str(f"{report.file_name} {report.status.value}", refresh=False)
                if report.status.is_terminal:
                    pending.discard(report.job_id)
                    bar.update(1)
                    if report.status == ProgressStatus.FAILED:
                        failures += 1
                        tqdm.write(f"FAILED {report.file_name}: {report.error_message}")
        events.close()

        if results_path:
            results_path.parent.mkdir(parents=True, exist_ok=True)
            with open(results_path, "a", encoding="utf-8") as f:
                for job_id in job_ids:
                    job = scheduler.get_job(job_id)
                    f.write(json.dumps(job.to_dict(), ensure_ascii=False) + "\n")
            logger.info("Results written to %s", results_path)

    return failures


# -------------------------------
# CLI parsing
# -------------------------------

def _build_run_parser(subparsers: argparse._SubParsersAction) -> argparse.ArgumentParser:
    p = subparsers.add_parser("run", help="Convert a file or a directory of documents")

    p.add_argument("-i", "--input", type=Path, required=True, help="File or directory to convert")
    p.add_argument("-o", "--output-dir", type=Path, help="Local storage directory for renditions")
    p.add_argument("--storage-config", type=Path, help="JSON storage config (Local, AWS or Azure)")
    p.add_argument("--results", type=Path, help="Append one JSON line per job to this file")
    p.add_argument("--temp-dir", type=Path, help="Scratch directory for per-job temp files")

    p.add_argument("-w", "--workers", type=int, help="Number of concurrent conversion jobs")
    p.add_argument("--thumbnail-size", type=int, default=200, help="Long edge of thumbnails in pixels")
    p.add_argument("--oversample", type=int, default=3, help="Thumbnail super-sampling factor")
    p.add_argument("-d", "--dpi", type=int, default=150, help="DPI for rendering PDF pages")
    p.add_argument("--max-file-size-mb", type=float, default=100, help="Reject inputs larger than this")
    p.add_argument("--preserve-original", action="store_true", help="Also store the untouched input file")
    p.add_argument("--prefix", default="", help="Storage key prefix for all artifacts")

    ocr = p.add_argument_group("OCR")
    ocr.add_argument("--ocr", action="store_true", help="Extract text from every page")
    ocr.add_argument("--ocr-backend", default="tesseract",
                     help="Alias (tesseract, mistral) or dotted path to an OCR backend class")
    ocr.add_argument(
        "--ocr-backend-kwargs",
        type=str,
        default="{}",
        help='Backend kwargs as JSON or key=value pairs, e.g. \'{"languages":["en"]}\' or languages=en,de;psm=6',
    )

    p.add_argument("--log-file", type=Path, help="Write a rotating log file here")
    p.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    return p


def _parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="docrender, document to PNG conversion with thumbnails and OCR")
    subparsers = parser.add_subparsers(dest="command")
    _build_run_parser(subparsers)
    subparsers.add_parser("formats", help="List supported input formats")
    return parser.parse_args(argv)


def _config_from_args(args: argparse.Namespace) -> RenderConfig:
    cfg = load_config(args.storage_config) if args.storage_config else RenderConfig.from_dict({})
    if args.output_dir:
        cfg.storage = LocalStorageConfig(args.output_dir)
    if args.workers:
        cfg.num_workers = args.workers
    if args.temp_dir:
        cfg.temp_dir = args.temp_dir

    backend = normalize_backend_alias(args.ocr_backend)
    if args.ocr:
        import_backend_class(backend)  # fail fast before any job is queued
    cfg.default_options = ProcessingOptions(
        thumbnail_size=args.thumbnail_size,
        oversample=args.oversample,
        run_ocr=args.ocr,
        ocr_backend=backend,
        ocr_backend_kwargs=normalize_backend_kwargs(_parse_backend_kwargs(args.ocr_backend_kwargs)),
        dpi=args.dpi,
        max_file_size_mb=args.max_file_size_mb,
        preserve_original=args.preserve_original,
        output_prefix=args.prefix,
    )
    return cfg.validate()


def _run_from_cli(args: argparse.Namespace) -> int:
    listener = setup_logging(
        level=logging.DEBUG if args.verbose else logging.INFO,
        file_path=args.log_file,
    )
    listener.start()
    try:
        try:
            config = _config_from_args(args)
        except ConfigurationError as e:
            logger.error("Configuration error (%s), %s", e.field or "unknown field", e)
            return 2

        inputs = collect_inputs(args.input)
        if not inputs:
            logger.info("Nothing to convert")
            return 0

        logger.info("Converting %d files with %d workers", len(inputs), config.num_workers)
        start = time.perf_counter()
        failures = run_pipeline(config, inputs, args.results)
        logger.info("Done in %.1fs, %d succeeded, %d failed",
                    time.perf_counter() - start, len(inputs) - failures, failures)
        return 1 if failures else 0
    finally:
        teardown_logging(listener)


def main(argv: Optional[List[str]] = None) -> int:
    args = _parse_args(argv)

    if args.command == "formats":
        print(" ".join(supported_extensions()))
        return 0

    if args.command == "run":
        return _run_from_cli(args)

    print("Usage:\n  docrender run -i <file|dir> [-o <output dir>] [options]\n  docrender formats")
    return 2


if __name__ == "__main__":
    sys.exit(main())
