# src/docrender/config.py
from __future__ import annotations

import json
import os
import tempfile
from dataclasses import dataclass, field, asdict, replace
from multiprocessing import cpu_count
from pathlib import Path
from typing import Any, Dict, Optional, Union

from .exceptions import ConfigurationError

SUPPORTED_PROVIDERS = ("Local", "AWS", "Azure")


# --- Storage configuration (one variant per provider) ---
@dataclass(frozen=True)
class LocalStorageConfig:
    base_directory: Path = Path(tempfile.gettempdir()) / "docrender_output"

    provider = "Local"


@dataclass(frozen=True)
class AwsStorageConfig:
    bucket_name: str = ""
    region: str = ""
    access_key_id: Optional[str] = None
    secret_access_key: Optional[str] = None
    session_token: Optional[str] = None
    endpoint_url: Optional[str] = None  # S3-compatible services such as MinIO

    provider = "AWS"


@dataclass(frozen=True)
class AzureStorageConfig:
    account_name: str = ""
    container_name: str = ""
    account_key: Optional[str] = None
    connection_string: Optional[str] = None

    provider = "Azure"


StorageConfig = Union[LocalStorageConfig, AwsStorageConfig, AzureStorageConfig]


def _blank(v: Optional[str]) -> bool:
    return v is None or not str(v).strip()


def validate_storage_config(cfg: StorageConfig) -> StorageConfig:
    """
    Validate only the fields of the selected provider.
    Raises ConfigurationError naming the first missing field.
    """
    if isinstance(cfg, LocalStorageConfig):
        return cfg
    if isinstance(cfg, AwsStorageConfig):
        if _blank(cfg.bucket_name):
            raise ConfigurationError("AWS BucketName is required for AWS storage provider", field="BucketName")
        if _blank(cfg.region):
            raise ConfigurationError("AWS Region is required for AWS storage provider", field="Region")
        return cfg
    if isinstance(cfg, AzureStorageConfig):
        if _blank(cfg.account_name) and _blank(cfg.connection_string):
            raise ConfigurationError(
                "Azure AccountName (or ConnectionString) is required for Azure storage provider",
                field="AccountName",
            )
        if _blank(cfg.container_name):
            raise ConfigurationError("Azure ContainerName is required for Azure storage provider", field="ContainerName")
        return cfg
    raise ConfigurationError(
        f"Unsupported storage provider: {type(cfg).__name__}. Supported providers: {', '.join(SUPPORTED_PROVIDERS)}",
        field="Provider",
    )


def _snake(key: str) -> str:
    # BucketName -> bucket_name, AccessKeyId -> access_key_id
    out = []
    for i, ch in enumerate(key):
        if ch.isupper() and i and not key[i - 1].isupper():
            out.append("_")
        out.append(ch.lower())
    return "".join(out).replace("-", "_")


def _block(d: Dict[str, Any], name: str) -> Dict[str, Any]:
    for k, v in d.items():
        if k.lower() == name.lower() and isinstance(v, dict):
            return {_snake(kk): vv for kk, vv in v.items()}
    return {}


def storage_config_from_dict(d: Dict[str, Any]) -> StorageConfig:
    """
    Parse {"provider": "AWS", "aws": {"bucketName": ..., "region": ...}} style dicts.
    Fields of the blocks that do not belong to the selected provider are ignored.
    """
    raw = {_snake(k): v for k, v in d.items()}
    provider = str(raw.get("provider") or "Local").strip()
    name = provider.lower()

    if name == "local":
        block = _block(d, "local")
        base = block.get("base_directory") or block.get("base_path")
        return LocalStorageConfig(Path(base)) if base else LocalStorageConfig()
    if name in ("aws", "s3"):
        block = _block(d, "aws")
        known = {k: v for k, v in block.items() if k in AwsStorageConfig.__dataclass_fields__}
        return AwsStorageConfig(**known)
    if name == "azure":
        block = _block(d, "azure")
        known = {k: v for k, v in block.items() if k in AzureStorageConfig.__dataclass_fields__}
        return AzureStorageConfig(**known)

    raise ConfigurationError(
        f"Unsupported storage provider: {provider}. Supported providers: {', '.join(SUPPORTED_PROVIDERS)}",
        field="Provider",
    )


def storage_config_to_dict(cfg: StorageConfig) -> Dict[str, Any]:
    body = asdict(cfg)
    for k, v in body.items():
        if isinstance(v, Path):
            body[k] = str(v)
    return {"provider": cfg.provider, cfg.provider.lower(): body}


# --- Per-job options ---
@dataclass(frozen=True)
class ProcessingOptions:
    """Options snapshot captured when a job is submitted."""
    thumbnail_size: int = 200
    oversample: int = 3
    run_ocr: bool = False
    ocr_backend: str = "tesseract"
    ocr_backend_kwargs: Dict[str, Any] = field(default_factory=dict)
    storage: Optional[StorageConfig] = None
    dpi: int = 150
    max_file_size_mb: float = 100
    preserve_original: bool = False
    output_prefix: str = ""

    def validate(self) -> "ProcessingOptions":
        if self.thumbnail_size <= 0:
            raise ConfigurationError("thumbnail_size must be positive", field="ThumbnailSize")
        if self.oversample < 1:
            raise ConfigurationError("oversample must be at least 1", field="Oversample")
        if self.dpi <= 0:
            raise ConfigurationError("dpi must be positive", field="Dpi")
        if self.storage is not None:
            validate_storage_config(self.storage)
        return self

    def with_overrides(self, **kwargs) -> "ProcessingOptions":
        return replace(self, **kwargs)

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["storage"] = storage_config_to_dict(self.storage) if self.storage else None
        return d

    @classmethod
    def from_dict(cls, options_dict: Dict[str, Any]) -> "ProcessingOptions":
        d = {k: v for k, v in dict(options_dict).items() if k in cls.__dataclass_fields__ and v is not None}
        if isinstance(d.get("storage"), dict):
            d["storage"] = storage_config_from_dict(d["storage"])
        return cls(**d)


# --- Service-level configuration ---
@dataclass
class RenderConfig:
    """Configuration for a docrender scheduler instance."""
    num_workers: int = max(1, min(4, cpu_count() - 1))
    temp_dir: Path = Path(tempfile.gettempdir()) / "docrender_temp"
    storage: StorageConfig = field(default_factory=LocalStorageConfig)
    default_options: ProcessingOptions = field(default_factory=ProcessingOptions)
    log_path: Optional[Path] = None

    def validate(self) -> "RenderConfig":
        if self.num_workers < 1:
            raise ConfigurationError("num_workers must be at least 1", field="MaxConcurrency")
        validate_storage_config(self.storage)
        self.default_options.validate()
        return self

    def to_dict(self):
        return {
            "num_workers": self.num_workers,
            "temp_dir": str(self.temp_dir),
            "storage": storage_config_to_dict(self.storage),
            "default_options": self.default_options.to_dict(),
            "log_path": str(self.log_path) if self.log_path else None,
        }

    @classmethod
    def from_dict(cls, config_dict: dict):
        d = dict(config_dict)

        for key in ["temp_dir", "log_path"]:
            if key in d and isinstance(d[key], str):
                d[key] = Path(d[key])

        # allow explicit None to mean use default
        for key in ["num_workers", "temp_dir", "storage", "default_options"]:
            if d.get(key) is None:
                d.pop(key, None)

        if isinstance(d.get("storage"), dict):
            d["storage"] = storage_config_from_dict(d["storage"])
        if isinstance(d.get("default_options"), dict):
            d["default_options"] = ProcessingOptions.from_dict(d["default_options"])

        cfg = cls(**{k: v for k, v in d.items() if k in cls.__dataclass_fields__})

        env_workers = os.getenv("DOCRENDER_MAX_CONCURRENCY")
        if env_workers:
            try:
                cfg.num_workers = max(1, int(env_workers))
            except ValueError:
                raise ConfigurationError(
                    f"DOCRENDER_MAX_CONCURRENCY must be an integer, got {env_workers!r}",
                    field="MaxConcurrency",
                )
        return cfg


def load_config(path: Union[str, Path]) -> RenderConfig:
    """Read a JSON config file. A bare storage block (with a 'provider' key) is also accepted."""
    fp = Path(path)
    try:
        data = json.loads(fp.read_text(encoding="utf-8"))
    except FileNotFoundError:
        raise ConfigurationError(f"Config file not found: {fp}", field="ConfigPath")
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Config file {fp} is not valid JSON: {e}", field="ConfigPath")
    if "provider" in data or "Provider" in data:
        data = {"storage": data}
    return RenderConfig.from_dict(data)
