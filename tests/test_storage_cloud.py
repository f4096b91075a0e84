from pathlib import Path
from unittest import mock

import pytest
from azure.core.exceptions import ResourceExistsError, ResourceNotFoundError, ServiceRequestError
from botocore.exceptions import ClientError

from docrender.config import AwsStorageConfig, AzureStorageConfig
from docrender.exceptions import ConfigurationError, StorageBackendError, StorageKeyExistsError
from docrender.storage.azure import AzureBlobStorageProvider
from docrender.storage.s3 import S3StorageProvider


@pytest.fixture
def s3_client():
    return mock.MagicMock(name="s3")


@pytest.fixture
def s3(s3_client, tmp_path):
    cfg = AwsStorageConfig(bucket_name="renditions", region="eu-west-1")
    return S3StorageProvider(cfg, client=s3_client, download_dir=tmp_path)


def test_s3_put_uploads_and_returns_virtual_hosted_url(s3, s3_client, tmp_path):
    src = tmp_path / "page.png"
    src.write_bytes(b"png")
    url = s3.put(src, "/jobs/page.png")
    s3_client.upload_file.assert_called_once_with(
        str(src), "renditions", "jobs/page.png", ExtraArgs={"ContentType": "image/png"}
    )
    assert url == "https://renditions.s3.eu-west-1.amazonaws.com/jobs/page.png"


def test_s3_put_without_overwrite_is_conditional(s3, s3_client, tmp_path):
    src = tmp_path / "page.png"
    src.write_bytes(b"png")
    s3.put(src, "jobs/page.png", overwrite=False)
    s3_client.upload_file.assert_not_called()
    kwargs = s3_client.put_object.call_args.kwargs
    assert kwargs["Key"] == "jobs/page.png"
    assert kwargs["IfNoneMatch"] == "*"


def test_s3_put_without_overwrite_reports_taken_key(s3, s3_client, tmp_path):
    src = tmp_path / "page.png"
    src.write_bytes(b"png")
    s3_client.put_object.side_effect = ClientError({"Error": {"Code": "PreconditionFailed"}}, "PutObject")
    with pytest.raises(StorageKeyExistsError) as exc_info:
        s3.put(src, "page.png", overwrite=False)
    assert exc_info.value.key == "page.png"


def test_s3_custom_endpoint_url(s3_client):
    cfg = AwsStorageConfig(bucket_name="b", region="us-east-1", endpoint_url="http://minio:9000/")
    provider = S3StorageProvider(cfg, client=s3_client)
    assert provider.url_for("k.png") == "http://minio:9000/b/k.png"


def test_s3_upload_failure_is_a_backend_error(s3, s3_client, tmp_path):
    src = tmp_path / "page.png"
    src.write_bytes(b"png")
    s3_client.upload_file.side_effect = ClientError({"Error": {"Code": "500"}}, "PutObject")
    with pytest.raises(StorageBackendError):
        s3.put(src, "page.png")


def test_s3_exists(s3, s3_client):
    assert s3.exists("a.png") is True
    s3_client.head_object.side_effect = ClientError({"Error": {"Code": "404"}}, "HeadObject")
    assert s3.exists("a.png") is False


def test_s3_get_downloads_to_temp_and_release_deletes_it(s3, s3_client):
    def fake_download(bucket, key, filename):
        Path(filename).write_bytes(b"remote")

    s3_client.download_file.side_effect = fake_download
    with s3.open_local("docs/in.pdf") as local:
        assert local.read_bytes() == b"remote"
        assert local.suffix == ".pdf"
        kept = local
    assert not kept.exists()


def test_s3_failed_download_leaves_no_temp_file(s3, s3_client, tmp_path):
    s3_client.download_file.side_effect = ClientError({"Error": {"Code": "404"}}, "GetObject")
    with pytest.raises(StorageBackendError):
        s3.get("missing.pdf")
    assert list(tmp_path.glob("docrender_dl_*")) == []


def test_s3_list_files_paginates(s3, s3_client):
    paginator = s3_client.get_paginator.return_value
    paginator.paginate.return_value = [
        {"Contents": [{"Key": "b.png"}]},
        {"Contents": [{"Key": "a.png"}]},
        {},
    ]
    assert s3.list_files() == ["a.png", "b.png"]


def test_s3_rejects_incomplete_config(s3_client):
    with pytest.raises(ConfigurationError) as exc_info:
        S3StorageProvider(AwsStorageConfig(bucket_name="", region="eu-west-1"), client=s3_client)
    assert exc_info.value.field == "BucketName"


@pytest.fixture
def container():
    return mock.MagicMock(name="container")


@pytest.fixture
def azure(container, tmp_path):
    cfg = AzureStorageConfig(account_name="acct", container_name="docs", account_key="k")
    return AzureBlobStorageProvider(cfg, container_client=container, download_dir=tmp_path)


def test_azure_put_uploads_with_overwrite(azure, container, tmp_path):
    src = tmp_path / "thumb.png"
    src.write_bytes(b"png")
    url = azure.put(src, "t/thumb.png")
    kwargs = container.upload_blob.call_args.kwargs
    assert kwargs["name"] == "t/thumb.png"
    assert kwargs["overwrite"] is True
    assert kwargs["content_settings"].content_type == "image/png"
    assert url == "https://acct.blob.core.windows.net/docs/t/thumb.png"


def test_azure_put_without_overwrite_reports_taken_key(azure, container, tmp_path):
    src = tmp_path / "thumb.png"
    src.write_bytes(b"png")
    container.upload_blob.side_effect = ResourceExistsError("BlobAlreadyExists")
    with pytest.raises(StorageKeyExistsError) as exc_info:
        azure.put(src, "t/thumb.png", overwrite=False)
    assert container.upload_blob.call_args.kwargs["overwrite"] is False
    assert exc_info.value.key == "t/thumb.png"


def test_namespaces_identify_the_container(azure, s3):
    assert azure.namespace == "azure://acct/docs"
    assert s3.namespace == "s3://eu-west-1/renditions"


def test_azure_delete_missing_blob_returns_false(azure, container):
    container.delete_blob.side_effect = ResourceNotFoundError("gone")
    assert azure.delete("x.png") is False


def test_azure_exists_failure_is_backend_error(azure, container):
    container.get_blob_client.return_value.exists.side_effect = ServiceRequestError("offline")
    with pytest.raises(StorageBackendError):
        azure.exists("x.png")


def test_azure_get_and_release(azure, container):
    container.download_blob.return_value.readinto.side_effect = lambda f: f.write(b"blob")
    local = azure.get("in/scan.tiff")
    assert local.read_bytes() == b"blob"
    azure.release(local)
    assert not local.exists()


def test_azure_connection_string_only(container):
    cfg = AzureStorageConfig(container_name="docs", connection_string="UseDevelopmentStorage=true")
    container.url = "http://127.0.0.1:10000/devstoreaccount1/docs"
    provider = AzureBlobStorageProvider(cfg, container_client=container)
    assert provider.url_for("a.png") == "http://127.0.0.1:10000/devstoreaccount1/docs/a.png"
