"""Tests for media_pipeline.storage.object_store module."""

from datetime import datetime
from unittest.mock import MagicMock, patch

import pytest
from boto3.exceptions import S3UploadFailedError
from botocore.exceptions import ClientError, EndpointConnectionError

from media_pipeline.storage.object_store import ObjectStore
from media_pipeline.utils.errors import ObjectNotFoundError, StorageError


def _client_error(code: str, status: int, operation: str = "Op") -> ClientError:
    return ClientError(
        {
            "Error": {"Code": code, "Message": code},
            "ResponseMetadata": {"HTTPStatusCode": status},
        },
        operation,
    )


def _make_store() -> tuple[ObjectStore, MagicMock]:
    """Create a store with a mocked boto3 s3 client."""
    with patch("media_pipeline.storage.object_store.boto3") as mock_boto:
        mock_s3 = MagicMock()
        mock_boto.client.return_value = mock_s3
        store = ObjectStore(bucket="media", region="eu-west-1")
    return store, mock_s3


class TestObjectStoreInit:
    """Tests for ObjectStore initialization."""

    def test_builds_s3_client(self) -> None:
        with patch("media_pipeline.storage.object_store.boto3") as mock_boto:
            ObjectStore(
                bucket="media",
                region="eu-west-1",
                endpoint_url="https://minio.local",
                access_key_id="id",
                secret_access_key="secret",
            )

        mock_boto.client.assert_called_once_with(
            "s3",
            region_name="eu-west-1",
            endpoint_url="https://minio.local",
            aws_access_key_id="id",
            aws_secret_access_key="secret",
        )

    def test_missing_bucket(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("S3_BUCKET", raising=False)

        with pytest.raises(StorageError, match="S3_BUCKET is required"):
            ObjectStore(bucket="", client=MagicMock())

    def test_bucket_with_slash(self) -> None:
        with pytest.raises(StorageError, match="cannot contain slashes"):
            ObjectStore(bucket="media/uploads", client=MagicMock())

    def test_bucket_from_env(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("S3_BUCKET", "env-bucket")

        assert ObjectStore(client=MagicMock()).bucket == "env-bucket"


class TestMultipart:
    """Tests for the multipart upload lifecycle."""

    def test_create_returns_upload_id(self) -> None:
        store, s3 = _make_store()
        s3.create_multipart_upload.return_value = {"UploadId": "u-1"}

        assert store.create_multipart_upload("k", "video/mp4") == "u-1"
        s3.create_multipart_upload.assert_called_once_with(
            Bucket="media", Key="k", ContentType="video/mp4"
        )

    def test_presign_part(self) -> None:
        store, s3 = _make_store()
        s3.generate_presigned_url.return_value = "https://signed"

        url = store.presign_part_upload_url("k", "u-1", 3, 900)

        assert url == "https://signed"
        s3.generate_presigned_url.assert_called_once_with(
            "upload_part",
            Params={"Bucket": "media", "Key": "k", "UploadId": "u-1", "PartNumber": 3},
            ExpiresIn=900,
        )

    def test_complete_passes_parts(self) -> None:
        store, s3 = _make_store()
        parts = [{"PartNumber": 1, "ETag": '"a"'}]

        store.complete_multipart_upload("k", "u-1", parts)

        s3.complete_multipart_upload.assert_called_once_with(
            Bucket="media", Key="k", UploadId="u-1", MultipartUpload={"Parts": parts}
        )

    def test_complete_error_carries_status(self) -> None:
        store, s3 = _make_store()
        s3.complete_multipart_upload.side_effect = _client_error("InvalidPart", 400)

        with pytest.raises(StorageError) as exc_info:
            store.complete_multipart_upload("k", "u-1", [])

        assert exc_info.value.status == 400
        assert exc_info.value.operation == "complete_multipart_upload"
        assert not isinstance(exc_info.value, ObjectNotFoundError)

    def test_find_active_upload_id_prefers_newest_exact_match(self) -> None:
        store, s3 = _make_store()
        s3.list_multipart_uploads.return_value = {
            "Uploads": [
                {"Key": "k", "UploadId": "old", "Initiated": datetime(2024, 1, 1)},
                {"Key": "k", "UploadId": "new", "Initiated": datetime(2024, 1, 2)},
                {"Key": "k.extra", "UploadId": "other", "Initiated": datetime(2024, 1, 3)},
            ]
        }

        assert store.find_active_upload_id("k") == "new"

    def test_find_active_upload_id_none(self) -> None:
        store, s3 = _make_store()
        s3.list_multipart_uploads.return_value = {}

        assert store.find_active_upload_id("k") is None


class TestObjects:
    """Tests for head/get/put."""

    def test_head_object(self) -> None:
        store, s3 = _make_store()
        s3.head_object.return_value = {"ContentLength": 10, "ContentType": "video/mp4"}

        assert store.head_object("k")["content_length"] == 10

    def test_head_missing_object(self) -> None:
        store, s3 = _make_store()
        s3.head_object.side_effect = _client_error("404", 404, "HeadObject")

        with pytest.raises(ObjectNotFoundError) as exc_info:
            store.head_object("k")

        assert exc_info.value.status == 404
        assert exc_info.value.key == "k"

    def test_fetch_object_returns_bytes(self) -> None:
        store, s3 = _make_store()
        body = MagicMock()
        body.read.return_value = b"audio"
        s3.get_object.return_value = {"Body": body}

        assert store.fetch_object("k") == b"audio"

    def test_fetch_no_such_key(self) -> None:
        store, s3 = _make_store()
        s3.get_object.side_effect = _client_error("NoSuchKey", 404, "GetObject")

        with pytest.raises(ObjectNotFoundError):
            store.fetch_object("k")

    def test_put_object(self) -> None:
        store, s3 = _make_store()

        store.put_object("k", b"data", "text/plain")

        s3.put_object.assert_called_once_with(
            Bucket="media", Key="k", Body=b"data", ContentType="text/plain"
        )

    def test_put_server_error(self) -> None:
        store, s3 = _make_store()
        s3.put_object.side_effect = _client_error("InternalError", 500, "PutObject")

        with pytest.raises(StorageError) as exc_info:
            store.put_object("k", b"data")

        assert exc_info.value.status == 500

    def test_connection_error_has_no_status(self) -> None:
        store, s3 = _make_store()
        s3.put_object.side_effect = EndpointConnectionError(endpoint_url="https://s3")

        with pytest.raises(StorageError) as exc_info:
            store.put_object("k", b"data")

        assert exc_info.value.status is None


class TestKeyDiscovery:
    """Tests for find_key_by_prefix()."""

    def test_stored_object_wins(self) -> None:
        store, s3 = _make_store()
        s3.list_objects_v2.return_value = {
            "Contents": [{"Key": "uploads/j/original.mp4"}]
        }

        assert store.find_key_by_prefix("uploads/j/original.") == "uploads/j/original.mp4"
        s3.list_objects_v2.assert_called_once_with(
            Bucket="media", Prefix="uploads/j/original.", MaxKeys=10
        )
        s3.list_multipart_uploads.assert_not_called()

    def test_falls_back_to_newest_session(self) -> None:
        store, s3 = _make_store()
        s3.list_objects_v2.return_value = {"KeyCount": 0}
        s3.list_multipart_uploads.return_value = {
            "Uploads": [
                {"Key": "uploads/j/original.mov", "UploadId": "a", "Initiated": datetime(2024, 1, 1)},
                {"Key": "uploads/j/original.mp4", "UploadId": "b", "Initiated": datetime(2024, 1, 2)},
            ]
        }

        assert store.find_key_by_prefix("uploads/j/original.") == "uploads/j/original.mp4"

    def test_nothing_found(self) -> None:
        store, s3 = _make_store()
        s3.list_objects_v2.return_value = {}
        s3.list_multipart_uploads.return_value = {}

        assert store.find_key_by_prefix("uploads/j/original.") is None


class TestFileTransfers:
    """Tests for download_to_path / upload_from_path."""

    def test_download_streams_to_disk(self, tmp_path) -> None:
        store, s3 = _make_store()
        target = tmp_path / "original.mp4"

        def fake_download(bucket, key, path):
            with open(path, "wb") as f:
                f.write(b"x" * 2048)

        s3.download_file.side_effect = fake_download

        assert store.download_to_path("uploads/j/original.mp4", str(target)) == 2048
        s3.download_file.assert_called_once_with(
            "media", "uploads/j/original.mp4", str(target)
        )
        s3.get_object.assert_not_called()

    def test_download_missing_key(self, tmp_path) -> None:
        store, s3 = _make_store()
        s3.download_file.side_effect = _client_error("404", 404, "HeadObject")

        with pytest.raises(ObjectNotFoundError):
            store.download_to_path("k", str(tmp_path / "out"))

    def test_upload_sets_content_type(self, tmp_path) -> None:
        store, s3 = _make_store()
        source = tmp_path / "audio.mp3"
        source.write_bytes(b"mp3-data")

        assert store.upload_from_path("k", str(source), "audio/mpeg") == 8
        s3.upload_file.assert_called_once_with(
            str(source), "media", "k", ExtraArgs={"ContentType": "audio/mpeg"}
        )

    def test_upload_failure_is_storage_error(self, tmp_path) -> None:
        store, s3 = _make_store()
        source = tmp_path / "audio.mp3"
        source.write_bytes(b"mp3-data")
        s3.upload_file.side_effect = S3UploadFailedError("Failed to upload")

        with pytest.raises(StorageError) as exc_info:
            store.upload_from_path("k", str(source))

        assert exc_info.value.operation == "upload_file"
