"""S3-compatible object store gateway.

Thin boto3 wrapper covering the multipart upload lifecycle, presigned
URLs and the plain get/put calls used by the stage handlers. Works
against AWS S3 or any S3-compatible endpoint (R2, MinIO). Every backend
failure surfaces as StorageError carrying the backend HTTP status.
"""

from __future__ import annotations

import logging
import os
from typing import Any

import boto3
from boto3.exceptions import S3TransferFailedError, S3UploadFailedError
from botocore.exceptions import BotoCoreError, ClientError

from media_pipeline.utils.errors import ObjectNotFoundError, StorageError

logger = logging.getLogger(__name__)

_NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound", "NoSuchUpload"}
_TRANSFER_ERRORS = (ClientError, BotoCoreError, S3UploadFailedError, S3TransferFailedError)


def _client_error_status(exc: ClientError) -> int | None:
    return exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode")


def _client_error_code(exc: ClientError) -> str:
    return exc.response.get("Error", {}).get("Code", "Unknown")


class ObjectStore:
    """Gateway to a single bucket.

    Reads configuration from environment variables when arguments are
    omitted:
        S3_BUCKET, AWS_REGION, S3_ENDPOINT_URL,
        AWS_ACCESS_KEY_ID, AWS_SECRET_ACCESS_KEY
    """

    def __init__(
        self,
        bucket: str | None = None,
        region: str | None = None,
        endpoint_url: str | None = None,
        access_key_id: str | None = None,
        secret_access_key: str | None = None,
        client: Any = None,
    ) -> None:
        self.bucket = bucket or os.environ.get("S3_BUCKET", "")
        self.region = region or os.environ.get("AWS_REGION", "us-east-1")
        self.endpoint_url = endpoint_url or os.environ.get("S3_ENDPOINT_URL") or None

        if not self.bucket:
            raise StorageError("S3_BUCKET is required", operation="init")
        if "/" in self.bucket:
            raise StorageError(
                f"Invalid bucket '{self.bucket}': bucket names cannot contain slashes",
                operation="init",
            )

        if client is not None:
            self._client = client
        else:
            self._client = boto3.client(
                "s3",
                region_name=self.region,
                endpoint_url=self.endpoint_url,
                aws_access_key_id=access_key_id
                or os.environ.get("AWS_ACCESS_KEY_ID")
                or None,
                aws_secret_access_key=secret_access_key
                or os.environ.get("AWS_SECRET_ACCESS_KEY")
                or None,
            )

    def _raise(self, exc: Exception, operation: str, key: str) -> None:
        """Translate a boto3 failure into StorageError and raise it."""
        if isinstance(exc, ClientError):
            code = _client_error_code(exc)
            status = _client_error_status(exc)
            error_cls = (
                ObjectNotFoundError
                if code in _NOT_FOUND_CODES or status == 404
                else StorageError
            )
            raise error_cls(
                f"{operation} failed for '{key}': {code}",
                status=status,
                operation=operation,
                key=key,
            ) from exc
        raise StorageError(
            f"{operation} failed for '{key}': {exc}",
            operation=operation,
            key=key,
        ) from exc

    # -- multipart lifecycle --

    def create_multipart_upload(self, key: str, content_type: str = "") -> str:
        """Open a multipart upload session and return its upload id."""
        kwargs: dict[str, Any] = {"Bucket": self.bucket, "Key": key}
        if content_type:
            kwargs["ContentType"] = content_type
        try:
            response = self._client.create_multipart_upload(**kwargs)
        except (ClientError, BotoCoreError) as exc:
            self._raise(exc, "create_multipart_upload", key)
        upload_id = response["UploadId"]
        logger.info("Opened multipart upload %s for %s", upload_id, key)
        return upload_id

    def presign_part_upload_url(
        self, key: str, upload_id: str, part_number: int, ttl: int
    ) -> str:
        """Presign a PUT URL for one part of a multipart upload."""
        try:
            return self._client.generate_presigned_url(
                "upload_part",
                Params={
                    "Bucket": self.bucket,
                    "Key": key,
                    "UploadId": upload_id,
                    "PartNumber": part_number,
                },
                ExpiresIn=ttl,
            )
        except (ClientError, BotoCoreError) as exc:
            self._raise(exc, "presign_part_upload_url", key)

    def presign_get_url(self, key: str, ttl: int) -> str:
        """Presign a GET URL for an object."""
        try:
            return self._client.generate_presigned_url(
                "get_object",
                Params={"Bucket": self.bucket, "Key": key},
                ExpiresIn=ttl,
            )
        except (ClientError, BotoCoreError) as exc:
            self._raise(exc, "presign_get_url", key)

    def complete_multipart_upload(
        self, key: str, upload_id: str, parts: list[dict[str, Any]]
    ) -> dict[str, Any]:
        """Complete a multipart upload.

        Args:
            key: Object key of the upload.
            upload_id: Multipart session id.
            parts: ``[{"PartNumber": int, "ETag": str}, ...]`` in ascending
                part number order.

        Returns:
            The backend response (Location, ETag, ...).
        """
        try:
            response = self._client.complete_multipart_upload(
                Bucket=self.bucket,
                Key=key,
                UploadId=upload_id,
                MultipartUpload={"Parts": parts},
            )
        except (ClientError, BotoCoreError) as exc:
            self._raise(exc, "complete_multipart_upload", key)
        logger.info("Completed multipart upload %s for %s", upload_id, key)
        return response

    def find_active_upload_id(self, key: str) -> str | None:
        """Recover the upload id of an in-flight multipart session for key.

        Lists uploads under the key prefix and matches on the exact key.
        When several sessions exist the most recently initiated one wins.
        """
        try:
            response = self._client.list_multipart_uploads(
                Bucket=self.bucket, Prefix=key
            )
        except (ClientError, BotoCoreError) as exc:
            self._raise(exc, "list_multipart_uploads", key)

        matches = [u for u in response.get("Uploads", []) if u.get("Key") == key]
        if not matches:
            return None
        matches.sort(key=lambda u: u.get("Initiated") or 0, reverse=True)
        return matches[0]["UploadId"]

    def find_key_by_prefix(self, prefix: str) -> str | None:
        """Resolve the single object key that starts with prefix.

        A stored object wins over an in-flight multipart session; among
        sessions the most recently initiated one wins. Returns None when
        neither exists.
        """
        try:
            listed = self._client.list_objects_v2(
                Bucket=self.bucket, Prefix=prefix, MaxKeys=10
            )
        except (ClientError, BotoCoreError) as exc:
            self._raise(exc, "list_objects_v2", prefix)
        keys = sorted(obj["Key"] for obj in listed.get("Contents", []))
        if keys:
            return keys[0]

        try:
            response = self._client.list_multipart_uploads(
                Bucket=self.bucket, Prefix=prefix
            )
        except (ClientError, BotoCoreError) as exc:
            self._raise(exc, "list_multipart_uploads", prefix)
        uploads = sorted(
            response.get("Uploads", []),
            key=lambda u: u.get("Initiated") or 0,
            reverse=True,
        )
        return uploads[0]["Key"] if uploads else None

    # -- objects --

    def head_object(self, key: str) -> dict[str, Any]:
        """Return object metadata.

        Raises:
            ObjectNotFoundError: If the object does not exist.
            StorageError: On any other backend failure.
        """
        try:
            response = self._client.head_object(Bucket=self.bucket, Key=key)
        except (ClientError, BotoCoreError) as exc:
            self._raise(exc, "head_object", key)
        return {
            "content_length": response.get("ContentLength", 0),
            "content_type": response.get("ContentType", ""),
            "etag": response.get("ETag", ""),
        }

    def fetch_object(self, key: str) -> bytes:
        """Retrieve an object's bytes by key."""
        try:
            response = self._client.get_object(Bucket=self.bucket, Key=key)
            return response["Body"].read()
        except (ClientError, BotoCoreError) as exc:
            self._raise(exc, "get_object", key)

    def put_object(self, key: str, data: bytes, content_type: str = "") -> None:
        """Store an object, overwriting any previous version at key."""
        kwargs: dict[str, Any] = {"Bucket": self.bucket, "Key": key, "Body": data}
        if content_type:
            kwargs["ContentType"] = content_type
        try:
            self._client.put_object(**kwargs)
        except (ClientError, BotoCoreError) as exc:
            self._raise(exc, "put_object", key)

    # -- file transfers --

    def download_to_path(self, key: str, path: str) -> int:
        """Stream an object into a local file and return its size in bytes.

        Uses the managed transfer, so the object is written to disk in
        chunks and never held in memory.
        """
        try:
            self._client.download_file(self.bucket, key, path)
        except _TRANSFER_ERRORS as exc:
            self._raise(exc, "download_file", key)
        return os.path.getsize(path)

    def upload_from_path(self, key: str, path: str, content_type: str = "") -> int:
        """Stream a local file to key and return its size in bytes.

        Large files go up as a multipart upload handled by boto3.
        """
        extra_args = {"ContentType": content_type} if content_type else None
        try:
            self._client.upload_file(path, self.bucket, key, ExtraArgs=extra_args)
        except _TRANSFER_ERRORS as exc:
            self._raise(exc, "upload_file", key)
        return os.path.getsize(path)
