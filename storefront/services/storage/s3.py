import logging

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError, ConnectTimeoutError, EndpointConnectionError, ReadTimeoutError

from storefront.services.errors import StorageConfigError, StorageDeleteError, StorageError, StorageWriteError
from storefront.services.storage.base import StorageBackend

logger = logging.getLogger(__name__)

TRANSIENT_ERROR_CODES = {
    "InternalError",
    "ServiceUnavailable",
    "SlowDown",
    "RequestTimeout",
    "RequestTimeoutException",
    "Throttling",
    "ThrottlingException",
}
# Returned when IfNoneMatch="*" finds an object already stored under the key
COLLISION_ERROR_CODES = {"PreconditionFailed", "ConditionalRequestConflict"}
MISSING_ERROR_CODES = {"404", "NoSuchKey", "NotFound"}


def _is_transient(error):
    code = error.response.get("Error", {}).get("Code", "")
    status = error.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0)
    return code in TRANSIENT_ERROR_CODES or status >= 500


class S3Storage(StorageBackend):
    """Object storage through the S3 API (AWS, R2, MinIO...)."""

    name = "s3"

    def __init__(
        self,
        bucket,
        public_url_base="",
        endpoint_url=None,
        access_key=None,
        secret_key=None,
        region=None,
        timeout=10,
        client=None,
        **kwargs,
    ):
        super().__init__(**kwargs)
        if not bucket:
            raise StorageConfigError("S3_BUCKET_NAME is not configured")
        self.bucket = bucket
        self.public_url_base = (public_url_base or "").rstrip("/")
        self.endpoint_url = endpoint_url or None
        self.access_key = access_key
        self.secret_key = secret_key
        self.region = region
        self.timeout = timeout
        self._client = client

    def _get_client(self):
        if self._client is None:
            self._client = boto3.client(
                "s3",
                endpoint_url=self.endpoint_url,
                aws_access_key_id=self.access_key or None,
                aws_secret_access_key=self.secret_key or None,
                region_name=self.region,
                config=BotoConfig(
                    signature_version="s3v4",
                    connect_timeout=self.timeout,
                    read_timeout=self.timeout,
                    # Retries are handled by StorageBackend.put
                    retries={"max_attempts": 1, "mode": "standard"},
                ),
            )
        return self._client

    def public_url(self, key):
        """Return the public CDN URL for a storage key."""
        if self.public_url_base:
            return f"{self.public_url_base}/{key}"
        if self.endpoint_url:
            return f"{self.endpoint_url.rstrip('/')}/{self.bucket}/{key}"
        return f"https://{self.bucket}.s3.amazonaws.com/{key}"

    def _put(self, key, data, content_type):
        client = self._get_client()
        try:
            client.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=data,
                ContentType=content_type,
                CacheControl="public, max-age=31536000, immutable",
                IfNoneMatch="*",
            )
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code", "")
            if code in COLLISION_ERROR_CODES:
                raise StorageWriteError(f"Refusing to overwrite existing blob {key}") from e
            raise StorageWriteError(
                f"S3 rejected write of {key}: {code or e}",
                transient=_is_transient(e),
            ) from e
        except (ConnectTimeoutError, ReadTimeoutError, EndpointConnectionError) as e:
            raise StorageWriteError(f"S3 unreachable writing {key}: {e}", transient=True) from e
        except BotoCoreError as e:
            raise StorageWriteError(f"S3 client error writing {key}: {e}") from e

    def _exists(self, key):
        client = self._get_client()
        try:
            client.head_object(Bucket=self.bucket, Key=key)
            return True
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code", "")
            if code in MISSING_ERROR_CODES:
                return False
            raise StorageError(f"S3 lookup of {key} failed: {code or e}") from e

    def _remove(self, key):
        # S3 DeleteObject succeeds for missing keys, so this is idempotent
        client = self._get_client()
        try:
            client.delete_object(Bucket=self.bucket, Key=key)
            return True
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code", "")
            if code in MISSING_ERROR_CODES:
                return False
            raise StorageDeleteError(f"S3 rejected delete of {key}: {code or e}") from e
        except BotoCoreError as e:
            raise StorageDeleteError(f"S3 client error deleting {key}: {e}") from e
