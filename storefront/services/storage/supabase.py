import logging
from urllib.parse import quote

import httpx

from storefront.services.errors import StorageConfigError, StorageDeleteError, StorageError, StorageWriteError
from storefront.services.storage.base import StorageBackend

logger = logging.getLogger(__name__)


class SupabaseStorage(StorageBackend):
    """Hosted storage bucket behind Supabase's CDN, via its REST API.

    Products store the full public URL of each image, so references
    for this backend are URLs rather than bare keys.
    """

    name = "supabase"
    stores_urls = True

    def __init__(self, url, service_key, bucket="product-images", timeout=10, transport=None, **kwargs):
        super().__init__(**kwargs)
        if not url or not service_key:
            raise StorageConfigError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set")
        self.base_url = url.rstrip("/")
        self.bucket = bucket
        self._client = httpx.Client(
            base_url=f"{self.base_url}/storage/v1",
            headers={
                "Authorization": f"Bearer {service_key}",
                "apikey": service_key,
            },
            timeout=timeout,
            transport=transport,
        )

    def _object_path(self, key):
        return f"/object/{self.bucket}/{quote(key)}"

    def public_url(self, key):
        return f"{self.base_url}/storage/v1/object/public/{self.bucket}/{quote(key)}"

    def _put(self, key, data, content_type):
        try:
            resp = self._client.post(
                self._object_path(key),
                content=data,
                headers={
                    "Content-Type": content_type,
                    "Cache-Control": "max-age=31536000",
                    "x-upsert": "false",
                },
            )
        except httpx.TimeoutException as e:
            raise StorageWriteError(f"Timed out writing {key}", transient=True) from e
        except httpx.TransportError as e:
            raise StorageWriteError(f"Storage unreachable writing {key}: {e}", transient=True) from e

        if resp.is_success:
            return
        detail = _error_detail(resp)
        if resp.status_code == 409 or "duplicate" in detail.lower():
            raise StorageWriteError(f"Refusing to overwrite existing blob {key}")
        logger.error("Storage API error writing %s: %s %s", key, resp.status_code, detail)
        raise StorageWriteError(
            f"Storage rejected write of {key} ({resp.status_code})",
            transient=resp.status_code >= 500 or resp.status_code == 429,
        )

    def _exists(self, key):
        try:
            resp = self._client.head(f"/object/public/{self.bucket}/{quote(key)}")
        except httpx.HTTPError as e:
            raise StorageError(f"Storage unreachable looking up {key}: {e}") from e
        if resp.status_code in (400, 404):
            return False
        if not resp.is_success:
            raise StorageError(f"Storage lookup of {key} failed ({resp.status_code})")
        return True

    def _remove(self, key):
        try:
            resp = self._client.request(
                "DELETE",
                f"/object/{self.bucket}",
                json={"prefixes": [key]},
            )
        except httpx.HTTPError as e:
            raise StorageDeleteError(f"Storage unreachable deleting {key}: {e}") from e
        if resp.status_code == 404:
            return False
        if not resp.is_success:
            raise StorageDeleteError(
                f"Storage rejected delete of {key} ({resp.status_code}): {_error_detail(resp)}"
            )
        # The API answers with the list of objects it actually removed
        try:
            removed = resp.json()
        except ValueError:
            return True
        return bool(removed)

    def close(self):
        self._client.close()


def _error_detail(resp):
    try:
        data = resp.json()
    except ValueError:
        return resp.text[:200]
    if isinstance(data, dict):
        return str(data.get("message") or data.get("error") or data)
    return str(data)
