import logging
import time

from storefront.services.errors import NotFound, StorageWriteError

logger = logging.getLogger(__name__)


class StorageBackend:
    """Durable blob store for image variants.

    Subclasses implement ``_put``, ``_exists``, ``_remove`` and
    ``public_url``. ``put`` adds bounded retries for transient failures.
    Keys are flat names such as ``3f2c..._400.webp``.
    """

    name = "base"
    # True when reference strings for this backend are full public URLs
    stores_urls = False

    def __init__(self, max_attempts=3, retry_backoff=0.5):
        self.max_attempts = max(1, int(max_attempts))
        self.retry_backoff = retry_backoff

    def put(self, key, data, content_type):
        """Write a new blob and return its public locator.

        Never overwrites: an existing key raises a non-transient
        StorageWriteError. Transient errors are retried with exponential
        backoff.
        """
        attempt = 1
        while True:
            try:
                self._put(key, data, content_type)
                return self.public_url(key)
            except StorageWriteError as e:
                if not e.transient or attempt >= self.max_attempts:
                    raise
                delay = self.retry_backoff * (2 ** (attempt - 1))
                logger.warning(
                    "Transient write failure for %s on %s (attempt %d/%d): %s",
                    key,
                    self.name,
                    attempt,
                    self.max_attempts,
                    e,
                )
                time.sleep(delay)
                attempt += 1

    def locate(self, key):
        """Return the public locator of an existing blob or raise NotFound."""
        if not self._exists(key):
            raise NotFound(f"No blob stored under {key}")
        return self.public_url(key)

    def remove(self, key):
        """Delete a blob. Deleting a missing key is not an error.

        Returns True if something was deleted, False if it was already gone.
        """
        return self._remove(key)

    def public_url(self, key):
        raise NotImplementedError

    def owns(self, reference):
        """True when a URL or site path points into this backend's public namespace."""
        return reference.startswith(self.public_url(""))

    def close(self):
        """Release connections held by the backend."""

    def _put(self, key, data, content_type):
        raise NotImplementedError

    def _exists(self, key):
        raise NotImplementedError

    def _remove(self, key):
        raise NotImplementedError

    def __repr__(self):
        return f"<{type(self).__name__}>"
