import logging
import os

from storefront.services.errors import StorageConfigError, StorageDeleteError, StorageWriteError
from storefront.services.storage.base import StorageBackend

logger = logging.getLogger(__name__)


class LocalStorage(StorageBackend):
    """Blobs as files in one directory, served by the public blueprint."""

    name = "local"

    def __init__(self, root, url_prefix="/images", **kwargs):
        super().__init__(**kwargs)
        if not root:
            raise StorageConfigError("LOCAL_IMAGE_DIR is not configured")
        self.root = os.path.abspath(root)
        self.url_prefix = url_prefix.rstrip("/")

    def path_for(self, key):
        """Absolute file path for a key. Keys may not leave the root."""
        if not key or "/" in key or "\\" in key or key in (".", ".."):
            raise StorageConfigError(f"Invalid storage key: {key!r}")
        return os.path.join(self.root, key)

    def public_url(self, key):
        return f"{self.url_prefix}/{key}"

    def _put(self, key, data, content_type):
        path = self.path_for(key)
        try:
            os.makedirs(self.root, exist_ok=True)
            # "x" fails if the file exists, so an existing blob is never replaced
            with open(path, "xb") as fh:
                fh.write(data)
        except FileExistsError:
            raise StorageWriteError(f"Refusing to overwrite existing blob {key}")
        except PermissionError as e:
            raise StorageWriteError(f"Cannot write {key}: {e}") from e
        except OSError as e:
            # Partially written file must not survive
            try:
                os.remove(path)
            except OSError:
                pass
            raise StorageWriteError(f"Cannot write {key}: {e}", transient=True) from e

    def _exists(self, key):
        return os.path.isfile(self.path_for(key))

    def _remove(self, key):
        try:
            os.remove(self.path_for(key))
            return True
        except FileNotFoundError:
            return False
        except OSError as e:
            raise StorageDeleteError(f"Cannot delete {key}: {e}") from e
