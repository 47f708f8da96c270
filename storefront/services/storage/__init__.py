from flask import current_app

from storefront.services.errors import StorageConfigError
from storefront.services.storage.base import StorageBackend
from storefront.services.storage.local import LocalStorage
from storefront.services.storage.s3 import S3Storage
from storefront.services.storage.supabase import SupabaseStorage

__all__ = [
    "StorageBackend",
    "LocalStorage",
    "S3Storage",
    "SupabaseStorage",
    "get_storage",
    "close_storage",
]

BACKENDS = {
    "local": LocalStorage,
    "s3": S3Storage,
    "supabase": SupabaseStorage,
}


def _backend_settings(config):
    """Backend name and constructor arguments taken from config."""
    backend = (config.get("STORAGE_BACKEND") or "local").lower()
    kwargs = {
        "max_attempts": config.get("STORAGE_MAX_ATTEMPTS", 3),
        "retry_backoff": config.get("STORAGE_RETRY_BACKOFF", 0.5),
    }

    if backend == "local":
        kwargs.update(
            root=config.get("LOCAL_IMAGE_DIR"),
            url_prefix=config.get("LOCAL_IMAGE_URL_PREFIX", "/images"),
        )
    elif backend == "s3":
        kwargs.update(
            bucket=config.get("S3_BUCKET_NAME"),
            public_url_base=config.get("S3_PUBLIC_URL"),
            endpoint_url=config.get("S3_ENDPOINT_URL"),
            access_key=config.get("S3_ACCESS_KEY"),
            secret_key=config.get("S3_SECRET_KEY"),
            region=config.get("S3_REGION"),
            timeout=config.get("STORAGE_TIMEOUT", 10),
        )
    elif backend == "supabase":
        kwargs.update(
            url=config.get("SUPABASE_URL"),
            service_key=config.get("SUPABASE_SERVICE_ROLE_KEY"),
            bucket=config.get("SUPABASE_BUCKET", "product-images"),
            timeout=config.get("STORAGE_TIMEOUT", 10),
        )
    else:
        raise StorageConfigError(f"Unknown STORAGE_BACKEND: {backend!r}")
    return backend, kwargs


def get_storage(config=None):
    """Storage backend named by STORAGE_BACKEND.

    With an explicit ``config`` a fresh backend is built and the caller
    owns it. Otherwise the current app's backend is returned, built once
    and kept in ``app.extensions`` until the storage settings change.
    """
    if config is not None:
        backend, kwargs = _backend_settings(config)
        return BACKENDS[backend](**kwargs)

    app = current_app._get_current_object()
    backend, kwargs = _backend_settings(app.config)
    signature = (backend, sorted(kwargs.items()))
    cached = app.extensions.get("storage")
    if cached is not None and cached[0] == signature:
        return cached[1]

    storage = BACKENDS[backend](**kwargs)
    if cached is not None:
        cached[1].close()
    app.extensions["storage"] = (signature, storage)
    return storage


def close_storage(app):
    """Close and forget the app's cached storage backend."""
    cached = app.extensions.pop("storage", None)
    if cached is not None:
        cached[1].close()
