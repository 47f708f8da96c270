"""Image ingestion pipeline: validate, derive variants, store, clean up."""
import logging
import uuid
from concurrent.futures import ThreadPoolExecutor, as_completed

from flask import current_app

from storefront.services import image_service, reference_service
from storefront.services.errors import StorageError
from storefront.services.storage import get_storage

logger = logging.getLogger(__name__)


def _settings():
    config = current_app.config
    return {
        "max_size": config.get("IMAGE_MAX_BYTES", image_service.MAX_FILE_SIZE),
        "sizes": image_service.VARIANT_SIZES,
        "quality": config.get("IMAGE_QUALITY", image_service.IMAGE_QUALITY),
        "workers": config.get("IMAGE_WORKERS", 4),
    }


def ingest(uploads, storage=None):
    """Store every upload as a full variant set and return references.

    All uploads are validated and rendered before anything is written, so
    bad input never reaches storage. Writes run concurrently; if any write
    fails, everything written for this batch is removed again and the
    error is re-raised. References are returned only once every write
    has been confirmed.

    Returns:
        {"primary": str | None, "additional": [str, ...]}

    Raises:
        ValidationError, TransformError, StorageWriteError
    """
    uploads = list(uploads)
    if not uploads:
        return {"primary": None, "additional": []}

    settings = _settings()
    storage = storage or get_storage()

    images = [image_service.validate_image(u, max_size=settings["max_size"]) for u in uploads]

    batch = []  # (image_id, {key: bytes})
    for image in images:
        variants = image_service.derive_variants(
            image, sizes=settings["sizes"], quality=settings["quality"]
        )
        image_id = uuid.uuid4().hex
        blobs = {
            reference_service.variant_key(image_id, size): data
            for size, data in variants.items()
        }
        batch.append((image_id, blobs))

    blobs = {key: data for _, item in batch for key, data in item.items()}
    _write_all(storage, blobs, settings["workers"])

    references = [reference_service.reference_for(image_id, storage) for image_id, _ in batch]
    logger.info("Ingested %d image(s) as %d blob(s) on %s", len(batch), len(blobs), storage.name)
    return {"primary": references[0], "additional": references[1:]}


def _write_all(storage, blobs, workers):
    """Write a batch of blobs, rolling back the whole batch on any failure."""
    written = []
    failure = None
    with ThreadPoolExecutor(max_workers=max(1, workers)) as executor:
        futures = {
            executor.submit(storage.put, key, data, image_service.IMAGE_CONTENT_TYPE): key
            for key, data in blobs.items()
        }
        for future in as_completed(futures):
            key = futures[future]
            try:
                future.result()
                written.append(key)
            except Exception as e:
                logger.error("Failed to store %s: %s", key, e)
                failure = failure or e

    if failure is not None:
        _remove_keys(storage, written)
        raise failure


def _remove_keys(storage, keys):
    """Best-effort delete. Returns the number of keys attempted."""
    for key in keys:
        try:
            storage.remove(key)
        except StorageError:
            logger.exception("Failed to delete %s from %s", key, storage.name)
    return len(keys)


def resolve(reference, size, storage=None):
    """Locator for a product image reference at one variant size."""
    return reference_service.resolve(reference, size, storage or get_storage())


def resolve_all(reference, storage=None):
    """Locators for every configured variant size, keyed by size."""
    storage = storage or get_storage()
    sizes = _settings()["sizes"]
    return {size: reference_service.resolve(reference, size, storage) for size in sizes}


def discard(references, storage=None):
    """Delete every blob behind a {"primary", "additional"} reference set.

    Missing blobs are fine and per-key failures are logged, so cleanup
    always runs to the end. References outside the storage's public
    namespace are left alone.

    Returns:
        number of keys attempted

    Raises:
        StorageConfigError when no storage backend can be built
    """
    if not any(reference_service.iter_references(references)):
        return 0
    storage = storage or get_storage()
    keys = reference_service.keys_for_references(references, storage)
    if not keys:
        return 0
    count = _remove_keys(storage, keys)
    logger.info("Discarded %d key(s) from %s", count, storage.name)
    return count
