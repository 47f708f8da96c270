"""RQ worker job: remove stored image variants a product no longer uses."""
import logging
from flask import current_app, has_app_context
from storefront.services import ingest_service

logger = logging.getLogger(__name__)

_worker_app = None


def _get_app():
    """Return an app instance for worker execution.

    Reuse the current app when already inside an app context (tests/CLI,
    inline queue), otherwise lazily create the worker app once.
    """
    global _worker_app
    if has_app_context():
        return current_app._get_current_object()
    if _worker_app is None:
        from storefront import create_app

        _worker_app = create_app()
    return _worker_app


def discard_images(primary, additional=None):
    """Delete every variant behind a product's old image references.

    Enqueued after the catalog row has been committed, so a failure here
    only ever leaves orphaned blobs, never a dangling reference. Per-key
    failures are logged by the pipeline and do not fail the job; a storage
    misconfiguration raises so RQ retries it later.
    """
    app = _get_app()
    with app.app_context():
        references = {"primary": primary, "additional": list(additional or [])}
        count = ingest_service.discard(references)
        logger.info("Cleanup job removed up to %d blob(s) for %s", count, primary)
        return count
