"""Admin API: product create/update/delete with image uploads."""
import hmac
import logging
from flask import current_app, request
from storefront.blueprints.admin import admin_bp
from storefront.services import ingest_service, product_service
from storefront.services.errors import StorageWriteError, TransformError, ValidationError
from storefront.services.image_service import upload_from_file

logger = logging.getLogger(__name__)


@admin_bp.before_request
def check_admin_token():
    """Require X-Admin-Token when ADMIN_API_TOKEN is configured."""
    expected = current_app.config.get("ADMIN_API_TOKEN", "")
    if not expected:
        return None
    token = request.headers.get("X-Admin-Token", "")
    if not hmac.compare_digest(token, expected):
        logger.warning("Rejected admin request to %s", request.path)
        return {"error": "Forbidden"}, 403
    return None


def _uploads(field):
    return [upload_from_file(f) for f in request.files.getlist(field) if f and f.filename]


@admin_bp.route("/products", methods=["POST"])
def create_product():
    """Create a product.

    Multipart fields: the product form fields, ``image`` (primary image)
    and ``images`` (zero or more additional images).
    """
    try:
        fields = product_service.parse_product_form(request.form)
    except ValueError as e:
        return {"error": str(e)}, 400

    primary = _uploads("image")[:1]
    try:
        product = product_service.create_product(
            fields, image_uploads=primary, extra_uploads=_uploads("images")
        )
    except ValidationError:
        raise
    except ValueError as e:
        return {"error": str(e)}, 400

    return product_service.serialize_product(product), 201


@admin_bp.route("/products/<int:product_id>", methods=["PUT"])
def update_product(product_id):
    try:
        fields = product_service.parse_product_form(request.form, partial=True)
    except ValueError as e:
        return {"error": str(e)}, 400

    primary = _uploads("image")
    try:
        product = product_service.update_product(
            product_id,
            fields,
            image_upload=primary[0] if primary else None,
            extra_uploads=_uploads("images"),
        )
    except ValidationError:
        raise
    except ValueError as e:
        return {"error": str(e)}, 400

    if product is None:
        return {"error": "Product not found"}, 404
    return product_service.serialize_product(product)


@admin_bp.route("/products/<int:product_id>", methods=["DELETE"])
def delete_product(product_id):
    if not product_service.delete_product(product_id):
        return {"error": "Product not found"}, 404
    return {"success": True}


@admin_bp.route("/images", methods=["POST"])
def upload_images():
    """Store images without touching a product (e.g. slideshow artwork)."""
    uploads = _uploads("images") or _uploads("image")
    if not uploads:
        return {"error": "No image uploaded"}, 400

    refs = ingest_service.ingest(uploads)
    references = [refs["primary"]] + refs["additional"]
    return {
        **refs,
        "urls": [
            {str(size): url for size, url in ingest_service.resolve_all(ref).items()}
            for ref in references
        ],
    }, 201


@admin_bp.errorhandler(ValidationError)
def handle_validation_error(error):
    return {"error": str(error), "reason": error.reason}, 400


@admin_bp.errorhandler(TransformError)
def handle_transform_error(error):
    logger.warning("Image transform failed: %s", error)
    return {"error": "Image could not be processed"}, 422


@admin_bp.errorhandler(StorageWriteError)
def handle_storage_error(error):
    logger.error("Image storage failed: %s", error)
    if error.transient:
        return {"error": "Image storage is temporarily unavailable, please retry"}, 503
    return {"error": "Image storage failed"}, 500
