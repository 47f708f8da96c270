"""Public catalog API and locally stored image files."""
from flask import abort, current_app, request, send_from_directory
from storefront.blueprints.public import public_bp
from storefront.models.category import Category
from storefront.services.product_service import (
    get_active_products,
    get_product_by_slug,
    serialize_product,
)
from storefront.services.storage import LocalStorage, get_storage


@public_bp.route("/api/products")
def product_list():
    """Active products, newest first, with optional category and search."""
    category = request.args.get("category")
    q = request.args.get("q")
    page = request.args.get("page", 1, type=int)
    per_page = min(request.args.get("per_page", 24, type=int), 100)

    pagination = get_active_products(category=category, q=q, page=page, per_page=per_page)
    storage = get_storage()

    return {
        "products": [serialize_product(p, storage=storage) for p in pagination.items],
        "page": pagination.page,
        "pages": pagination.pages,
        "total": pagination.total,
    }


@public_bp.route("/api/products/<slug>")
def product_detail(slug):
    product = get_product_by_slug(slug)
    if not product or not product.is_active:
        abort(404)
    return serialize_product(product)


@public_bp.route("/api/categories")
def category_list():
    categories = Category.query.order_by(Category.name).all()
    return {
        "categories": [
            {"id": c.id, "name": c.name, "slug": c.slug} for c in categories
        ]
    }


@public_bp.route("/images/<key>")
def image_file(key):
    """Serve a variant from local disk. Other backends serve their own URLs."""
    storage = get_storage()
    if not isinstance(storage, LocalStorage):
        abort(404)
    response = send_from_directory(storage.root, key, mimetype=_mimetype(key))
    # Keys are never rewritten, so variants can be cached forever
    response.cache_control.public = True
    response.cache_control.max_age = 31536000
    return response


def _mimetype(key):
    if key.lower().endswith(".webp"):
        return "image/webp"
    return None


@public_bp.errorhandler(404)
def not_found(_error):
    current_app.logger.debug("404 for %s", request.path)
    return {"error": "Not found"}, 404
