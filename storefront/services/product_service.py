import json
import logging
import re
from decimal import Decimal, InvalidOperation

from rq import Retry

from storefront import extensions
from storefront.extensions import db
from storefront.models.category import Category
from storefront.models.product import Product
from storefront.services import ingest_service, reference_service
from storefront.services.storage import get_storage

logger = logging.getLogger(__name__)


def slugify(value):
    """Lowercase, collapse anything non-alphanumeric to "-", trim dashes."""
    value = re.sub(r"[^a-z0-9]+", "-", (value or "").lower())
    return value.strip("-")


def _parse_price(raw, field, required=True):
    raw = (raw or "").strip()
    if not raw:
        if required:
            raise ValueError(f"{field} is required")
        return None
    try:
        value = Decimal(raw)
    except InvalidOperation:
        raise ValueError(f"{field} must be a number")
    if value < 0:
        raise ValueError(f"{field} must not be negative")
    return value.quantize(Decimal("0.01"))


def parse_product_form(form, partial=False):
    """Parse admin product form fields.

    Expected fields (multipart form):
        name, slug, description, price, compare_at_price, category_id,
        stock, is_active, additional_images (JSON list of references to keep)

    With ``partial`` only the fields present are returned (for updates).

    Raises:
        ValueError on missing or malformed fields
    """
    data = {}

    if "name" in form or not partial:
        name = (form.get("name") or "").strip()
        if not name:
            raise ValueError("name is required")
        data["name"] = name

    if "slug" in form or "name" in data:
        slug = slugify(form.get("slug") or data.get("name", ""))
        if not slug:
            raise ValueError("slug is required")
        data["slug"] = slug

    if "description" in form or not partial:
        data["description"] = (form.get("description") or "").strip()

    if "price" in form or not partial:
        data["price"] = _parse_price(form.get("price"), "price")

    if "compare_at_price" in form or not partial:
        data["compare_at_price"] = _parse_price(
            form.get("compare_at_price"), "compare_at_price", required=False
        )

    if "category_id" in form or not partial:
        raw = (form.get("category_id") or "").strip()
        if raw:
            try:
                data["category_id"] = int(raw)
            except ValueError:
                raise ValueError("category_id must be an integer")
        else:
            data["category_id"] = None

    if "stock" in form or not partial:
        raw = (form.get("stock") or "0").strip()
        try:
            data["stock"] = max(0, int(raw))
        except ValueError:
            raise ValueError("stock must be an integer")

    if "is_active" in form or not partial:
        data["is_active"] = (form.get("is_active") or "true").lower() == "true"

    if "additional_images" in form:
        try:
            refs = json.loads(form.get("additional_images") or "[]")
        except (json.JSONDecodeError, TypeError):
            raise ValueError("additional_images must be a JSON list")
        if not isinstance(refs, list) or not all(isinstance(r, str) for r in refs):
            raise ValueError("additional_images must be a JSON list of strings")
        data["additional_images"] = [r for r in refs if r.strip()]

    return data


def _check_category(category_id):
    if category_id is not None and not db.session.get(Category, category_id):
        raise ValueError(f"Unknown category {category_id}")


def _check_slug(slug, product_id=None):
    existing = Product.query.filter_by(slug=slug).first()
    if existing and existing.id != product_id:
        raise ValueError(f"Slug already in use: {slug}")


def schedule_discard(references):
    """Queue cleanup of superseded image references."""
    if not any(reference_service.iter_references(references)):
        return
    from storefront.workers.image_cleanup import discard_images

    extensions.task_queue.enqueue(
        discard_images,
        references["primary"],
        list(references.get("additional") or []),
        retry=Retry(max=3, interval=[30, 120, 300]),
    )


def create_product(fields, image_uploads=(), extra_uploads=()):
    """Create a product. Images are stored before the row is inserted.

    ``image_uploads`` become the primary image (first) and additional
    images; ``extra_uploads`` are appended to the additional images.
    """
    _check_category(fields.get("category_id"))
    _check_slug(fields["slug"])

    uploads = list(image_uploads) + list(extra_uploads)
    refs = ingest_service.ingest(uploads)

    product = Product(**{k: v for k, v in fields.items() if k != "additional_images"})
    product.image_url = refs["primary"]
    product.additional_images = list(fields.get("additional_images") or []) + refs["additional"]
    db.session.add(product)
    try:
        db.session.commit()
    except Exception:
        db.session.rollback()
        # The row never referenced these blobs; don't leave them behind
        ingest_service.discard(refs)
        raise

    logger.info("Created product %s with %d image(s)", product.slug, len(uploads))
    return product


def update_product(product_id, fields, image_upload=None, extra_uploads=()):
    """Update a product, replacing images when new ones are uploaded.

    A new ``image_upload`` replaces the primary image. The additional
    images become ``fields["additional_images"]`` (when given) plus any
    ``extra_uploads``. References dropped by the update are cleaned up
    after the row is committed.
    """
    product = db.session.get(Product, product_id)
    if not product:
        return None

    if "category_id" in fields:
        _check_category(fields["category_id"])
    if "slug" in fields:
        _check_slug(fields["slug"], product_id=product.id)

    uploads = ([image_upload] if image_upload is not None else []) + list(extra_uploads)
    refs = ingest_service.ingest(uploads)
    old_refs = product.image_refs

    for key, value in fields.items():
        if key != "additional_images":
            setattr(product, key, value)

    new_primary = product.image_url
    new_additional = list(fields.get("additional_images", old_refs["additional"]))
    uploaded = [refs["primary"]] + refs["additional"] if refs["primary"] else []
    if image_upload is not None:
        new_primary = uploaded.pop(0)
    new_additional.extend(uploaded)

    product.image_url = new_primary
    product.additional_images = new_additional
    try:
        db.session.commit()
    except Exception:
        db.session.rollback()
        ingest_service.discard(refs)
        raise

    kept = {new_primary, *new_additional}
    superseded = {
        "primary": old_refs["primary"] if old_refs["primary"] not in kept else None,
        "additional": [r for r in old_refs["additional"] if r not in kept],
    }
    schedule_discard(superseded)
    return product


def delete_product(product_id):
    """Delete a product row, then clean up its images."""
    product = db.session.get(Product, product_id)
    if not product:
        return False

    refs = product.image_refs
    db.session.delete(product)
    db.session.commit()

    schedule_discard(refs)
    logger.info("Deleted product %s", product_id)
    return True


def get_active_products(category=None, q=None, page=1, per_page=24):
    """Fetch active products for the public catalog."""
    query = Product.query.filter_by(is_active=True)

    if category:
        query = query.join(Category).filter(Category.slug == category)
    if q:
        like = f"%{q.strip()}%"
        query = query.filter(
            db.or_(Product.name.ilike(like), Product.description.ilike(like))
        )

    query = query.order_by(Product.created_at.desc(), Product.id.desc())
    return query.paginate(page=page, per_page=per_page, error_out=False)


def get_product_by_slug(slug):
    return Product.query.filter_by(slug=slug.lower()).first()


def get_stats():
    """Product counts for the stats command."""
    total = db.session.query(db.func.count(Product.id)).scalar()
    active = (
        db.session.query(db.func.count(Product.id))
        .filter(Product.is_active.is_(True))
        .scalar()
    )
    with_images = (
        db.session.query(db.func.count(Product.id))
        .filter(Product.image_url.isnot(None))
        .scalar()
    )
    return {"total": total, "active": active, "with_images": with_images}


def serialize_product(product, storage=None):
    """JSON-ready product with image URLs resolved at every variant size."""
    storage = storage or get_storage()
    refs = product.image_refs
    return {
        "id": product.id,
        "name": product.name,
        "slug": product.slug,
        "description": product.description or "",
        "price": str(product.price),
        "compare_at_price": (
            str(product.compare_at_price) if product.compare_at_price is not None else None
        ),
        "category": product.category.slug if product.category else None,
        "stock": product.stock,
        "is_active": product.is_active,
        "in_stock": product.in_stock,
        "image_url": refs["primary"],
        "additional_images": refs["additional"],
        "images": _sized_urls(refs["primary"], storage),
        "additional": [_sized_urls(ref, storage) for ref in refs["additional"]],
    }


def _sized_urls(reference, storage):
    sized = ingest_service.resolve_all(reference, storage=storage)
    return {str(size): url for size, url in sized.items()}
