"""Naming convention for stored image variants.

A source image gets an opaque id and is stored as one blob per size,
``{id}_{size}.webp``. Products keep a *reference* to it: the bare
``{id}.webp`` on bare-key backends, or the full public URL of the
largest variant on backends that store URLs.
"""
import logging
import re
from urllib.parse import unquote, urlsplit

from storefront.services.image_service import IMAGE_EXTENSION, VARIANT_SIZES

logger = logging.getLogger(__name__)

PLACEHOLDER_URL = "/static/placeholder.svg"

_KEY_RE = re.compile(
    r"^(?P<id>.+?)(?:_(?P<size>\d+))?\.(?P<ext>%s)$" % re.escape(IMAGE_EXTENSION),
    re.IGNORECASE,
)


def variant_key(image_id, size=None):
    """Storage key of one variant, or of the unsized original when size is None."""
    if size is None:
        return f"{image_id}.{IMAGE_EXTENSION}"
    return f"{image_id}_{int(size)}.{IMAGE_EXTENSION}"


def is_url(reference):
    return reference.startswith(("http://", "https://"))


def _key_of(reference):
    """Bare key for a reference; for URLs and paths, the last segment of the path."""
    if is_url(reference) or reference.startswith("/"):
        path = urlsplit(reference).path
        return unquote(path.rstrip("/").rsplit("/", 1)[-1])
    return reference


def parse_reference(reference):
    """Return the image id a reference points at, or None if it is not ours."""
    if not reference:
        return None
    match = _KEY_RE.match(_key_of(reference))
    if not match:
        return None
    size = match.group("size")
    if size is not None and int(size) not in VARIANT_SIZES:
        # e.g. "photo_2023.webp": the suffix is part of the name
        return f"{match.group('id')}_{size}"
    return match.group("id")


def resolve(reference, size, storage):
    """Locator for a reference at a given variant size.

    Pure string manipulation. URLs and absolute paths into the storage's
    own public namespace are mapped onto the requested variant; any other
    URL or path is returned unchanged whatever the size. Bare keys are
    mapped through the naming convention onto the storage's public URL.
    """
    if not reference:
        return PLACEHOLDER_URL
    if is_url(reference) or reference.startswith("/"):
        image_id = parse_reference(reference) if storage.owns(reference) else None
        if image_id is None:
            return reference
        return storage.public_url(variant_key(image_id, size))
    image_id = parse_reference(reference)
    if image_id is None:
        # Legacy upload stored under its own filename
        return storage.public_url(reference)
    return storage.public_url(variant_key(image_id, size))


def reference_for(image_id, storage):
    """Reference string persisted on a product for a freshly stored image."""
    if storage.stores_urls:
        return storage.public_url(variant_key(image_id, max(VARIANT_SIZES)))
    return variant_key(image_id)


def iter_references(references):
    """Flatten a {"primary", "additional"} mapping into reference strings."""
    primary = references.get("primary")
    if primary:
        yield primary
    for ref in references.get("additional") or []:
        if ref:
            yield ref


def keys_for_references(references, storage):
    """Every storage key to remove when these references are superseded.

    Conventional references expand to each variant plus the bare
    ``{id}.webp`` (written by older revisions that kept the original).
    Anything else is removed under its own key. URLs and paths outside
    the storage's public namespace are never turned into keys.
    """
    keys = []
    for ref in iter_references(references):
        if (is_url(ref) or ref.startswith("/")) and not storage.owns(ref):
            logger.debug("Not cleaning up %s: not stored on %s", ref, storage.name)
            continue
        image_id = parse_reference(ref)
        if image_id is None:
            candidates = [_key_of(ref)]
        else:
            candidates = [variant_key(image_id, size) for size in VARIANT_SIZES]
            candidates.append(variant_key(image_id))
        for key in candidates:
            if key and key not in keys:
                keys.append(key)
    return keys
