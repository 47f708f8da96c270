import io
import logging
from collections import namedtuple
from concurrent.futures import ThreadPoolExecutor

from PIL import Image as PILImage
from PIL import ImageOps, UnidentifiedImageError

from storefront.services.errors import TransformError, ValidationError

logger = logging.getLogger(__name__)

VARIANT_SIZES = (1080, 400, 48)
IMAGE_FORMAT = "WEBP"
IMAGE_EXTENSION = "webp"
IMAGE_CONTENT_TYPE = "image/webp"
IMAGE_QUALITY = 80
MAX_FILE_SIZE = 10 * 1024 * 1024  # 10 MB

# Fixed encoder effort so the same source always encodes to the same bytes
WEBP_METHOD = 4

Upload = namedtuple("Upload", ["filename", "content_type", "data"])


def upload_from_file(file_storage):
    """Build an Upload from a werkzeug FileStorage."""
    return Upload(
        filename=file_storage.filename or "",
        content_type=(file_storage.mimetype or "").lower(),
        data=file_storage.read(),
    )


def validate_image(upload, max_size=MAX_FILE_SIZE):
    """Confirm an upload is a decodable raster image.

    The declared content type is not trusted: Pillow sniffs the payload
    itself, so a mislabelled but valid image is accepted and a payload
    labelled ``image/*`` that does not decode is rejected.

    Returns:
        A loaded PIL image

    Raises:
        ValidationError with ``reason`` one of empty, too_large,
        unsupported_format, corrupt
    """
    data = upload.data or b""
    if not data:
        raise ValidationError("Empty upload", reason="empty")
    if len(data) > max_size:
        raise ValidationError(
            f"Image too large: {len(data)} bytes (max {max_size})",
            reason="too_large",
        )

    try:
        img = PILImage.open(io.BytesIO(data))
    except (UnidentifiedImageError, PILImage.DecompressionBombError):
        raise ValidationError("Unsupported image format", reason="unsupported_format")

    try:
        img.verify()  # verify it's a real image
        # Re-open (verify() leaves the image unusable) and decode fully
        img = PILImage.open(io.BytesIO(data))
        img.load()
    except PILImage.DecompressionBombError:
        raise ValidationError("Unsupported image format", reason="unsupported_format")
    except Exception:
        raise ValidationError("Corrupt image data", reason="corrupt")

    declared = upload.content_type or ""
    if not declared.startswith("image/"):
        logger.warning(
            "Upload %r declared as %r but decoded as %s",
            upload.filename,
            declared,
            img.format,
        )
    return img


def _prepare(image):
    """Apply EXIF orientation and normalize the mode for WebP."""
    try:
        image = ImageOps.exif_transpose(image)
    except Exception as e:
        raise TransformError(f"Could not orient image: {e}") from e

    width, height = image.size
    if width <= 0 or height <= 0:
        raise TransformError(f"Image has no pixels ({width}x{height})")

    has_alpha = image.mode in ("RGBA", "LA") or (
        image.mode == "P" and "transparency" in image.info
    )
    target_mode = "RGBA" if has_alpha else "RGB"
    if image.mode != target_mode:
        image = image.convert(target_mode)
    return image


def render_variant(image, size, quality=IMAGE_QUALITY):
    """Crop-to-cover a square variant of a prepared image.

    The crop region is always the centered square of the shorter side, so
    every size shows the same content. The output side is clamped to the
    source so small images are never enlarged.
    """
    width, height = image.size
    side = min(size, width, height)
    try:
        square = ImageOps.fit(
            image,
            (side, side),
            method=PILImage.LANCZOS,
            centering=(0.5, 0.5),
        )
        buffer = io.BytesIO()
        square.save(buffer, format=IMAGE_FORMAT, quality=quality, method=WEBP_METHOD)
    except Exception as e:
        raise TransformError(f"Could not render {size}px variant: {e}") from e
    return buffer.getvalue()


def derive_variants(image, sizes=VARIANT_SIZES, quality=IMAGE_QUALITY, max_workers=None):
    """Render every size of one source image.

    Sizes are rendered concurrently against the same prepared source and
    joined before returning. A failure on any size fails the whole set.

    Returns:
        dict mapping size -> encoded bytes
    """
    prepared = _prepare(image)
    with ThreadPoolExecutor(max_workers=max_workers or len(sizes)) as executor:
        futures = {
            size: executor.submit(render_variant, prepared, size, quality)
            for size in sizes
        }
        return {size: future.result() for size, future in futures.items()}
