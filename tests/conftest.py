import io

import pytest
from PIL import Image as PILImage

from storefront import create_app
from storefront.extensions import db as _db
from storefront.models.category import Category
from storefront.models.product import Product
from storefront.services.storage import close_storage


@pytest.fixture(scope="session")
def app():
    """Create application for testing."""
    app = create_app("testing")
    with app.app_context():
        _db.create_all()
        yield app
        _db.drop_all()
    close_storage(app)


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def db(app):
    """Database access; every row is removed again after the test."""
    with app.app_context():
        yield _db
        _db.session.rollback()
        Product.query.delete()
        Category.query.delete()
        _db.session.commit()


@pytest.fixture
def image_dir(app, tmp_path):
    """Point the local storage backend at a fresh directory."""
    directory = tmp_path / "images"
    old_backend = app.config["STORAGE_BACKEND"]
    old_dir = app.config["LOCAL_IMAGE_DIR"]
    app.config["STORAGE_BACKEND"] = "local"
    app.config["LOCAL_IMAGE_DIR"] = str(directory)
    yield directory
    app.config["STORAGE_BACKEND"] = old_backend
    app.config["LOCAL_IMAGE_DIR"] = old_dir


@pytest.fixture
def make_image():
    """Encode a solid-color test image."""

    def _make(width=640, height=480, color=(200, 40, 40), fmt="PNG"):
        img = PILImage.new("RGB", (width, height), color)
        buffer = io.BytesIO()
        img.save(buffer, format=fmt)
        return buffer.getvalue()

    return _make


def stored_files(directory):
    """Names of the blobs currently in a local storage directory."""
    if not directory.exists():
        return []
    return sorted(p.name for p in directory.iterdir())
