import itertools
import os

os.environ["ENV"] = "test"
os.environ.setdefault("SECRET_KEY", "test-secret")
os.environ.setdefault("IMAGE_STORAGE", "local")

import mongomock  # noqa: E402
import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from auth import issue_token, register_admin  # noqa: E402
from database import create_document, ensure_indexes, get_db  # noqa: E402
from errors import ImageUploadError  # noqa: E402
from main import app  # noqa: E402
from schemas import AdminRegister, Product  # noqa: E402
from storage import ImageSink, get_image_sink  # noqa: E402


class FakeImageSink(ImageSink):
    """Records every store call; call indexes listed in ``fail_on`` raise ImageUploadError."""

    def __init__(self, fail_on=()):
        self.fail_on = set(fail_on)
        self.calls = []

    def store(self, image, folder="products"):
        index = len(self.calls)
        self.calls.append({"filename": image.filename, "folder": folder, "size": image.size})
        if index in self.fail_on:
            raise ImageUploadError(f"simulated failure for {image.filename}")
        return f"https://cdn.example.com/{folder}/{index}-{image.filename}"


@pytest.fixture()
def db():
    client = mongomock.MongoClient()
    database = client["storefront_test"]
    ensure_indexes(database)
    yield database
    client.close()


@pytest.fixture()
def sink():
    return FakeImageSink()


@pytest.fixture()
def client(db, sink):
    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_image_sink] = lambda: sink
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture()
def admin(db):
    out = register_admin(db, AdminRegister(username="admin", email="admin@example.com", password="s3cret-pass"))
    return {"_id": out.id, "username": out.username, "role": out.role}


@pytest.fixture()
def admin_headers(admin):
    return {"Authorization": f"Bearer {issue_token(admin)}"}


@pytest.fixture()
def make_product(db):
    """Insert a validated product straight into the store."""
    counter = itertools.count(1)

    def _make(**overrides):
        data = {"name": "Basic Tee", "price": 20.0, "quantity_in_stock": 10, **overrides}
        data.setdefault("slug", f"{data['name']}-{next(counter)}")
        doc = Product.model_validate(data).model_dump()
        return create_document(db, "product", doc)

    return _make
