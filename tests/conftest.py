import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["SECRET_KEY"] = "test-secret-key"
os.environ["ALLOW_MULTIPLE_APPROVALS"] = "true"
for name in ("CLOUDINARY_CLOUD_NAME", "CLOUDINARY_API_KEY", "CLOUDINARY_API_SECRET", "GEMINI_API_KEY"):
    os.environ.pop(name, None)

from datetime import timedelta  # noqa: E402
from types import SimpleNamespace  # noqa: E402

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlmodel import Session, SQLModel  # noqa: E402

import db  # noqa: E402
from dependencies import get_image_store, get_lifecycle, get_recipe_generator  # noqa: E402
from errors import DependencyFailure  # noqa: E402
from lifecycle import LifecycleEngine  # noqa: E402
from main import app  # noqa: E402
from models import User, utcnow  # noqa: E402
from repository import Store  # noqa: E402
from routers.auth import create_access_token, hash_password  # noqa: E402
from schemas import DonationCreate  # noqa: E402


class FakeImageStore:
    def __init__(self):
        self.fail = False
        self.uploads = []

    def upload_image(self, image, kind):
        if self.fail:
            raise DependencyFailure("Failed to upload image", status_code=502)
        self.uploads.append((kind, image.filename))
        return f"https://images.example.com/{kind}/{image.filename}"


class FakeRecipeGenerator:
    def __init__(self):
        self.text = ""
        self.error = None
        self.calls = []

    def generate(self, ingredients, servings=2, food_type=None, dietary_restrictions=None):
        self.calls.append((ingredients, servings, food_type, dietary_restrictions))
        if self.error is not None:
            raise self.error
        return self.text


@pytest.fixture(autouse=True)
def tables():
    import models  # noqa: F401

    SQLModel.metadata.create_all(db.engine)
    yield
    SQLModel.metadata.drop_all(db.engine)


@pytest.fixture
def session():
    with Session(db.engine) as session:
        yield session


@pytest.fixture
def images():
    return FakeImageStore()


@pytest.fixture
def recipe_generator():
    return FakeRecipeGenerator()


@pytest.fixture
def lifecycle(images):
    return LifecycleEngine(Store(db.engine), images=images)


@pytest.fixture
def client(lifecycle, images, recipe_generator):
    app.dependency_overrides[get_lifecycle] = lambda: lifecycle
    app.dependency_overrides[get_image_store] = lambda: images
    app.dependency_overrides[get_recipe_generator] = lambda: recipe_generator
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def make_user(session):
    """Create a user and return (id, auth headers)."""

    def _make(name="Donor", email=None, role="user", password="secret123"):
        user = User(
            name=name,
            email=email or f"{name.lower().replace(' ', '.')}@example.com",
            password_hash=hash_password(password),
            role=role,
        )
        session.add(user)
        session.commit()
        session.refresh(user)
        headers = {"Authorization": f"Bearer {create_access_token(user.id)}"}
        return SimpleNamespace(id=user.id, email=user.email, headers=headers)

    return _make


def tomorrow() -> str:
    return (utcnow() + timedelta(days=1)).isoformat()


def donation_fields(**overrides) -> DonationCreate:
    values = dict(
        title="Vegetable biryani",
        food_type="cooked",
        quantity="5 plates",
        expiry_date=tomorrow(),
        pickup_location="12 MG Road, Bengaluru",
        description="Made this afternoon",
        contact_name="Asha",
        contact_phone="+91 98450 00000",
        contact_email="asha@example.com",
    )
    values.update(overrides)
    return DonationCreate(**values)


def fetch(model, pk):
    """Read a row through a fresh session so no cached state is returned."""
    with Session(db.engine) as fresh:
        return fresh.get(model, pk)
