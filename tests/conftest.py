"""
Pytest fixtures for AppShelf tests
"""
import os
import tempfile

# Les modules lisent la config à l'import : pointer vers un répertoire jetable avant tout import
_TMP = tempfile.mkdtemp(prefix="appshelf-tests-")
os.environ["DB_PATH"] = os.path.join(_TMP, "db.sqlite")
os.environ["UPLOAD_STORAGE_PATH"] = os.path.join(_TMP, "uploads")
os.environ["IMAGE_STORAGE_PATH"] = os.path.join(_TMP, "images")
os.environ["AUTH_USERNAME"] = ""
os.environ["AUTH_PASSWORD"] = ""

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from appshelf import models  # noqa: F401
from appshelf.auth import Principal
from appshelf.database import Base, enable_sqlite_pragmas
from appshelf.schemas import ApplicationCreate
from appshelf.services.blob_store import BlobStore
from appshelf.services.catalog_service import CatalogService, get_catalog


@pytest.fixture
def db_session():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    enable_sqlite_pragmas(engine)
    Base.metadata.create_all(bind=engine)
    session = sessionmaker(autocommit=False, autoflush=False, bind=engine)()
    try:
        yield session
    finally:
        session.close()
        engine.dispose()


@pytest.fixture
def upload_root(tmp_path):
    root = tmp_path / "uploads"
    root.mkdir()
    return root


@pytest.fixture
def store(upload_root):
    return BlobStore(str(upload_root))


@pytest.fixture
def catalog(db_session, store):
    return CatalogService(db_session, store)


@pytest.fixture
def admin():
    return Principal(user_id="admin", is_admin=True)


@pytest.fixture
def viewer():
    return Principal(user_id="bob", is_admin=False)


@pytest.fixture
def external_file(tmp_path):
    """A file referenced by path, outside the upload directory."""
    folder = tmp_path / "mirror"
    folder.mkdir()
    path = folder / "tool-1.0-win64.zip"
    path.write_bytes(b"x" * 2048)
    return path


@pytest.fixture
def application(catalog, admin):
    return catalog.create_application(admin, ApplicationCreate(
        name="Foo",
        description="Test application",
        developer="Foo Labs",
        tags=["utility", "dev"],
    ))


@pytest.fixture
def client(catalog, tmp_path):
    from appshelf.main import app
    from appshelf.routes.images import get_image_store

    images = BlobStore(str(tmp_path / "images"))
    app.dependency_overrides[get_catalog] = lambda: catalog
    app.dependency_overrides[get_image_store] = lambda: images
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
