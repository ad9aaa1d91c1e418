"""
Test bootstrap: a SQLite database and a storage directory per test, fake
converters and packagers instead of native binaries, and helpers for users,
tokens and uploaded documents.
"""
import asyncio
import io
import os

# Set before contentgate is imported: the global engine is built at import time.
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SECRET_KEY", "test-secret-key")

import pytest
from fastapi.testclient import TestClient
from pypdf import PdfWriter
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from contentgate.auth import hash_password, start_session
from contentgate.config import get_settings
from contentgate.database import Base, get_db
from contentgate.dependencies import get_rasterizer, get_transcode_pool, get_violation_ledger
from contentgate.exceptions import UpstreamToolUnavailable
from contentgate.main import app
from contentgate.models import PaymentStatus, Resource, User, UserRole
from contentgate.services import paginator
from contentgate.services.rasterizer import Rasterizer
from contentgate.services.transcoder import TranscodeWorkerPool
from contentgate.services.violations import ViolationLedger

FAKE_JPEG = b"\xff\xd8\xff\xe0fake-jpeg\xff\xd9"


def make_pdf(pages: int) -> bytes:
    writer = PdfWriter()
    for _ in range(pages):
        writer.add_blank_page(width=612, height=792)
    buf = io.BytesIO()
    writer.write(buf)
    return buf.getvalue()


class FakeConverter:
    """Stands in for pdftoppm/ImageMagick. Counts calls; can fail or stall."""

    def __init__(self, name="fake", data=FAKE_JPEG, fail=False, delay=0.0):
        self.name = name
        self.data = data
        self.fail = fail
        self.delay = delay
        self.calls = 0

    async def convert(self, source, page, dpi):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise UpstreamToolUnavailable(self.name, "binary not found")
        return self.data


@pytest.fixture
def settings(tmp_path, monkeypatch):
    s = get_settings()
    monkeypatch.setattr(s, "storage_dir", str(tmp_path / "storage"))
    return s


@pytest.fixture
def session_factory(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'test.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    yield factory
    engine.dispose()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def converter():
    return FakeConverter()


@pytest.fixture
def rasterizer(converter):
    return Rasterizer(converters=[converter], dpi=150)


@pytest.fixture
def transcode_pool(session_factory):
    pool = TranscodeWorkerPool(session_factory=session_factory, max_workers=1)
    yield pool
    pool.shutdown(wait=True)


@pytest.fixture
def ledger():
    return ViolationLedger(threshold=3)


@pytest.fixture
def client(settings, session_factory, rasterizer, transcode_pool, ledger):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_rasterizer] = lambda: rasterizer
    app.dependency_overrides[get_transcode_pool] = lambda: transcode_pool
    app.dependency_overrides[get_violation_ledger] = lambda: ledger
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


def create_user(db, email, role=UserRole.MEMBER, payment_status=PaymentStatus.PENDING, password="secret123"):
    user = User(
        email=email,
        password=hash_password(password),
        full_name=email.split("@")[0],
        role=role.value,
        payment_status=payment_status.value,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def login_headers(db, user) -> dict:
    _, token = start_session(db, user)
    db.commit()
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def admin(db):
    return create_user(db, "admin@example.com", role=UserRole.ADMIN)


@pytest.fixture
def member(db):
    return create_user(db, "member@example.com")


@pytest.fixture
def subscriber(db):
    return create_user(db, "paid@example.com", payment_status=PaymentStatus.COMPLETED)


@pytest.fixture
def admin_headers(db, admin):
    return login_headers(db, admin)


@pytest.fixture
def member_headers(db, member):
    return login_headers(db, member)


@pytest.fixture
def subscriber_headers(db, subscriber):
    return login_headers(db, subscriber)


def add_resource(db, pages=5, is_premium=False, preview_units=0, title="Handbook", is_active=True) -> Resource:
    """Paginate a generated PDF onto disk and create its row."""
    resource = Resource(
        title=title,
        unit_count=0,
        is_premium=is_premium,
        preview_units=preview_units,
        is_active=is_active,
    )
    db.add(resource)
    db.flush()
    result = paginator.paginate(resource.id, make_pdf(pages), title)
    resource.unit_count = result.unit_count
    resource.file_size = result.original_size
    db.commit()
    db.refresh(resource)
    return resource
