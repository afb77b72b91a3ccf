import os
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Set environment variables BEFORE any app imports so module-level config picks them up
_TMP = Path(tempfile.mkdtemp(prefix="secure-transfer-tests-"))
os.environ.setdefault("DATABASE_URL", f"sqlite:///{_TMP / 'default.db'}")
os.environ.setdefault("TRANSFER_STORAGE_DIR", str(_TMP / "blobs"))
# Keep PBKDF2 cheap in tests; stored hashes carry their own iteration count
os.environ.setdefault("PASSWORD_HASH_ITERATIONS", "1000")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from app.database import Base, make_engine
from app.models.transfer import Transfer, utcnow
from app.services.blob_store import LocalBlobStore
from app.services.gate import token_digest
from app.services.transfer_registry import TransferRegistry
from app.services.transfer_service import TransferService


class FakeClock:
    """Settable clock; starts at the real current time."""

    def __init__(self, now: datetime | None = None):
        self.now = now or utcnow()

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta):
        self.now = self.now + delta


@pytest.fixture()
def engine(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'transfers.db'}")
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture()
def db_session(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def registry(session_factory):
    return TransferRegistry(session_factory)


@pytest.fixture()
def blob_store(tmp_path):
    return LocalBlobStore(tmp_path / "blobs")


@pytest.fixture()
def clock():
    return FakeClock(datetime.now(timezone.utc))


@pytest.fixture()
def service(registry, blob_store, clock):
    return TransferService(registry, blob_store, clock=clock)


@pytest.fixture()
def client(service):
    from app.main import app
    from app.routers.transfers import get_transfer_service

    app.dependency_overrides[get_transfer_service] = lambda: service
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture()
def transfer_record(clock):
    """Build an unsaved Transfer whose access token is ``token``."""
    counter = iter(range(1, 1_000_000))

    def build(token: str = "token", **overrides) -> Transfer:
        n = next(counter)
        fields = dict(
            id=f"{n:032x}",
            original_file_name="file.txt",
            stored_file_name=f"{n:032x}_file.txt",
            size_bytes=10,
            content_type="text/plain",
            payload_locator=f"{n:032x}.enc",
            payload_hash="0" * 64,
            encryption_key=b"k" * 32,
            access_token_digest=token_digest(token),
            created_at=clock(),
            expires_at=clock() + timedelta(days=1),
            max_downloads=3,
            current_downloads=0,
            status="active",
            sender_email="alice@example.com",
            sender_name="Alice",
        )
        fields.update(overrides)
        return Transfer(**fields)

    return build
