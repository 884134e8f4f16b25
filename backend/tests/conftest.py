from __future__ import annotations

import asyncio
import os
import sys
import tempfile
from pathlib import Path
from typing import Dict, List, Optional

# Must be set before any fuelrefund module reads settings
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ["ENVIRONMENT"] = "test"
os.environ["DRAMATIQ_BROKER"] = "stub"
os.environ["STORAGE_BACKEND"] = "filesystem"
os.environ["STORAGE_DIRECTORY"] = tempfile.mkdtemp(prefix="fuelrefund-blobs-")
os.environ.pop("SENTRY_DSN", None)

# Add backend folder to sys.path so `import fuelrefund...` works when running from backend root
BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from sqlalchemy.pool import NullPool  # noqa: E402

from fuelrefund.core.database import build_engine, build_sessionmaker, init_db  # noqa: E402
from fuelrefund.core.errors import BlobNotFound  # noqa: E402
from fuelrefund.models.schemas import ReceiptTranscription  # noqa: E402


class FakeBlobStore:
    """In-memory blob store recording every call."""

    def __init__(self) -> None:
        self.blobs: Dict[str, bytes] = {}
        self.calls: List[tuple] = []
        self.fail_put = False
        self.fail_delete = False
        self._n = 0

    async def put(self, data: bytes, mime_type: str, namespace: str) -> str:
        self.calls.append(("put", namespace, mime_type))
        if self.fail_put:
            raise RuntimeError("blob store unavailable")
        self._n += 1
        ref = f"{namespace}/blob-{self._n}"
        self.blobs[ref] = data
        return ref

    async def get(self, reference: str) -> bytes:
        self.calls.append(("get", reference))
        if reference not in self.blobs:
            raise BlobNotFound(f"Blob not found: {reference}")
        return self.blobs[reference]

    async def delete(self, reference: str) -> None:
        self.calls.append(("delete", reference))
        if self.fail_delete:
            raise RuntimeError("blob delete failed")
        self.blobs.pop(reference, None)


class RecordingDispatcher:
    def __init__(self) -> None:
        self.sent: List[int] = []
        self.fail = False

    def __call__(self, receipt_id: int) -> Optional[str]:
        if self.fail:
            raise ConnectionError("broker unreachable")
        self.sent.append(receipt_id)
        return f"msg-{receipt_id}-{len(self.sent)}"


class FakeExtractor:
    """Returns a fixed transcription, raises, or hangs."""

    def __init__(self, result: Optional[dict] = None, error: Optional[Exception] = None, delay: float = 0) -> None:
        self.result = result
        self.error = error
        self.delay = delay
        self.calls: List[tuple] = []

    async def extract(self, data: bytes, mime_type: str) -> ReceiptTranscription:
        self.calls.append((data, mime_type))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return ReceiptTranscription.model_validate(self.result or {})


@pytest_asyncio.fixture
async def engine(tmp_path):
    eng = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await init_db(eng)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine):
    return build_sessionmaker(engine)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def sync_session_factory(tmp_path):
    """Session factory usable from sync tests that drive the app through TestClient.

    NullPool keeps connections from leaking between the event loops of
    ``asyncio.run`` and the TestClient portal.
    """
    eng = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'api.db'}", poolclass=NullPool)
    asyncio.run(init_db(eng))
    yield build_sessionmaker(eng)
    asyncio.run(eng.dispose())


@pytest.fixture
def blob_store():
    return FakeBlobStore()


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def make_extractor():
    return FakeExtractor
