import io
import os
import tempfile

# Settings are read at import time, so the test environment goes first
_TEST_DIR = tempfile.mkdtemp(prefix="framefix-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_TEST_DIR}/test.db"
os.environ["LOCAL_STORAGE_PATH"] = f"{_TEST_DIR}/storage"
os.environ["STORAGE_BACKEND"] = "local"
os.environ["CELERY_RESULT_BACKEND"] = "cache+memory://"
os.environ["GEMINI_API_KEY"] = ""
os.environ["UPSCALE_API_KEY"] = ""
os.environ["LOG_FORMAT_JSON"] = "false"

import pytest  # noqa: E402
from httpx import AsyncClient, ASGITransport  # noqa: E402
from PIL import ExifTags, Image as PILImage  # noqa: E402
from typing import AsyncGenerator, List  # noqa: E402

from src.core.database import async_session_maker, engine, get_sync_session  # noqa: E402
from src.core.exceptions import circuit_breakers  # noqa: E402
from src.core.storage import LocalStorage, StorageFactory, image_storage_key  # noqa: E402
from src.engines.color.schemas import ColorAdjustment  # noqa: E402
from src.engines.compositor.frame import FrameConfig  # noqa: E402
from src.modules.framing.models import Batch, Image, PipelineTrigger  # noqa: E402


def make_jpeg(width: int = 300, height: int = 200, color=(180, 120, 60), orientation: int = None) -> bytes:
    """Stored pixels are width x height; an EXIF orientation may rotate them for display."""
    buffer = io.BytesIO()
    options = {}
    if orientation is not None:
        exif = PILImage.Exif()
        exif[ExifTags.Base.Orientation] = orientation
        options["exif"] = exif
    PILImage.new("RGB", (width, height), color).save(buffer, format="JPEG", quality=95, **options)
    return buffer.getvalue()


class FakeColorClient:
    """Stands in for ColorAnalysisClient and counts calls."""

    def __init__(self, adjustment: ColorAdjustment = None):
        self.adjustment = adjustment or ColorAdjustment(
            brightness=10, contrast=5, saturation=0, vibrance=0,
            warmth=5, highlights=0, shadows=0, recommendation="test"
        )
        self.calls = 0

    async def analyze(self, image_bytes: bytes, mime_type: str = "image/jpeg") -> ColorAdjustment:
        self.calls += 1
        return self.adjustment


@pytest.fixture(scope="session")
def anyio_backend():
    return "asyncio"


@pytest.fixture(autouse=True)
def reset_shared_state():
    for breaker in circuit_breakers.values():
        breaker.reset()
    StorageFactory.reset()
    yield
    StorageFactory.reset()


@pytest.fixture
def jpeg():
    return make_jpeg


@pytest.fixture
def fake_color() -> FakeColorClient:
    return FakeColorClient()


@pytest.fixture
def storage(tmp_path) -> LocalStorage:
    return LocalStorage(base_path=str(tmp_path / "storage"))


@pytest.fixture
def small_frame() -> FrameConfig:
    return FrameConfig(width=120, height=180)


@pytest.fixture
def seed_batch(storage):
    """Create a batch with stored originals through the worker's sync session."""

    async def _seed(
        count: int = 1,
        owner_id: str = "owner-1",
        size=(300, 200),
        statuses: List[str] = None,
        orientation: int = None
    ):
        session = get_sync_session()
        try:
            batch = Batch(owner_id=owner_id)
            session.add(batch)
            session.commit()

            triggers = []
            for position in range(count):
                image = Image(batch_id=batch.id, original_url="pending-upload")
                key = image_storage_key(owner_id, batch.id, image.id, "original")
                image.original_url = key
                if statuses:
                    image.status = statuses[position]
                session.add(image)
                await storage.upload(make_jpeg(*size, orientation=orientation), key)
                triggers.append(PipelineTrigger(
                    image_id=image.id,
                    batch_id=batch.id,
                    owner_id=owner_id,
                    source_uri=key,
                ))
            session.commit()
            return batch, triggers
        finally:
            session.close()

    return _seed


@pytest.fixture
def load_image_record():
    def _load(image_id: str) -> Image:
        with get_sync_session() as session:
            return session.get(Image, image_id)
    return _load


@pytest.fixture
async def db_session():
    async with async_session_maker() as session:
        yield session
    await engine.dispose()


@pytest.fixture
async def client() -> AsyncGenerator[AsyncClient, None]:
    from src.main import app

    # Trigger lifespan events (startup/shutdown)
    async with app.router.lifespan_context(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
            yield ac
