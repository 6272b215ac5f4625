import os
import shutil
import tempfile
from pathlib import Path

import pytest
import pytest_asyncio


# Configure the environment before importing konarae modules: the settings
# object and the module singletons read it at import time.
_SESSION_DIR = Path(tempfile.mkdtemp(prefix="konarae_pytest_"))

os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_SESSION_DIR / 'default.db'}")
os.environ.setdefault("CONFIG_PATH", str(Path(__file__).parent / "fixtures" / "config.yml"))
os.environ.setdefault("CRAWLER_REQUEST_DELAY_MS", "0")
os.environ.setdefault("RETRY_BASE_DELAY_MS", "0")

# Keep external integrations quiet during tests
os.environ["OPENAI_API_KEY"] = ""
os.environ.setdefault("CELERY_BROKER_URL", "memory://")
os.environ.setdefault("CELERY_RESULT_BACKEND", "cache+memory://")

FIXTURES_DIR = Path(__file__).parent / "fixtures"


def load_fixture(name: str) -> str:
    """Load an HTML fixture file."""
    filepath = FIXTURES_DIR / name
    if not filepath.exists():
        raise FileNotFoundError(f"Fixture not found: {filepath}")
    return filepath.read_text(encoding="utf-8")


def pytest_sessionfinish(session, exitstatus):
    """Cleanup temporary test files after the test session."""
    shutil.rmtree(_SESSION_DIR, ignore_errors=True)


@pytest_asyncio.fixture
async def database(tmp_path):
    """A fresh SQLite database with all tables created."""
    from konarae.core.shared.database_service import DatabaseService

    service = DatabaseService(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await service.init_db()
    try:
        yield service
    finally:
        await service.close()


@pytest.fixture
def no_wait():
    """A sleep replacement that records the requested delays."""
    delays = []

    async def _sleep(seconds):
        delays.append(seconds)

    _sleep.delays = delays
    return _sleep
