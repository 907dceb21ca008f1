import os
import sys

# Test configuration must be in place before config.get_settings() is first called
os.environ["APP_ENV"] = "test"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["SLACK_SIGNING_SECRET"] = "test-signing-secret"
os.environ["SLACK_BOT_TOKEN"] = ""
os.environ["SKIP_CHAT_SIGNATURE_VERIFICATION"] = "false"
os.environ["ADMIN_JWT_SECRET"] = "test-admin-secret"
os.environ["ADMIN_JWKS_URL"] = ""
os.environ["ADMIN_JWT_AUDIENCE"] = ""
os.environ["ADMIN_EMAILS"] = "boss@example.com"
os.environ["OPENAI_API_KEY"] = ""
os.environ["REGISTRY_BASE_URL"] = ""
os.environ["REDIS_URL"] = ""
os.environ["CAMPAIGN_WEBHOOK_SECRET"] = ""
os.environ["RETRY_ATTEMPTS"] = "2"
os.environ["RETRY_BASE_DELAY_SECONDS"] = "0"

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import httpx
import jwt
import pytest

from config import get_settings
from db.connection import create_schema, dispose_engine, init_engine
from tools.auth import token_verifier
from tools.dead_letter import dead_letter_queue
from tools.llm import llm_client
from tools.processing_status import processing_status
from tools.registry import registry_client
from tools.slack import slack_notifier

get_settings.cache_clear()


@pytest.fixture
async def database(tmp_path):
    """A fresh file-backed SQLite database per test.

    A file (not :memory:) so that separate sessions really use separate
    connections and concurrent writers are serialized by SQLite's lock.
    """
    init_engine(f"sqlite+aiosqlite:///{tmp_path / 'leads.db'}")
    await create_schema()
    yield
    await dispose_engine()


@pytest.fixture
async def services(database):
    settings = get_settings()
    llm_client.configure(settings)
    registry_client.configure(settings)
    slack_notifier.configure(settings)
    token_verifier.configure(settings)
    await dead_letter_queue.start(max_size=100, ttl_seconds=3600)
    await processing_status.start(ttl_seconds=3600, max_size=100)
    yield
    await processing_status.close()
    await dead_letter_queue.close()


@pytest.fixture
async def client(services):
    from app import app

    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as c:
        yield c


def make_token(email: str, **claims) -> str:
    return jwt.encode({"email": email, "sub": email, **claims}, "test-admin-secret", algorithm="HS256")


@pytest.fixture
def admin_headers():
    return {"Authorization": f"Bearer {make_token('boss@example.com', name='The Boss')}"}


@pytest.fixture
def viewer_headers():
    return {"Authorization": f"Bearer {make_token('someone@example.com')}"}
