# Ensure backend is at sys.path[0] when pytest runs (from repo root or from backend dir)
import sys
from pathlib import Path

_tests_dir = Path(__file__).resolve().parent
_backend = _tests_dir.parent
_str_backend = str(_backend)
if sys.path[0:1] != [_str_backend]:
    sys.path.insert(0, _str_backend)

import fakeredis
import pytest
from fastapi.testclient import TestClient

from racesync.main import create_app
from racesync.services import Backend
from racesync.settings import Settings

TEST_SECRET = "test-secret-do-not-use-in-production"


@pytest.fixture
def cfg() -> Settings:
    return Settings(RACESYNC_JWT_SECRET=TEST_SECRET)


@pytest.fixture
def redis_client():
    client = fakeredis.FakeRedis(decode_responses=True)
    yield client
    client.flushall()


@pytest.fixture
def backend(redis_client, cfg) -> Backend:
    return Backend.from_client(redis_client, cfg)


@pytest.fixture
def api(redis_client, cfg) -> TestClient:
    return TestClient(create_app(redis_client, cfg))
