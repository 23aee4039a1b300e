import os
import tempfile
from pathlib import Path

import pytest


# Configure the service before app import; Settings reads env at import time.
_DB_DIR = Path(tempfile.mkdtemp(prefix="notes-tests-"))
os.environ["ENV"] = "dev"
os.environ["DB_URL"] = f"sqlite:///{_DB_DIR / 'notes.db'}"
os.environ["AUTO_CREATE_SCHEMA"] = "true"
os.environ["OTP_STORE"] = "db"
os.environ["OTP_EXPOSE_DEV_CODE"] = "true"
os.environ["EMAIL_PROVIDER"] = "log"
os.environ["AUTHSIGNAL_SECRET"] = ""
os.environ["GOOGLE_CLIENT_ID"] = ""
os.environ["JWT_SECRET"] = "test-secret-for-notes-api"
os.environ["RATE_LIMIT_BACKEND"] = "memory"
# Keep the global limiter generous; rate limit tests clear these.
os.environ["RL_EXEMPT_OTP"] = "true"
os.environ["RL_LIMIT_PER_MINUTE_OVERRIDE"] = "100000"
os.environ["RL_AUTH_BOOST_OVERRIDE"] = "10"
os.environ["RL_AUTH_PATH_CAP_OVERRIDE"] = "100000"

from fastapi.testclient import TestClient  # noqa: E402

from app.main import app, create_app  # noqa: E402


@pytest.fixture
def client():
    return TestClient(app, raise_server_exceptions=False)


@pytest.fixture
def make_client():
    def _make(**kwargs) -> TestClient:
        return TestClient(create_app(**kwargs), raise_server_exceptions=False)
    return _make
