import os
import tempfile

import pytest
from fastapi.testclient import TestClient

# main builds an app at import time; keep that database out of the source tree
os.environ.setdefault("PICO_DB_FILE", os.path.join(tempfile.mkdtemp(prefix="picohub-"), "import.db"))


@pytest.fixture
def temp_db(tmp_path, monkeypatch):
    """Point storage at a fresh database file for each test."""
    db_file = tmp_path / "test_iot.db"
    monkeypatch.setattr("picohub.state.DB_FILE", str(db_file))

    from picohub.state import initialize_database
    initialize_database()

    yield str(db_file)


@pytest.fixture
def app(temp_db):
    from main import create_app

    # long sweep interval so tests decide when eviction happens
    return create_app(ttl=30.0, sweep_interval=3600.0, buffer_max=5)


@pytest.fixture
def client(app):
    with TestClient(app) as c:
        yield c


@pytest.fixture
def service(app):
    return app.state.service
