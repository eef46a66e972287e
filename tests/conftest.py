import os
import sys
import tempfile
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

# Settings create their directories at import; keep them out of the home dir.
os.environ.setdefault("FIELDSYNC_DATA_DIR", tempfile.mkdtemp(prefix="fieldsync-tests-"))

from storage.db import Database  # noqa: E402


@pytest.fixture()
def client_db(tmp_path):
    db = Database.client(tmp_path / "client.db")
    db.init()
    yield db
    db.dispose()


@pytest.fixture()
def server_db(tmp_path):
    db = Database.server(tmp_path / "server.db")
    db.init()
    yield db
    db.dispose()
