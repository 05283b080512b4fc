import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


@pytest.fixture
def temp_db(monkeypatch, tmp_path):
    import db

    db_path = tmp_path / "test.db"
    monkeypatch.setattr(db, "DB_PATH", str(db_path))

    # Fresh pool per test so no connection outlives its database file
    pool = db.SQLiteConnectionPool(str(db_path), max_connections=10)
    monkeypatch.setattr(db, "_pool", pool)
    db.init()
    yield str(db_path)
    pool.close_all()
