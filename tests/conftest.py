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
    lock_dir = tmp_path / "locks"
    monkeypatch.setattr(db, "DB_PATH", str(db_path))
    monkeypatch.setenv("DB_PATH", str(db_path))
    monkeypatch.setenv("LOGIC_LOCK_DIR", str(lock_dir))
    monkeypatch.delenv("LOGIC_ALLOW_REVIEW_EDITS", raising=False)

    # Reset the connection pool for each test
    previous = db._pool
    db._pool = db.SQLiteConnectionPool(str(db_path), max_connections=10)
    db.init()
    yield str(db_path)
    db._pool.close_all()
    db._pool = previous


@pytest.fixture
def make_settings():
    from schemas import ModuleSettings

    def _make(module_id: int = 1, course_id: int = 10, logic_expressions: str = "xy,x⋀y,x⋁y;p,!p", **kwargs):
        return ModuleSettings(
            module_id=module_id,
            course_id=course_id,
            logic_expressions=logic_expressions,
            **kwargs,
        )

    return _make
