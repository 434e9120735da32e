import pytest

from novelpack import config, db


@pytest.fixture
def database(tmp_path, monkeypatch):
    """Each test gets its own SQLite file."""
    monkeypatch.setattr(config, "DB_PATH", str(tmp_path / "novelpack.db"))
    db.init_db()
    return config.DB_PATH
