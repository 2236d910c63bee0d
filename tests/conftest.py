import pytest
import sqlite3
from media_cleanup.core import MediaCleanupApp
from media_cleanup.database.schema import init_schema
from media_cleanup.database.ops import DBOperations
from media_cleanup.hooks import ExtensionRegistry
from media_cleanup.library import MediaLibrary
from media_cleanup.settings import SettingsService

@pytest.fixture
def conn():
    """Returns an in-memory SQLite connection with the schema initialized."""
    c = sqlite3.connect(":memory:")
    c.execute("PRAGMA foreign_keys=ON;")
    init_schema(c)
    try:
        yield c
    finally:
        c.close()

@pytest.fixture
def db_ops(conn):
    """Returns a DBOperations instance attached to the in-memory DB."""
    return DBOperations(conn)

@pytest.fixture
def upload_dir(tmp_path):
    d = tmp_path / "uploads"
    d.mkdir()
    return d

@pytest.fixture
def hooks():
    return ExtensionRegistry()

@pytest.fixture
def library(db_ops, upload_dir):
    return MediaLibrary(db_ops, upload_dir)

@pytest.fixture
def settings(db_ops, hooks):
    return SettingsService(db_ops, hooks)

@pytest.fixture
def make_attachment(library, upload_dir):
    """
    Writes a file under the upload dir and registers it.
    Usage: make_attachment("2025/01/a.jpg", b"data", created_at="2025-01-01T00:00:00+00:00")
    """
    def _make(rel_path, data=b"data", created_at="2025-01-01T00:00:00+00:00", title=None):
        path = upload_dir / rel_path
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        return library.register_file(path, title=title, created_at=created_at)
    return _make

@pytest.fixture
def app(upload_dir, hooks):
    """A fully wired application on an in-memory database."""
    a = MediaCleanupApp(":memory:", upload_dir, hooks=hooks)
    a.open()
    try:
        yield a
    finally:
        a.close()

@pytest.fixture
def app_attachment(app, upload_dir):
    """Like make_attachment, but registered through the app's own connection."""
    def _make(rel_path, data=b"data", created_at="2025-01-01T00:00:00+00:00", title=None):
        path = upload_dir / rel_path
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        attachment_id = app.library.register_file(path, title=title, created_at=created_at)
        app.conn.commit()
        return attachment_id
    return _make
