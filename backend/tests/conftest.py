"""
Shared test fixtures.
Every test gets empty tables in a throwaway SQLite file and an in-memory Redis.
"""
import csv
import io
import os
import tempfile

# Must be set before release_importer builds its settings and engine.
_TEST_ROOT = tempfile.mkdtemp(prefix="release-importer-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{_TEST_ROOT}/importer.db"
os.environ["UPLOADS_DIR"] = os.path.join(_TEST_ROOT, "uploads")
os.environ["REDIS_URL"] = "redis://localhost:6379/15"

import pytest  # noqa: E402

from release_importer.api.schemas.mapping import ColumnMapping  # noqa: E402
from release_importer.core.config import get_settings  # noqa: E402
from release_importer.db.base import Base  # noqa: E402
from release_importer.db.session import SessionLocal, engine, init_db  # noqa: E402
from release_importer.services import import_sessions, progress_tracker  # noqa: E402
from release_importer.storage import file_storage  # noqa: E402

HEADERS = [
    "Artist Name",
    "Legal Name",
    "Album/Single Name",
    "Release Type",
    "YouTube Request",
    "YouTube Channel",
    "TikTok Request",
    "Song 1 Name",
    "Song 1 Performer",
    "Song 2 Name",
    "Song 2 Composer",
]


class FakeRedis:
    """Just enough of the redis-py client for telemetry and source mirroring."""

    def __init__(self):
        self.store = {}

    def set(self, key, value, ex=None):
        self.store[key] = value
        return True

    def get(self, key):
        return self.store.get(key)

    def delete(self, *keys):
        removed = 0
        for key in keys:
            removed += int(self.store.pop(key, None) is not None)
        return removed

    def ping(self):
        return True


@pytest.fixture(autouse=True)
def fake_redis(monkeypatch):
    """Replace both Redis clients so no test waits on a real connection."""
    fake = FakeRedis()
    monkeypatch.setattr(progress_tracker, "redis_client", fake)
    monkeypatch.setattr(file_storage, "get_binary_client", lambda: fake)
    return fake


@pytest.fixture(autouse=True)
def database():
    """Fresh tables for every test."""
    Base.metadata.drop_all(bind=engine)
    init_db(engine)
    yield engine
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture
def settings():
    """Settings copy tests can tweak without touching the cached instance."""
    return get_settings().model_copy(update={"import_batch_size": 50})


@pytest.fixture
def mappings():
    """The mapping set an operator would confirm for HEADERS."""
    return [
        ColumnMapping(csv_column="Artist Name", field_type="submission", target_field="artist_name"),
        ColumnMapping(csv_column="Legal Name", field_type="submission", target_field="legal_name"),
        ColumnMapping(
            csv_column="Album/Single Name", field_type="submission", target_field="release_title"
        ),
        ColumnMapping(csv_column="Release Type", field_type="submission", target_field="release_type"),
        ColumnMapping(
            csv_column="YouTube Request", field_type="submission", target_field="youtube_request"
        ),
        ColumnMapping(
            csv_column="YouTube Channel", field_type="submission", target_field="youtube_channel"
        ),
        ColumnMapping(
            csv_column="TikTok Request", field_type="submission", target_field="tiktok_request"
        ),
        ColumnMapping(
            csv_column="Song 1 Name", field_type="song", target_field="name", song_index=1
        ),
        ColumnMapping(
            csv_column="Song 1 Performer", field_type="song", target_field="performer", song_index=1
        ),
        ColumnMapping(
            csv_column="Song 2 Name", field_type="song", target_field="name", song_index=2
        ),
        ColumnMapping(
            csv_column="Song 2 Composer", field_type="song", target_field="composer", song_index=2
        ),
    ]


def make_row(number, **overrides):
    """A well-formed row; artists repeat every 7 rows so lookups hit existing ones."""
    row = {
        "Artist Name": f"Artist {number % 7}",
        "Legal Name": "",
        "Album/Single Name": f"Release {number}",
        "Release Type": "Single",
        "YouTube Request": "Yes",
        "YouTube Channel": "Main",
        "TikTok Request": "No",
        "Song 1 Name": f"Song {number}",
        "Song 1 Performer": f"Artist {number % 7}",
        "Song 2 Name": "",
        "Song 2 Composer": "",
    }
    row.update(overrides)
    return row


def build_csv(rows, headers=None):
    headers = headers or HEADERS
    buffer = io.StringIO()
    writer = csv.DictWriter(buffer, fieldnames=headers, lineterminator="\n")
    writer.writeheader()
    for row in rows:
        writer.writerow(row)
    return buffer.getvalue().encode("utf-8")


@pytest.fixture
def make_session(db, mappings):
    """Create a session whose source file is retained server-side."""

    def _make(rows, owner="user-1", mapping_set=None):
        return import_sessions.create_session(
            db,
            owner=owner,
            mappings=mapping_set or mappings,
            total_rows=len(rows),
            file_name="releases.csv",
            content=build_csv(rows),
        )

    return _make
