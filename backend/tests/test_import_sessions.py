"""
Tests for the import session lifecycle.
"""
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from conftest import build_csv, make_row
from release_importer.core.exceptions import (
    ConflictError,
    InvalidTransitionError,
    MappingError,
    SessionNotFoundError,
    SessionOwnershipError,
)
from release_importer.db.models import FailedRow, ImportSession
from release_importer.services import batch_processor, import_sessions


def set_status(db, session, status, **values):
    session.status = status
    for key, value in values.items():
        setattr(session, key, value)
    db.commit()


class TestCreateSession:
    """Creating sessions and the one-active-session-per-owner rule."""

    def test_new_session_is_pending_at_checkpoint_zero(self, make_session, fake_redis):
        session = make_session([make_row(1), make_row(2)])

        assert session.status == "pending"
        assert session.rows_processed == 0
        assert session.total_rows == 2
        assert session.mapping_config[0]["target_field"] == "artist_name"
        assert Path(session.source_path).exists()
        assert f"imports:source:{session.id}" in fake_redis.store
        assert len(session.file_hash) == 64

    def test_second_active_session_conflicts(self, make_session):
        first = make_session([make_row(1)])

        with pytest.raises(ConflictError) as excinfo:
            make_session([make_row(1)])

        assert excinfo.value.active_session_id == first.id

    def test_other_owner_unaffected(self, make_session):
        make_session([make_row(1)], owner="user-1")
        second = make_session([make_row(1)], owner="user-2")

        assert second.status == "pending"

    def test_new_session_allowed_after_cancel(self, db, make_session):
        first = make_session([make_row(1)])
        import_sessions.cancel_session(db, first)

        second = make_session([make_row(1)])
        assert second.id != first.id

    def test_database_enforces_single_active_session(self, db, make_session, monkeypatch):
        """Two creates that both pass the pre-check still cannot both land."""
        first = make_session([make_row(1)])
        monkeypatch.setattr(import_sessions, "get_active_session_for_owner", lambda db, owner: None)

        with pytest.raises(ConflictError):
            make_session([make_row(1)])

        assert db.query(ImportSession).count() == 1
        assert db.get(ImportSession, first.id).status == "pending"

    def test_invalid_mapping_rejected(self, db):
        with pytest.raises(MappingError):
            import_sessions.create_session(db, owner="user-1", mappings=[], total_rows=1)


class TestLookup:
    def test_active_session_for_owner(self, db, make_session):
        session = make_session([make_row(1)])

        assert import_sessions.get_active_session_for_owner(db, "user-1").id == session.id
        assert import_sessions.get_active_session_for_owner(db, "user-2") is None

    def test_completed_session_is_not_active(self, db, make_session):
        session = make_session([make_row(1)])
        set_status(db, session, "completed", rows_processed=1)

        assert import_sessions.get_active_session_for_owner(db, "user-1") is None

    def test_ownership_checked(self, db, make_session):
        session = make_session([make_row(1)])

        with pytest.raises(SessionOwnershipError):
            import_sessions.get_session_for_owner(db, session.id, "intruder")
        with pytest.raises(SessionNotFoundError):
            import_sessions.get_session_for_owner(db, "missing", "user-1")


class TestPauseResumeCancel:
    """State transitions and their idempotence."""

    def test_pause_only_sets_flag(self, db, make_session):
        session = make_session([make_row(1)])
        set_status(db, session, "in_progress")

        import_sessions.pause_session(db, session)

        assert session.status == "in_progress"
        assert session.pause_requested is True

    def test_pause_from_pending_rejected(self, db, make_session):
        session = make_session([make_row(1)])

        with pytest.raises(InvalidTransitionError):
            import_sessions.pause_session(db, session)

    def test_pause_already_paused_is_noop(self, db, make_session):
        session = make_session([make_row(1), make_row(2)])
        set_status(db, session, "paused", rows_processed=1)

        import_sessions.pause_session(db, session)

        assert session.status == "paused"
        assert session.rows_processed == 1

    def test_resume_in_progress_is_noop(self, db, make_session):
        session = make_session([make_row(1), make_row(2)])
        set_status(db, session, "in_progress", rows_processed=1)

        import_sessions.resume_session(db, session)

        assert session.status == "in_progress"
        assert session.rows_processed == 1

    def test_resume_in_progress_withdraws_pending_pause(self, db, make_session):
        session = make_session([make_row(1)])
        set_status(db, session, "in_progress", pause_requested=True)

        import_sessions.resume_session(db, session)

        assert session.pause_requested is False

    def test_resume_paused(self, db, make_session):
        session = make_session([make_row(1)])
        set_status(db, session, "paused")

        import_sessions.resume_session(db, session)

        assert session.status == "in_progress"
        assert session.pause_requested is False

    def test_resume_completed_rejected(self, db, make_session):
        session = make_session([make_row(1)])
        set_status(db, session, "completed", rows_processed=1)

        with pytest.raises(InvalidTransitionError):
            import_sessions.resume_session(db, session)

    def test_resume_with_matching_file_restages_source(self, db, make_session, fake_redis):
        rows = [make_row(1), make_row(2)]
        session = make_session(rows)
        set_status(db, session, "paused")
        Path(session.source_path).unlink()
        fake_redis.store.clear()

        import_sessions.resume_session(db, session, content=build_csv(rows))

        assert Path(session.source_path).exists()
        assert session.status == "in_progress"

    def test_resume_with_different_file_rejected(self, db, make_session):
        session = make_session([make_row(1)])
        set_status(db, session, "paused")

        with pytest.raises(MappingError, match="does not match"):
            import_sessions.resume_session(db, session, content=build_csv([make_row(99)]))
        assert session.status == "paused"

    @pytest.mark.parametrize("status", ["pending", "in_progress", "paused"])
    def test_cancel_from_any_active_state(self, db, make_session, status):
        session = make_session([make_row(1)])
        set_status(db, session, status)

        import_sessions.cancel_session(db, session)

        assert session.status == "cancelled"
        assert session.completed_at is not None

    def test_cancel_twice_is_noop(self, db, make_session):
        session = make_session([make_row(1)])
        import_sessions.cancel_session(db, session)

        import_sessions.cancel_session(db, session)
        assert session.status == "cancelled"

    def test_cancel_completed_rejected(self, db, make_session):
        session = make_session([make_row(1)])
        set_status(db, session, "completed", rows_processed=1)

        with pytest.raises(InvalidTransitionError):
            import_sessions.cancel_session(db, session)


class TestCleanup:
    def test_delete_removes_session_ledger_and_files(self, db, make_session, fake_redis, settings):
        rows = [make_row(1), make_row(2, **{"Album/Single Name": ""})]
        session = make_session(rows)
        batch_processor.advance(db, session.id, settings=settings)
        source_path = Path(session.source_path)
        session_id = session.id

        import_sessions.delete_session(db, session)

        assert db.get(ImportSession, session_id) is None
        assert db.query(FailedRow).filter_by(session_id=session_id).count() == 0
        assert not source_path.exists()
        assert not [k for k in fake_redis.store if session_id in k]


class TestStalled:
    def test_find_stalled_sessions(self, db, make_session):
        stale = make_session([make_row(1)], owner="user-1")
        fresh = make_session([make_row(1)], owner="user-2")
        long_ago = datetime.now(timezone.utc) - timedelta(hours=1)
        set_status(db, stale, "in_progress", started_at=long_ago, last_checkpoint_at=long_ago)
        set_status(db, fresh, "in_progress", started_at=datetime.now(timezone.utc))

        stalled = import_sessions.find_stalled_sessions(db, timedelta(minutes=5))

        assert [s.id for s in stalled] == [stale.id]
