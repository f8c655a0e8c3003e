"""
Tests for advancing sessions slice by slice.
"""
import sqlite3
from pathlib import Path

import pytest
from sqlalchemy import func, select, update
from sqlalchemy.exc import OperationalError

from conftest import make_row
from release_importer.core.exceptions import (
    MappingError,
    SourceUnavailableError,
    StaleCheckpointError,
    StorageBusyError,
    StorageUnavailableError,
)
from release_importer.db.models import FailedRow, ImportSession, PlatformRequest, Release, Track
from release_importer.db.session import SessionLocal
from release_importer.services import (
    batch_processor,
    csv_source,
    failure_ledger,
    import_sessions,
    progress_reporter,
    translator,
)


def count(db, model):
    return db.execute(select(func.count()).select_from(model)).scalar_one()


def rows(n, bad=()):
    """n rows, with a blank release title on each row number in ``bad``."""
    return [
        make_row(i, **({"Album/Single Name": ""} if i in bad else {}))
        for i in range(1, n + 1)
    ]


def interfere_while_loading(db, monkeypatch, action):
    """Run ``action(other_db, session_id)`` in a second session just before the slice is read."""
    real_load_slice = batch_processor.load_slice

    def load_after_interference(session, start, stop):
        session_id = session.id
        db.commit()
        other = SessionLocal()
        try:
            action(other, session_id)
            other.commit()
        finally:
            other.close()
        return real_load_slice(session, start, stop)

    monkeypatch.setattr(batch_processor, "load_slice", load_after_interference)


class TestScenarios:
    """End-to-end runs of the batch processor."""

    def test_thousand_rows_with_one_bad_row(self, db, make_session, settings):
        session = make_session(rows(1000, bad={517}))

        results = [batch_processor.advance(db, session.id, settings=settings) for _ in range(20)]

        last = results[-1]
        assert last.rows_processed == 1000
        assert last.status == "completed_with_errors"
        assert last.completed is True
        assert last.needs_more is False
        assert all(r.needs_more for r in results[:-1])
        assert [r.rows_processed for r in results] == list(range(50, 1001, 50))

        stats = failure_ledger.stats(db, session)
        assert stats["total_failed"] == 1
        assert stats["success_rate"] == "99.9"
        assert stats["sample_errors"][0]["row_number"] == 517
        assert count(db, Release) == 999

    def test_cancel_after_three_batches(self, db, make_session, settings):
        session = make_session(rows(1000))
        for _ in range(3):
            batch_processor.advance(db, session.id, settings=settings)

        import_sessions.cancel_session(db, session)
        for _ in range(17):
            result = batch_processor.advance(db, session.id, settings=settings)
            assert result.completed is False
            assert result.needs_more is False

        snapshot = progress_reporter.snapshot(db, session.id)
        assert snapshot["status"] == "cancelled"
        assert snapshot["rows_processed"] == 150
        assert count(db, Release) == 150

    def test_clean_run_completes(self, db, make_session, settings):
        session = make_session(rows(3))

        result = batch_processor.advance(db, session.id, settings=settings)

        assert result.status == "completed"
        assert result.slice_size == 3
        assert count(db, Track) == 3
        assert count(db, PlatformRequest) == 3
        db.refresh(session)
        assert session.releases_created == 3
        assert session.tracks_created == 3
        assert session.artists_created == 3
        assert session.platform_requests_created == 3
        assert session.completed_at is not None

    def test_empty_source_completes_immediately(self, db, make_session, settings):
        session = make_session([])

        result = batch_processor.advance(db, session.id, settings=settings)

        assert result.status == "completed"
        assert result.rows_processed == 0


class TestCheckpointSafety:
    """Compare-and-set checkpoint behaviour."""

    def test_monotonic_and_bounded(self, db, make_session, settings):
        session = make_session(rows(120))
        seen = []
        for _ in range(6):
            seen.append(batch_processor.advance(db, session.id, settings=settings).rows_processed)

        assert seen == sorted(seen)
        assert max(seen) == 120
        assert seen[-3:] == [120, 120, 120]

    def test_replayed_slice_rejected(self, db, make_session, settings):
        """The same call sent twice must not process any row twice."""
        data = rows(100)
        session = make_session(data)

        batch_processor.advance(
            db, session.id, source_rows=data[:50], expected_checkpoint=0, settings=settings
        )
        with pytest.raises(StaleCheckpointError) as excinfo:
            batch_processor.advance(
                db, session.id, source_rows=data[:50], expected_checkpoint=0, settings=settings
            )

        assert excinfo.value.actual == 50
        assert count(db, Release) == 50
        db.refresh(session)
        assert session.rows_processed == 50
        assert session.source_offset is None

    def test_supplied_rows_need_checkpoint(self, db, make_session, settings):
        session = make_session(rows(2))

        with pytest.raises(ValueError):
            batch_processor.advance(db, session.id, source_rows=rows(2), settings=settings)

    def test_concurrent_writer_loses(self, db, make_session, settings, monkeypatch):
        """A writer whose observed checkpoint moved mid-slice rolls back its slice."""
        session = make_session(rows(100))

        def other_writer_commits(other, session_id):
            other.get(ImportSession, session_id).rows_processed = 50

        interfere_while_loading(db, monkeypatch, other_writer_commits)
        with pytest.raises(StaleCheckpointError) as excinfo:
            batch_processor.advance(db, session.id, settings=settings)

        assert excinfo.value.expected == 0
        assert excinfo.value.actual == 50
        assert count(db, Release) == 0

    def test_next_slice_seeks_to_stored_offset(self, db, make_session, settings, monkeypatch):
        session = make_session(rows(120))
        batch_processor.advance(db, session.id, settings=settings)
        db.refresh(session)
        stored = session.source_offset
        assert stored is not None

        reads = []
        real_read_rows = csv_source.read_rows

        def recording(path, start, stop, offset=None):
            reads.append((start, stop, offset))
            return real_read_rows(path, start, stop, offset)

        monkeypatch.setattr(csv_source, "read_rows", recording)
        batch_processor.advance(db, session.id, settings=settings)

        assert reads == [(50, 100, stored)]
        titles = set(db.execute(select(Release.title)).scalars())
        assert titles == {f"Release {i}" for i in range(1, 101)}

    def test_cancel_during_slice_discards_slice(self, db, make_session, settings, monkeypatch):
        session = make_session(rows(100))

        def cancel(other, session_id):
            import_sessions.cancel_session(other, other.get(ImportSession, session_id))

        interfere_while_loading(db, monkeypatch, cancel)
        result = batch_processor.advance(db, session.id, settings=settings)

        assert result.status == "cancelled"
        assert result.rows_processed == 0
        assert count(db, Release) == 0


class TestRowFailureIsolation:
    def test_one_bad_row_among_many(self, db, make_session, settings):
        session = make_session(rows(10, bad={4}))

        result = batch_processor.advance(db, session.id, settings=settings)

        assert result.rows_processed == 10
        assert result.failed_in_slice == 1
        assert count(db, FailedRow) == 1
        assert count(db, Release) == 9
        failed = db.execute(select(FailedRow)).scalar_one()
        assert failed.row_number == 4
        assert failed.error_category == "validation"
        assert failed.raw_row_data["Album/Single Name"] == ""


class TestPause:
    def test_pause_flag_applied_at_next_boundary(self, db, make_session, settings):
        session = make_session(rows(200))
        batch_processor.advance(db, session.id, settings=settings)
        import_sessions.pause_session(db, session)

        result = batch_processor.advance(db, session.id, settings=settings)

        assert result.paused is True
        assert result.rows_processed == 50
        assert result.needs_more is False

        again = batch_processor.advance(db, session.id, settings=settings)
        assert again.paused is True
        assert again.rows_processed == 50

        import_sessions.resume_session(db, session)
        resumed = batch_processor.advance(db, session.id, settings=settings)
        assert resumed.rows_processed == 100
        assert resumed.needs_more is True

    def test_pause_requested_during_slice(self, db, make_session, settings, monkeypatch):
        session = make_session(rows(200))
        batch_processor.advance(db, session.id, settings=settings)

        def pause(other, session_id):
            import_sessions.pause_session(other, other.get(ImportSession, session_id))

        interfere_while_loading(db, monkeypatch, pause)
        result = batch_processor.advance(db, session.id, settings=settings)

        assert result.rows_processed == 100
        assert result.status == "paused"
        db.refresh(session)
        assert session.pause_requested is False

    def test_pause_and_resume_idempotent(self, db, make_session, settings):
        session = make_session(rows(200))
        batch_processor.advance(db, session.id, settings=settings)

        import_sessions.resume_session(db, session)
        assert session.rows_processed == 50
        assert session.status == "in_progress"

        import_sessions.pause_session(db, session)
        batch_processor.advance(db, session.id, settings=settings)
        import_sessions.pause_session(db, session)
        db.refresh(session)
        assert session.status == "paused"
        assert session.rows_processed == 50


class TestSessionFailures:
    def test_storage_outage_fails_session(self, db, make_session, settings, monkeypatch):
        session = make_session(rows(10))

        def unreachable(self, row, row_number, created):
            raise OperationalError("INSERT", {}, Exception("server closed the connection"))

        monkeypatch.setattr(translator.RowTranslator, "_write", unreachable)
        with pytest.raises(StorageUnavailableError):
            batch_processor.advance(db, session.id, settings=settings)

        db.refresh(session)
        assert session.status == "failed"
        assert "server closed" in session.error
        assert session.rows_processed == 0

    def test_lock_contention_rolls_back_slice_only(self, db, make_session, settings, monkeypatch):
        session = make_session(rows(10))
        real_write = translator.RowTranslator._write
        written = []

        def locked_on_fifth(self, row, row_number, created):
            written.append(row_number)
            if len(written) == 5:
                raise OperationalError(
                    "INSERT INTO artists", {}, sqlite3.OperationalError("database is locked")
                )
            return real_write(self, row, row_number, created)

        monkeypatch.setattr(translator.RowTranslator, "_write", locked_on_fifth)
        with pytest.raises(StorageBusyError):
            batch_processor.advance(db, session.id, settings=settings)

        db.refresh(session)
        assert session.status == "in_progress"
        assert session.rows_processed == 0
        assert session.error is None
        assert count(db, Release) == 0
        assert count(db, FailedRow) == 0

        result = batch_processor.advance(db, session.id, settings=settings)
        assert result.status == "completed"
        assert count(db, Release) == 10

    def test_writer_holding_lock_leaves_pending_session_untouched(self, db, make_session, settings):
        """Another connection's uncommitted write blocks the pending -> in_progress update."""
        session_id = make_session(rows(5)).id
        db.commit()
        other = SessionLocal()
        try:
            other.execute(
                update(ImportSession).where(ImportSession.id == session_id).values(error="held")
            )
            with pytest.raises(StorageBusyError):
                batch_processor.advance(db, session_id, settings=settings)
        finally:
            other.rollback()
            other.close()

        assert db.get(ImportSession, session_id).status == "pending"
        result = batch_processor.advance(db, session_id, settings=settings)
        assert result.status == "completed"

    def test_lost_connection_on_status_change_fails_session(
        self, db, make_session, settings, monkeypatch
    ):
        session = make_session(rows(3))

        def dropped(*args, **kwargs):
            raise OperationalError(
                "UPDATE import_sessions", {}, Exception("server closed the connection unexpectedly")
            )

        monkeypatch.setattr(batch_processor, "_set_status", dropped)
        with pytest.raises(StorageUnavailableError):
            batch_processor.advance(db, session.id, settings=settings)

        db.refresh(session)
        assert session.status == "failed"
        assert "server closed" in session.error

    def test_unusable_mapping_fails_session(self, db, make_session, settings):
        session = make_session(rows(3))
        session.mapping_config = [{"csv_column": "A", "field_type": "song", "target_field": "name"}]
        db.commit()

        with pytest.raises(MappingError):
            batch_processor.advance(db, session.id, settings=settings)

        db.refresh(session)
        assert session.status == "failed"

    def test_failed_session_is_terminal(self, db, make_session, settings):
        session = make_session(rows(3))
        session.status = "failed"
        db.commit()

        result = batch_processor.advance(db, session.id, settings=settings)

        assert result.status == "failed"
        assert result.needs_more is False
        assert count(db, Release) == 0

    def test_missing_source_is_not_terminal(self, db, make_session, settings, fake_redis):
        session = make_session(rows(3))
        Path(session.source_path).unlink()
        fake_redis.store.clear()

        with pytest.raises(SourceUnavailableError):
            batch_processor.advance(db, session.id, settings=settings)

        db.rollback()
        db.refresh(session)
        assert session.status == "in_progress"

    def test_source_restored_from_redis(self, db, make_session, settings):
        session = make_session(rows(3))
        Path(session.source_path).unlink()

        result = batch_processor.advance(db, session.id, settings=settings)

        assert result.status == "completed"
        assert count(db, Release) == 3


class TestTelemetry:
    def test_progress_published_after_commit(self, db, make_session, settings, fake_redis):
        session = make_session(rows(100))

        batch_processor.advance(db, session.id, settings=settings)

        snapshot = progress_reporter.snapshot(db, session.id)
        assert snapshot["message"] == "Processed 50/100 rows"
        assert snapshot["percentage"] == 50
