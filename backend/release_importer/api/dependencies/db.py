"""Database session dependencies."""

from collections.abc import Generator

from fastapi import Depends
from sqlalchemy.orm import Session

from release_importer.api.dependencies.owner import get_owner
from release_importer.db.models import ImportSession
from release_importer.db.session import get_db
from release_importer.services.import_sessions import get_session_for_owner


def get_session() -> Generator[Session, None, None]:
    """FastAPI dependency that yields a managed SQLAlchemy session."""
    yield from get_db()


def get_owned_import_session(
    session_id: str,
    owner: str = Depends(get_owner),
    db: Session = Depends(get_session),
) -> ImportSession:
    """Resolve the path's import session, 404 if missing and 403 if not the caller's."""
    return get_session_for_owner(db, session_id, owner)
