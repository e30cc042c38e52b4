"""Session factory and transaction helper for the structured store.

Each StorageBackend instance owns its own engine, so there is no process-wide
default factory here; the backend builds one with create_session_factory().
"""

from collections.abc import Generator
from contextlib import contextmanager

from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker


def create_session_factory(engine: Engine) -> sessionmaker[Session]:
    """Build the per-backend sessionmaker.

    Records are converted to dataclasses before the session closes, so
    attributes are not expired on commit.
    """
    return sessionmaker(
        bind=engine,
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
    )


@contextmanager
def transaction(db: Session) -> Generator[None, None, None]:
    """Commit the enclosed statements as one unit; roll back and re-raise on error.

    Usage:
        with self._session("delete_collection", collection_id) as db, transaction(db):
            db.execute(update(CollectionRow)...)
            db.execute(update(CollectionItemRow)...)
    """
    try:
        yield
        db.commit()
    except Exception:
        db.rollback()
        raise
