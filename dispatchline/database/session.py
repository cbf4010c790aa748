import time
from typing import Callable, Optional, TypeVar

from sqlalchemy import create_engine, event, text
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker

from .. import config
from ..logging_context import get_call_logger

logger = get_call_logger(__name__)

T = TypeVar("T")

_engine = None
_SessionLocal = None


def _connect_args(url: str) -> dict:
    if url.startswith("sqlite"):
        # Seconds a writer waits on another writer's lock before giving up.
        return {"timeout": config.ASSIGNMENT_TIMEOUT_SECONDS, "check_same_thread": False}
    if url.startswith("postgresql"):
        return {"connect_timeout": 5}
    return {}


def configure_engine(url: Optional[str] = None):
    """(Re)create the engine and session factory, e.g. for tests."""
    global _engine, _SessionLocal
    url = url or config.DATABASE_URL
    if _engine is not None:
        _engine.dispose()
    _engine = create_engine(url, pool_pre_ping=True, connect_args=_connect_args(url))
    if url.startswith("sqlite"):
        event.listen(_engine, "connect", _sqlite_pragmas)
    _SessionLocal = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=_engine)
    return _engine


def _sqlite_pragmas(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def get_engine():
    """Lazy engine creation - only connects when first needed."""
    if _engine is None:
        configure_engine()
    return _engine


def get_session_local():
    """Lazy session factory creation."""
    if _SessionLocal is None:
        configure_engine()
    return _SessionLocal


def init_db() -> bool:
    """Create tables. Logs and returns False instead of raising."""
    try:
        from .models import Base
        Base.metadata.create_all(bind=get_engine())
        return True
    except Exception:
        logger.exception("Database initialization failed")
        return False


def get_db():
    """Database session dependency for FastAPI."""
    db = get_session_local()()
    try:
        yield db
    finally:
        db.close()


def _is_retryable(exc: OperationalError) -> bool:
    pgcode = getattr(exc.orig, "pgcode", None)
    if pgcode in ("40001", "40P01"):
        return True
    message = str(exc.orig).lower()
    return "database is locked" in message or "could not serialize" in message or "deadlock" in message


def apply_statement_timeout(db: Session) -> None:
    if db.get_bind().dialect.name == "postgresql":
        ms = int(config.ASSIGNMENT_TIMEOUT_SECONDS * 1000)
        db.execute(text(f"SET LOCAL statement_timeout = {ms}"))


def run_in_transaction(
    work: Callable[[Session], T],
    session_factory: Optional[Callable[[], Session]] = None,
    max_retries: Optional[int] = None,
) -> T:
    """
    Run `work` in its own session and commit it.

    Lock and serialization failures roll back and re-run `work` from scratch;
    nothing `work` does is visible until commit, so a retry cannot double-book.
    Any other exception rolls back and propagates.
    """
    factory = session_factory or get_session_local()
    attempts = max_retries or config.ASSIGNMENT_MAX_RETRIES

    for attempt in range(1, attempts + 1):
        db = factory()
        try:
            apply_statement_timeout(db)
            result = work(db)
            db.commit()
            return result
        except OperationalError as exc:
            db.rollback()
            if attempt >= attempts or not _is_retryable(exc):
                raise
            logger.warning("Transaction conflict (attempt %d/%d): %s", attempt, attempts, exc.orig)
            time.sleep(0.05 * attempt)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
    raise RuntimeError("unreachable")
