import functools
import logging
from collections.abc import Iterator

from fastapi import Request
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from staydesk.core.errors import InvalidTransition

logger = logging.getLogger(__name__)

# deadlock_detected, serialization_failure, lock_not_available
LOCK_CONFLICT_CODES = {"40P01", "40001", "55P03"}


class Base(DeclarativeBase):
    pass


class Database:
    """Engine + session factory for one process.

    Opened at start-up (API lifespan, worker job, migration run) and disposed
    at shutdown; nothing holds a module-level engine.
    """

    def __init__(self, url: str, *, pool_timeout: int = 10, statement_timeout_ms: int = 0, echo: bool = False):
        kwargs = {"echo": echo, "pool_pre_ping": True}
        connect_args = {}
        if url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        else:
            kwargs["pool_timeout"] = pool_timeout
            if url.startswith("postgresql") and statement_timeout_ms:
                connect_args["options"] = f"-c statement_timeout={int(statement_timeout_ms)}"
        self.url = url
        self.engine: Engine = create_engine(url, connect_args=connect_args, **kwargs)
        self.session_factory = sessionmaker(bind=self.engine, autocommit=False, autoflush=False, expire_on_commit=False)

    @classmethod
    def from_settings(cls, settings) -> "Database":
        return cls(
            settings.DATABASE_URL,
            pool_timeout=settings.DB_POOL_TIMEOUT_SECONDS,
            statement_timeout_ms=settings.DB_STATEMENT_TIMEOUT_MS,
        )

    def session(self) -> Session:
        return self.session_factory()

    def create_all(self) -> None:
        # Register every mapped table on Base.metadata before creating.
        import staydesk.models  # noqa: F401
        Base.metadata.create_all(self.engine)

    def dispose(self) -> None:
        self.engine.dispose()


def get_db(request: Request) -> Iterator[Session]:
    db = request.app.state.database.session()
    try:
        yield db
    finally:
        db.close()


def is_lock_conflict(exc: DBAPIError) -> bool:
    code = getattr(exc.orig, "pgcode", None) or getattr(exc.orig, "sqlstate", None)
    return code in LOCK_CONFLICT_CODES


def concurrent_transition(attempted: str):
    """Report a transition that lost a lock conflict as InvalidTransition instead of a driver error.

    Wraps service functions whose first argument is the Session.
    """
    def decorator(fn):
        @functools.wraps(fn)
        def wrapper(db: Session, *args, **kwargs):
            try:
                return fn(db, *args, **kwargs)
            except DBAPIError as e:
                if not is_lock_conflict(e):
                    raise
                db.rollback()
                logger.warning("%s lost a lock conflict: %s", fn.__name__, e.orig)
                raise InvalidTransition("record changed concurrently, reload and retry",
                                        attempted=attempted, guard="no concurrent transition") from e
        return wrapper
    return decorator
