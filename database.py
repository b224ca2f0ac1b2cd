import logging

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.pool import StaticPool


logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    pass


def _enable_sqlite_pragmas(dbapi_conn, _record):
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL;")
    cursor.execute("PRAGMA foreign_keys=ON;")
    cursor.close()


def _is_memory_url(url: str) -> bool:
    return url in ("sqlite://", "sqlite:///:memory:") or "mode=memory" in url


class Database:
    """Owns the engine and session factory for one backing store.

    Built once at process start (or per test) and handed to every request
    through the app state instead of living at module level.
    """

    def __init__(self, url: str, *, echo: bool = False) -> None:
        self.engine = self._create_engine(url, echo=echo)
        self.SessionLocal = sessionmaker(
            bind=self.engine, autoflush=False, expire_on_commit=False
        )

    @staticmethod
    def _create_engine(url: str, *, echo: bool) -> Engine:
        kwargs: dict[str, object] = {"echo": echo}
        if url.startswith("sqlite"):
            kwargs["connect_args"] = {"check_same_thread": False}
            if _is_memory_url(url):
                # every session must see the same in-memory database
                kwargs["poolclass"] = StaticPool
        eng = create_engine(url, **kwargs)
        if url.startswith("sqlite"):
            event.listen(eng, "connect", _enable_sqlite_pragmas)
        return eng

    def create_all(self) -> None:
        import models  # noqa: F401

        Base.metadata.create_all(self.engine)

    def ping(self) -> bool:
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except Exception:
            logger.exception(f"database_ping_failed: url={self.engine.url!r}")
            return False
        return True

    def session(self) -> Session:
        return self.SessionLocal()

    def dispose(self) -> None:
        self.engine.dispose()
