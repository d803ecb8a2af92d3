import importlib
import logging
from contextlib import contextmanager
from typing import Iterator, Optional

from fastapi import Request
from sqlalchemy import create_engine, text
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from marketplace.config import settings

log = logging.getLogger(__name__)

Base = declarative_base()

# every model module must be imported before create_all so the metadata is complete
MODEL_MODULES = [
    "marketplace.models.user",
    "marketplace.models.package",
    "marketplace.models.ride",
    "marketplace.models.match",
    "marketplace.models.payment",
    "marketplace.models.tracking_event",
    "marketplace.models.notification",
    "marketplace.models.idempotency",
]


class Database:
    """
    Owns the engine (and its connection pool) plus the session factory.

    One instance is built at application startup and disposed at shutdown;
    request handlers and background jobs receive it explicitly instead of
    reaching for a module-level engine.
    """

    def __init__(self, url: Optional[str] = None, echo: bool = False):
        self.url = url or settings.DATABASE_URL
        engine_kwargs = {"echo": echo, "pool_pre_ping": True}
        if self.url.startswith("sqlite"):
            # sessions are handed across the threadpool used for sync routes and scheduler jobs
            engine_kwargs["connect_args"] = {"check_same_thread": False}
        self.engine = create_engine(self.url, **engine_kwargs)
        self.SessionLocal = sessionmaker(bind=self.engine, autoflush=False)

    def init(self, reset: bool = False) -> None:
        for mod in MODEL_MODULES:
            importlib.import_module(mod)
        if reset:
            log.info("Resetting database schema at %s", self.url)
            Base.metadata.drop_all(bind=self.engine)
        Base.metadata.create_all(bind=self.engine)
        log.info("Database initialized (%d tables)", len(Base.metadata.tables))

    def ping(self) -> bool:
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return True
        except Exception:
            log.exception("Database ping failed")
            return False

    @contextmanager
    def session(self) -> Iterator[Session]:
        db = self.SessionLocal()
        try:
            yield db
        finally:
            db.close()

    def dispose(self) -> None:
        self.engine.dispose()


def get_db(request: Request) -> Iterator[Session]:
    db = request.app.state.database.SessionLocal()
    try:
        yield db
    finally:
        db.close()
