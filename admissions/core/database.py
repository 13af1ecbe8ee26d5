import logging
from typing import Iterable, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from admissions.core.config import settings

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    pass


def make_engine(url: Optional[str] = None, echo: bool = False) -> Engine:
    url = url or settings.DATABASE_URL
    if url.startswith("sqlite"):
        engine = create_engine(url, future=True, echo=echo, connect_args={"check_same_thread": False})

        @event.listens_for(engine, "connect")
        def _enable_sqlite_fks(dbapi_conn, _record):
            cur = dbapi_conn.cursor()
            cur.execute("PRAGMA foreign_keys=ON")
            cur.close()

        return engine
    return create_engine(url, future=True, echo=echo, pool_pre_ping=True)


def make_session_factory(engine: Engine) -> sessionmaker:
    # Services hand ORM rows back after their transaction ends.
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False, future=True)


def init_db(engine: Engine) -> None:
    """Create tables if they don't exist."""
    import admissions.models.orm  # noqa: F401  registers the mappers

    Base.metadata.create_all(engine)
    logger.info("Database schema ready on %s", engine.url.render_as_string(hide_password=True))


def close_db(engine: Engine) -> None:
    engine.dispose()


def _insert_for(db: Session, model):
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert(model)
    if dialect == "sqlite":
        return sqlite.insert(model)
    raise NotImplementedError(f"upsert not supported on dialect {dialect!r}")


def upsert(db: Session, model, values: dict, index_elements: Iterable[str], update_columns: Iterable[str]) -> None:
    """INSERT ... ON CONFLICT (index_elements) DO UPDATE SET update_columns."""
    stmt = _insert_for(db, model).values(**values)
    stmt = stmt.on_conflict_do_update(
        index_elements=list(index_elements),
        set_={col: stmt.excluded[col] for col in update_columns},
    )
    db.execute(stmt)


def insert_or_keep(db: Session, model, values: dict, index_elements: Iterable[str]) -> bool:
    """INSERT ... ON CONFLICT DO NOTHING. Returns True when this call wrote the row."""
    stmt = _insert_for(db, model).values(**values).on_conflict_do_nothing(index_elements=list(index_elements))
    return db.execute(stmt).rowcount == 1
