from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from app.config import settings


def build_connect_args(database_url: str, statement_timeout_ms: int, lock_timeout_ms: int) -> dict:
    """Postgres session timeouts applied at connect time; other drivers get none."""
    if not database_url.startswith("postgresql"):
        return {}
    options = []
    if statement_timeout_ms > 0:
        options.append(f"-c statement_timeout={statement_timeout_ms}")
    if lock_timeout_ms > 0:
        options.append(f"-c lock_timeout={lock_timeout_ms}")
    return {"options": " ".join(options)} if options else {}


engine = create_engine(
    settings.database_url,
    pool_pre_ping=True,
    connect_args=build_connect_args(
        settings.database_url, settings.db_statement_timeout_ms, settings.db_lock_timeout_ms
    ),
)

SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

Base = declarative_base()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db() -> None:
    """Create missing tables (development only; production uses managed schema)."""
    import app.models  # noqa: F401

    Base.metadata.create_all(bind=engine)
