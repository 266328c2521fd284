from typing import Generator

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from .config import get_database_url

SQLALCHEMY_DATABASE_URL = get_database_url()

engine = create_engine(
    SQLALCHEMY_DATABASE_URL,
    connect_args={"check_same_thread": False},
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db() -> Generator[Session, None, None]:
    """Yield a SQLAlchemy session for FastAPI dependencies."""

    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def _add_missing_columns(table: str, new_cols: dict[str, str]) -> None:
    inspector = inspect(engine)
    if table not in inspector.get_table_names():
        return
    columns = {col["name"] for col in inspector.get_columns(table)}
    missing = {name: ddl for name, ddl in new_cols.items() if name not in columns}
    if not missing:
        return
    with engine.connect() as conn:
        for name, ddl in missing.items():
            conn.execute(text(f"ALTER TABLE {table} ADD COLUMN {name} {ddl}"))
        conn.commit()


def ensure_meta_schema_migrations() -> None:
    """Apply lightweight, in-place schema migrations for the meta DB.

    Only additive, backwards-compatible column changes are performed here.
    """

    # Holdings: cached market price and free-form notes.
    _add_missing_columns(
        "holdings",
        {
            "last_price": "FLOAT",
            "notes": "TEXT",
        },
    )

    # Optimisation results: fallback marker, requested method, frontier and
    # estimation metadata.
    _add_missing_columns(
        "optimization_results",
        {
            "requested_method": "VARCHAR",
            "is_fallback": "BOOLEAN DEFAULT 0",
            "cvar": "FLOAT",
            "estimation_json": "JSON",
            "frontier_json": "JSON",
            "diagnostics_json": "JSON",
        },
    )
