from datetime import datetime, timezone

from sqlalchemy import JSON, create_engine
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from flowdesk.config import settings

# JSONB on postgres, plain JSON elsewhere (sqlite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")

engine = create_engine(settings.database_url, pool_pre_ping=True, future=True)
SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)

Base = declarative_base()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def insert_ignore(db: Session, model, values: dict, index_elements: list[str]) -> bool:
    """INSERT ... ON CONFLICT DO NOTHING. Returns True when a row was inserted."""
    dialect = db.get_bind().dialect.name
    insert = sqlite.insert if dialect == "sqlite" else postgresql.insert
    stmt = insert(model).values(**values).on_conflict_do_nothing(index_elements=index_elements)
    result = db.execute(stmt)
    return result.rowcount > 0


def utcnow() -> datetime:
    return datetime.now(timezone.utc)
