from sqlalchemy import create_engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from app.config import settings


class Base(DeclarativeBase):
    pass


def get_engine(database_url: str | None = None):
    url = database_url or settings.database_url
    if url.startswith("sqlite"):
        # Local runs only; SQLite has no connection pool options.
        return create_engine(url, connect_args={"check_same_thread": False})
    return create_engine(
        url,
        pool_pre_ping=True,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_timeout=settings.db_pool_timeout,
        pool_recycle=settings.db_pool_recycle,
    )


# The sweep worker pool opens one session per tenant from this factory, so
# db_pool_size should be at least billing_sweep_workers + 1.
SessionLocal = sessionmaker(bind=get_engine(), autoflush=False, autocommit=False)


def get_db():
    """FastAPI dependency yielding a request-scoped session.

    Services commit their own writes; the session is closed after the
    request.

    Example:
        @router.get("/tenants/{tenant_id}")
        def get_tenant(tenant_id: UUID, db: Session = Depends(get_db)):
            return billing_ledger.get_record(db, tenant_id)
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
