import logging

from app.database.base import Base
from app.database.engine import SessionLocal, engine

logger = logging.getLogger(__name__)


def get_db():
    """Request-scoped session for the order routes, closed after the response."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db():
    """Create the clients and orders tables when AUTO_CREATE_TABLES is set."""
    import app.models  # noqa: F401

    Base.metadata.create_all(bind=engine)
    logger.info("Tables ensured: %s", ", ".join(sorted(Base.metadata.tables)))
