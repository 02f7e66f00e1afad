from sqlalchemy.orm import declarative_base

Base = declarative_base()


def sync_database_url(url: str) -> str:
    """Point Postgres URLs at psycopg2; the store is driven synchronously."""
    if url.startswith("postgresql+asyncpg://"):
        return "postgresql+psycopg2://" + url[len("postgresql+asyncpg://"):]
    if url.startswith("postgresql://"):
        return "postgresql+psycopg2://" + url[len("postgresql://"):]
    return url
